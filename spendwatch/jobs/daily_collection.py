"""Daily cost collection across every tenant with active credentials."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from spendwatch.collection.collector import CollectionResult, CostCollector
from spendwatch.core.exceptions import CollectionFailedError
from spendwatch.storage.costs import store_cost_data, store_token_usage
from spendwatch.storage.credentials import list_team_ids_with_active_credentials
from spendwatch.telemetry.events import record_event

logger = logging.getLogger("spendwatch.jobs.daily_collection")

JOB_NAME = "daily-batch"


@dataclass
class DailyCollectionSummary:
    target_date: date
    teams: int
    records_collected: int
    records_created: int
    usage_records_collected: int
    usage_records_created: int
    result: CollectionResult


async def run_daily_collection(
    collector: CostCollector,
    *,
    target_date: date | None = None,
    batch_size: int = 500,
    provider: str = "openai",
) -> DailyCollectionSummary:
    """Collect and store one day for every team; raise if every organization failed."""
    team_ids = list_team_ids_with_active_credentials(provider)
    combined = CollectionResult()
    records_created = 0
    usage_created = 0
    day = target_date or collector.default_target_date()

    for team_id in team_ids:
        result = await collector.collect_team(team_id, target_date=day, provider=provider)
        # Stored per team so one team's later failure does not discard another's rows.
        records_created += store_cost_data(result.costs, batch_size=batch_size)
        usage_created += store_token_usage(result.usage, batch_size=batch_size)
        combined.merge(result)

    if combined.all_failed:
        record_event(
            "collection_failed",
            "ERROR",
            message=f"All {len(combined.failed_organizations)} organizations failed",
            meta={"failed_organizations": combined.failed_organizations},
        )
        raise CollectionFailedError(
            f"Collection failed for all {len(combined.failed_organizations)} organizations",
            failed_organizations=combined.failed_organizations,
        )

    summary = DailyCollectionSummary(
        target_date=day,
        teams=len(team_ids),
        records_collected=len(combined.costs),
        records_created=records_created,
        usage_records_collected=len(combined.usage),
        usage_records_created=usage_created,
        result=combined,
    )
    logger.info(
        "Daily collection complete",
        extra={
            "event": "daily_collection_complete",
            "teams": summary.teams,
            "records_collected": summary.records_collected,
            "records_created": summary.records_created,
            "usage_records_collected": summary.usage_records_collected,
            "usage_records_created": summary.usage_records_created,
            "failed_organizations": len(combined.failed_organizations),
            "skipped_organizations": len(combined.skipped_organizations),
        },
    )
    return summary
