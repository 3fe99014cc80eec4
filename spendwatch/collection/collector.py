"""Per-tenant cost and token-usage collection across organization credentials."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import TypeVar, cast

from spendwatch.core.config import CollectionSettings
from spendwatch.core.exceptions import CredentialInactiveError, SpendwatchError
from spendwatch.core.timeutils import utc_day_bounds, utcnow
from spendwatch.providers.base import CollectionWindow, ProviderAdapter
from spendwatch.providers.registry import ProviderRegistry
from spendwatch.storage.credentials import (
    CredentialVault,
    is_credential_active,
    list_active_credentials,
)
from spendwatch.storage.models import OrganizationCredential
from spendwatch.storage.teams import list_projects_for_organization
from spendwatch.telemetry.events import record_event

from .records import UNKNOWN_LINE_ITEM, CollectedCost, CollectedTokenUsage

logger = logging.getLogger("spendwatch.collector")

RecordT = TypeVar("RecordT", CollectedCost, CollectedTokenUsage)


@dataclass
class CollectionResult:
    costs: list[CollectedCost] = field(default_factory=list)
    usage: list[CollectedTokenUsage] = field(default_factory=list)
    attempted_organizations: list[str] = field(default_factory=list)
    failed_organizations: list[str] = field(default_factory=list)
    skipped_organizations: list[str] = field(default_factory=list)
    usage_failed_organizations: list[str] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return bool(self.attempted_organizations) and len(self.failed_organizations) == len(
            self.attempted_organizations
        )

    def merge(self, other: "CollectionResult") -> None:
        self.costs.extend(other.costs)
        self.usage.extend(other.usage)
        self.attempted_organizations.extend(other.attempted_organizations)
        self.failed_organizations.extend(other.failed_organizations)
        self.skipped_organizations.extend(other.skipped_organizations)
        self.usage_failed_organizations.extend(other.usage_failed_organizations)


def default_target_date(now: datetime | None = None, data_delay_hours: int = 24) -> date:
    """The most recent UTC day the provider has finished reporting."""
    return ((now or utcnow()) - timedelta(hours=data_delay_hours)).date()


def collection_window(target_date: date) -> CollectionWindow:
    start, end = utc_day_bounds(target_date)
    return CollectionWindow(start=start, end=end)


def dedupe(records: Iterable[RecordT]) -> list[RecordT]:
    """Keep the first record seen for each dedup key."""
    seen: set[tuple] = set()
    unique: list[RecordT] = []
    for record in records:
        if record.dedup_key in seen:
            continue
        seen.add(record.dedup_key)
        unique.append(record)
    return unique


class CostCollector:
    """Pulls one day of cost and usage for a team, one organization at a time."""

    def __init__(
        self,
        vault: CredentialVault,
        registry: ProviderRegistry,
        settings: CollectionSettings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._vault = vault
        self._registry = registry
        self._settings = settings
        self._sleep = sleep

    def default_target_date(self) -> date:
        return default_target_date(data_delay_hours=self._settings.data_delay_hours)

    async def collect_team(
        self,
        team_id: int,
        target_date: date | None = None,
        provider: str = "openai",
    ) -> CollectionResult:
        day = target_date or self.default_target_date()
        window = collection_window(day)
        adapter = self._registry.get_adapter(provider)
        credentials = list_active_credentials(team_id, provider)
        result = CollectionResult()

        logger.info(
            "Collecting team costs",
            extra={
                "event": "collection_team_started",
                "team_id": team_id,
                "provider": provider,
                "date": day.isoformat(),
                "organizations": len(credentials),
            },
        )

        for index, credential in enumerate(credentials):
            if index:
                await self._sleep(self._settings.organization_delay_seconds)
            await self._collect_organization(team_id, credential, adapter, window, result)

        result.costs = dedupe(result.costs)
        result.usage = dedupe(result.usage)

        logger.info(
            "Team collection finished",
            extra={
                "event": "collection_team_finished",
                "team_id": team_id,
                "provider": provider,
                "date": day.isoformat(),
                "cost_records": len(result.costs),
                "usage_records": len(result.usage),
                "failed_organizations": len(result.failed_organizations),
                "skipped_organizations": len(result.skipped_organizations),
            },
        )
        return result

    async def _collect_organization(
        self,
        team_id: int,
        credential: OrganizationCredential,
        adapter: ProviderAdapter,
        window: CollectionWindow,
        result: CollectionResult,
    ) -> None:
        credential_id = cast(int, credential.id)
        organization_id = cast(str, credential.organization_id)
        log_context = {
            "team_id": team_id,
            "provider": adapter.provider_id,
            "organization_id": organization_id,
        }

        projects = list_projects_for_organization(team_id, adapter.provider_id, organization_id)
        lookup = {cast(str, project.provider_project_id): cast(int, project.id) for project in projects}
        if not lookup:
            logger.info(
                "No projects mapped to organization; skipping",
                extra={"event": "organization_skipped", "reason": "no_projects", **log_context},
            )
            result.skipped_organizations.append(organization_id)
            return

        try:
            api_key = await self._vault.reveal(credential)
        except CredentialInactiveError:
            logger.info(
                "Credential disabled before collection; skipping",
                extra={"event": "organization_skipped", "reason": "inactive", **log_context},
            )
            result.skipped_organizations.append(organization_id)
            return
        except SpendwatchError as exc:
            result.attempted_organizations.append(organization_id)
            self._record_failure("credential", exc, log_context)
            result.failed_organizations.append(organization_id)
            return

        result.attempted_organizations.append(organization_id)

        def still_active() -> bool:
            return is_credential_active(credential_id)

        try:
            costs = await adapter.fetch_costs(api_key, window, list(lookup), still_active)
        except (SpendwatchError, asyncio.TimeoutError) as exc:
            self._record_failure("costs", exc, log_context)
            result.failed_organizations.append(organization_id)
            return

        for line in costs.items:
            project_id = lookup.get(line.provider_project_id or "")
            if project_id is None:
                self._warn_unknown(line.provider_project_id, log_context)
                continue
            result.costs.append(
                CollectedCost(
                    project_id=project_id,
                    provider=adapter.provider_id,
                    line_item=line.line_item or UNKNOWN_LINE_ITEM,
                    amount=line.amount,
                    currency=line.currency,
                    bucket_start=line.bucket_start,
                    bucket_end=line.bucket_end,
                    api_version=adapter.cost_api_version,
                    organization_id=organization_id,
                    provider_project_id=cast(str, line.provider_project_id),
                )
            )

        if costs.stopped_early or not self._settings.collect_usage:
            return

        try:
            usage = await adapter.fetch_usage(api_key, window, list(lookup), still_active)
        except (SpendwatchError, asyncio.TimeoutError) as exc:
            # Cost rows already gathered for this organization are kept.
            self._record_failure("usage", exc, log_context)
            result.usage_failed_organizations.append(organization_id)
            return

        for usage_line in usage.items:
            project_id = lookup.get(usage_line.provider_project_id or "")
            if project_id is None:
                self._warn_unknown(usage_line.provider_project_id, log_context)
                continue
            if not usage_line.model:
                logger.warning(
                    "Dropping usage result without a model",
                    extra={
                        "event": "usage_without_model",
                        "provider_project_id": usage_line.provider_project_id,
                        **log_context,
                    },
                )
                continue
            result.usage.append(
                CollectedTokenUsage(
                    project_id=project_id,
                    provider=adapter.provider_id,
                    model=usage_line.model,
                    counts=usage_line.counts,
                    bucket_start=usage_line.bucket_start,
                    bucket_end=usage_line.bucket_end,
                    api_version=adapter.usage_api_version,
                    organization_id=organization_id,
                    provider_project_id=cast(str, usage_line.provider_project_id),
                )
            )

    def _warn_unknown(self, provider_project_id: str | None, log_context: dict) -> None:
        logger.warning(
            "Dropping record for unmapped provider project",
            extra={
                "event": "unknown_provider_project",
                "provider_project_id": provider_project_id,
                **log_context,
            },
        )

    def _record_failure(self, stage: str, exc: BaseException, log_context: dict) -> None:
        logger.error(
            "Organization %s collection failed",
            stage,
            extra={
                "event": "organization_collection_failed",
                "stage": stage,
                "error_type": type(exc).__name__,
                "error_message": str(exc),
                **log_context,
            },
        )
        record_event(
            "organization_collection_failed",
            "ERROR",
            message=str(exc) or type(exc).__name__,
            team_id=log_context["team_id"],
            organization_id=log_context["organization_id"],
            meta={"stage": stage, "error_type": type(exc).__name__},
        )


__all__ = [
    "CollectionResult",
    "CostCollector",
    "collection_window",
    "dedupe",
    "default_target_date",
]
