from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from spendwatch.collection.records import CollectedCost, CollectedTokenUsage, TokenCounts
from spendwatch.storage import costs
from spendwatch.storage.database import session_scope
from spendwatch.storage.models import TokenUsageRecord
from spendwatch.storage.teams import create_project, create_team

DAY = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _cost(project_id: int, line_item: str, amount: str, day: datetime = DAY) -> CollectedCost:
    return CollectedCost(
        project_id=project_id,
        provider="openai",
        line_item=line_item,
        amount=Decimal(amount),
        currency="usd",
        bucket_start=day,
        bucket_end=day + timedelta(days=1),
        api_version="costs_v1",
        organization_id="org-1",
        provider_project_id="proj_a",
    )


def _project() -> int:
    team = create_team("Platform")
    return create_project(team.id, "Search", provider="openai", organization_id="org-1", provider_project_id="proj_a").id


def test_store_returns_number_of_new_rows():
    project_id = _project()
    records = [_cost(project_id, "gpt-4o, input", "1.25"), _cost(project_id, "gpt-4o, output", "2.50")]

    assert costs.store_cost_data(records) == 2
    assert costs.count_cost_records(project_id) == 2


def test_second_run_inserts_nothing():
    project_id = _project()
    records = [_cost(project_id, "gpt-4o, input", "1.25"), _cost(project_id, "gpt-4o, output", "2.50")]

    costs.store_cost_data(records)

    assert costs.store_cost_data(records) == 0
    assert costs.count_cost_records() == 2


def test_overlapping_batches_are_deduplicated():
    project_id = _project()
    first = [_cost(project_id, f"item-{i}", "1.00") for i in range(5)]
    second = [_cost(project_id, f"item-{i}", "1.00") for i in range(3, 8)]

    inserted_first = costs.store_cost_data(first, batch_size=2)
    inserted_second = costs.store_cost_data(second, batch_size=2)

    assert inserted_first == 5
    assert inserted_second == 3
    assert costs.count_cost_records(project_id) == 8


def test_store_empty_is_noop():
    assert costs.store_cost_data([]) == 0
    assert costs.store_token_usage([]) == 0


def test_token_usage_is_idempotent():
    project_id = _project()
    record = CollectedTokenUsage(
        project_id=project_id,
        provider="openai",
        model="gpt-4o",
        counts=TokenCounts(num_model_requests=3, input_tokens=120, output_tokens=40),
        bucket_start=DAY,
        bucket_end=DAY + timedelta(days=1),
        api_version="usage_completions_v1",
        organization_id="org-1",
        provider_project_id="proj_a",
    )

    assert costs.store_token_usage([record]) == 1
    assert costs.store_token_usage([record]) == 0

    with session_scope() as session:
        row = session.query(TokenUsageRecord).one()
    assert row.input_tokens == 120
    assert row.num_model_requests == 3


def test_sum_project_costs_respects_window():
    project_id = _project()
    costs.store_cost_data(
        [
            _cost(project_id, "a", "10.5"),
            _cost(project_id, "b", "4.25"),
            _cost(project_id, "a", "100", day=DAY - timedelta(days=3)),
        ]
    )

    total = costs.sum_project_costs(project_id, DAY, DAY + timedelta(hours=12))

    assert total == Decimal("14.75")
