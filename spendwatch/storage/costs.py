"""Idempotent persistence of collected cost and token-usage records."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from spendwatch.collection.records import CollectedCost, CollectedTokenUsage
from spendwatch.core.timeutils import ensure_utc

from .database import session_scope
from .models import COST_DEDUP_KEY, USAGE_DEDUP_KEY, CostRecord, TokenUsageRecord

logger = logging.getLogger("spendwatch.cost_store")

DEFAULT_BATCH_SIZE = 500

_INSERT_BUILDERS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def _batches(rows: Sequence[dict[str, Any]], size: int) -> Iterator[Sequence[dict[str, Any]]]:
    for offset in range(0, len(rows), size):
        yield rows[offset : offset + size]


def _insert_ignoring_duplicates(
    session: Session, model: type, rows: Sequence[dict[str, Any]], key: tuple[str, ...]
) -> int:
    dialect = session.get_bind().dialect.name
    builder = _INSERT_BUILDERS.get(dialect)
    if builder is None:
        raise RuntimeError(f"Idempotent insert is not supported on {dialect}")
    stmt = builder(model).values(list(rows)).on_conflict_do_nothing(index_elements=list(key))
    result = session.execute(stmt)
    return max(result.rowcount or 0, 0)


def _normalize_times(row: dict[str, Any]) -> dict[str, Any]:
    row["bucket_start"] = ensure_utc(row["bucket_start"])
    row["bucket_end"] = ensure_utc(row["bucket_end"])
    return row


def _store(
    model: type,
    key: tuple[str, ...],
    rows: list[dict[str, Any]],
    batch_size: int,
    label: str,
) -> int:
    if not rows:
        return 0

    inserted = 0
    for batch in _batches(rows, batch_size):
        # One transaction per batch: a failure later on leaves earlier batches
        # committed, and re-running skips them through the dedup key.
        with session_scope() as session:
            inserted += _insert_ignoring_duplicates(session, model, batch, key)

    logger.info(
        "Stored %s records",
        label,
        extra={
            "event": "records_stored",
            "kind": label,
            "attempted": len(rows),
            "inserted": inserted,
            "skipped_duplicates": len(rows) - inserted,
        },
    )
    return inserted


def store_cost_data(
    records: Sequence[CollectedCost], batch_size: int = DEFAULT_BATCH_SIZE
) -> int:
    """Bulk-insert cost records; returns how many rows were actually new."""
    rows = [_normalize_times(record.to_row()) for record in records]
    return _store(CostRecord, COST_DEDUP_KEY, rows, batch_size, "cost")


def store_token_usage(
    records: Sequence[CollectedTokenUsage], batch_size: int = DEFAULT_BATCH_SIZE
) -> int:
    rows = [_normalize_times(record.to_row()) for record in records]
    return _store(TokenUsageRecord, USAGE_DEDUP_KEY, rows, batch_size, "token_usage")


def sum_project_costs(project_id: int, start: datetime, end: datetime) -> Decimal:
    """Total cost for buckets starting inside ``[start, end]``."""
    with session_scope() as session:
        total = session.scalar(
            select(func.coalesce(func.sum(CostRecord.amount), 0)).where(
                CostRecord.project_id == project_id,
                CostRecord.bucket_start >= ensure_utc(start),
                CostRecord.bucket_start <= ensure_utc(end),
            )
        )
    return Decimal(str(total or 0))


def count_cost_records(project_id: int | None = None) -> int:
    with session_scope() as session:
        stmt = select(func.count()).select_from(CostRecord)
        if project_id is not None:
            stmt = stmt.where(CostRecord.project_id == project_id)
        return int(session.scalar(stmt) or 0)


__all__ = [
    "count_cost_records",
    "store_cost_data",
    "store_token_usage",
    "sum_project_costs",
]
