"""Operational event recording for collection and alerting outcomes."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select

from spendwatch.core.config import load_config
from spendwatch.logging import get_request_id
from spendwatch.storage.database import session_scope
from spendwatch.storage.models import OperationalEvent

logger = logging.getLogger("spendwatch.events")


def _events_enabled() -> bool:
    return load_config().telemetry.events_enabled


def _current_retention_cutoff() -> datetime:
    """Return the UTC timestamp before which events are discarded."""
    now_utc = datetime.now(timezone.utc)
    start_of_today = datetime(now_utc.year, now_utc.month, now_utc.day, tzinfo=timezone.utc)
    return start_of_today - timedelta(days=load_config().telemetry.retention_days - 1)


def _prune_old_events(session) -> None:
    session.execute(
        delete(OperationalEvent).where(OperationalEvent.ts < _current_retention_cutoff())
    )


def record_event(
    kind: str,
    level: str,
    *,
    message: str | None = None,
    request_id: str | None = None,
    meta: Dict[str, Any] | None = None,
    **fields: Any,
) -> None:
    """Persist a high-value event; failures here never propagate."""
    if not _events_enabled():
        return

    event = OperationalEvent(
        ts=datetime.now(timezone.utc),
        level=level.upper(),
        kind=kind,
        request_id=request_id or get_request_id(),
        message=(message or "")[:512] or None,
        team_id=fields.get("team_id"),
        organization_id=fields.get("organization_id"),
        project_id=fields.get("project_id"),
        meta=json.dumps(meta, ensure_ascii=True, default=str) if meta else None,
    )

    try:
        with session_scope() as session:
            session.add(event)
            _prune_old_events(session)
    except Exception:
        logger.exception(
            "Failed to record event", extra={"event": "event_persist_error", "kind": kind}
        )


def list_recent_events(limit: int = 50) -> List[Dict[str, Any]]:
    """Return recent events ordered newest first."""
    if not _events_enabled():
        return []

    with session_scope() as session:
        _prune_old_events(session)
        rows = session.scalars(
            select(OperationalEvent)
            .where(OperationalEvent.ts >= _current_retention_cutoff())
            .order_by(OperationalEvent.ts.desc(), OperationalEvent.id.desc())
            .limit(limit)
        ).all()

    events: List[Dict[str, Any]] = []
    for row in rows:
        meta_value: Optional[Dict[str, Any] | str]
        if row.meta:
            try:
                meta_value = json.loads(row.meta)
            except json.JSONDecodeError:
                meta_value = row.meta
        else:
            meta_value = None

        events.append(
            {
                "id": row.id,
                "timestamp": row.ts.isoformat() if row.ts else None,
                "level": row.level,
                "kind": row.kind,
                "request_id": row.request_id,
                "team_id": row.team_id,
                "organization_id": row.organization_id,
                "project_id": row.project_id,
                "message": row.message,
                "meta": meta_value,
            }
        )
    return events


__all__ = ["list_recent_events", "record_event"]
