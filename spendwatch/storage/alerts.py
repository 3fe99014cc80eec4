"""Alert rule persistence."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import cast

from sqlalchemy import select, update

from spendwatch.core.exceptions import InvalidAlertRuleError
from spendwatch.core.timeutils import ensure_utc

from .database import session_scope
from .models import AlertRule, Project, Team

WINDOW_KINDS = ("daily", "weekly")


@dataclass(frozen=True)
class AlertRuleSnapshot:
    """An active rule joined with the project/team details the monitor needs."""

    rule_id: int
    project_id: int
    project_name: str
    team_id: int
    team_timezone: str
    window_kind: str
    limit_value: Decimal
    last_fired_at: datetime | None


def create_alert_rule(project_id: int, window_kind: str, limit_value: Decimal | float | str) -> AlertRule:
    """Create a rule, rejecting non-positive limits and unknown windows."""
    if window_kind not in WINDOW_KINDS:
        raise InvalidAlertRuleError(f"window_kind must be one of {', '.join(WINDOW_KINDS)}")
    try:
        limit = Decimal(str(limit_value))
    except InvalidOperation as exc:
        raise InvalidAlertRuleError("limit_value must be a number") from exc
    if not limit.is_finite() or limit <= 0:
        raise InvalidAlertRuleError("limit_value must be greater than zero")

    with session_scope() as session:
        if session.get(Project, project_id) is None:
            raise LookupError(f"Project {project_id} not found")
        rule = AlertRule(
            project_id=project_id,
            window_kind=window_kind,
            limit_value=limit,
            is_active=True,
        )
        session.add(rule)
        session.flush()
        return rule


def list_active_rules() -> list[AlertRuleSnapshot]:
    with session_scope() as session:
        rows = session.execute(
            select(AlertRule, Project.name, Project.team_id, Team.timezone)
            .join(Project, Project.id == AlertRule.project_id)
            .join(Team, Team.id == Project.team_id)
            .where(AlertRule.is_active.is_(True))
            .order_by(AlertRule.id)
        ).all()

    snapshots: list[AlertRuleSnapshot] = []
    for rule, project_name, team_id, team_timezone in rows:
        last_fired = cast(datetime | None, rule.last_fired_at)
        snapshots.append(
            AlertRuleSnapshot(
                rule_id=cast(int, rule.id),
                project_id=cast(int, rule.project_id),
                project_name=project_name,
                team_id=team_id,
                team_timezone=team_timezone or "UTC",
                window_kind=cast(str, rule.window_kind),
                limit_value=Decimal(str(rule.limit_value)),
                last_fired_at=ensure_utc(last_fired) if last_fired else None,
            )
        )
    return snapshots


def get_last_fired_at(rule_id: int) -> datetime | None:
    with session_scope() as session:
        row = session.execute(
            select(AlertRule.id, AlertRule.last_fired_at).where(AlertRule.id == rule_id)
        ).first()
    if row is None:
        raise LookupError(f"Alert rule {rule_id} not found")
    return ensure_utc(row.last_fired_at) if row.last_fired_at else None


def mark_rule_fired(rule_id: int, fired_at: datetime) -> None:
    with session_scope() as session:
        session.execute(
            update(AlertRule)
            .where(AlertRule.id == rule_id)
            .values(last_fired_at=ensure_utc(fired_at))
        )
