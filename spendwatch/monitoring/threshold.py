"""Budget threshold evaluation over tenant-local daily and weekly windows."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from spendwatch.core.timeutils import ensure_utc, resolve_timezone, start_of_day, start_of_week, utcnow
from spendwatch.storage.alerts import AlertRuleSnapshot, list_active_rules, mark_rule_fired
from spendwatch.storage.costs import sum_project_costs

logger = logging.getLogger("spendwatch.monitor")

DEFAULT_COOLDOWN = timedelta(minutes=60)


@dataclass(frozen=True)
class BreachEvent:
    rule_id: int
    project_id: int
    project_name: str
    team_id: int
    window_kind: str
    current_amount: Decimal
    limit_value: Decimal
    exceedance_percent: Decimal


class DispatchOutcome(Protocol):
    @property
    def any_succeeded(self) -> bool: ...


def is_throttled(last_fired_at: datetime | None, now: datetime, cooldown: timedelta) -> bool:
    if last_fired_at is None:
        return False
    return ensure_utc(now) - ensure_utc(last_fired_at) < cooldown


def window_start(window_kind: str, now: datetime, timezone_name: str | None) -> datetime:
    tz = resolve_timezone(timezone_name)
    if window_kind == "weekly":
        return start_of_week(now, tz)
    return start_of_day(now, tz)


def exceedance_percent(amount: Decimal, limit: Decimal) -> Decimal:
    return ((amount - limit) / limit * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class ThresholdMonitor:
    """Turns active alert rules into breach events.

    Each rule is evaluated on its own; one rule failing to aggregate is logged
    and does not stop the others.
    """

    def __init__(
        self,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._cooldown = cooldown
        self._clock = clock

    def check_thresholds(self, now: datetime | None = None) -> list[BreachEvent]:
        current = ensure_utc(now or self._clock())
        breaches: list[BreachEvent] = []
        for rule in list_active_rules():
            try:
                breach = self.evaluate_rule(rule, current)
            except Exception:
                logger.exception(
                    "Threshold evaluation failed",
                    extra={"event": "threshold_evaluation_failed", "rule_id": rule.rule_id},
                )
                continue
            if breach is not None:
                breaches.append(breach)

        logger.info(
            "Threshold check complete",
            extra={"event": "threshold_check_complete", "breaches": len(breaches)},
        )
        return breaches

    def evaluate_rule(self, rule: AlertRuleSnapshot, now: datetime) -> BreachEvent | None:
        if is_throttled(rule.last_fired_at, now, self._cooldown):
            logger.debug(
                "Rule in cool-down",
                extra={"event": "threshold_throttled", "rule_id": rule.rule_id},
            )
            return None

        start = window_start(rule.window_kind, now, rule.team_timezone)
        amount = sum_project_costs(rule.project_id, start, now)
        if amount <= rule.limit_value:
            return None

        breach = BreachEvent(
            rule_id=rule.rule_id,
            project_id=rule.project_id,
            project_name=rule.project_name,
            team_id=rule.team_id,
            window_kind=rule.window_kind,
            current_amount=amount,
            limit_value=rule.limit_value,
            exceedance_percent=exceedance_percent(amount, rule.limit_value),
        )
        logger.info(
            "Threshold breached",
            extra={
                "event": "threshold_breached",
                "rule_id": rule.rule_id,
                "project_id": rule.project_id,
                "window_kind": rule.window_kind,
                "current_amount": str(amount),
                "limit_value": str(rule.limit_value),
            },
        )
        return breach

    def record_dispatch(
        self, breach: BreachEvent, outcome: DispatchOutcome, now: datetime | None = None
    ) -> bool:
        """Start the cool-down only if someone was actually told."""
        if not outcome.any_succeeded:
            logger.warning(
                "No channel delivered; cool-down not started",
                extra={"event": "alert_undelivered", "rule_id": breach.rule_id},
            )
            return False
        mark_rule_fired(breach.rule_id, now or self._clock())
        return True


__all__ = [
    "BreachEvent",
    "ThresholdMonitor",
    "exceedance_percent",
    "is_throttled",
    "window_start",
]
