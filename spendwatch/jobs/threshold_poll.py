"""Threshold polling: evaluate rules, fan out alerts, start cool-downs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from spendwatch.monitoring.threshold import ThresholdMonitor
from spendwatch.notifications.fanout import FanoutOutcome, NotificationFanout

logger = logging.getLogger("spendwatch.jobs.threshold_poll")

JOB_NAME = "poll-threshold"


@dataclass
class ThresholdPollSummary:
    breaches: int = 0
    alerts_sent: int = 0
    alerts_failed: int = 0
    outcomes: list[FanoutOutcome] = field(default_factory=list)


async def run_threshold_poll(
    monitor: ThresholdMonitor, fanout: NotificationFanout
) -> ThresholdPollSummary:
    summary = ThresholdPollSummary()
    breaches = monitor.check_thresholds()
    summary.breaches = len(breaches)

    for breach in breaches:
        outcome = await fanout.dispatch(breach)
        summary.outcomes.append(outcome)
        if monitor.record_dispatch(breach, outcome):
            summary.alerts_sent += 1
        else:
            summary.alerts_failed += 1

    logger.info(
        "Threshold poll complete",
        extra={
            "event": "threshold_poll_complete",
            "breaches": summary.breaches,
            "alerts_sent": summary.alerts_sent,
            "alerts_failed": summary.alerts_failed,
        },
    )
    return summary
