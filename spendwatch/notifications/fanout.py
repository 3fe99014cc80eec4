"""Concurrent delivery of one breach to every configured channel."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import httpx

from spendwatch.core.exceptions import SpendwatchError
from spendwatch.monitoring.threshold import BreachEvent
from spendwatch.storage.teams import TeamAudience, get_team_audience
from spendwatch.telemetry.events import record_event

from .email import ResendEmailClient, render_template
from .slack import SlackWebhookNotifier, build_alert_payload

logger = logging.getLogger("spendwatch.notifications")


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    target: str
    delivered: bool
    error: str | None = None


@dataclass
class FanoutOutcome:
    rule_id: int
    results: list[ChannelResult] = field(default_factory=list)

    @property
    def any_succeeded(self) -> bool:
        return any(result.delivered for result in self.results)

    @property
    def delivered_count(self) -> int:
        return sum(1 for result in self.results if result.delivered)

    @property
    def failed_count(self) -> int:
        return sum(1 for result in self.results if not result.delivered)


class NotificationFanout:
    def __init__(
        self,
        webhook: SlackWebhookNotifier,
        email: ResendEmailClient,
        dashboard_base_url: str,
        audience_lookup: Callable[[int], TeamAudience | None] = get_team_audience,
    ) -> None:
        self._webhook = webhook
        self._email = email
        self._dashboard_base_url = dashboard_base_url.rstrip("/")
        self._audience_lookup = audience_lookup

    def dashboard_url(self, project_id: int) -> str:
        return f"{self._dashboard_base_url}/projects/{project_id}"

    async def dispatch(self, breach: BreachEvent) -> FanoutOutcome:
        """Send to the webhook and every member concurrently; never raises on delivery."""
        outcome = FanoutOutcome(rule_id=breach.rule_id)
        audience = self._audience_lookup(breach.team_id)
        team_name = audience.team_name if audience else "Unknown team"
        dashboard_url = self.dashboard_url(breach.project_id)

        deliveries: list[Awaitable[ChannelResult]] = []
        if audience and audience.webhook_url:
            payload = build_alert_payload(breach, team_name, dashboard_url)
            deliveries.append(
                self._deliver("webhook", "team", self._webhook.send(audience.webhook_url, payload))
            )
        else:
            logger.info(
                "No webhook configured; skipping",
                extra={"event": "channel_skipped", "channel": "webhook", "team_id": breach.team_id},
            )

        if audience and audience.emails and self._email.configured:
            subject = f"[{team_name}] {breach.project_name} cost threshold exceeded"
            html = render_template(
                "cost_alert.html",
                team_name=team_name,
                project_name=breach.project_name,
                window_kind=breach.window_kind,
                current_amount=breach.current_amount,
                limit_value=breach.limit_value,
                exceedance_percent=breach.exceedance_percent,
                dashboard_url=dashboard_url,
            )
            for address in audience.emails:
                deliveries.append(
                    self._deliver("email", address, self._email.send(address, subject, html))
                )
        elif audience and audience.emails:
            logger.info(
                "Email API key not configured; skipping",
                extra={"event": "channel_skipped", "channel": "email", "team_id": breach.team_id},
            )

        if deliveries:
            outcome.results.extend(await asyncio.gather(*deliveries))

        logger.info(
            "Alert fan-out finished",
            extra={
                "event": "alert_dispatched",
                "rule_id": breach.rule_id,
                "project_id": breach.project_id,
                "delivered": outcome.delivered_count,
                "failed": outcome.failed_count,
            },
        )
        record_event(
            "alert_dispatched",
            "INFO" if outcome.any_succeeded else "WARNING",
            message=f"{outcome.delivered_count} delivered, {outcome.failed_count} failed",
            team_id=breach.team_id,
            project_id=breach.project_id,
            meta={
                "rule_id": breach.rule_id,
                "current_amount": str(breach.current_amount),
                "limit_value": str(breach.limit_value),
            },
        )
        return outcome

    async def _deliver(self, channel: str, target: str, send: Awaitable[object]) -> ChannelResult:
        try:
            await send
        except (SpendwatchError, httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.error(
                "Alert delivery failed",
                extra={
                    "event": "alert_channel_failed",
                    "channel": channel,
                    "target": target,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                },
            )
            return ChannelResult(channel, target, delivered=False, error=str(exc) or type(exc).__name__)
        except Exception as exc:
            # Failures stay confined to this channel's result.
            logger.exception(
                "Alert delivery crashed",
                extra={"event": "alert_channel_failed", "channel": channel, "target": target},
            )
            return ChannelResult(channel, target, delivered=False, error=type(exc).__name__)
        return ChannelResult(channel, target, delivered=True)


__all__ = ["ChannelResult", "FanoutOutcome", "NotificationFanout"]
