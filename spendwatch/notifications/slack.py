"""Slack-compatible incoming webhook delivery."""

from __future__ import annotations

import logging
from decimal import Decimal
from http import HTTPStatus
from typing import Any, Dict

import httpx

from spendwatch.core.exceptions import NotificationDeliveryError, NotificationRejectedError
from spendwatch.core.retry import RetryPolicy, retry_async
from spendwatch.monitoring.threshold import BreachEvent

logger = logging.getLogger("spendwatch.notifications.slack")

CHANNEL = "webhook"


def _money(value: Decimal) -> str:
    return f"${value:,.2f}"


def build_alert_payload(breach: BreachEvent, team_name: str, dashboard_url: str) -> Dict[str, Any]:
    """Summary text, one section block with the figures, one details button."""
    details = (
        "*Cost threshold exceeded*\n\n"
        f"*Project*: {breach.project_name}\n"
        f"*Current cost*: {_money(breach.current_amount)}\n"
        f"*Limit ({breach.window_kind})*: {_money(breach.limit_value)}\n"
        f"*Exceeded by*: {breach.exceedance_percent:.1f}%"
    )
    return {
        "text": f"[{team_name}] Cost threshold exceeded for {breach.project_name}",
        "blocks": [
            {"type": "section", "text": {"type": "mrkdwn", "text": details}},
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "View details"},
                        "url": dashboard_url,
                        "style": "danger",
                    }
                ],
            },
        ],
    }


class SlackWebhookNotifier:
    def __init__(self, retry_policy: RetryPolicy, timeout: float) -> None:
        self._retry = retry_policy.with_timeout(timeout)
        self._timeout = timeout

    async def send(self, webhook_url: str, payload: Dict[str, Any]) -> None:
        await retry_async(
            lambda: self._post(webhook_url, payload),
            policy=self._retry,
            context="slack webhook",
        )
        logger.info("Webhook alert delivered", extra={"event": "webhook_delivered"})

    async def _post(self, webhook_url: str, payload: Dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(webhook_url, json=payload)
        except httpx.TimeoutException as exc:
            raise NotificationDeliveryError(CHANNEL, "Webhook request timed out") from exc
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            raise NotificationRejectedError(CHANNEL, f"Webhook URL is not usable: {exc}") from exc
        except httpx.RequestError as exc:
            raise NotificationDeliveryError(CHANNEL, "Webhook request failed") from exc

        status = response.status_code
        if status < HTTPStatus.BAD_REQUEST:
            return
        detail = f"Webhook returned {status}: {response.text[:200]}"
        if status == HTTPStatus.TOO_MANY_REQUESTS or status >= HTTPStatus.INTERNAL_SERVER_ERROR:
            raise NotificationDeliveryError(CHANNEL, detail)
        raise NotificationRejectedError(CHANNEL, detail)


__all__ = ["SlackWebhookNotifier", "build_alert_payload"]
