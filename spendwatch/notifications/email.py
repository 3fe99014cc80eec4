"""Transactional email through the Resend HTTP API."""

from __future__ import annotations

import logging
import pathlib
from http import HTTPStatus
from typing import Any

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from spendwatch.core.config import EmailSettings
from spendwatch.core.exceptions import NotificationDeliveryError, NotificationRejectedError
from spendwatch.core.retry import RetryPolicy, retry_async
from spendwatch.providers.utils import describe_error, extract_error_body

logger = logging.getLogger("spendwatch.notifications.email")

CHANNEL = "email"
TEMPLATE_DIR = pathlib.Path(__file__).resolve().parent / "templates"

_templates = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)


def render_template(name: str, **context: Any) -> str:
    return _templates.get_template(name).render(**context)


class ResendEmailClient:
    """Sends one message per call; ``send`` returns the provider message id."""

    def __init__(
        self,
        settings: EmailSettings,
        api_key: str | None,
        retry_policy: RetryPolicy,
        timeout: float,
    ) -> None:
        self._settings = settings
        self._api_key = api_key
        self._retry = retry_policy.with_timeout(timeout)
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def send(self, to: str, subject: str, html: str) -> str:
        if not self._api_key:
            raise NotificationRejectedError(CHANNEL, "Email API key is not configured")
        payload = {
            "from": self._settings.from_address,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        message_id = await retry_async(
            lambda: self._post(payload),
            policy=self._retry,
            context="email send",
        )
        logger.info(
            "Email delivered",
            extra={"event": "email_delivered", "to": to, "email_id": message_id},
        )
        return message_id

    async def _post(self, payload: dict[str, Any]) -> str:
        url = f"{self._settings.api_base_url.rstrip('/')}/emails"
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise NotificationDeliveryError(CHANNEL, "Email request timed out") from exc
        except httpx.RequestError as exc:
            raise NotificationDeliveryError(CHANNEL, "Email request failed") from exc

        status = response.status_code
        if status >= HTTPStatus.BAD_REQUEST:
            detail = describe_error(extract_error_body(response)) or f"HTTP {status}"
            message = f"Email API error ({status}): {detail}"
            if status == HTTPStatus.TOO_MANY_REQUESTS or status >= HTTPStatus.INTERNAL_SERVER_ERROR:
                raise NotificationDeliveryError(CHANNEL, message)
            raise NotificationRejectedError(CHANNEL, message)

        try:
            data = response.json()
        except ValueError as exc:
            raise NotificationRejectedError(CHANNEL, "Email API returned non-JSON body") from exc
        return str(data.get("id", "")) if isinstance(data, dict) else ""


__all__ = ["ResendEmailClient", "render_template"]
