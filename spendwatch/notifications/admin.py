"""Operator notification when the daily collection fails outright."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Sequence

from spendwatch.core.config import EmailSettings
from spendwatch.core.exceptions import SpendwatchError
from spendwatch.core.timeutils import utcnow
from spendwatch.storage.throttle import ThrottleStore

from .email import ResendEmailClient, render_template

logger = logging.getLogger("spendwatch.notifications.admin")


class AdminNotifier:
    def __init__(
        self,
        email: ResendEmailClient,
        settings: EmailSettings,
        throttle: ThrottleStore,
    ) -> None:
        self._email = email
        self._settings = settings
        self._throttle = throttle

    async def notify_collection_failure(
        self,
        error: BaseException,
        *,
        date: str,
        team_id: int | None = None,
        failed_organizations: Sequence[str] = (),
    ) -> bool:
        """Email the administrator at most once per throttle window per date."""
        key = f"cost-collection-failure-{date}"
        window = timedelta(minutes=self._settings.failure_throttle_minutes)
        if self._throttle.should_throttle(key, window):
            logger.info(
                "Failure notification throttled",
                extra={"event": "admin_notification_throttled", "date": date},
            )
            return False

        if not self._settings.admin_email or not self._email.configured:
            logger.warning(
                "Admin email not configured; skipping failure notification",
                extra={"event": "admin_notification_skipped", "date": date},
            )
            return False

        html = render_template(
            "collection_failure.html",
            error_type=type(error).__name__,
            error_message=str(error),
            date=date,
            team_id=team_id,
            failed_organizations=list(failed_organizations),
            timestamp=utcnow().isoformat(),
        )
        try:
            await self._email.send(
                self._settings.admin_email,
                f"[Spendwatch] Cost collection failed - {date}",
                html,
            )
        except (SpendwatchError, asyncio.TimeoutError):
            logger.exception(
                "Failed to send failure notification",
                extra={"event": "admin_notification_failed", "date": date},
            )
            return False

        self._throttle.record_sent(key)
        return True


__all__ = ["AdminNotifier"]
