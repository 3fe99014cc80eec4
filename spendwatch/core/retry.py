"""Exponential-backoff retry shared by every outbound call."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from spendwatch.core.config import RetrySettings
from spendwatch.core.exceptions import TransientError

logger = logging.getLogger("spendwatch.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: ``base_delay * 2 ** (attempt - 1)``."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float | None = None

    @classmethod
    def from_settings(cls, settings: RetrySettings, timeout: float | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds,
            timeout=timeout,
        )

    def with_timeout(self, timeout: float | None) -> "RetryPolicy":
        return RetryPolicy(self.max_attempts, self.base_delay, self.max_delay, timeout)


def is_transient(exc: BaseException) -> bool:
    """Classify an exception as worth another attempt."""
    return isinstance(
        exc,
        (
            TransientError,
            httpx.TimeoutException,
            httpx.TransportError,
            asyncio.TimeoutError,
        ),
    )


def _log_before_sleep(context: str) -> Callable[[RetryCallState], None]:
    def _log(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "Retrying %s after error",
            context,
            extra={
                "event": "retry_scheduled",
                "context": context,
                "attempt": state.attempt_number,
                "delay_seconds": round(delay, 3),
                "error_type": type(exc).__name__ if exc else None,
                "error_message": str(exc) if exc else None,
            },
        )

    return _log


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    context: str,
    classify: Callable[[BaseException], bool] = is_transient,
) -> T:
    """Run ``operation`` until it succeeds, fails fatally, or attempts run out.

    Each attempt is bounded by ``policy.timeout`` when set; a timeout counts as
    a transient failure. The last exception is re-raised unchanged.
    """

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.base_delay, max=policy.max_delay),
        retry=retry_if_exception(classify),
        before_sleep=_log_before_sleep(context),
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                if policy.timeout is not None:
                    return await asyncio.wait_for(operation(), timeout=policy.timeout)
                return await operation()
    except Exception as exc:
        logger.error(
            "%s failed after retries",
            context,
            extra={
                "event": "retry_exhausted" if classify(exc) else "retry_aborted",
                "context": context,
                "error_type": type(exc).__name__,
                "error_message": str(exc),
            },
        )
        raise
    raise RuntimeError(f"{context}: retry loop ended without an outcome")  # pragma: no cover


__all__ = ["RetryPolicy", "is_transient", "retry_async"]
