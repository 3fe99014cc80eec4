"""Helper utilities for provider adapters."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

import httpx

from spendwatch.core.exceptions import (
    AuthenticationRequiredError,
    ProviderRequestError,
    ProviderUnavailableError,
)


def extract_error_body(response: httpx.Response) -> Any:
    """Return structured error details if available, else a trimmed text body."""

    try:
        return response.json()
    except ValueError:
        text = getattr(response, "text", None)
        if text:
            stripped = text.strip()
            if stripped:
                return stripped[:500]
        return None


def describe_error(body: Any) -> str | None:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    if isinstance(body, str):
        return body
    return None


def raise_for_provider_status(provider_id: str, response: httpx.Response) -> None:
    """Map an HTTP error status onto the retryable/non-retryable taxonomy."""
    status = response.status_code
    if status < HTTPStatus.BAD_REQUEST:
        return

    detail = describe_error(extract_error_body(response)) or f"HTTP {status}"
    if status in {HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN}:
        raise AuthenticationRequiredError(provider_id, status_code=status)
    if status == HTTPStatus.TOO_MANY_REQUESTS or status >= HTTPStatus.INTERNAL_SERVER_ERROR:
        raise ProviderUnavailableError(
            provider_id, message=f"Provider error ({status}): {detail}", status_code=status
        )
    raise ProviderRequestError(
        provider_id, message=f"Provider rejected request ({status}): {detail}", status_code=status
    )


__all__ = ["describe_error", "extract_error_body", "raise_for_provider_status"]
