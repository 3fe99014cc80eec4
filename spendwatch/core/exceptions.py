"""Custom exception types."""

from __future__ import annotations


class SpendwatchError(Exception):
    """Base class for errors raised by spendwatch components."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class TransientError(SpendwatchError):
    """Raised for infrastructure failures that may succeed on retry."""


class ProviderUnavailableError(TransientError):
    """Raised when a provider cannot satisfy the request right now."""

    def __init__(
        self,
        provider_id: str,
        message: str = "Provider unavailable",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code


class ProviderRequestError(SpendwatchError):
    """Raised when a provider rejects the request itself (never retried)."""

    def __init__(
        self,
        provider_id: str,
        message: str = "Provider rejected request",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code


class AuthenticationRequiredError(ProviderRequestError):
    """Raised when provider credentials are missing or rejected."""

    def __init__(self, provider_id: str, status_code: int | None = None) -> None:
        super().__init__(
            provider_id, message="Provider credentials rejected", status_code=status_code
        )


class KeyManagementUnavailableError(TransientError):
    """Raised when the key-management service cannot be reached."""


class KeyManagementError(SpendwatchError):
    """Raised when the key-management service refuses an operation."""


class DecryptionIntegrityError(SpendwatchError):
    """Raised when ciphertext, nonce or wrapped key fail authentication."""


class CredentialInactiveError(SpendwatchError):
    """Raised when a credential was disabled before it could be used."""

    def __init__(self, credential_id: int) -> None:
        super().__init__(f"Credential {credential_id} is no longer active")
        self.credential_id = credential_id


class NotificationDeliveryError(TransientError):
    """Raised when a notification channel fails in a retryable way."""

    def __init__(self, channel: str, message: str = "Notification delivery failed") -> None:
        super().__init__(message)
        self.channel = channel


class NotificationRejectedError(SpendwatchError):
    """Raised when a notification channel rejects the payload."""

    def __init__(self, channel: str, message: str = "Notification rejected") -> None:
        super().__init__(message)
        self.channel = channel


class InvalidAlertRuleError(SpendwatchError):
    """Raised when an alert rule definition is not acceptable."""


class CollectionFailedError(SpendwatchError):
    """Raised when a collection run produced nothing but failures."""

    def __init__(self, message: str, failed_organizations: list[str] | None = None) -> None:
        super().__init__(message)
        self.failed_organizations = list(failed_organizations or [])
