"""Envelope encryption for organization admin credentials.

A key-management provider issues a fresh 256-bit data key per ``encrypt`` call
and returns it twice: in the clear and wrapped under its master key. The clear
key encrypts the payload with AES-256-GCM and is then dropped; only the wrapped
key, the ciphertext (with its 16-byte tag appended) and the 12-byte nonce are
persisted. ``decrypt`` asks the provider to unwrap the key and authenticates
the ciphertext before returning anything.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Protocol

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from spendwatch.core.config import KmsSettings
from spendwatch.core.exceptions import (
    DecryptionIntegrityError,
    KeyManagementError,
    KeyManagementUnavailableError,
)
from spendwatch.core.retry import RetryPolicy, retry_async

logger = logging.getLogger("spendwatch.crypto")

DATA_KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16

# KMS error codes that describe a service-side or throttling condition.
_KMS_TRANSIENT_CODES = {
    "DependencyTimeoutException",
    "KMSInternalException",
    "ThrottlingException",
    "LimitExceededException",
    "ServiceUnavailableException",
}
_KMS_INTEGRITY_CODES = {"InvalidCiphertextException", "IncorrectKeyException"}


@dataclass(frozen=True)
class DataKey:
    plaintext: bytes
    wrapped: bytes


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: bytes
    wrapped_data_key: bytes
    iv: bytes


class KeyManagementProvider(Protocol):
    async def generate_data_key(self) -> DataKey: ...

    async def unwrap_data_key(self, wrapped: bytes) -> bytes: ...


class AwsKmsKeyProvider:
    """AWS KMS-backed provider; botocore retries are off so ours apply."""

    def __init__(self, settings: KmsSettings, session: aioboto3.Session | None = None) -> None:
        if not settings.key_id:
            raise KeyManagementError("KMS key id is required (kms.key_id)")
        self._settings = settings
        self._session = session or aioboto3.Session()
        self._boto_config = BotoConfig(
            connect_timeout=settings.timeout_seconds,
            read_timeout=settings.timeout_seconds,
            retries={"max_attempts": 1, "mode": "standard"},
        )

    def _client(self):
        kwargs: dict = {"region_name": self._settings.region, "config": self._boto_config}
        if self._settings.endpoint_url:
            kwargs["endpoint_url"] = self._settings.endpoint_url
        return self._session.client("kms", **kwargs)

    async def generate_data_key(self) -> DataKey:
        try:
            async with self._client() as kms:
                response = await kms.generate_data_key(
                    KeyId=self._settings.key_id, KeySpec="AES_256"
                )
        except ClientError as exc:
            raise _translate_client_error(exc) from exc
        except BotoCoreError as exc:
            raise KeyManagementUnavailableError(f"KMS unreachable: {exc}") from exc

        plaintext = response.get("Plaintext")
        wrapped = response.get("CiphertextBlob")
        if not plaintext or not wrapped:
            raise KeyManagementError("KMS returned an incomplete data key")
        return DataKey(plaintext=plaintext, wrapped=wrapped)

    async def unwrap_data_key(self, wrapped: bytes) -> bytes:
        try:
            async with self._client() as kms:
                response = await kms.decrypt(
                    CiphertextBlob=wrapped, KeyId=self._settings.key_id
                )
        except ClientError as exc:
            raise _translate_client_error(exc) from exc
        except BotoCoreError as exc:
            raise KeyManagementUnavailableError(f"KMS unreachable: {exc}") from exc

        plaintext = response.get("Plaintext")
        if not plaintext:
            raise KeyManagementError("KMS returned no plaintext data key")
        return plaintext


def _translate_client_error(exc: ClientError) -> Exception:
    code = exc.response.get("Error", {}).get("Code", "")
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
    if code in _KMS_INTEGRITY_CODES:
        return DecryptionIntegrityError(f"KMS rejected wrapped data key ({code})")
    if code in _KMS_TRANSIENT_CODES or status >= 500:
        return KeyManagementUnavailableError(f"KMS temporarily unavailable ({code})")
    return KeyManagementError(f"KMS request refused ({code or status})")


class LocalKeyProvider:
    """Wraps data keys under a local AES-GCM master key. Development and tests only."""

    def __init__(self, master_key: bytes | None = None) -> None:
        self._master = AESGCM(master_key or AESGCM.generate_key(bit_length=256))

    @classmethod
    def from_env(cls, variable: str = "SPENDWATCH_LOCAL_MASTER_KEY") -> "LocalKeyProvider":
        encoded = os.getenv(variable)
        if not encoded:
            raise KeyManagementError(f"{variable} is not set")
        try:
            return cls(base64.b64decode(encoded, validate=True))
        except (binascii.Error, ValueError) as exc:
            raise KeyManagementError(f"{variable} is not a valid base64 AES key") from exc

    async def generate_data_key(self) -> DataKey:
        plaintext = AESGCM.generate_key(bit_length=DATA_KEY_BYTES * 8)
        nonce = os.urandom(NONCE_BYTES)
        return DataKey(plaintext=plaintext, wrapped=nonce + self._master.encrypt(nonce, plaintext, None))

    async def unwrap_data_key(self, wrapped: bytes) -> bytes:
        if len(wrapped) <= NONCE_BYTES + TAG_BYTES:
            raise DecryptionIntegrityError("Wrapped data key is truncated")
        try:
            return self._master.decrypt(wrapped[:NONCE_BYTES], wrapped[NONCE_BYTES:], None)
        except InvalidTag as exc:
            raise DecryptionIntegrityError("Wrapped data key failed authentication") from exc


class EnvelopeEncryptionService:
    """Encrypts and decrypts opaque payloads under per-call data keys."""

    def __init__(self, key_provider: KeyManagementProvider, retry_policy: RetryPolicy) -> None:
        self._keys = key_provider
        self._retry = retry_policy

    async def encrypt(self, plaintext: bytes) -> EncryptedPayload:
        data_key = await retry_async(
            self._keys.generate_data_key, policy=self._retry, context="KMS generate data key"
        )
        if len(data_key.plaintext) != DATA_KEY_BYTES:
            raise KeyManagementError("Data key has unexpected length")

        iv = os.urandom(NONCE_BYTES)
        ciphertext = AESGCM(data_key.plaintext).encrypt(iv, plaintext, None)
        return EncryptedPayload(ciphertext=ciphertext, wrapped_data_key=data_key.wrapped, iv=iv)

    async def decrypt(self, ciphertext: bytes, wrapped_data_key: bytes, iv: bytes) -> bytes:
        if len(iv) != NONCE_BYTES:
            raise DecryptionIntegrityError("Nonce has unexpected length")
        if len(ciphertext) < TAG_BYTES:
            raise DecryptionIntegrityError("Ciphertext is shorter than its authentication tag")
        if not wrapped_data_key:
            raise DecryptionIntegrityError("Wrapped data key is empty")

        data_key = await retry_async(
            lambda: self._keys.unwrap_data_key(wrapped_data_key),
            policy=self._retry,
            context="KMS unwrap data key",
        )
        if len(data_key) != DATA_KEY_BYTES:
            raise DecryptionIntegrityError("Unwrapped data key has unexpected length")

        try:
            return AESGCM(data_key).decrypt(iv, ciphertext, None)
        except InvalidTag as exc:
            raise DecryptionIntegrityError("Ciphertext failed authentication") from exc

    async def encrypt_text(self, plaintext: str) -> EncryptedPayload:
        return await self.encrypt(plaintext.encode("utf-8"))

    async def decrypt_text(self, ciphertext: bytes, wrapped_data_key: bytes, iv: bytes) -> str:
        raw = await self.decrypt(ciphertext, wrapped_data_key, iv)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionIntegrityError("Decrypted credential is not valid UTF-8") from exc


def build_key_provider(settings: KmsSettings) -> KeyManagementProvider:
    """Select the key-management backend named in configuration."""
    if settings.backend == "local":
        logger.warning(
            "Using local key provider; not for production",
            extra={"event": "kms_local_backend"},
        )
        return LocalKeyProvider.from_env()
    return AwsKmsKeyProvider(settings)


__all__ = [
    "AwsKmsKeyProvider",
    "DataKey",
    "EncryptedPayload",
    "EnvelopeEncryptionService",
    "KeyManagementProvider",
    "LocalKeyProvider",
    "build_key_provider",
]
