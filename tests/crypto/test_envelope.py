from __future__ import annotations

import pytest

from spendwatch.core.exceptions import DecryptionIntegrityError, KeyManagementUnavailableError
from spendwatch.core.retry import RetryPolicy
from spendwatch.crypto.envelope import (
    DATA_KEY_BYTES,
    NONCE_BYTES,
    DataKey,
    EnvelopeEncryptionService,
    LocalKeyProvider,
)

FAST = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)
SECRET = "sk-admin-abcdefghijklmnopqrstuvwxyz0123"


def _flip_last_byte(value: bytes) -> bytes:
    return value[:-1] + bytes([value[-1] ^ 0x01])


@pytest.fixture
def service() -> EnvelopeEncryptionService:
    return EnvelopeEncryptionService(LocalKeyProvider(), FAST)


@pytest.mark.asyncio
async def test_round_trip_restores_plaintext(service):
    payload = await service.encrypt_text(SECRET)

    assert SECRET.encode() not in payload.ciphertext
    assert len(payload.iv) == NONCE_BYTES
    assert await service.decrypt_text(payload.ciphertext, payload.wrapped_data_key, payload.iv) == SECRET


@pytest.mark.asyncio
async def test_each_encryption_uses_a_fresh_data_key_and_nonce(service):
    first = await service.encrypt_text(SECRET)
    second = await service.encrypt_text(SECRET)

    assert first.wrapped_data_key != second.wrapped_data_key
    assert first.iv != second.iv
    assert first.ciphertext != second.ciphertext


@pytest.mark.asyncio
async def test_tampered_ciphertext_fails_closed(service):
    payload = await service.encrypt_text(SECRET)

    with pytest.raises(DecryptionIntegrityError):
        await service.decrypt(_flip_last_byte(payload.ciphertext), payload.wrapped_data_key, payload.iv)


@pytest.mark.asyncio
async def test_tampered_wrapped_key_fails_closed(service):
    payload = await service.encrypt_text(SECRET)

    with pytest.raises(DecryptionIntegrityError):
        await service.decrypt(payload.ciphertext, _flip_last_byte(payload.wrapped_data_key), payload.iv)


@pytest.mark.asyncio
async def test_wrong_nonce_fails_closed(service):
    payload = await service.encrypt_text(SECRET)

    with pytest.raises(DecryptionIntegrityError):
        await service.decrypt(payload.ciphertext, payload.wrapped_data_key, _flip_last_byte(payload.iv))

    with pytest.raises(DecryptionIntegrityError):
        await service.decrypt(payload.ciphertext, payload.wrapped_data_key, payload.iv[:8])


@pytest.mark.asyncio
async def test_key_from_another_master_is_rejected():
    writer = EnvelopeEncryptionService(LocalKeyProvider(), FAST)
    reader = EnvelopeEncryptionService(LocalKeyProvider(), FAST)
    payload = await writer.encrypt_text(SECRET)

    with pytest.raises(DecryptionIntegrityError):
        await reader.decrypt(payload.ciphertext, payload.wrapped_data_key, payload.iv)


@pytest.mark.asyncio
async def test_key_service_outage_is_retried_then_surfaces():
    class FlakyProvider:
        def __init__(self) -> None:
            self.calls = 0

        async def generate_data_key(self) -> DataKey:
            self.calls += 1
            if self.calls < 2:
                raise KeyManagementUnavailableError("throttled")
            return DataKey(plaintext=b"k" * DATA_KEY_BYTES, wrapped=b"wrapped")

        async def unwrap_data_key(self, wrapped: bytes) -> bytes:
            raise KeyManagementUnavailableError("down")

    provider = FlakyProvider()
    service = EnvelopeEncryptionService(provider, FAST)

    payload = await service.encrypt(b"secret")
    assert provider.calls == 2

    with pytest.raises(KeyManagementUnavailableError):
        await service.decrypt(payload.ciphertext, payload.wrapped_data_key, payload.iv)
