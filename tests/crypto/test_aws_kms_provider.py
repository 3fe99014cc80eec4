from __future__ import annotations

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from spendwatch.core.config import KmsSettings
from spendwatch.core.exceptions import (
    DecryptionIntegrityError,
    KeyManagementError,
    KeyManagementUnavailableError,
)
from spendwatch.core.retry import RetryPolicy
from spendwatch.crypto.envelope import AwsKmsKeyProvider, EnvelopeEncryptionService

KEY_ID = "arn:aws:kms:us-east-1:000000000000:key/test"
DATA_KEY = b"\x01" * 32


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Decrypt",
    )


class FakeKmsClient:
    def __init__(self, recorder: dict, errors: list) -> None:
        self.recorder = recorder
        self.errors = errors

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def generate_data_key(self, **kwargs):
        self.recorder.setdefault("generate", []).append(kwargs)
        return {"Plaintext": DATA_KEY, "CiphertextBlob": b"wrapped:" + DATA_KEY}

    async def decrypt(self, **kwargs):
        self.recorder.setdefault("decrypt", []).append(kwargs)
        if self.errors:
            raise self.errors.pop(0)
        return {"Plaintext": kwargs["CiphertextBlob"].split(b":", 1)[1]}


class FakeSession:
    def __init__(self, errors: list | None = None) -> None:
        self.recorder: dict = {}
        self.errors = errors or []

    def client(self, service_name, **kwargs):
        self.recorder["client"] = (service_name, kwargs)
        return FakeKmsClient(self.recorder, self.errors)


def _service(session: FakeSession) -> EnvelopeEncryptionService:
    provider = AwsKmsKeyProvider(KmsSettings(key_id=KEY_ID, region="eu-west-1"), session=session)
    return EnvelopeEncryptionService(provider, RetryPolicy(max_attempts=3, base_delay=0, max_delay=0))


def test_key_id_is_required():
    with pytest.raises(KeyManagementError):
        AwsKmsKeyProvider(KmsSettings(key_id=""), session=FakeSession())


@pytest.mark.asyncio
async def test_round_trip_through_kms():
    session = FakeSession()
    service = _service(session)

    payload = await service.encrypt_text("sk-admin-secret")
    plaintext = await service.decrypt_text(payload.ciphertext, payload.wrapped_data_key, payload.iv)

    assert plaintext == "sk-admin-secret"
    assert session.recorder["generate"][0] == {"KeyId": KEY_ID, "KeySpec": "AES_256"}
    assert session.recorder["decrypt"][0]["KeyId"] == KEY_ID
    service_name, kwargs = session.recorder["client"]
    assert service_name == "kms"
    assert kwargs["region_name"] == "eu-west-1"


@pytest.mark.asyncio
async def test_throttling_is_retried():
    session = FakeSession()
    service = _service(session)
    payload = await service.encrypt(b"secret")
    session.errors.extend(
        [
            _client_error("ThrottlingException"),
            EndpointConnectionError(endpoint_url="https://kms.eu-west-1.amazonaws.com"),
        ]
    )

    assert await service.decrypt(payload.ciphertext, payload.wrapped_data_key, payload.iv) == b"secret"
    assert len(session.recorder["decrypt"]) == 3


@pytest.mark.asyncio
async def test_invalid_ciphertext_fails_closed_without_retry():
    session = FakeSession(errors=[_client_error("InvalidCiphertextException")])
    service = _service(session)

    with pytest.raises(DecryptionIntegrityError):
        await service.decrypt(b"x" * 32, b"wrapped:" + DATA_KEY, b"n" * 12)

    assert len(session.recorder["decrypt"]) == 1


@pytest.mark.asyncio
async def test_persistent_outage_surfaces_as_unavailable():
    session = FakeSession(errors=[_client_error("KMSInternalException", status=500)] * 3)
    service = _service(session)

    with pytest.raises(KeyManagementUnavailableError):
        await service.decrypt(b"x" * 32, b"wrapped:" + DATA_KEY, b"n" * 12)


@pytest.mark.asyncio
async def test_access_denied_is_not_retried():
    session = FakeSession(errors=[_client_error("AccessDeniedException")])
    service = _service(session)

    with pytest.raises(KeyManagementError) as excinfo:
        await service.decrypt(b"x" * 32, b"wrapped:" + DATA_KEY, b"n" * 12)

    assert not isinstance(excinfo.value, KeyManagementUnavailableError)
    assert len(session.recorder["decrypt"]) == 1
