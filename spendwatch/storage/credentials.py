"""Storage helpers and just-in-time decryption for organization credentials."""

from __future__ import annotations

import logging
import re
from typing import cast

from sqlalchemy import select, update

from spendwatch.core.exceptions import CredentialInactiveError, ProviderRequestError
from spendwatch.crypto.envelope import EncryptedPayload, EnvelopeEncryptionService

from .database import session_scope
from .models import OrganizationCredential

logger = logging.getLogger("spendwatch.credentials")

_KEY_FORMATS = {
    "openai": re.compile(r"^sk-(admin-|proj-)?[A-Za-z0-9_\-]{20,}$"),
}


def validate_key_format(provider: str, api_key: str) -> bool:
    """Cheap syntactic check before spending a provider round-trip."""
    pattern = _KEY_FORMATS.get(provider)
    if not api_key or not api_key.strip():
        return False
    return bool(pattern.match(api_key)) if pattern else True


def save_credential(
    team_id: int,
    provider: str,
    organization_id: str,
    payload: EncryptedPayload,
    key_last4: str | None,
) -> OrganizationCredential:
    """Insert or replace the encrypted credential for an organization scope."""
    with session_scope() as session:
        existing = session.scalar(
            select(OrganizationCredential).where(
                OrganizationCredential.team_id == team_id,
                OrganizationCredential.provider == provider,
                OrganizationCredential.organization_id == organization_id,
            )
        )
        if existing:
            existing.ciphertext = payload.ciphertext
            existing.wrapped_data_key = payload.wrapped_data_key
            existing.iv = payload.iv
            existing.key_last4 = key_last4
            existing.is_active = True
            session.flush()
            return existing

        credential = OrganizationCredential(
            team_id=team_id,
            provider=provider,
            organization_id=organization_id,
            ciphertext=payload.ciphertext,
            wrapped_data_key=payload.wrapped_data_key,
            iv=payload.iv,
            key_last4=key_last4,
            is_active=True,
        )
        session.add(credential)
        session.flush()
        return credential


def list_active_credentials(team_id: int, provider: str) -> list[OrganizationCredential]:
    """Return every active credential a team holds for a provider."""
    with session_scope() as session:
        rows = session.scalars(
            select(OrganizationCredential)
            .where(
                OrganizationCredential.team_id == team_id,
                OrganizationCredential.provider == provider,
                OrganizationCredential.is_active.is_(True),
            )
            .order_by(OrganizationCredential.id)
        ).all()
        return list(rows)


def list_team_credentials(team_id: int) -> list[OrganizationCredential]:
    with session_scope() as session:
        rows = session.scalars(
            select(OrganizationCredential)
            .where(OrganizationCredential.team_id == team_id)
            .order_by(OrganizationCredential.id)
        ).all()
        return list(rows)


def list_team_ids_with_active_credentials(provider: str) -> list[int]:
    with session_scope() as session:
        rows = session.scalars(
            select(OrganizationCredential.team_id)
            .where(
                OrganizationCredential.provider == provider,
                OrganizationCredential.is_active.is_(True),
            )
            .distinct()
            .order_by(OrganizationCredential.team_id)
        ).all()
        return [cast(int, team_id) for team_id in rows]


def is_credential_active(credential_id: int) -> bool:
    """Read the live flag, bypassing any copy the caller already holds."""
    with session_scope() as session:
        value = session.scalar(
            select(OrganizationCredential.is_active).where(
                OrganizationCredential.id == credential_id
            )
        )
        return bool(value)


def deactivate_credential(credential_id: int) -> bool:
    """Soft-disable a credential; rows are kept for the audit trail."""
    with session_scope() as session:
        result = session.execute(
            update(OrganizationCredential)
            .where(OrganizationCredential.id == credential_id)
            .values(is_active=False)
        )
        return bool(result.rowcount)


class CredentialVault:
    """Registers and reveals credentials through the envelope service."""

    def __init__(self, encryption: EnvelopeEncryptionService) -> None:
        self._encryption = encryption

    async def register(
        self, team_id: int, provider: str, organization_id: str, api_key: str
    ) -> OrganizationCredential:
        if not validate_key_format(provider, api_key):
            raise ProviderRequestError(provider, message="API key format is invalid")
        payload = await self._encryption.encrypt_text(api_key)
        credential = save_credential(
            team_id, provider, organization_id, payload, key_last4=api_key[-4:]
        )
        logger.info(
            "Credential registered",
            extra={
                "event": "credential_registered",
                "team_id": team_id,
                "provider": provider,
                "organization_id": organization_id,
            },
        )
        return credential

    async def reveal(self, credential: OrganizationCredential) -> str:
        """Decrypt a credential after confirming it is still enabled."""
        credential_id = cast(int, credential.id)
        if not is_credential_active(credential_id):
            raise CredentialInactiveError(credential_id)
        return await self._encryption.decrypt_text(
            cast(bytes, credential.ciphertext),
            cast(bytes, credential.wrapped_data_key),
            cast(bytes, credential.iv),
        )


__all__ = [
    "CredentialVault",
    "deactivate_credential",
    "is_credential_active",
    "list_active_credentials",
    "list_team_credentials",
    "list_team_ids_with_active_credentials",
    "save_credential",
    "validate_key_format",
]
