"""
Credential store — persistence of per-user provider credentials.

Rows are read and written through short-lived sessions from the injected
``async_sessionmaker``.  Secret columns are encrypted on write and
decrypted on read, so callers only ever see ``CredentialRecord`` objects.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.encryption import TokenCipher
from database.models import Credential
from utils.schemas import CredentialRecord, CredentialType

logger = logging.getLogger(__name__)

_SECRET_FIELDS = ("client_secret", "access_token", "refresh_token")
_UPDATABLE_FIELDS = {
    "name",
    "client_id",
    "client_secret",
    "access_token",
    "refresh_token",
    "expires_at",
    "scope",
    "is_valid",
    "cursor",
    "history_cursor",
}


class CredentialStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: Optional[TokenCipher] = None,
    ):
        self._session_factory = session_factory
        self._cipher = cipher or TokenCipher()

    # ── mapping ─────────────────────────────────────────────────────────

    def _to_record(self, row: Credential) -> CredentialRecord:
        return CredentialRecord(
            id=row.id,
            user_id=row.user_id,
            service_provider=row.service_provider,
            credential_type=row.credential_type,
            name=row.name,
            client_id=row.client_id,
            client_secret=self._cipher.decrypt(row.client_secret),
            access_token=self._cipher.decrypt(row.access_token),
            refresh_token=self._cipher.decrypt(row.refresh_token),
            expires_at=row.expires_at,
            scope=row.scope,
            is_valid=row.is_valid,
            cursor=row.cursor,
            history_cursor=row.history_cursor,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    # ── reads ───────────────────────────────────────────────────────────

    async def get(self, credential_id: int) -> Optional[CredentialRecord]:
        async with self._session_factory() as session:
            row = await session.get(Credential, credential_id)
            return self._to_record(row) if row else None

    async def get_owned(self, credential_id: int, user_id: str) -> Optional[CredentialRecord]:
        """Load a credential only if it belongs to ``user_id``."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Credential).where(
                    Credential.id == credential_id,
                    Credential.user_id == user_id,
                )
            )
            row = result.scalar_one_or_none()
            return self._to_record(row) if row else None

    async def get_many(self, credential_ids: Iterable[int]) -> Dict[int, CredentialRecord]:
        ids = list(set(credential_ids))
        if not ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(select(Credential).where(Credential.id.in_(ids)))
            return {row.id: self._to_record(row) for row in result.scalars().all()}

    async def list_for_user(self, user_id: str) -> List[CredentialRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Credential)
                .where(Credential.user_id == user_id)
                .order_by(Credential.created_at.asc())
            )
            return [self._to_record(row) for row in result.scalars().all()]

    # ── writes ──────────────────────────────────────────────────────────

    async def create(
        self,
        user_id: str,
        name: str,
        provider: str,
        client_id: str,
        client_secret: str,
        credential_type: str = CredentialType.OAUTH2.value,
    ) -> CredentialRecord:
        """Insert an unauthenticated credential (no tokens, ``is_valid=False``)."""
        async with self._session_factory() as session:
            row = Credential(
                user_id=user_id,
                service_provider=provider,
                credential_type=credential_type,
                name=name,
                client_id=client_id,
                client_secret=self._cipher.encrypt(client_secret),
                is_valid=False,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            logger.info("Created %s credential %s for user %s", provider, row.id, user_id)
            return self._to_record(row)

    async def update(self, credential_id: int, **fields: Any) -> Optional[CredentialRecord]:
        """
        Persist a partial update and return the fresh record.

        Returns ``None`` if the credential no longer exists.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown credential fields: {sorted(unknown)}")

        async with self._session_factory() as session:
            row = await session.get(Credential, credential_id)
            if row is None:
                return None
            for key, value in fields.items():
                if key in _SECRET_FIELDS:
                    value = self._cipher.encrypt(value)
                setattr(row, key, value)
            row.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(row)
            return self._to_record(row)

    async def delete(self, credential_id: int, user_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(Credential).where(
                    Credential.id == credential_id,
                    Credential.user_id == user_id,
                )
            )
            await session.commit()
            deleted = (result.rowcount or 0) > 0
            if deleted:
                logger.info("Deleted credential %s for user %s", credential_id, user_id)
            return deleted
