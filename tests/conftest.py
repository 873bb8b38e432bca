"""
Shared fixtures: in-memory stand-ins for the credential and workflow stores.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest

from utils.schemas import CredentialRecord


class FakeCredentialStore:
    """Same async interface as ``database.credential_store.CredentialStore``."""

    def __init__(self):
        self.rows: Dict[int, CredentialRecord] = {}
        self.updates: List[Tuple[int, Dict[str, Any]]] = []
        self._next_id = 1

    def add(self, **fields: Any) -> CredentialRecord:
        fields.setdefault("id", self._next_id)
        fields.setdefault("user_id", "user-1")
        fields.setdefault("service_provider", "gmail")
        fields.setdefault("client_id", "client-id")
        fields.setdefault("client_secret", "client-secret")
        record = CredentialRecord(**fields)
        self.rows[record.id] = record
        self._next_id = max(self._next_id, record.id) + 1
        return record

    async def get(self, credential_id: int) -> Optional[CredentialRecord]:
        return self.rows.get(credential_id)

    async def get_owned(self, credential_id: int, user_id: str) -> Optional[CredentialRecord]:
        record = self.rows.get(credential_id)
        return record if record and record.user_id == user_id else None

    async def get_many(self, credential_ids: Iterable[int]) -> Dict[int, CredentialRecord]:
        return {cid: self.rows[cid] for cid in set(credential_ids) if cid in self.rows}

    async def list_for_user(self, user_id: str) -> List[CredentialRecord]:
        return [r for r in self.rows.values() if r.user_id == user_id]

    async def create(self, user_id, name, provider, client_id, client_secret, credential_type="oauth2"):
        now = datetime.now(timezone.utc)
        return self.add(
            user_id=user_id,
            name=name,
            service_provider=provider,
            client_id=client_id,
            client_secret=client_secret,
            credential_type=credential_type,
            created_at=now,
            updated_at=now,
        )

    async def update(self, credential_id: int, **fields: Any) -> Optional[CredentialRecord]:
        self.updates.append((credential_id, fields))
        record = self.rows.get(credential_id)
        if record is None:
            return None
        updated = record.model_copy(update=fields)
        self.rows[credential_id] = updated
        return updated

    async def delete(self, credential_id: int, user_id: str) -> bool:
        record = self.rows.get(credential_id)
        if record is None or record.user_id != user_id:
            return False
        del self.rows[credential_id]
        return True


class FakeWorkflowStore:
    def __init__(self, owners: Optional[Dict[int, str]] = None):
        self.owners = dict(owners or {})
        self.calls: List[List[int]] = []

    async def get_owners(self, workflow_ids: Iterable[int]) -> Dict[int, str]:
        ids = sorted(set(workflow_ids))
        self.calls.append(ids)
        return {wid: self.owners[wid] for wid in ids if wid in self.owners}


@pytest.fixture
def credential_store() -> FakeCredentialStore:
    return FakeCredentialStore()


@pytest.fixture
def workflow_store() -> FakeWorkflowStore:
    return FakeWorkflowStore()
