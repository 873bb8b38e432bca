"""
Read-only access to workflow ownership, used to route polling triggers.
"""

from __future__ import annotations

from typing import Dict, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import Workflow


class WorkflowStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_owners(self, workflow_ids: Iterable[int]) -> Dict[int, str]:
        """Batch-resolve ``workflow_id → user_id``; unknown ids are omitted."""
        ids = list(set(workflow_ids))
        if not ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(Workflow.id, Workflow.user_id).where(Workflow.id.in_(ids))
            )
            return {wid: uid for wid, uid in result.all()}
