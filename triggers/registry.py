"""
Trigger registrations — which workflows listen to which polling trigger.

Registrations are held in memory only.  The workflow-activation service
rebuilds them at process start and keeps them current on activation,
deactivation and deletion.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from utils.schemas import TriggerRegistration

logger = logging.getLogger(__name__)

NEW_EVENT = "google-calendar:new-event"
EVENT_CANCELLED = "google-calendar:event-cancelled"

RECEIVE_EMAIL = "gmail:receive-email"

CALENDAR_TRIGGER_KINDS = (NEW_EVENT, EVENT_CANCELLED)
GMAIL_TRIGGER_KINDS = (RECEIVE_EMAIL,)
ALL_TRIGGER_KINDS = CALENDAR_TRIGGER_KINDS + GMAIL_TRIGGER_KINDS


class TriggerRegistry:
    """workflow_id → registration for one trigger kind."""

    def __init__(self, kind: str):
        self.kind = kind
        self._registrations: Dict[int, TriggerRegistration] = {}

    def __len__(self) -> int:
        return len(self._registrations)

    def register(
        self,
        workflow_id: int,
        config: Optional[Dict[str, Any]] = None,
        credentials_id: Optional[int] = None,
    ) -> None:
        self._registrations[workflow_id] = TriggerRegistration(
            credentials_id=credentials_id,
            config=config or {},
        )

    def unregister(self, workflow_id: int) -> bool:
        return self._registrations.pop(workflow_id, None) is not None

    def has(self, workflow_id: int) -> bool:
        return workflow_id in self._registrations

    def get(self, workflow_id: int) -> Optional[TriggerRegistration]:
        return self._registrations.get(workflow_id)

    def get_registrations(self) -> Dict[int, TriggerRegistration]:
        """Snapshot; later (un)registrations do not affect the returned dict."""
        return dict(self._registrations)

    def unregister_credential(self, credentials_id: int) -> List[int]:
        removed = [
            wid for wid, reg in self._registrations.items() if reg.credentials_id == credentials_id
        ]
        for wid in removed:
            del self._registrations[wid]
        return removed


class RegistrationArena:
    """All trigger registries of one process, keyed by trigger kind."""

    def __init__(self, kinds: Iterable[str] = ALL_TRIGGER_KINDS):
        self._registries: Dict[str, TriggerRegistry] = {}
        for kind in kinds:
            self.add_kind(kind)

    def add_kind(self, kind: str) -> TriggerRegistry:
        if kind not in self._registries:
            self._registries[kind] = TriggerRegistry(kind)
        return self._registries[kind]

    def kinds(self) -> List[str]:
        return list(self._registries)

    def registry(self, kind: str) -> TriggerRegistry:
        """Raises ``KeyError`` for an unknown trigger kind."""
        try:
            return self._registries[kind]
        except KeyError:
            raise KeyError(f"Unknown trigger kind: {kind}") from None

    def register(
        self,
        kind: str,
        workflow_id: int,
        config: Optional[Dict[str, Any]] = None,
        credentials_id: Optional[int] = None,
    ) -> None:
        self.registry(kind).register(workflow_id, config, credentials_id)
        logger.info(
            "Registered workflow %s for %s (credential %s)", workflow_id, kind, credentials_id
        )

    def unregister(self, kind: str, workflow_id: int) -> bool:
        removed = self.registry(kind).unregister(workflow_id)
        if removed:
            logger.info("Unregistered workflow %s from %s", workflow_id, kind)
        return removed

    def unregister_workflow(self, workflow_id: int) -> List[str]:
        """Drop a workflow from every kind; returns the kinds it was removed from."""
        return [kind for kind, reg in self._registries.items() if reg.unregister(workflow_id)]

    def unregister_credential(self, credentials_id: int) -> List[int]:
        removed: List[int] = []
        for reg in self._registries.values():
            removed.extend(reg.unregister_credential(credentials_id))
        return removed
