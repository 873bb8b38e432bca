"""
In-process store of pending OAuth state tokens (CSRF protection).

Each token binds one authorization attempt to a user and credential.
Tokens are single-use and expire after ``ttl_seconds``.  Pending states
do not survive a process restart.
"""

from __future__ import annotations

import secrets
import time
from typing import Callable, Dict, Optional

from utils.schemas import OAuthState


class OAuthStateStore:
    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.time):
        self._ttl = ttl_seconds
        self._clock = clock
        self._states: Dict[str, OAuthState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, state: str) -> bool:
        return state in self._states

    def issue(self, user_id: str, credential_id: int, redirect_url: Optional[str] = None) -> str:
        """Create a 256-bit hex state token and prune stale entries."""
        state = secrets.token_hex(32)
        self._states[state] = OAuthState(
            user_id=user_id,
            credential_id=credential_id,
            redirect_url=redirect_url,
            timestamp=self._clock(),
        )
        self.prune()
        return state

    def consume(self, state: str) -> Optional[OAuthState]:
        """
        Remove and return the entry for ``state``.

        Returns ``None`` when the token is unknown, already consumed or
        older than the TTL.
        """
        data = self._states.pop(state, None)
        if data is None or self._is_expired(data):
            return None
        return data

    def prune(self) -> int:
        stale = [key for key, data in self._states.items() if self._is_expired(data)]
        for key in stale:
            del self._states[key]
        return len(stale)

    def _is_expired(self, data: OAuthState) -> bool:
        return data.timestamp < self._clock() - self._ttl
