"""
Token refresh manager — hand out access tokens that are not about to expire.

This sits on the hot path of every action execution and polling cycle.
A refresh failure is raised to that one caller only.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from config.settings import config
from oauth.errors import ConfigurationError, MissingAccessTokenError
from utils.schemas import CredentialRecord

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenRefreshManager:
    def __init__(
        self,
        coordinator,
        buffer_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._coordinator = coordinator
        self._buffer = timedelta(
            seconds=config.refresh_buffer_seconds if buffer_seconds is None else buffer_seconds
        )
        self._clock = clock

    def needs_refresh(self, credential: CredentialRecord) -> bool:
        """True if ``expires_at`` is set and falls within the refresh buffer."""
        if credential.expires_at is None:
            return False
        expires_at = credential.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= self._clock() + self._buffer

    async def ensure_fresh_access_token(self, credential: CredentialRecord) -> CredentialRecord:
        """
        Return ``credential`` with a usable access token.

        Performs at most one refresh through the coordinator.

        Raises
        ------
        MissingAccessTokenError        – the credential was never authorized
        ConfigurationError             – refresh needed but refresh credentials are missing
        ReauthenticationRequiredError  – the provider rejected the refresh
        """
        if not credential.access_token:
            raise MissingAccessTokenError(f"Credential {credential.id} has no access token")

        if not self.needs_refresh(credential):
            return credential

        if not credential.has_refresh_credentials():
            raise ConfigurationError(
                f"Credential {credential.id} needs a refresh but has no refresh credentials"
            )

        logger.debug("Access token for credential %s expires soon, refreshing", credential.id)
        return await self._coordinator.refresh_token(credential.id)

    async def force_refresh(self, credential: CredentialRecord) -> CredentialRecord:
        """Refresh regardless of ``expires_at``, e.g. after the provider rejected the token."""
        if not credential.has_refresh_credentials():
            raise ConfigurationError(
                f"Credential {credential.id} was rejected and has no refresh credentials"
            )
        return await self._coordinator.refresh_token(credential.id)
