"""
OAuth2 Authorization Coordinator.

Owns the authorization-code flow for user credentials:

1. ``get_auth_url``    — issue a state token and build the provider consent URL.
2. ``handle_callback`` — consume the state token, exchange the code, persist tokens.
3. ``refresh_token``   — swap the stored refresh token for a new access token.

Provider specifics live in the ``connectors`` dispatch table; this module
only sequences them and keeps the credential row consistent.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol

import httpx

from config.settings import config
from connectors.base import ProviderCapabilities
from connectors.registry import ConnectorRegistry
from oauth.errors import (
    AuthorizationExpiredError,
    BadRequestError,
    ConfigurationError,
    CredentialNotFoundError,
    ReauthenticationRequiredError,
)
from oauth.state_store import OAuthStateStore
from utils.schemas import (
    AuthUrlResult,
    CallbackResult,
    CredentialRecord,
    CredentialType,
    CredentialView,
)

logger = logging.getLogger(__name__)

_REDIRECT_MISMATCH_MARKERS = ("redirect_uri_mismatch", "invalid_request", "redirect_uri")


class CredentialRegistrationCleanup(Protocol):
    def unregister_credential(self, credentials_id: int) -> List[int]: ...


class OAuth2Coordinator:
    def __init__(
        self,
        store,
        registry: Optional[ConnectorRegistry] = None,
        state_store: Optional[OAuthStateStore] = None,
        http: Optional[httpx.AsyncClient] = None,
        callback_url: Optional[str] = None,
        registrations: Optional[CredentialRegistrationCleanup] = None,
    ):
        """
        Parameters
        ----------
        store         : credential store (``database.credential_store.CredentialStore``
                        or any object with the same async methods).
        registry      : provider dispatch table; defaults to all built-in providers.
        state_store   : pending OAuth states; defaults to an in-process store.
        http          : shared client for provider calls.
        callback_url  : redirect URI registered with every provider app.
        registrations : trigger registrations to clean up when a credential is deleted.
        """
        self._store = store
        self._registry = registry or ConnectorRegistry()
        self._states = state_store or OAuthStateStore(ttl_seconds=config.oauth_state_ttl_seconds)
        self._http = http or httpx.AsyncClient(timeout=config.http_timeout_seconds)
        self._callback_url = callback_url or config.oauth_callback_url
        self._registrations = registrations

    @property
    def callback_url(self) -> str:
        return self._callback_url

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── credential CRUD ─────────────────────────────────────────────────

    async def list_credentials(self, user_id: str) -> List[CredentialView]:
        return [c.public_view() for c in await self._store.list_for_user(user_id)]

    async def get_credential(self, user_id: str, credential_id: int) -> CredentialView:
        credential = await self._store.get_owned(credential_id, user_id)
        if credential is None:
            raise CredentialNotFoundError("Credential not found")
        return credential.public_view()

    async def create_credential(
        self,
        user_id: str,
        name: str,
        provider: str,
        client_id: str,
        client_secret: str,
    ) -> CredentialView:
        if not self._registry.supports(provider):
            raise BadRequestError(f"Unsupported OAuth2 provider: {provider}")
        if not client_id or not client_secret:
            raise ConfigurationError("Client ID and client secret are required")
        credential = await self._store.create(
            user_id=user_id,
            name=name,
            provider=provider,
            client_id=client_id,
            client_secret=client_secret,
            credential_type=CredentialType.OAUTH2.value,
        )
        return credential.public_view()

    async def delete_credential(self, user_id: str, credential_id: int) -> None:
        if not await self._store.delete(credential_id, user_id):
            raise CredentialNotFoundError("Credential not found")
        if self._registrations is not None:
            removed = self._registrations.unregister_credential(credential_id)
            if removed:
                logger.info(
                    "Unregistered workflows %s bound to deleted credential %s",
                    removed,
                    credential_id,
                )

    def list_providers(self) -> List[dict]:
        return self._registry.list_providers()

    # ── authorization flow ──────────────────────────────────────────────

    async def get_auth_url(
        self,
        user_id: str,
        credential_id: int,
        redirect_url: Optional[str] = None,
    ) -> AuthUrlResult:
        credential = await self._load_configured(credential_id, user_id)
        caps = self._registry.get(credential.service_provider)
        if caps is None:
            raise BadRequestError(f"Unsupported OAuth2 provider: {credential.service_provider}")

        state = self._states.issue(user_id, credential_id, redirect_url)
        auth_url = caps.authorize_url(credential, self._callback_url, state)
        logger.info(
            "Issued %s authorization URL for credential %s (user %s)",
            credential.service_provider,
            credential_id,
            user_id,
        )
        return AuthUrlResult(auth_url=auth_url, state=state)

    async def handle_callback(self, code: str, state: str) -> CallbackResult:
        """
        Complete the flow started by ``get_auth_url``.

        Raises ``AuthorizationExpiredError`` for an unknown, reused or
        expired state.  Provider-side failures are returned as
        ``CallbackResult(success=False, error=...)``.
        """
        state_data = self._states.consume(state)
        if state_data is None:
            raise AuthorizationExpiredError("Invalid or expired state token")

        credential = await self._load_configured(state_data.credential_id, state_data.user_id)
        caps = self._registry.get(credential.service_provider)
        if caps is None:
            return CallbackResult(
                success=False,
                error=f"Unsupported OAuth2 provider: {credential.service_provider}",
                redirect_url=state_data.redirect_url,
            )

        try:
            tokens = await caps.exchange_code(self._http, credential, code, self._callback_url)
        except Exception as exc:
            logger.error("OAuth2 callback failed for credential %s: %s", credential.id, exc)
            return CallbackResult(
                success=False,
                error=self._describe_exchange_error(exc),
                redirect_url=state_data.redirect_url,
            )

        profile = await self._fetch_profile_label(caps, credential, tokens.access_token)

        await self._store.update(
            credential.id,
            name=f"{credential.service_provider} - {profile}",
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or credential.refresh_token,
            expires_at=tokens.expires_at,
            scope=tokens.scope,
            is_valid=True,
        )
        logger.info(
            "OAuth2 connected: credential=%s provider=%s account=%s",
            credential.id,
            credential.service_provider,
            profile,
        )
        return CallbackResult(
            success=True,
            credential_id=credential.id,
            redirect_url=state_data.redirect_url,
        )

    # ── refresh ─────────────────────────────────────────────────────────

    async def refresh_token(self, credential_id: int) -> CredentialRecord:
        """
        Refresh the access token of an OAuth2 credential.

        Configuration problems raise ``ConfigurationError`` before any
        network call.  A provider failure marks the credential invalid and
        raises ``ReauthenticationRequiredError``; it is never retried here.
        """
        credential = await self._store.get(credential_id)
        if credential is None:
            raise CredentialNotFoundError("Credential not found")
        if credential.credential_type != CredentialType.OAUTH2.value:
            raise ConfigurationError("Credential is not OAuth2 type")
        if not credential.has_refresh_credentials():
            raise ConfigurationError("Missing OAuth2 refresh credentials")
        caps = self._registry.get(credential.service_provider)
        if caps is None:
            raise BadRequestError(f"Unsupported OAuth2 provider: {credential.service_provider}")

        try:
            tokens = await caps.refresh(self._http, credential)
        except Exception as exc:
            logger.warning("Token refresh failed for credential %s: %s", credential_id, exc)
            await self._store.update(credential_id, is_valid=False)
            raise ReauthenticationRequiredError(
                "Failed to refresh OAuth2 token. Please re-authenticate."
            ) from exc

        updated = await self._store.update(
            credential_id,
            access_token=tokens.access_token,
            # Some providers rotate refresh tokens
            refresh_token=tokens.refresh_token or credential.refresh_token,
            expires_at=tokens.expires_at,
            is_valid=True,
        )
        if updated is None:
            raise CredentialNotFoundError("Credential not found")
        logger.info("Refreshed %s token for credential %s", credential.service_provider, credential_id)
        return updated

    # ── helpers ─────────────────────────────────────────────────────────

    async def _load_configured(self, credential_id: int, user_id: str) -> CredentialRecord:
        credential = await self._store.get_owned(credential_id, user_id)
        if credential is None:
            raise CredentialNotFoundError("Credential not found")
        if not credential.has_client_config():
            raise ConfigurationError("Credential does not have client ID and secret configured")
        return credential

    async def _fetch_profile_label(
        self,
        caps: ProviderCapabilities,
        credential: CredentialRecord,
        access_token: str,
    ) -> str:
        try:
            label = await caps.fetch_profile(self._http, credential, access_token)
        except Exception as exc:
            logger.warning("Profile lookup failed for credential %s: %s", credential.id, exc)
            label = None
        return label or "Unknown"

    def _describe_exchange_error(self, exc: Exception) -> str:
        message = str(exc)
        code = getattr(exc, "code", "") or ""
        if code in ("invalid_request", "redirect_uri_mismatch") or any(
            marker in message for marker in _REDIRECT_MISMATCH_MARKERS
        ):
            return (
                "Redirect URI mismatch. Please ensure the following URL is added to your "
                f"OAuth 2.0 client's authorized redirect URIs: {self._callback_url}. "
                "The URL must match exactly, including protocol (http/https) and port."
            )
        return message or "Failed to complete OAuth2 flow"
