"""
ProviderCapabilities — the per-provider OAuth2 operations.

Providers are plain records of four callables selected by provider id
through ``ConnectorRegistry``.  Adding a provider means writing a module
that builds one ``ProviderCapabilities`` and registering it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import httpx

from utils.schemas import CredentialRecord, TokenSet

# (credential, redirect_uri, state) -> authorize URL
AuthorizeUrlFn = Callable[[CredentialRecord, str, str], str]
# (http, credential, code, redirect_uri) -> tokens
ExchangeCodeFn = Callable[[httpx.AsyncClient, CredentialRecord, str, str], Awaitable[TokenSet]]
# (http, credential) -> tokens
RefreshFn = Callable[[httpx.AsyncClient, CredentialRecord], Awaitable[TokenSet]]
# (http, credential, access_token) -> display label
FetchProfileFn = Callable[[httpx.AsyncClient, CredentialRecord, str], Awaitable[Optional[str]]]


class OAuthProviderError(Exception):
    """A provider token or profile endpoint rejected the request."""

    def __init__(self, message: str, code: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


@dataclass(frozen=True)
class ProviderCapabilities:
    provider_ids: Tuple[str, ...]
    display_name: str
    scopes: List[str]
    authorize_url: AuthorizeUrlFn
    exchange_code: ExchangeCodeFn
    refresh: RefreshFn
    fetch_profile: FetchProfileFn
    icon: str = field(default="🔗")


# ── Helpers shared by provider modules ──────────────────────────────────


def expires_at_from(expires_in: Any) -> Optional[datetime]:
    """Convert a relative ``expires_in`` (seconds) into an absolute UTC time."""
    if expires_in is None:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))


def normalise_scope(scope: Any) -> Optional[str]:
    """Token endpoints return either a space-separated string or a list."""
    if scope is None:
        return None
    if isinstance(scope, (list, tuple)):
        return " ".join(scope)
    return str(scope)


def raise_for_oauth_error(resp: httpx.Response) -> None:
    """
    Raise ``OAuthProviderError`` for a non-2xx token/profile response.

    The OAuth ``error`` field becomes the error code so callers can match
    on values such as ``redirect_uri_mismatch``.
    """
    if resp.is_success:
        return
    code = ""
    description = resp.text
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = str(body.get("error") or "")
        description = str(
            body.get("error_description") or body.get("message") or code or resp.text
        )
    message = f"{code}: {description}" if code and code != description else description
    raise OAuthProviderError(
        message or f"HTTP {resp.status_code}",
        code=code,
        status_code=resp.status_code,
    )
