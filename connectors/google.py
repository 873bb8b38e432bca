"""
Google-family OAuth2 (Gmail, Calendar, Sheets, YouTube).

All Google services share one consent screen, so a single capability
record is registered under every Google provider id.  The authorize URL
asks for offline access with a forced consent prompt so a refresh token
is always issued.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from connectors.base import (
    OAuthProviderError,
    ProviderCapabilities,
    expires_at_from,
    normalise_scope,
    raise_for_oauth_error,
)
from utils.schemas import CredentialRecord, TokenSet

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/youtube",
    "https://www.googleapis.com/auth/youtube.force-ssl",
]


def authorize_url(credential: CredentialRecord, redirect_uri: str, state: str) -> str:
    params = {
        "client_id": credential.client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(GOOGLE_SCOPES),
        "access_type": "offline",       # gets refresh_token
        "prompt": "consent",            # force consent to always get refresh_token
        "state": state,
    }
    return f"{_GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code(
    http: httpx.AsyncClient,
    credential: CredentialRecord,
    code: str,
    redirect_uri: str,
) -> TokenSet:
    """Exchange auth code for tokens."""
    resp = await http.post(
        _GOOGLE_TOKEN_URL,
        data={
            "code": code,
            "client_id": credential.client_id,
            "client_secret": credential.client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        },
    )
    raise_for_oauth_error(resp)
    data = resp.json()

    if not data.get("access_token") or not data.get("refresh_token"):
        raise OAuthProviderError("Failed to obtain tokens from OAuth2 provider")

    return TokenSet(
        access_token=data["access_token"],
        refresh_token=data["refresh_token"],
        expires_at=expires_at_from(data.get("expires_in")),
        scope=normalise_scope(data.get("scope")),
    )


async def refresh(http: httpx.AsyncClient, credential: CredentialRecord) -> TokenSet:
    """Use refresh token to get a new access token."""
    resp = await http.post(
        _GOOGLE_TOKEN_URL,
        data={
            "client_id": credential.client_id,
            "client_secret": credential.client_secret,
            "refresh_token": credential.refresh_token,
            "grant_type": "refresh_token",
        },
    )
    raise_for_oauth_error(resp)
    data = resp.json()

    return TokenSet(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_at=expires_at_from(data.get("expires_in", 3600)),
        scope=normalise_scope(data.get("scope")),
    )


async def fetch_profile(
    http: httpx.AsyncClient,
    credential: CredentialRecord,
    access_token: str,
) -> Optional[str]:
    """Account email, used only to name the credential."""
    resp = await http.get(
        _GOOGLE_USERINFO_URL,
        headers={"Authorization": f"Bearer {access_token}"},
    )
    raise_for_oauth_error(resp)
    return resp.json().get("email")


GOOGLE = ProviderCapabilities(
    provider_ids=("google", "gmail", "google-calendar", "google-sheets", "youtube"),
    display_name="Google",
    scopes=GOOGLE_SCOPES,
    authorize_url=authorize_url,
    exchange_code=exchange_code,
    refresh=refresh,
    fetch_profile=fetch_profile,
    icon="📧",
)
