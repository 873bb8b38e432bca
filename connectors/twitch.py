"""
Twitch OAuth2.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

import httpx

from connectors.base import (
    ProviderCapabilities,
    expires_at_from,
    normalise_scope,
    raise_for_oauth_error,
)
from utils.schemas import CredentialRecord, TokenSet

_TWITCH_AUTH_URL = "https://id.twitch.tv/oauth2/authorize"
_TWITCH_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
_TWITCH_USERS_URL = "https://api.twitch.tv/helix/users"

TWITCH_SCOPES = [
    "user:read:email",
    "channel:manage:broadcast",
    "chat:read",
    "chat:edit",
    "clips:edit",
    "user:edit:broadcast",
    "moderator:read:followers",
]


def authorize_url(credential: CredentialRecord, redirect_uri: str, state: str) -> str:
    params = {
        "client_id": credential.client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(TWITCH_SCOPES),
        "state": state,
    }
    return f"{_TWITCH_AUTH_URL}?{urlencode(params)}"


async def exchange_code(
    http: httpx.AsyncClient,
    credential: CredentialRecord,
    code: str,
    redirect_uri: str,
) -> TokenSet:
    resp = await http.post(
        _TWITCH_TOKEN_URL,
        data={
            "client_id": credential.client_id,
            "client_secret": credential.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        },
    )
    raise_for_oauth_error(resp)
    data = resp.json()
    return TokenSet(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_at=expires_at_from(data.get("expires_in")),
        scope=normalise_scope(data.get("scope")),
    )


async def refresh(http: httpx.AsyncClient, credential: CredentialRecord) -> TokenSet:
    resp = await http.post(
        _TWITCH_TOKEN_URL,
        data={
            "client_id": credential.client_id,
            "client_secret": credential.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
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
    # Helix requires the app's client id alongside the user token.
    resp = await http.get(
        _TWITCH_USERS_URL,
        headers={
            "Authorization": f"Bearer {access_token}",
            "Client-Id": credential.client_id or "",
        },
    )
    raise_for_oauth_error(resp)
    users = resp.json().get("data") or []
    return users[0].get("login") if users else None


TWITCH = ProviderCapabilities(
    provider_ids=("twitch",),
    display_name="Twitch",
    scopes=TWITCH_SCOPES,
    authorize_url=authorize_url,
    exchange_code=exchange_code,
    refresh=refresh,
    fetch_profile=fetch_profile,
    icon="🎮",
)
