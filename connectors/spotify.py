"""
Spotify OAuth2.

Spotify authenticates the client with HTTP basic auth on its token
endpoint rather than with form fields.
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

_SPOTIFY_AUTH_URL = "https://accounts.spotify.com/authorize"
_SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
_SPOTIFY_ME_URL = "https://api.spotify.com/v1/me"

SPOTIFY_SCOPES = [
    "user-read-private",
    "user-read-email",
    "playlist-modify-public",
    "playlist-modify-private",
    "user-library-read",
    "user-library-modify",
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-read-recently-played",
]


def authorize_url(credential: CredentialRecord, redirect_uri: str, state: str) -> str:
    params = {
        "client_id": credential.client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": " ".join(SPOTIFY_SCOPES),
        "state": state,
    }
    return f"{_SPOTIFY_AUTH_URL}?{urlencode(params)}"


async def exchange_code(
    http: httpx.AsyncClient,
    credential: CredentialRecord,
    code: str,
    redirect_uri: str,
) -> TokenSet:
    resp = await http.post(
        _SPOTIFY_TOKEN_URL,
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        },
        auth=(credential.client_id, credential.client_secret),
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
        _SPOTIFY_TOKEN_URL,
        data={
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
        },
        auth=(credential.client_id, credential.client_secret),
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
    resp = await http.get(
        _SPOTIFY_ME_URL,
        headers={"Authorization": f"Bearer {access_token}"},
    )
    raise_for_oauth_error(resp)
    profile = resp.json()
    return profile.get("id") or profile.get("email")


SPOTIFY = ProviderCapabilities(
    provider_ids=("spotify",),
    display_name="Spotify",
    scopes=SPOTIFY_SCOPES,
    authorize_url=authorize_url,
    exchange_code=exchange_code,
    refresh=refresh,
    fetch_profile=fetch_profile,
    icon="🎵",
)
