"""
Tests for the OAuth2 Authorization Coordinator — auth URLs, callbacks and refresh.

Provider endpoints are served by ``httpx.MockTransport``.
"""

import base64
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from oauth.coordinator import OAuth2Coordinator
from oauth.errors import (
    AuthorizationExpiredError,
    BadRequestError,
    ConfigurationError,
    CredentialNotFoundError,
    ReauthenticationRequiredError,
)
from oauth.state_store import OAuthStateStore
from triggers.registry import EVENT_CANCELLED, NEW_EVENT, RegistrationArena

CALLBACK = "https://automations.example.com/api/oauth2-credential/callback"

GOOGLE_TOKEN = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO = "https://www.googleapis.com/oauth2/v2/userinfo"
SPOTIFY_TOKEN = "https://accounts.spotify.com/api/token"
SPOTIFY_ME = "https://api.spotify.com/v1/me"
TWITCH_TOKEN = "https://id.twitch.tv/oauth2/token"
TWITCH_USERS = "https://api.twitch.tv/helix/users"


# ── helpers ────────────────────────────────────────────────────────────────────


class _FakeProvider:
    """Serves canned responses keyed by (method, url) and records every request."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        responder = self.routes.get((request.method, url))
        if responder is None:
            return httpx.Response(404, json={"error": "not_found"})
        return responder(request)

    def form(self, index: int = 0) -> dict:
        return {k: v[0] for k, v in parse_qs(self.requests[index].content.decode()).items()}


class _Clock:
    def __init__(self):
        self.now = time.time()

    def __call__(self) -> float:
        return self.now


def _json(status: int, body: dict):
    return lambda request: httpx.Response(status, json=body)


def _coordinator(store, provider, clock=None, registrations=None) -> OAuth2Coordinator:
    return OAuth2Coordinator(
        store,
        state_store=OAuthStateStore(ttl_seconds=600, clock=clock or time.time),
        http=httpx.AsyncClient(transport=httpx.MockTransport(provider)),
        callback_url=CALLBACK,
        registrations=registrations,
    )


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


_GOOGLE_OK = {
    ("POST", GOOGLE_TOKEN): _json(
        200,
        {"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600, "scope": "a b"},
    ),
    ("GET", GOOGLE_USERINFO): _json(200, {"email": "ada@example.com"}),
}


# ── get_auth_url ───────────────────────────────────────────────────────────────


class TestGetAuthUrl:
    @pytest.mark.asyncio
    async def test_google_url_requests_offline_consent(self, credential_store):
        cred = credential_store.add(service_provider="gmail")
        coordinator = _coordinator(credential_store, _FakeProvider())

        result = await coordinator.get_auth_url("user-1", cred.id, "http://app/credentials")

        parsed = urlparse(result.auth_url)
        assert parsed.netloc == "accounts.google.com"
        params = _query(result.auth_url)
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"
        assert params["state"] == result.state
        assert params["redirect_uri"] == CALLBACK
        assert params["client_id"] == "client-id"
        assert "https://www.googleapis.com/auth/userinfo.email" in params["scope"].split()

    @pytest.mark.asyncio
    async def test_spotify_and_twitch_urls(self, credential_store):
        spotify = credential_store.add(service_provider="spotify")
        twitch = credential_store.add(service_provider="twitch")
        coordinator = _coordinator(credential_store, _FakeProvider())

        s = await coordinator.get_auth_url("user-1", spotify.id)
        t = await coordinator.get_auth_url("user-1", twitch.id)

        assert s.auth_url.startswith("https://accounts.spotify.com/authorize?")
        assert "user-read-email" in _query(s.auth_url)["scope"].split()
        assert t.auth_url.startswith("https://id.twitch.tv/oauth2/authorize?")
        assert "user:read:email" in _query(t.auth_url)["scope"].split()
        assert s.state != t.state

    @pytest.mark.asyncio
    async def test_unknown_provider_issues_no_state(self, credential_store):
        cred = credential_store.add(service_provider="myspace")
        coordinator = _coordinator(credential_store, _FakeProvider())

        with pytest.raises(BadRequestError):
            await coordinator.get_auth_url("user-1", cred.id)
        assert len(coordinator._states) == 0

    @pytest.mark.asyncio
    async def test_missing_client_secret(self, credential_store):
        cred = credential_store.add(client_secret=None)
        coordinator = _coordinator(credential_store, _FakeProvider())

        with pytest.raises(ConfigurationError):
            await coordinator.get_auth_url("user-1", cred.id)
        assert len(coordinator._states) == 0

    @pytest.mark.asyncio
    async def test_credential_of_another_user(self, credential_store):
        cred = credential_store.add(user_id="user-2")
        coordinator = _coordinator(credential_store, _FakeProvider())

        with pytest.raises(CredentialNotFoundError):
            await coordinator.get_auth_url("user-1", cred.id)


# ── handle_callback ────────────────────────────────────────────────────────────


class TestHandleCallback:
    @pytest.mark.asyncio
    async def test_google_success_persists_tokens(self, credential_store):
        cred = credential_store.add(service_provider="gmail", name="My Gmail")
        provider = _FakeProvider(dict(_GOOGLE_OK))
        coordinator = _coordinator(credential_store, provider)
        auth = await coordinator.get_auth_url("user-1", cred.id, "http://app/credentials")

        result = await coordinator.handle_callback("code-123", auth.state)

        assert result.success is True
        assert result.credential_id == cred.id
        assert result.redirect_url == "http://app/credentials"
        stored = credential_store.rows[cred.id]
        assert stored.access_token == "at-1"
        assert stored.refresh_token == "rt-1"
        assert stored.scope == "a b"
        assert stored.is_valid is True
        assert stored.name == "gmail - ada@example.com"
        assert stored.expires_at > datetime.now(timezone.utc)

        form = provider.form(0)
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "code-123"
        assert form["redirect_uri"] == CALLBACK

    @pytest.mark.asyncio
    async def test_state_is_single_use_even_after_success(self, credential_store):
        cred = credential_store.add()
        coordinator = _coordinator(credential_store, _FakeProvider(dict(_GOOGLE_OK)))
        auth = await coordinator.get_auth_url("user-1", cred.id)

        await coordinator.handle_callback("code", auth.state)
        with pytest.raises(AuthorizationExpiredError):
            await coordinator.handle_callback("code", auth.state)

    @pytest.mark.asyncio
    async def test_state_is_consumed_when_exchange_fails(self, credential_store):
        cred = credential_store.add()
        provider = _FakeProvider({("POST", GOOGLE_TOKEN): _json(400, {"error": "invalid_grant"})})
        coordinator = _coordinator(credential_store, provider)
        auth = await coordinator.get_auth_url("user-1", cred.id)

        result = await coordinator.handle_callback("code", auth.state)
        assert result.success is False
        with pytest.raises(AuthorizationExpiredError):
            await coordinator.handle_callback("code", auth.state)

    @pytest.mark.asyncio
    async def test_expired_state(self, credential_store):
        cred = credential_store.add()
        clock = _Clock()
        provider = _FakeProvider(dict(_GOOGLE_OK))
        coordinator = _coordinator(credential_store, provider, clock=clock)
        auth = await coordinator.get_auth_url("user-1", cred.id)

        clock.now += 11 * 60
        with pytest.raises(AuthorizationExpiredError):
            await coordinator.handle_callback("code", auth.state)
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_credential_deleted_before_callback(self, credential_store):
        cred = credential_store.add()
        provider = _FakeProvider(dict(_GOOGLE_OK))
        coordinator = _coordinator(credential_store, provider)
        auth = await coordinator.get_auth_url("user-1", cred.id)

        await credential_store.delete(cred.id, "user-1")
        with pytest.raises(CredentialNotFoundError):
            await coordinator.handle_callback("code", auth.state)
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_unknown_state(self, credential_store):
        coordinator = _coordinator(credential_store, _FakeProvider())
        with pytest.raises(AuthorizationExpiredError):
            await coordinator.handle_callback("code", "deadbeef")

    @pytest.mark.asyncio
    async def test_redirect_uri_mismatch_gets_actionable_message(self, credential_store):
        cred = credential_store.add()
        provider = _FakeProvider(
            {
                ("POST", GOOGLE_TOKEN): _json(
                    400, {"error": "redirect_uri_mismatch", "error_description": "Bad Request"}
                )
            }
        )
        coordinator = _coordinator(credential_store, provider)
        auth = await coordinator.get_auth_url("user-1", cred.id)

        result = await coordinator.handle_callback("code", auth.state)

        assert result.success is False
        assert "Redirect URI mismatch" in result.error
        assert CALLBACK in result.error
        assert credential_store.rows[cred.id].is_valid is False

    @pytest.mark.asyncio
    async def test_generic_exchange_failure_is_returned(self, credential_store):
        cred = credential_store.add()
        provider = _FakeProvider(
            {
                ("POST", GOOGLE_TOKEN): _json(
                    400, {"error": "invalid_grant", "error_description": "Code already used"}
                )
            }
        )
        coordinator = _coordinator(credential_store, provider)
        auth = await coordinator.get_auth_url("user-1", cred.id)

        result = await coordinator.handle_callback("code", auth.state)

        assert result.success is False
        assert "Code already used" in result.error
        assert "Redirect URI" not in result.error
        assert credential_store.updates == []

    @pytest.mark.asyncio
    async def test_google_without_refresh_token_fails(self, credential_store):
        cred = credential_store.add()
        provider = _FakeProvider({("POST", GOOGLE_TOKEN): _json(200, {"access_token": "at"})})
        coordinator = _coordinator(credential_store, provider)
        auth = await coordinator.get_auth_url("user-1", cred.id)

        result = await coordinator.handle_callback("code", auth.state)

        assert result.success is False
        assert "Failed to obtain tokens" in result.error

    @pytest.mark.asyncio
    async def test_profile_lookup_is_best_effort(self, credential_store):
        cred = credential_store.add()
        provider = _FakeProvider(
            {
                ("POST", GOOGLE_TOKEN): _GOOGLE_OK[("POST", GOOGLE_TOKEN)],
                ("GET", GOOGLE_USERINFO): _json(500, {"error": "backend"}),
            }
        )
        coordinator = _coordinator(credential_store, provider)
        auth = await coordinator.get_auth_url("user-1", cred.id)

        result = await coordinator.handle_callback("code", auth.state)

        assert result.success is True
        assert credential_store.rows[cred.id].name == "gmail - Unknown"

    @pytest.mark.asyncio
    async def test_spotify_uses_basic_client_auth(self, credential_store):
        cred = credential_store.add(service_provider="spotify")
        provider = _FakeProvider(
            {
                ("POST", SPOTIFY_TOKEN): _json(
                    200, {"access_token": "sp-at", "refresh_token": "sp-rt", "expires_in": 3600}
                ),
                ("GET", SPOTIFY_ME): _json(200, {"id": "ada", "email": "ada@example.com"}),
            }
        )
        coordinator = _coordinator(credential_store, provider)
        auth = await coordinator.get_auth_url("user-1", cred.id)

        result = await coordinator.handle_callback("code", auth.state)

        assert result.success is True
        expected = base64.b64encode(b"client-id:client-secret").decode()
        assert provider.requests[0].headers["Authorization"] == f"Basic {expected}"
        assert credential_store.rows[cred.id].name == "spotify - ada"

    @pytest.mark.asyncio
    async def test_twitch_names_credential_after_login(self, credential_store):
        cred = credential_store.add(service_provider="twitch")
        provider = _FakeProvider(
            {
                ("POST", TWITCH_TOKEN): _json(
                    200,
                    {
                        "access_token": "tw-at",
                        "refresh_token": "tw-rt",
                        "expires_in": 14000,
                        "scope": ["user:read:email", "chat:read"],
                    },
                ),
                ("GET", TWITCH_USERS): _json(200, {"data": [{"login": "ada_streams"}]}),
            }
        )
        coordinator = _coordinator(credential_store, provider)
        auth = await coordinator.get_auth_url("user-1", cred.id)

        result = await coordinator.handle_callback("code", auth.state)

        assert result.success is True
        stored = credential_store.rows[cred.id]
        assert stored.name == "twitch - ada_streams"
        assert stored.scope == "user:read:email chat:read"
        assert provider.requests[1].headers["Client-Id"] == "client-id"


# ── refresh_token ──────────────────────────────────────────────────────────────


class TestRefreshToken:
    @pytest.mark.asyncio
    async def test_missing_refresh_token_makes_no_http_call(self, credential_store):
        cred = credential_store.add(access_token="at", refresh_token=None, is_valid=True)
        provider = _FakeProvider(dict(_GOOGLE_OK))
        coordinator = _coordinator(credential_store, provider)

        with pytest.raises(ConfigurationError):
            await coordinator.refresh_token(cred.id)
        assert provider.requests == []
        assert credential_store.updates == []

    @pytest.mark.asyncio
    async def test_non_oauth2_credential(self, credential_store):
        cred = credential_store.add(credential_type="api_key", refresh_token="rt")
        provider = _FakeProvider()
        coordinator = _coordinator(credential_store, provider)

        with pytest.raises(ConfigurationError):
            await coordinator.refresh_token(cred.id)
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_google_refresh_keeps_refresh_token_when_not_rotated(self, credential_store):
        cred = credential_store.add(
            access_token="old",
            refresh_token="rt-keep",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=5),
        )
        provider = _FakeProvider(
            {("POST", GOOGLE_TOKEN): _json(200, {"access_token": "new", "expires_in": 3600})}
        )
        coordinator = _coordinator(credential_store, provider)

        updated = await coordinator.refresh_token(cred.id)

        assert updated.access_token == "new"
        assert updated.refresh_token == "rt-keep"
        assert updated.is_valid is True
        assert updated.expires_at > datetime.now(timezone.utc)
        assert provider.form(0)["grant_type"] == "refresh_token"
        assert provider.form(0)["refresh_token"] == "rt-keep"

    @pytest.mark.asyncio
    async def test_twitch_refresh_rotates_refresh_token(self, credential_store):
        cred = credential_store.add(service_provider="twitch", access_token="old", refresh_token="rt-1")
        provider = _FakeProvider(
            {
                ("POST", TWITCH_TOKEN): _json(
                    200, {"access_token": "new", "refresh_token": "rt-2", "expires_in": 100}
                )
            }
        )
        coordinator = _coordinator(credential_store, provider)

        updated = await coordinator.refresh_token(cred.id)

        assert updated.refresh_token == "rt-2"
        form = provider.form(0)
        assert form["client_id"] == "client-id"
        assert form["client_secret"] == "client-secret"

    @pytest.mark.asyncio
    async def test_failure_invalidates_and_is_not_retried(self, credential_store):
        cred = credential_store.add(access_token="old", refresh_token="rt", is_valid=True)
        provider = _FakeProvider({("POST", GOOGLE_TOKEN): _json(400, {"error": "invalid_grant"})})
        coordinator = _coordinator(credential_store, provider)

        with pytest.raises(ReauthenticationRequiredError):
            await coordinator.refresh_token(cred.id)

        assert len(provider.requests) == 1
        assert credential_store.rows[cred.id].is_valid is False
        assert credential_store.rows[cred.id].access_token == "old"


# ── credential management ──────────────────────────────────────────────────────


class TestCredentialManagement:
    @pytest.mark.asyncio
    async def test_create_starts_unauthenticated(self, credential_store):
        coordinator = _coordinator(credential_store, _FakeProvider())

        view = await coordinator.create_credential("user-1", "Work calendar", "google-calendar", "cid", "secret")

        assert view.is_valid is False
        assert view.credential_type == "oauth2"
        assert "client_secret" not in view.model_dump()

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_provider(self, credential_store):
        coordinator = _coordinator(credential_store, _FakeProvider())
        with pytest.raises(BadRequestError):
            await coordinator.create_credential("user-1", "x", "myspace", "cid", "secret")

    @pytest.mark.asyncio
    async def test_delete_unregisters_bound_workflows(self, credential_store):
        cred = credential_store.add()
        other = credential_store.add()
        arena = RegistrationArena()
        arena.register(NEW_EVENT, 1, {}, cred.id)
        arena.register(EVENT_CANCELLED, 2, {}, cred.id)
        arena.register(NEW_EVENT, 3, {}, other.id)
        coordinator = _coordinator(credential_store, _FakeProvider(), registrations=arena)

        await coordinator.delete_credential("user-1", cred.id)

        assert cred.id not in credential_store.rows
        assert not arena.registry(NEW_EVENT).has(1)
        assert not arena.registry(EVENT_CANCELLED).has(2)
        assert arena.registry(NEW_EVENT).has(3)

    @pytest.mark.asyncio
    async def test_delete_other_users_credential(self, credential_store):
        cred = credential_store.add(user_id="user-2")
        coordinator = _coordinator(credential_store, _FakeProvider())
        with pytest.raises(CredentialNotFoundError):
            await coordinator.delete_credential("user-1", cred.id)
        assert cred.id in credential_store.rows
