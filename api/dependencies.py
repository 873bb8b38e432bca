"""
FastAPI dependencies (shared across routes).

Services are built once in ``main.create_app`` and stored on
``app.state``; routes receive them through these functions so tests can
mount the router on an app holding fakes.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import b64decode, b64encode
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from config.settings import config
from oauth.coordinator import OAuth2Coordinator
from triggers.registry import RegistrationArena


def _sign(raw: bytes) -> str:
    return hmac.new(config.jwt_secret.encode(), raw, hashlib.sha256).hexdigest()


def create_access_token(user_id: str, ttl_seconds: Optional[int] = None) -> str:
    """Issue a bearer token for ``user_id`` (used by the user service and tests)."""
    ttl = config.jwt_expiry_seconds if ttl_seconds is None else ttl_seconds
    raw = json.dumps({"user_id": user_id, "exp": int(time.time()) + ttl}).encode()
    return b64encode(raw).decode() + "." + _sign(raw)


def verify_access_token(token: str) -> str:
    """Return the ``user_id`` of a valid token; raise ``ValueError`` otherwise."""
    encoded, _, signature = token.partition(".")
    if not signature:
        raise ValueError("bad format")
    raw = b64decode(encoded)
    if not hmac.compare_digest(signature, _sign(raw)):
        raise ValueError("bad signature")
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("bad payload")
    exp = payload.get("exp", 0)
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        raise ValueError("bad expiry")
    if exp < time.time():
        raise ValueError("token expired")
    user_id = payload.get("user_id")
    if not isinstance(user_id, str) or not user_id:
        raise ValueError("missing user_id")
    return user_id


async def get_current_user_id(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> str:
    """
    Extract and verify the Bearer token from the Authorization header.
    Returns the authenticated user_id.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
        )
    try:
        return verify_access_token(authorization[7:])
    except (ValueError, TypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )


def get_coordinator(request: Request) -> OAuth2Coordinator:
    return request.app.state.coordinator


def get_registrations(request: Request) -> RegistrationArena:
    return request.app.state.registrations
