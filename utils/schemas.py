"""
Pydantic schemas for credentials, OAuth flows and polling triggers.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════════
# Credentials
# ═══════════════════════════════════════════════════════════════════════════════


class CredentialType(str, Enum):
    OAUTH2 = "oauth2"
    API_KEY = "api_key"
    BASIC_AUTH = "basic_auth"
    BEARER_TOKEN = "bearer_token"
    CUSTOM = "custom"


class CredentialView(BaseModel):
    """What leaves the subsystem — never carries secret material."""

    id: int
    name: str
    service_provider: str
    credential_type: str
    is_valid: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CredentialRecord(BaseModel):
    """Decrypted credential row as seen inside the subsystem."""

    id: int
    user_id: str
    service_provider: str
    credential_type: str = CredentialType.OAUTH2.value
    name: str = ""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    is_valid: bool = False
    cursor: Optional[str] = None
    history_cursor: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def has_client_config(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def has_refresh_credentials(self) -> bool:
        return bool(self.refresh_token and self.client_id and self.client_secret)

    def public_view(self) -> CredentialView:
        return CredentialView(
            id=self.id,
            name=self.name,
            service_provider=self.service_provider,
            credential_type=self.credential_type,
            is_valid=self.is_valid,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class CreateCredentialRequest(BaseModel):
    name: str
    provider: str
    client_id: str
    client_secret: str


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth2 flow
# ═══════════════════════════════════════════════════════════════════════════════


class TokenSet(BaseModel):
    """Normalised token-endpoint response."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None


class OAuthState(BaseModel):
    user_id: str
    credential_id: int
    redirect_url: Optional[str] = None
    timestamp: float


class AuthUrlResult(BaseModel):
    auth_url: str
    state: str


class CallbackResult(BaseModel):
    success: bool
    credential_id: Optional[int] = None
    error: Optional[str] = None
    redirect_url: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Polling triggers
# ═══════════════════════════════════════════════════════════════════════════════


class TriggerRegistration(BaseModel):
    credentials_id: Optional[int] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class RegisterTriggerRequest(BaseModel):
    credentials_id: Optional[int] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class WorkflowRegistration(BaseModel):
    """A registered workflow resolved to its owner, grouped under one credential."""

    workflow_id: int
    user_id: str
    config: Dict[str, Any] = Field(default_factory=dict)


class EventPage(BaseModel):
    items: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class PollOutcome(str, Enum):
    SUCCESS = "success"
    BOOTSTRAPPED = "bootstrapped"
    RESYNCED = "resynced"
    SKIPPED = "skipped"
    FAILED = "failed"


class CredentialPollResult(BaseModel):
    credential_id: int
    outcome: PollOutcome
    dispatched: int = 0
    error: Optional[str] = None


class PollSummary(BaseModel):
    results: List[CredentialPollResult] = Field(default_factory=list)

    def count(self, outcome: PollOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)
