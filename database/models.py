"""
SQLAlchemy ORM models for workflows and service credentials.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Workflow(Base):
    __tablename__ = "workflows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, nullable=False)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class Credential(Base):
    __tablename__ = "credentials"
    __table_args__ = (Index("ix_credentials_user_provider", "user_id", "service_provider"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, nullable=False)
    service_provider = Column(String(64), nullable=False)
    credential_type = Column(String(32), nullable=False, default="oauth2")
    name = Column(String(255), nullable=False)
    client_id = Column(Text)
    client_secret = Column(Text)        # encrypted at rest
    access_token = Column(Text)         # encrypted at rest
    refresh_token = Column(Text)        # encrypted at rest
    expires_at = Column(DateTime(timezone=True))
    scope = Column(Text)
    is_valid = Column(Boolean, nullable=False, default=False)
    # Opaque provider sync token for delta queries.
    cursor = Column(Text)
    # Gmail history id; kept apart so one Google credential can drive both pollers.
    history_cursor = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
