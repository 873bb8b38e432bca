"""
Errors raised by polling sources.
"""

from __future__ import annotations

from typing import Optional

from googleapiclient.errors import HttpError


class CursorInvalidError(Exception):
    """The provider no longer accepts the stored cursor; a full sync is required."""


class ProviderRequestError(Exception):
    """Transient or unexpected provider failure; the credential is retried next tick."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def http_status(exc: HttpError) -> Optional[int]:
    status = getattr(exc.resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None
