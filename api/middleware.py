"""
Global middleware and error mapping.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from oauth.errors import (
    AuthorizationExpiredError,
    BadRequestError,
    ConfigurationError,
    CredentialError,
    CredentialNotFoundError,
    MissingAccessTokenError,
    ReauthenticationRequiredError,
)

logger = logging.getLogger(__name__)

# Most specific first.
_STATUS_BY_ERROR = (
    (CredentialNotFoundError, status.HTTP_404_NOT_FOUND),
    (AuthorizationExpiredError, status.HTTP_401_UNAUTHORIZED),
    (ReauthenticationRequiredError, status.HTTP_401_UNAUTHORIZED),
    (MissingAccessTokenError, status.HTTP_401_UNAUTHORIZED),
    (ConfigurationError, status.HTTP_400_BAD_REQUEST),
    (BadRequestError, status.HTTP_400_BAD_REQUEST),
)


def status_for(exc: CredentialError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_middleware(app: FastAPI) -> None:
    """Attach any app-level middleware."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s — %.3fs", request.method, request.url.path, elapsed)
        return response

    @app.exception_handler(CredentialError)
    async def credential_error_handler(request: Request, exc: CredentialError):
        code = status_for(exc)
        logger.info("%s %s → %d: %s", request.method, request.url.path, code, exc)
        return JSONResponse(status_code=code, content={"success": False, "error": str(exc)})
