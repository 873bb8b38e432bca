"""
REST API routes — OAuth2 credential flow, credential management and
trigger registrations.

Route prefix: /api
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, RedirectResponse

from api.dependencies import get_coordinator, get_current_user_id, get_registrations
from config.settings import config
from oauth.coordinator import OAuth2Coordinator
from triggers.registry import RegistrationArena
from utils.schemas import CreateCredentialRequest, CredentialView, RegisterTriggerRequest

logger = logging.getLogger(__name__)

router = APIRouter()


# ── OAuth2 flow ────────────────────────────────────────────────────────


@router.get("/oauth2-credential/auth", tags=["oauth2"])
async def initiate_auth(
    credential_id: int = Query(..., alias="credentialId"),
    redirect_url: Optional[str] = Query(None, alias="redirectUrl"),
    user_id: str = Depends(get_current_user_id),
    coordinator: OAuth2Coordinator = Depends(get_coordinator),
) -> RedirectResponse:
    """Redirect the user to the provider's consent screen."""
    result = await coordinator.get_auth_url(user_id, credential_id, redirect_url)
    return RedirectResponse(result.auth_url, status_code=status.HTTP_302_FOUND)


@router.get("/oauth2-credential/callback", tags=["oauth2"])
async def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    coordinator: OAuth2Coordinator = Depends(get_coordinator),
):
    """
    Provider redirects here after consent.  Public: the state token is
    the only proof of who started the flow.
    """
    if not code or not state:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Missing code or state parameter"},
        )

    result = await coordinator.handle_callback(code, state)

    target = result.redirect_url or f"{config.frontend_url.rstrip('/')}/credentials"
    if result.success:
        params = {"success": "true", "credentialId": result.credential_id}
    else:
        params = {"success": "false", "error": result.error or "Unknown error"}
    separator = "&" if "?" in target else "?"
    return RedirectResponse(
        f"{target}{separator}{urlencode(params)}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/providers", tags=["oauth2"])
async def list_providers(
    coordinator: OAuth2Coordinator = Depends(get_coordinator),
) -> List[Dict[str, str]]:
    return coordinator.list_providers()


# ── Credentials ────────────────────────────────────────────────────────


@router.get("/credentials", tags=["credentials"])
async def list_credentials(
    user_id: str = Depends(get_current_user_id),
    coordinator: OAuth2Coordinator = Depends(get_coordinator),
) -> List[CredentialView]:
    return await coordinator.list_credentials(user_id)


@router.post("/credentials", status_code=status.HTTP_201_CREATED, tags=["credentials"])
async def create_credential(
    body: CreateCredentialRequest,
    user_id: str = Depends(get_current_user_id),
    coordinator: OAuth2Coordinator = Depends(get_coordinator),
) -> CredentialView:
    return await coordinator.create_credential(
        user_id,
        name=body.name,
        provider=body.provider,
        client_id=body.client_id,
        client_secret=body.client_secret,
    )


@router.get("/credentials/{credential_id}", tags=["credentials"])
async def get_credential(
    credential_id: int,
    user_id: str = Depends(get_current_user_id),
    coordinator: OAuth2Coordinator = Depends(get_coordinator),
) -> CredentialView:
    return await coordinator.get_credential(user_id, credential_id)


@router.delete("/credentials/{credential_id}", tags=["credentials"])
async def delete_credential(
    credential_id: int,
    user_id: str = Depends(get_current_user_id),
    coordinator: OAuth2Coordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    await coordinator.delete_credential(user_id, credential_id)
    return {"success": True, "message": "Credentials deleted successfully"}


@router.post("/credentials/{credential_id}/refresh", tags=["credentials"])
async def refresh_credential(
    credential_id: int,
    user_id: str = Depends(get_current_user_id),
    coordinator: OAuth2Coordinator = Depends(get_coordinator),
) -> CredentialView:
    # Ownership check before touching the provider.
    await coordinator.get_credential(user_id, credential_id)
    refreshed = await coordinator.refresh_token(credential_id)
    return refreshed.public_view()


# ── Trigger registrations (called by the workflow activation service) ──


@router.put("/triggers/{kind}/registrations/{workflow_id}", tags=["triggers"])
async def register_trigger(
    kind: str,
    workflow_id: int,
    body: RegisterTriggerRequest,
    registrations: RegistrationArena = Depends(get_registrations),
) -> Dict[str, Any]:
    try:
        registrations.register(kind, workflow_id, body.config, body.credentials_id)
    except KeyError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc.args[0]))
    return {"kind": kind, "workflowId": workflow_id, "registered": True}


@router.delete("/triggers/{kind}/registrations/{workflow_id}", tags=["triggers"])
async def unregister_trigger(
    kind: str,
    workflow_id: int,
    registrations: RegistrationArena = Depends(get_registrations),
) -> Dict[str, Any]:
    try:
        removed = registrations.unregister(kind, workflow_id)
    except KeyError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc.args[0]))
    return {"kind": kind, "workflowId": workflow_id, "registered": False, "removed": removed}
