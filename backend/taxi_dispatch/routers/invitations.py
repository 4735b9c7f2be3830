"""API route for inviting drivers and staff by email."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from taxi_dispatch.core.auth import SUPPORTED_ROLES, TenantContext, require_roles
from taxi_dispatch.core.errors import DispatchError, http_status_for
from taxi_dispatch.core.logging import logger
from taxi_dispatch.models.dispatch import InvitationRequest
from taxi_dispatch.services.dispatch_engine import dispatch_engine

router = APIRouter(prefix="/invitations", tags=["invitations"])


@router.post("")
async def invite_user(
    request: InvitationRequest,
    context: TenantContext = Depends(require_roles("owner", "admin")),
):
    if request.role not in SUPPORTED_ROLES:
        raise HTTPException(status_code=400, detail=f"Unsupported role '{request.role}'")
    try:
        user = await dispatch_engine.invite_user(context.tenant_id, request, actor=context.actor)
    except DispatchError as exc:
        logger.error("Invitation failed", email=request.email, error=exc.message)
        raise HTTPException(status_code=http_status_for(exc), detail=exc.to_detail())
    return {"status": "invited", "user": user}
