"""API routes for AI-assisted voice and text dispatch commands."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from taxi_dispatch.core.auth import TenantContext, require_roles
from taxi_dispatch.core.errors import DispatchError, http_status_for
from taxi_dispatch.core.logging import logger
from taxi_dispatch.models.voice import VoiceCommandRequest
from taxi_dispatch.services.dispatch_engine import dispatch_engine
from taxi_dispatch.services.voice_intake import VoiceIntake, voice_intake

router = APIRouter(prefix="/voice", tags=["voice"])


def get_voice_intake() -> VoiceIntake:
    """Inference provider for this request; tests override it with a deterministic fake."""
    return voice_intake


@router.post("/parse")
async def parse_voice_input(
    request: VoiceCommandRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "owner", "admin")),
    intake: VoiceIntake = Depends(get_voice_intake),
):
    try:
        output = await dispatch_engine.parse_voice(context.tenant_id, request, intake)
    except DispatchError as exc:
        logger.error("Voice parse failed", error=exc.message, error_type=type(exc).__name__)
        raise HTTPException(status_code=http_status_for(exc), detail=exc.to_detail())
    return output.model_dump(mode="json", by_alias=True, exclude_none=True)


@router.post("/commands")
async def run_voice_command(
    request: VoiceCommandRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "owner", "admin")),
    intake: VoiceIntake = Depends(get_voice_intake),
):
    try:
        result = await dispatch_engine.process_voice_command(
            context.tenant_id,
            request,
            actor=context.actor,
            intake=intake,
        )
    except DispatchError as exc:
        logger.warning(
            "Voice command not applied",
            error=exc.message,
            error_type=type(exc).__name__,
            reasoning=exc.reasoning,
        )
        raise HTTPException(status_code=http_status_for(exc), detail=exc.to_detail())
    return result.model_dump(mode="json", by_alias=True, exclude_none=True)
