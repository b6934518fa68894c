"""Admin hooks used by the dashboard backend."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from omnichat.config import settings
from omnichat.logging_config import get_logger
from omnichat.routers.deps import get_hub, tenant_from_path
from omnichat.schemas.inbound import ReplyButton, ReplyPhoto
from omnichat.services.channel_hub import ChannelHub

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])


# === SCHEMAS ===


class ManualMessageRequest(BaseModel):
    tenant_key: str = "global"
    channel: str
    external_id: str
    text: Optional[str] = None
    photos: list[ReplyPhoto] = Field(default_factory=list)
    buttons: list[ReplyButton] = Field(default_factory=list)


class AdminActionResponse(BaseModel):
    success: bool
    message: Optional[str] = None


def require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


# === ENDPOINTS ===


@router.post("/settings/{tenant_key}/invalidate", response_model=AdminActionResponse)
async def invalidate_settings(
    tenant_key: str,
    hub: ChannelHub = Depends(get_hub),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Apply changed settings now: buffer delay cache and the Telegram bot token."""
    require_admin_token(x_admin_token)
    tenant_id = tenant_from_path(tenant_key)
    await hub.invalidate_tenant(tenant_id)
    logger.info("Tenant settings invalidated", extra={"context": {"tenant": tenant_key}})
    return AdminActionResponse(success=True)


@router.post("/messages", response_model=AdminActionResponse)
async def send_manual_message(
    payload: ManualMessageRequest,
    hub: ChannelHub = Depends(get_hub),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    tenant_id = tenant_from_path(payload.tenant_key)
    if not payload.text and not payload.photos and not payload.buttons:
        raise HTTPException(status_code=400, detail="Nothing to send")

    result = await hub.send_manual(
        tenant_id,
        payload.channel,
        payload.external_id,
        payload.text,
        payload.photos,
        payload.buttons,
    )
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error)
    return AdminActionResponse(success=True)
