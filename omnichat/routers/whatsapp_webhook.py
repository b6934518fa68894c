from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from omnichat.config import settings
from omnichat.logging_config import get_logger
from omnichat.routers.admin import require_admin_token
from omnichat.routers.deps import get_hub, tenant_from_path
from omnichat.schemas.whatsapp import WhatsAppBridgeEvent, WhatsAppStatusResponse
from omnichat.services.channel_hub import ChannelHub

logger = get_logger("whatsapp_webhook")

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])


def _require_bridge_token(authorization: Optional[str]) -> None:
    expected = settings.whatsapp_bridge_token
    if not expected:
        return
    if authorization != f"Bearer {expected}":
        raise HTTPException(status_code=401, detail="Invalid bridge token")


@router.post("/{tenant_key}")
async def handle_bridge_event(
    tenant_key: str,
    event: WhatsAppBridgeEvent,
    hub: ChannelHub = Depends(get_hub),
    authorization: Optional[str] = Header(default=None),
):
    _require_bridge_token(authorization)
    tenant_id = tenant_from_path(tenant_key)

    transport = hub.whatsapp_channel(tenant_id)
    handled = await transport.handle_bridge_event(event)
    return {"success": True, "handled": handled}


@router.get("/{tenant_key}/status", response_model=WhatsAppStatusResponse)
async def get_status(tenant_key: str, hub: ChannelHub = Depends(get_hub)):
    tenant_id = tenant_from_path(tenant_key)
    transport = hub.get_transport(tenant_id, "whatsapp")
    if transport is None:
        return WhatsAppStatusResponse(status="disconnected")

    state = transport.state
    return WhatsAppStatusResponse(
        status=state.status.value,
        qr=state.qr if state.status.value == "qr" else None,
        phone=state.phone,
        name=state.name,
    )


@router.post("/{tenant_key}/start", response_model=WhatsAppStatusResponse)
async def start_session(
    tenant_key: str,
    hub: ChannelHub = Depends(get_hub),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    require_admin_token(x_admin_token)
    tenant_id = tenant_from_path(tenant_key)
    transport = await hub.start_whatsapp(tenant_id)
    return WhatsAppStatusResponse(status=transport.state.status.value)
