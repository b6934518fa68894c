from typing import Optional
from uuid import UUID

from fastapi import HTTPException, Request

from omnichat.services.channel_hub import ChannelHub
from omnichat.services.channels.base import parse_tenant_key


def get_hub(request: Request) -> ChannelHub:
    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        raise HTTPException(status_code=503, detail="Channel hub not started")
    return hub


def tenant_from_path(tenant_key: str) -> Optional[UUID]:
    try:
        return parse_tenant_key(tenant_key)
    except ValueError:
        raise HTTPException(status_code=404, detail="Unknown tenant")
