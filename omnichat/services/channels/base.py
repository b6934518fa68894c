from typing import Awaitable, Callable, Optional, Protocol
from uuid import UUID

from omnichat.schemas.inbound import InboundEvent, ReplyButton, ReplyPhoto
from omnichat.services.result import Result

EventHandler = Callable[[InboundEvent, "ChannelTransport"], Awaitable[None]]


class ChannelTransport(Protocol):
    """What the hub needs from a messaging platform integration."""

    channel: str
    tenant_id: Optional[UUID]

    async def send(
        self,
        external_id: str,
        text: Optional[str],
        photos: list[ReplyPhoto],
        buttons: list[ReplyButton],
    ) -> Result[None]: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


def parse_tenant_key(tenant_key: str) -> Optional[UUID]:
    """``global`` is the platform-level scope; anything else must be a company id."""
    if tenant_key == "global":
        return None
    return UUID(tenant_key)
