from omnichat.services.channels.base import ChannelTransport, EventHandler, parse_tenant_key
from omnichat.services.channels.meta import MetaChannel
from omnichat.services.channels.telegram import TelegramChannel, TelegramService
from omnichat.services.channels.whatsapp import ConnectionState, ConnectionStatus, WhatsAppBridgeClient, WhatsAppChannel

__all__ = [
    "ChannelTransport",
    "ConnectionState",
    "ConnectionStatus",
    "EventHandler",
    "MetaChannel",
    "TelegramChannel",
    "TelegramService",
    "WhatsAppBridgeClient",
    "WhatsAppChannel",
    "parse_tenant_key",
]
