from omnichat.services.channel_hub import ChannelHub
from omnichat.services.conversation_service import ConversationService
from omnichat.services.delay_resolver import DelayResolver
from omnichat.services.message_buffer import FlushBatch, MessageBuffer
from omnichat.services.result import Result
from omnichat.services.store import ConversationStore

__all__ = [
    "ChannelHub",
    "ConversationService",
    "ConversationStore",
    "DelayResolver",
    "FlushBatch",
    "MessageBuffer",
    "Result",
]
