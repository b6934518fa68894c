from omnichat.models.asset import Asset
from omnichat.models.chat_session import ChatSession
from omnichat.models.company import Company
from omnichat.models.contact import Contact
from omnichat.models.message import Message
from omnichat.models.setting import Setting
from omnichat.models.summary import Summary
from omnichat.models.usage_log import UsageLog

__all__ = [
    "Company",
    "Contact",
    "ChatSession",
    "Message",
    "Summary",
    "Setting",
    "Asset",
    "UsageLog",
]
