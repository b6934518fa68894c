from omnichat.schemas.inbound import Fragment, InboundEvent, InboundKind, Profile, Reply, ReplyButton, ReplyPhoto

__all__ = ["Fragment", "InboundEvent", "InboundKind", "Profile", "Reply", "ReplyButton", "ReplyPhoto"]
