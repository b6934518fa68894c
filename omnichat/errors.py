class OmnichatError(Exception):
    """Base class for errors raised by the conversation core."""


class LLMProviderError(OmnichatError):
    """LLM endpoint answered with a non-200 status or could not be reached."""


class ChannelSendError(OmnichatError):
    """A transport rejected an outbound call."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class WebhookVerificationError(OmnichatError):
    """Webhook verify token or payload signature did not match."""
