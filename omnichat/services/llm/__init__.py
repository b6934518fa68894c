from omnichat.services.llm.base import LLMProvider, LLMResponse
from omnichat.services.llm.openai_provider import OpenAIProvider
from omnichat.services.llm.service import LLMService

__all__ = ["LLMProvider", "LLMResponse", "LLMService", "OpenAIProvider"]
