import asyncio
import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional
from uuid import UUID

from omnichat.config import settings
from omnichat.errors import LLMProviderError
from omnichat.logging_config import get_logger
from omnichat.services.delay_resolver import tenant_cache_key
from omnichat.services.llm.base import LLMProvider
from omnichat.services.llm.openai_provider import OpenAIProvider

logger = get_logger("llm.service")

API_KEY_SETTING = "OPENAI_API_KEY"
MSG_AI_CONFIG_ERROR = "Lo siento, hubo un error de configuración de IA."
SUMMARY_INSTRUCTION = "Resume esta conversación en 5 líneas."

ProviderFactory = Callable[[str], LLMProvider]


def _default_provider_factory(api_key: str) -> LLMProvider:
    return OpenAIProvider(
        api_key=api_key,
        default_model=settings.openai_chat_model,
        transcription_model=settings.openai_transcription_model,
    )


class LLMService:
    """Tenant-aware facade over an LLM provider.

    The API key comes from the tenant's OPENAI_API_KEY setting, else the
    platform default. Providers are cached per tenant and rebuilt when the key
    changes.
    """

    def __init__(
        self,
        store,
        *,
        default_api_key: Optional[str] = None,
        provider_factory: ProviderFactory = _default_provider_factory,
        temperature: Optional[float] = None,
    ):
        self.store = store
        self.default_api_key = default_api_key if default_api_key is not None else settings.openai_api_key
        self.provider_factory = provider_factory
        self.temperature = temperature if temperature is not None else settings.llm_temperature
        self._providers: dict[str, tuple[str, LLMProvider]] = {}

    async def get_provider(self, tenant_id: Optional[UUID]) -> LLMProvider:
        api_key = await self.store.get_setting(tenant_id, API_KEY_SETTING) or self.default_api_key
        if not api_key:
            raise LLMProviderError("No OpenAI key configured for this company")

        key = tenant_cache_key(tenant_id)
        cached = self._providers.get(key)
        if cached and cached[0] == api_key:
            return cached[1]

        provider = self.provider_factory(api_key)
        self._providers[key] = (api_key, provider)
        return provider

    async def chat_completion(self, tenant_id: Optional[UUID], messages: list[dict]) -> str:
        """Chat completion that never raises: errors become MSG_AI_CONFIG_ERROR."""
        try:
            provider = await self.get_provider(tenant_id)
            response = await provider.generate(messages, temperature=self.temperature)
        except Exception as e:
            logger.error(
                "Chat completion failed",
                extra={"context": {"tenant": tenant_cache_key(tenant_id), "error": str(e)}},
            )
            return MSG_AI_CONFIG_ERROR

        if response.usage:
            await self._record_usage(tenant_id, response.model, response.usage, "chat")
        return response.content

    async def summarize(self, tenant_id: Optional[UUID], transcript: str) -> Optional[str]:
        try:
            provider = await self.get_provider(tenant_id)
            response = await provider.generate(
                [
                    {"role": "system", "content": SUMMARY_INSTRUCTION},
                    {"role": "user", "content": transcript},
                ],
                temperature=self.temperature,
            )
        except Exception as e:
            logger.warning(
                "Session summarization failed",
                extra={"context": {"tenant": tenant_cache_key(tenant_id), "error": str(e)}},
            )
            return None

        if response.usage:
            await self._record_usage(tenant_id, response.model, response.usage, "summary")
        return response.content or None

    async def transcribe_audio(self, tenant_id: Optional[UUID], audio_path: str) -> Optional[str]:
        path = Path(audio_path)
        try:
            audio_bytes = await asyncio.to_thread(path.read_bytes)
            provider = await self.get_provider(tenant_id)
            transcript = await provider.transcribe_audio(
                audio_bytes=audio_bytes,
                filename=path.name,
                mime_type=mimetypes.guess_type(path.name)[0],
            )
        except Exception as e:
            logger.warning(
                "Audio transcription failed",
                extra={"context": {"tenant": tenant_cache_key(tenant_id), "error": str(e)}},
            )
            return None
        return transcript or None

    async def _record_usage(self, tenant_id: Optional[UUID], model: str, usage: dict, request_type: str) -> None:
        try:
            await self.store.record_usage(
                tenant_id,
                model,
                int(usage.get("prompt_tokens") or 0),
                int(usage.get("completion_tokens") or 0),
                request_type,
                datetime.now(timezone.utc),
            )
        except Exception as e:
            logger.error(f"Failed to log usage: {e}")
