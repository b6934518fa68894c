"""Process-wide coordinator between transports and the conversation core.

Created once at startup, torn down at shutdown. Owns the debounce buffer, the
delay cache, the dedup guard and the per-tenant transport registry, and hands
them to the pieces that need them.
"""

import asyncio
from functools import partial
from pathlib import Path
from typing import Callable, Optional
from uuid import UUID

from omnichat.config import settings
from omnichat.logging_config import get_logger
from omnichat.schemas.inbound import InboundEvent, InboundKind, Reply, ReplyButton, ReplyPhoto
from omnichat.services.channels.base import ChannelTransport
from omnichat.services.channels.meta import MetaChannel
from omnichat.services.channels.telegram import TelegramChannel
from omnichat.services.channels.whatsapp import WhatsAppChannel
from omnichat.services.conversation_service import ConversationService
from omnichat.services.delay_resolver import DelayResolver, tenant_cache_key
from omnichat.services.media_service import MediaService, download_to_file
from omnichat.services.message_buffer import FlushBatch, MessageBuffer
from omnichat.services.result import Result

logger = get_logger("channel_hub")

TELEGRAM_TOKEN_SETTING = "TELEGRAM_BOT_TOKEN"
MSG_AUDIO_NOT_UNDERSTOOD = "👂 No pude entender el audio."
MSG_AUDIO_ERROR = "Error procesando tu audio."


class ChannelHub:
    def __init__(
        self,
        store,
        llm,
        *,
        conversation: Optional[ConversationService] = None,
        delay_resolver: Optional[DelayResolver] = None,
        buffer: Optional[MessageBuffer] = None,
        media_service: Optional[MediaService] = None,
        dedup=None,
        telegram_factory: Callable[..., ChannelTransport] = TelegramChannel,
        meta_factory: Callable[..., ChannelTransport] = MetaChannel,
        whatsapp_factory: Callable[..., ChannelTransport] = WhatsAppChannel,
        polling_enabled: Optional[bool] = None,
    ):
        self.store = store
        self.llm = llm
        self.media_service = media_service or MediaService()
        self.conversation = conversation or ConversationService(store, llm, media_service=self.media_service)
        self.delay_resolver = delay_resolver or DelayResolver(store)
        self.buffer = buffer or MessageBuffer(self.delay_resolver)
        self.dedup = dedup
        self.telegram_factory = telegram_factory
        self.meta_factory = meta_factory
        self.whatsapp_factory = whatsapp_factory
        self.polling_enabled = settings.telegram_polling_enabled if polling_enabled is None else polling_enabled
        self._transports: dict[tuple[str, str], ChannelTransport] = {}
        self._tasks: set[asyncio.Task] = set()

    # --- registry ---

    def register(self, transport: ChannelTransport) -> None:
        self._transports[(tenant_cache_key(transport.tenant_id), transport.channel)] = transport

    def get_transport(self, tenant_id: Optional[UUID], channel: str) -> Optional[ChannelTransport]:
        return self._transports.get((tenant_cache_key(tenant_id), channel))

    async def unregister(self, tenant_id: Optional[UUID], channel: str) -> None:
        transport = self._transports.pop((tenant_cache_key(tenant_id), channel), None)
        if transport is not None:
            await transport.stop()

    @property
    def transports(self) -> list[ChannelTransport]:
        return list(self._transports.values())

    # --- lifecycle ---

    async def start(self) -> None:
        """Start the global Telegram bot and one bot per active company that has a token."""
        await self.start_telegram(None)
        for company_id in await self.store.list_active_company_ids():
            await self.start_telegram(company_id)

    async def start_telegram(self, tenant_id: Optional[UUID]) -> Optional[ChannelTransport]:
        await self.unregister(tenant_id, "telegram")
        context = {"tenant": tenant_cache_key(tenant_id), "channel": "telegram"}
        try:
            token = await self.store.get_setting(tenant_id, TELEGRAM_TOKEN_SETTING)
            if not token:
                return None
            transport = self.telegram_factory(tenant_id, token, self.handle_event)
            self.register(transport)
            if self.polling_enabled:
                await transport.start()
            return transport
        except Exception as e:
            logger.error("Failed to start Telegram bot", extra={"context": {**context, "error": str(e)}})
            return None

    async def start_whatsapp(self, tenant_id: Optional[UUID]) -> ChannelTransport:
        transport = self.whatsapp_channel(tenant_id)
        await transport.start()
        return transport

    def whatsapp_channel(self, tenant_id: Optional[UUID]) -> ChannelTransport:
        transport = self.get_transport(tenant_id, "whatsapp")
        if transport is None:
            transport = self.whatsapp_factory(tenant_id, self.handle_event)
            self.register(transport)
        return transport

    def meta_channel(self, tenant_id: Optional[UUID], platform: str) -> ChannelTransport:
        transport = self.get_transport(tenant_id, platform)
        if transport is None:
            transport = self.meta_factory(tenant_id, platform, self.store, self.handle_event)
            self.register(transport)
        return transport

    async def invalidate_tenant(self, tenant_id: Optional[UUID]) -> None:
        """Drop cached settings and restart the tenant's Telegram bot with its current token."""
        self.delay_resolver.invalidate(tenant_id)
        await self.start_telegram(tenant_id)

    async def shutdown(self) -> None:
        dropped = self.buffer.shutdown()
        await self.buffer.drain()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.conversation.drain()
        for key in list(self._transports):
            transport = self._transports.pop(key)
            try:
                await transport.stop()
            except Exception as e:
                logger.warning(f"Transport stop failed for {key}: {e}")
        if self.dedup is not None:
            await self.dedup.close()
        logger.info("Channel hub stopped", extra={"context": {"dropped_buffers": dropped}})

    @property
    def pending_count(self) -> int:
        return self.buffer.pending_count

    # --- inbound ---

    async def handle_event(self, event: InboundEvent, transport: ChannelTransport) -> None:
        tenant_id = transport.tenant_id
        context = {"tenant": tenant_cache_key(tenant_id), "channel": event.channel, "external_id": event.external_id}

        if self.dedup is not None:
            scope = f"{tenant_cache_key(tenant_id)}:{event.channel}"
            if await self.dedup.is_duplicate(scope, event.message_id):
                return

        if event.kind == InboundKind.UNSUPPORTED:
            logger.info("Unsupported message kind dropped", extra={"context": context})
            return

        if event.kind == InboundKind.AUDIO:
            self._spawn(self._handle_audio(event, transport))
            return

        await self.buffer.submit(
            tenant_id,
            event.channel,
            event.external_id,
            event.to_fragment(),
            partial(self._on_flush, transport),
        )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _on_flush(self, transport: ChannelTransport, batch: FlushBatch) -> None:
        reply = await self.conversation.process_message(
            batch.tenant_id,
            batch.channel,
            batch.external_id,
            batch.profile,
            batch.text,
            batch.content_type,
            batch.media_url,
        )
        current = self.get_transport(batch.tenant_id, batch.channel) or transport
        await self.dispatch_reply(current, batch.external_id, reply)

    async def _handle_audio(self, event: InboundEvent, transport: ChannelTransport) -> None:
        """Voice notes skip the buffer: download, transcribe, process, reply."""
        tenant_id = transport.tenant_id
        context = {"tenant": tenant_cache_key(tenant_id), "channel": event.channel, "external_id": event.external_id}
        audio_path: Optional[Path] = None
        try:
            if not event.media_url:
                raise ValueError("audio event without media url")

            audio_path = self.media_service.build_path(f"{event.channel}_{event.external_id}", "audio")
            if event.file_name and Path(event.file_name).suffix:
                audio_path = audio_path.with_suffix(Path(event.file_name).suffix)
            downloaded = await download_to_file(event.media_url, audio_path)
            if not downloaded.ok:
                raise RuntimeError(downloaded.error)

            text = await self.llm.transcribe_audio(tenant_id, str(audio_path))
            if not text:
                logger.info("Audio transcription empty", extra={"context": context})
                await self.dispatch_reply(transport, event.external_id, Reply(text=MSG_AUDIO_NOT_UNDERSTOOD))
                return

            reply = await self.conversation.process_message(
                tenant_id, event.channel, event.external_id, event.profile, text, "audio", None
            )
            await self.dispatch_reply(transport, event.external_id, reply)
        except Exception as e:
            logger.error("Audio handling failed", extra={"context": {**context, "error": str(e)}}, exc_info=True)
            await self.dispatch_reply(transport, event.external_id, Reply(text=MSG_AUDIO_ERROR))
        finally:
            if audio_path is not None:
                audio_path.unlink(missing_ok=True)

    # --- outbound ---

    async def dispatch_reply(self, transport: ChannelTransport, external_id: str, reply: Reply) -> bool:
        if reply.is_silent:
            return False
        context = {
            "tenant": tenant_cache_key(transport.tenant_id),
            "channel": transport.channel,
            "external_id": external_id,
        }
        try:
            result = await transport.send(external_id, reply.text, reply.photos, reply.buttons)
        except Exception as e:
            logger.error("Reply dispatch raised", extra={"context": {**context, "error": str(e)}}, exc_info=True)
            return False
        if not result.ok:
            logger.error("Reply dispatch failed", extra={"context": {**context, "error": result.error}})
            return False
        return True

    async def send_manual(
        self,
        tenant_id: Optional[UUID],
        channel: str,
        external_id: str,
        text: Optional[str],
        photos: Optional[list[ReplyPhoto]] = None,
        buttons: Optional[list[ReplyButton]] = None,
    ) -> Result[None]:
        """Operator message from the admin side, through the tenant's registered transport."""
        transport = self.get_transport(tenant_id, channel)
        if transport is None and channel == "telegram":
            transport = self.get_transport(None, "telegram")
        if transport is None and channel in ("messenger", "instagram"):
            transport = self.meta_channel(tenant_id, channel)
        if transport is None:
            logger.warning(
                "No transport for manual message",
                extra={"context": {"tenant": tenant_cache_key(tenant_id), "channel": channel}},
            )
            return Result.failure(f"{channel} is not connected", "no_transport")
        return await transport.send(external_id, text, photos or [], buttons or [])
