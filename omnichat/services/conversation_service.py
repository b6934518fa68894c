"""Conversation state manager: one coalesced inbound message in, one reply out.

Gate order matters: media persistence, contact upsert, subscription, commands,
pause, session resolution (with 24h expiry + summary), user message,
context + LLM, directive resolution. Any gate may answer ``Reply.silent()``.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from omnichat.logging_config import get_logger
from omnichat.schemas.inbound import MEDIA_PLACEHOLDER, Profile, Reply, ReplyPhoto
from omnichat.services.alert_service import alert_error
from omnichat.services.context_builder import ContextBuilder
from omnichat.services.delay_resolver import tenant_cache_key
from omnichat.services.reply_parser import DirectiveParser, RegexDirectiveParser

logger = get_logger("conversation_service")

SESSION_EXPIRY = timedelta(hours=24)
INACTIVE_PLAN_STATUSES = {"expired", "cancelled"}
PERSISTED_MEDIA_TYPES = {"image", "audio"}

CMD_RESET = "/reset"
CMD_NEW = "/new"
CMD_START = "/start"
GREETING_TRIGGER = "hola"
MSG_RESET_CONFIRMED = "🔄 Sesión reiniciada."
MSG_INTERNAL_ERROR = "⚠️ Error interno."


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps coming back from storage are treated as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def build_transcript(messages) -> str:
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


class ConversationService:
    def __init__(
        self,
        store,
        llm,
        media_service=None,
        parser: Optional[DirectiveParser] = None,
        context_builder: Optional[ContextBuilder] = None,
    ):
        self.store = store
        self.llm = llm
        self.media_service = media_service
        self.parser = parser or RegexDirectiveParser()
        self.context_builder = context_builder or ContextBuilder(store)
        self._background: set[asyncio.Task] = set()

    async def process_message(
        self,
        tenant_id: Optional[UUID],
        channel: str,
        external_id: str,
        profile: Profile,
        text: str,
        content_type: str = "text",
        media_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Reply:
        """Run the full pipeline. Never raises; unexpected errors become MSG_INTERNAL_ERROR."""
        now = now or datetime.now(timezone.utc)
        try:
            return await self._process(tenant_id, channel, str(external_id), profile, text, content_type, media_url, now)
        except Exception as e:
            context = {
                "tenant": tenant_cache_key(tenant_id),
                "channel": channel,
                "external_id": str(external_id),
                "error": str(e),
            }
            logger.error("Message processing failed", extra={"context": context}, exc_info=True)
            await alert_error("Message processing failed", context)
            return Reply(text=MSG_INTERNAL_ERROR)

    async def _process(
        self,
        tenant_id: Optional[UUID],
        channel: str,
        external_id: str,
        profile: Profile,
        text: str,
        content_type: str,
        media_url: Optional[str],
        now: datetime,
    ) -> Reply:
        log_context = {"tenant": tenant_cache_key(tenant_id), "channel": channel, "external_id": external_id}

        if media_url and content_type in PERSISTED_MEDIA_TYPES:
            media_url = await self._persist_media(media_url, content_type, channel, external_id)

        if not profile.platform_link and channel == "telegram" and profile.username:
            profile = profile.model_copy(update={"platform_link": f"https://t.me/{profile.username}"})

        contact = await self.store.find_or_create_contact(tenant_id, channel, external_id, profile, now)

        if tenant_id is not None and not await self._subscription_allows(tenant_id, now):
            return Reply.silent()

        settings_map = await self.store.get_settings_map(tenant_id)

        command = (text or "").strip().lower()
        if command in (CMD_RESET, CMD_NEW, CMD_START):
            await self._close_for_command(tenant_id, contact.id, now)
            logger.info("Session reset by command", extra={"context": {**log_context, "command": command}})
            if command == CMD_RESET:
                return Reply(text=MSG_RESET_CONFIRMED)
            text = GREETING_TRIGGER

        paused_until = as_utc(contact.bot_paused_until)
        if paused_until and paused_until > now:
            logger.info(
                "Bot paused for contact",
                extra={"context": {**log_context, "paused_until": paused_until.isoformat()}},
            )
            return Reply.silent()

        session = await self._resolve_session(tenant_id, contact.id, now, log_context)

        await self.store.add_message(
            tenant_id,
            session.id,
            "user",
            text or MEDIA_PLACEHOLDER,
            now,
            content_type=content_type,
            media_url=media_url,
        )

        messages = await self.context_builder.build_messages(tenant_id, channel, contact.id, session.id, settings_map)
        raw_reply = await self.llm.chat_completion(tenant_id, messages)

        return await self._finalize_reply(tenant_id, session.id, raw_reply, now)

    async def _persist_media(self, media_url: str, kind: str, channel: str, external_id: str) -> Optional[str]:
        if self.media_service is None or not media_url.startswith(("http://", "https://")):
            return media_url
        try:
            result = await self.media_service.persist_remote_media(media_url, kind, f"{channel}_{external_id}")
        except Exception as e:
            logger.warning(
                f"Media persistence failed, keeping remote url: {e}",
                extra={"context": {"channel": channel, "external_id": external_id, "kind": kind}},
            )
            return media_url
        if result.ok:
            return result.value
        return media_url

    async def _subscription_allows(self, tenant_id: UUID, now: datetime) -> bool:
        company = await self.store.get_company(tenant_id)
        context = {"tenant": str(tenant_id)}
        if company is None:
            logger.info("Unknown company, ignoring message", extra={"context": context})
            return False

        if not company.is_active or company.plan_status in INACTIVE_PLAN_STATUSES:
            logger.info(
                "Company inactive or expired, ignoring message",
                extra={"context": {**context, "plan_status": company.plan_status}},
            )
            return False

        subscription_end = as_utc(company.subscription_end)
        if subscription_end and now > subscription_end:
            logger.info("Subscription ended, marking company expired", extra={"context": context})
            await self.store.save_company_status(tenant_id, "expired", now)
            return False

        return True

    async def _close_for_command(self, tenant_id: Optional[UUID], contact_id: UUID, now: datetime) -> None:
        session = await self.store.get_active_session(tenant_id, contact_id)
        await self.store.deactivate_active_sessions(tenant_id, contact_id, now)
        if session is not None:
            task = asyncio.ensure_future(self._summarize_session(tenant_id, contact_id, session, now))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _resolve_session(self, tenant_id: Optional[UUID], contact_id: UUID, now: datetime, log_context: dict):
        session = await self.store.get_active_session(tenant_id, contact_id)

        if session is not None:
            last_time = as_utc(await self.store.get_last_message_time(session.id)) or as_utc(session.start_time)
            if last_time and now - last_time > SESSION_EXPIRY:
                logger.info(
                    "Session expired",
                    extra={"context": {**log_context, "session_id": str(session.id), "last": last_time.isoformat()}},
                )
                await self._summarize_session(tenant_id, contact_id, session, now)
                await self.store.close_session(session.id, now)
                session = None

        if session is None:
            return await self.store.create_session(tenant_id, contact_id, now)

        await self.store.touch_session(session.id, now)
        return session

    async def _summarize_session(self, tenant_id: Optional[UUID], contact_id: UUID, session, now: datetime) -> None:
        try:
            history = await self.store.list_session_messages(session.id)
            if not history:
                return
            summary_text = await self.llm.summarize(tenant_id, build_transcript(history))
            if summary_text:
                await self.store.add_summary(tenant_id, contact_id, summary_text, session.start_time, now)
                logger.info(
                    "Session summary created",
                    extra={"context": {"tenant": tenant_cache_key(tenant_id), "session_id": str(session.id)}},
                )
        except Exception as e:
            logger.error(
                "Session summary failed",
                extra={"context": {"session_id": str(session.id), "error": str(e)}},
            )

    async def _finalize_reply(self, tenant_id: Optional[UUID], session_id: UUID, raw_reply: str, now: datetime) -> Reply:
        parsed = self.parser.parse(raw_reply)
        # History is ordered by timestamp; assistant rows must sort after the user row.
        stamp = now + timedelta(microseconds=1)

        photos = []
        for name in parsed.photo_names:
            asset = await self.store.find_asset_by_name(tenant_id, name)
            if asset is not None and asset.url:
                photos.append(ReplyPhoto(name=asset.name, url=asset.url))

        if parsed.text:
            await self.store.add_message(
                tenant_id,
                session_id,
                "assistant",
                parsed.text,
                stamp,
                buttons=[b.model_dump() for b in parsed.buttons] or None,
            )

        for photo in photos:
            stamp += timedelta(microseconds=1)
            await self.store.add_message(
                tenant_id,
                session_id,
                "assistant",
                f"Sent photo: {photo.name}",
                stamp,
                content_type="image",
                media_url=photo.url,
            )

        return Reply(text=parsed.text, photos=photos, buttons=parsed.buttons)

    async def drain(self) -> None:
        """Wait for background summaries started by reset commands."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
