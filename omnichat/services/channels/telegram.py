import asyncio
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote
from uuid import UUID

import httpx

from omnichat.config import settings
from omnichat.logging_config import get_logger
from omnichat.schemas.inbound import InboundEvent, InboundKind, Profile, ReplyButton, ReplyPhoto
from omnichat.schemas.telegram import TelegramMessage, TelegramUpdate, TelegramUser
from omnichat.services.channels.base import EventHandler
from omnichat.services.delay_resolver import tenant_cache_key
from omnichat.services.media_service import download_to_file, is_remote, resolve_media_path
from omnichat.services.result import Result

logger = get_logger("channels.telegram")

CHANNEL = "telegram"
OPTIONS_PLACEHOLDER = "[Opciones]"
BACKOFF_INITIAL_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 30.0
# encodeURI keeps URL syntax characters intact
URL_SAFE_CHARS = ";,/?:@&=+$!*'()#"


class TelegramService:
    """Async client for the Telegram Bot API."""

    BASE_URL = "https://api.telegram.org/bot{token}"
    FILE_URL = "https://api.telegram.org/file/bot{token}/{path}"

    def __init__(self, bot_token: str, client: Optional[httpx.AsyncClient] = None):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def _make_request(
        self, method: str, data: Optional[dict] = None, files: Optional[dict] = None, timeout: Optional[float] = None
    ) -> dict:
        url = f"{self.base_url}/{method}"
        kwargs = {"timeout": timeout} if timeout else {}
        try:
            client = self._get_client()
            if files:
                response = await client.post(url, data=data or {}, files=files, **kwargs)
            else:
                response = await client.post(url, json=data or {}, **kwargs)
            return response.json()
        except Exception as e:
            logger.error(f"Telegram API error: {e}")
            return {"ok": False, "error": str(e)}

    async def get_updates(self, offset: Optional[int], timeout: int) -> dict:
        data = {"timeout": timeout, "allowed_updates": ["message", "edited_message"]}
        if offset is not None:
            data["offset"] = offset
        return await self._make_request("getUpdates", data, timeout=timeout + 10)

    async def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: Optional[dict] = None,
        parse_mode: Optional[str] = None,
    ) -> dict:
        data = {"chat_id": chat_id, "text": text}
        if parse_mode:
            data["parse_mode"] = parse_mode
        if reply_markup:
            data["reply_markup"] = reply_markup
        return await self._make_request("sendMessage", data)

    async def send_photo(self, chat_id: str, photo: str) -> dict:
        """Send a photo by public URL or from a local file path."""
        data = {"chat_id": chat_id}
        if is_remote(photo):
            data["photo"] = photo
            return await self._make_request("sendPhoto", data=data)

        path = Path(photo)
        content = await asyncio.to_thread(path.read_bytes)
        return await self._make_request("sendPhoto", data=data, files={"photo": (path.name, content)})

    async def get_file_url(self, file_id: str) -> Optional[str]:
        result = await self._make_request("getFile", {"file_id": file_id})
        file_path = (result.get("result") or {}).get("file_path") if result.get("ok") else None
        if not file_path:
            logger.warning(f"Failed to resolve Telegram file: {result}")
            return None
        return self.FILE_URL.format(token=self.bot_token, path=file_path)

    async def get_profile_photo_file_id(self, user_id: int) -> Optional[str]:
        result = await self._make_request("getUserProfilePhotos", {"user_id": user_id, "offset": 0, "limit": 1})
        photos = (result.get("result") or {}).get("photos") if result.get("ok") else None
        if not photos or not photos[0]:
            return None
        return photos[0][-1]["file_id"]

    async def get_chat_bio(self, chat_id: int) -> Optional[str]:
        result = await self._make_request("getChat", {"chat_id": chat_id})
        if not result.get("ok"):
            return None
        return (result.get("result") or {}).get("bio") or None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def display_name(user: Optional[TelegramUser]) -> str:
    if user is None:
        return "Amigo"
    full = f"{user.first_name or ''} {user.last_name or ''}".strip()
    return full or "Amigo"


def encode_button_url(url: str) -> str:
    """Percent-encode a URL unless it already is."""
    if unquote(url) != url:
        return url
    return quote(url, safe=URL_SAFE_CHARS)


def build_inline_keyboard(buttons: list[ReplyButton]) -> Optional[dict]:
    if not buttons:
        return None
    return {"inline_keyboard": [[{"text": b.label, "url": encode_button_url(b.url)}] for b in buttons]}


def normalize_message(message: TelegramMessage) -> tuple[InboundEvent, Optional[str]]:
    """Map a Telegram message onto an InboundEvent.

    Returns the event plus the file id whose download link still has to be
    resolved (photo, voice, audio), or None.
    """
    user = message.from_user
    external_id = str(user.id if user else message.chat.id)
    base = {
        "channel": CHANNEL,
        "external_id": external_id,
        "message_id": f"{message.chat.id}:{message.message_id}",
        "profile": Profile(
            first_name=display_name(user),
            username=user.username if user else None,
            platform_link=f"https://t.me/{user.username}" if user and user.username else None,
        ),
    }

    if message.text is not None:
        return InboundEvent(kind=InboundKind.TEXT, text=message.text, **base), None
    if message.photo:
        largest = message.photo[-1]
        return InboundEvent(kind=InboundKind.IMAGE, text=message.caption or "", mime_type="image/jpeg", **base), (
            largest.file_id
        )
    if message.voice:
        return InboundEvent(kind=InboundKind.AUDIO, mime_type=message.voice.mime_type, **base), message.voice.file_id
    if message.audio:
        return (
            InboundEvent(
                kind=InboundKind.AUDIO,
                mime_type=message.audio.mime_type,
                file_name=message.audio.file_name,
                **base,
            ),
            message.audio.file_id,
        )
    if message.document:
        return (
            InboundEvent(
                kind=InboundKind.DOCUMENT,
                file_name=message.document.file_name,
                mime_type=message.document.mime_type,
                **base,
            ),
            None,
        )
    if message.video:
        return InboundEvent(kind=InboundKind.VIDEO, text=message.caption or "", **base), None
    if message.sticker:
        return InboundEvent(kind=InboundKind.STICKER, **base), None
    return InboundEvent(kind=InboundKind.UNSUPPORTED, **base), None


class TelegramChannel:
    """One bot (per company, or the global bot) with its long-poll loop."""

    channel = CHANNEL

    def __init__(
        self,
        tenant_id: Optional[UUID],
        bot_token: str,
        on_event: EventHandler,
        service: Optional[TelegramService] = None,
        poll_timeout: Optional[int] = None,
        sleep_func=asyncio.sleep,
    ):
        self.tenant_id = tenant_id
        self.on_event = on_event
        self.service = service or TelegramService(bot_token)
        self.poll_timeout = poll_timeout if poll_timeout is not None else settings.telegram_poll_timeout_seconds
        self.sleep_func = sleep_func
        self._offset: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def log_context(self) -> dict:
        return {"tenant": tenant_cache_key(self.tenant_id), "channel": CHANNEL}

    async def start(self) -> None:
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Telegram bot started", extra={"context": self.log_context})

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self.service.close()
        logger.info("Telegram bot stopped", extra={"context": self.log_context})

    async def _poll_loop(self) -> None:
        backoff = BACKOFF_INITIAL_SECONDS
        while self._running:
            result = await self.service.get_updates(self._offset, self.poll_timeout)
            if not result.get("ok"):
                logger.warning(
                    "Telegram polling failed, retrying",
                    extra={"context": {**self.log_context, "error": result.get("error") or result.get("description"), "retry_in": backoff}},
                )
                await self.sleep_func(backoff)
                backoff = min(backoff * 2, BACKOFF_MAX_SECONDS)
                continue

            backoff = BACKOFF_INITIAL_SECONDS
            for raw in result.get("result") or []:
                self._offset = raw["update_id"] + 1
                try:
                    await self.handle_update(TelegramUpdate(**raw))
                except Exception as e:
                    logger.error(
                        "Telegram update handling failed",
                        extra={"context": {**self.log_context, "update_id": raw.get("update_id"), "error": str(e)}},
                        exc_info=True,
                    )

    async def handle_update(self, update: TelegramUpdate) -> None:
        message = update.message or update.edited_message
        if message is None or (message.from_user and message.from_user.is_bot):
            return

        event, file_id = normalize_message(message)
        event.tenant_key = tenant_cache_key(self.tenant_id)
        if file_id:
            event.media_url = await self.service.get_file_url(file_id)
        if event.kind != InboundKind.UNSUPPORTED and message.from_user:
            event.profile = await self.enrich_profile(message.from_user, event.profile)

        await self.on_event(event, self)

    async def enrich_profile(self, user: TelegramUser, profile: Profile) -> Profile:
        """Add avatar and bio. Lookup failures leave the basic profile."""
        updates = {}
        try:
            avatar_file_id = await self.service.get_profile_photo_file_id(user.id)
            if avatar_file_id:
                updates["avatar_url"] = await self._store_avatar(user.id, avatar_file_id)
            bio = await self.service.get_chat_bio(user.id)
            if bio:
                updates["bio"] = bio
        except Exception as e:
            logger.warning("Telegram profile lookup failed", extra={"context": {**self.log_context, "error": str(e)}})
        return profile.model_copy(update={k: v for k, v in updates.items() if v})

    async def _store_avatar(self, user_id: int, file_id: str) -> Optional[str]:
        filename = f"avatar_tg_{user_id}.jpg"
        target = resolve_media_path(f"uploads/{filename}")
        if target.exists():
            return f"uploads/{filename}"
        link = await self.service.get_file_url(file_id)
        if not link:
            return None
        result = await download_to_file(link, target)
        return f"uploads/{filename}" if result.ok else None

    async def send(
        self,
        external_id: str,
        text: Optional[str],
        photos: list[ReplyPhoto],
        buttons: list[ReplyButton],
    ) -> Result[None]:
        keyboard = build_inline_keyboard(buttons)
        errors = []

        if text:
            result = await self.service.send_message(external_id, text.replace("**", "*"), reply_markup=keyboard)
            if not result.get("ok"):
                errors.append(str(result.get("description") or result.get("error")))
        elif keyboard:
            result = await self.service.send_message(external_id, OPTIONS_PLACEHOLDER, reply_markup=keyboard)
            if not result.get("ok"):
                errors.append(str(result.get("description") or result.get("error")))

        for photo in photos:
            if is_remote(photo.url):
                source = photo.url
            else:
                path = resolve_media_path(photo.url)
                if not path.exists():
                    logger.warning(
                        "Photo file missing, skipped",
                        extra={"context": {**self.log_context, "photo": photo.name}},
                    )
                    continue
                source = str(path)
            result = await self.service.send_photo(external_id, source)
            if not result.get("ok"):
                errors.append(str(result.get("description") or result.get("error")))

        if errors:
            return Result.failure("; ".join(errors), "telegram_send_failed")
        return Result.success(None)
