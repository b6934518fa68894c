"""WhatsApp multi-device through an external bridge gateway.

The bridge owns the socket and the pairing credentials. It posts
``messages.upsert`` and ``connection.update`` events to our webhook and
exposes a small REST API for starting sessions and sending messages.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from uuid import UUID

import httpx

from omnichat.config import settings
from omnichat.logging_config import get_logger
from omnichat.schemas.inbound import InboundEvent, InboundKind, Profile, ReplyButton, ReplyPhoto
from omnichat.schemas.whatsapp import WhatsAppBridgeEvent, WhatsAppConnectionUpdate, WhatsAppMessage, WhatsAppUpsert
from omnichat.services.alert_service import alert_critical
from omnichat.services.channels.base import EventHandler
from omnichat.services.delay_resolver import tenant_cache_key
from omnichat.services.media_service import public_media_url
from omnichat.services.result import Result

logger = get_logger("channels.whatsapp")

CHANNEL = "whatsapp"
STATUS_BROADCAST_JID = "status@broadcast"
USER_JID_SUFFIX = "@s.whatsapp.net"
LOGGED_OUT_STATUS_CODE = 401
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_MAX_SECONDS = 30.0


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    QR = "qr"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    LOGGED_OUT = "logged_out"


def reconnect_delay(attempt: int) -> float:
    return min(float(2**attempt), RECONNECT_MAX_SECONDS)


@dataclass
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.CONNECTING
    qr: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    retries: int = 0

    def apply(self, update: WhatsAppConnectionUpdate) -> Optional[float]:
        """Fold a bridge connection update in. Returns a reconnect delay when one is due."""
        if update.qr:
            self.status = ConnectionStatus.QR
            self.qr = update.qr

        if update.connection == "open":
            self.status = ConnectionStatus.CONNECTED
            self.qr = None
            self.retries = 0
            self.phone = update.phone or self.phone
            self.name = update.name or self.name
            return None

        if update.connection == "close":
            self.qr = None
            if update.statusCode == LOGGED_OUT_STATUS_CODE:
                self.status = ConnectionStatus.LOGGED_OUT
                return None
            self.status = ConnectionStatus.DISCONNECTED
            if self.retries < MAX_RECONNECT_ATTEMPTS:
                self.retries += 1
                return reconnect_delay(self.retries)

        if update.connection == "connecting" and self.status != ConnectionStatus.QR:
            self.status = ConnectionStatus.CONNECTING
        return None


def jid_number(jid: str) -> str:
    return jid.replace(USER_JID_SUFFIX, "")


def normalize_whatsapp_message(msg: WhatsAppMessage) -> Optional[InboundEvent]:
    """Map one upserted message. Returns None for own messages, status broadcasts and empty payloads."""
    if msg.key.fromMe or msg.key.remoteJid == STATUS_BROADCAST_JID or not msg.message:
        return None

    jid = msg.key.remoteJid
    number = jid_number(jid)
    base = {
        "channel": CHANNEL,
        "external_id": jid,
        "message_id": msg.key.id,
        "profile": Profile(
            first_name=msg.pushName or "Usuario",
            username=number,
            platform_link=f"https://wa.me/{number}",
        ),
    }
    payload = msg.message

    if payload.get("conversation"):
        return InboundEvent(kind=InboundKind.TEXT, text=payload["conversation"], **base)
    if "extendedTextMessage" in payload:
        text = (payload["extendedTextMessage"] or {}).get("text") or ""
        return InboundEvent(kind=InboundKind.TEXT, text=text, **base)
    if "imageMessage" in payload:
        image = payload["imageMessage"] or {}
        return InboundEvent(
            kind=InboundKind.IMAGE,
            text=image.get("caption") or "",
            media_url=msg.mediaUrl,
            mime_type=image.get("mimetype"),
            **base,
        )
    if "audioMessage" in payload:
        audio = payload["audioMessage"] or {}
        return InboundEvent(
            kind=InboundKind.AUDIO,
            media_url=msg.mediaUrl,
            mime_type=audio.get("mimetype"),
            file_name="audio.ogg",
            **base,
        )
    if "documentMessage" in payload:
        document = payload["documentMessage"] or {}
        return InboundEvent(
            kind=InboundKind.DOCUMENT,
            file_name=document.get("fileName") or "archivo",
            mime_type=document.get("mimetype"),
            **base,
        )
    if "videoMessage" in payload:
        return InboundEvent(kind=InboundKind.VIDEO, text=(payload["videoMessage"] or {}).get("caption") or "", **base)
    if "stickerMessage" in payload:
        return InboundEvent(kind=InboundKind.STICKER, **base)
    return InboundEvent(kind=InboundKind.UNSUPPORTED, **base)


def render_text_with_buttons(text: Optional[str], buttons: list[ReplyButton]) -> Optional[str]:
    """Unofficial clients have no URL buttons, so links become ``label: url`` lines."""
    lines = [f"{b.label}: {b.url}" for b in buttons]
    if not lines:
        return text
    if text:
        return text + "\n\n" + "\n".join(lines)
    return "\n".join(lines)


class WhatsAppBridgeClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.whatsapp_bridge_url).rstrip("/")
        self.token = token if token is not None else settings.whatsapp_bridge_token
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._client = httpx.AsyncClient(timeout=30.0, headers=headers)
        return self._client

    async def _post(self, path: str, payload: Optional[dict] = None) -> Result[dict]:
        try:
            response = await self._get_client().post(f"{self.base_url}{path}", json=payload or {})
        except httpx.HTTPError as e:
            return Result.from_exception(e, "bridge_unreachable")
        if response.status_code >= 300:
            return Result.failure(f"status={response.status_code} body={response.text[:200]}", "bridge_error")
        try:
            return Result.success(response.json())
        except ValueError:
            return Result.success({})

    async def start_session(self, session_key: str) -> Result[dict]:
        return await self._post(f"/sessions/{session_key}/start")

    async def send_text(self, session_key: str, jid: str, text: str) -> Result[dict]:
        return await self._post(f"/sessions/{session_key}/messages", {"jid": jid, "type": "text", "text": text})

    async def send_image(self, session_key: str, jid: str, url: str, caption: str = "") -> Result[dict]:
        return await self._post(
            f"/sessions/{session_key}/messages",
            {"jid": jid, "type": "image", "url": url, "caption": caption},
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class WhatsAppChannel:
    channel = CHANNEL

    def __init__(
        self,
        tenant_id: Optional[UUID],
        on_event: EventHandler,
        bridge: Optional[WhatsAppBridgeClient] = None,
        sleep_func=asyncio.sleep,
    ):
        self.tenant_id = tenant_id
        self.on_event = on_event
        self.bridge = bridge or WhatsAppBridgeClient()
        self.sleep_func = sleep_func
        self.state = ConnectionState()
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def session_key(self) -> str:
        return tenant_cache_key(self.tenant_id)

    @property
    def log_context(self) -> dict:
        return {"tenant": self.session_key, "channel": CHANNEL}

    async def start(self) -> None:
        self.state.status = ConnectionStatus.CONNECTING
        result = await self.bridge.start_session(self.session_key)
        if not result.ok:
            logger.warning(
                "WhatsApp bridge session start failed",
                extra={"context": {**self.log_context, "error": result.error}},
            )

    async def stop(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)
            self._reconnect_task = None
        await self.bridge.close()

    async def handle_bridge_event(self, event: WhatsAppBridgeEvent) -> int:
        """Apply one bridge callback. Returns how many messages were handed on."""
        if event.event == "connection.update":
            await self.apply_connection_update(WhatsAppConnectionUpdate(**event.data))
            return 0

        if event.event != "messages.upsert":
            return 0

        upsert = WhatsAppUpsert(**event.data)
        if upsert.type != "notify":
            return 0

        handled = 0
        for message in upsert.messages:
            inbound = normalize_whatsapp_message(message)
            if inbound is None:
                continue
            inbound.tenant_key = self.session_key
            await self.on_event(inbound, self)
            handled += 1
        return handled

    async def apply_connection_update(self, update: WhatsAppConnectionUpdate) -> None:
        was_logged_out = self.state.status == ConnectionStatus.LOGGED_OUT
        delay = self.state.apply(update)
        logger.info(
            "WhatsApp connection update",
            extra={"context": {**self.log_context, "status": self.state.status.value, "code": update.statusCode}},
        )
        if delay is not None:
            logger.info(
                "WhatsApp reconnect scheduled",
                extra={"context": {**self.log_context, "attempt": self.state.retries, "delay": delay}},
            )
            if self._reconnect_task is not None and not self._reconnect_task.done():
                self._reconnect_task.cancel()
            self._reconnect_task = asyncio.ensure_future(self._reconnect(delay))
        elif self.state.status == ConnectionStatus.LOGGED_OUT and not was_logged_out:
            await alert_critical("WhatsApp session logged out", self.log_context)

    async def _reconnect(self, delay: float) -> None:
        await self.sleep_func(delay)
        await self.start()

    async def send(
        self,
        external_id: str,
        text: Optional[str],
        photos: list[ReplyPhoto],
        buttons: list[ReplyButton],
    ) -> Result[None]:
        if self.state.status == ConnectionStatus.LOGGED_OUT:
            return Result.failure("WhatsApp session is logged out", "not_connected")

        jid = external_id if "@" in external_id else f"{external_id}{USER_JID_SUFFIX}"
        errors = []

        body = render_text_with_buttons(text, buttons)
        if body:
            result = await self.bridge.send_text(self.session_key, jid, body)
            if not result.ok:
                errors.append(result.error)

        for photo in photos:
            result = await self.bridge.send_image(self.session_key, jid, public_media_url(photo.url))
            if not result.ok:
                errors.append(result.error)

        if errors:
            return Result.failure("; ".join(errors), "whatsapp_send_failed")
        return Result.success(None)
