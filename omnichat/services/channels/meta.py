"""Messenger and Instagram Direct over the Graph API webhook model."""

import hashlib
import hmac
from typing import Optional
from uuid import UUID

import httpx

from omnichat.config import settings
from omnichat.errors import WebhookVerificationError
from omnichat.logging_config import get_logger
from omnichat.schemas.inbound import InboundEvent, InboundKind, Profile, ReplyButton, ReplyPhoto
from omnichat.schemas.meta import MetaMessagingEvent
from omnichat.services.channels.base import EventHandler
from omnichat.services.delay_resolver import tenant_cache_key
from omnichat.services.media_service import public_media_url
from omnichat.services.result import Result

logger = get_logger("channels.meta")

VERIFY_TOKEN_SETTING = "META_VERIFY_TOKEN"
ACCEPTED_OBJECTS = {"page", "instagram"}
MAX_TEMPLATE_BUTTONS = 3
DEFAULT_FIRST_NAME = "Usuario"


def platform_for_object(object_type: str) -> str:
    return "instagram" if object_type == "instagram" else "messenger"


def token_keys(platform: str) -> list[str]:
    if platform == "instagram":
        return ["INSTAGRAM_ACCESS_TOKEN", "META_ACCESS_TOKEN", "FACEBOOK_ACCESS_TOKEN"]
    return ["FACEBOOK_ACCESS_TOKEN", "META_ACCESS_TOKEN"]


def verify_signature(raw_body: bytes, signature_header: Optional[str], app_secret: str) -> None:
    """Check ``X-Hub-Signature-256: sha256=<hex>`` against the raw request body."""
    if not signature_header or not signature_header.startswith("sha256="):
        raise WebhookVerificationError("missing signature")
    expected = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature_header[len("sha256=") :]):
        raise WebhookVerificationError("signature mismatch")


def normalize_meta_event(event: MetaMessagingEvent, object_type: str) -> Optional[InboundEvent]:
    """Map one ``entry[].messaging[]`` item. Returns None for non-message events and echoes."""
    message = event.message
    if message is None or message.is_echo:
        return None

    base = {
        "channel": platform_for_object(object_type),
        "external_id": event.sender.id,
        "message_id": message.mid,
        "profile": Profile(first_name=DEFAULT_FIRST_NAME),
    }

    if message.text:
        return InboundEvent(kind=InboundKind.TEXT, text=message.text, **base)

    if not message.attachments:
        return InboundEvent(kind=InboundKind.UNSUPPORTED, **base)

    attachment = message.attachments[0]
    url = attachment.payload.url
    if attachment.type == "image" and attachment.payload.sticker_id:
        return InboundEvent(kind=InboundKind.STICKER, **base)
    if attachment.type == "image":
        return InboundEvent(kind=InboundKind.IMAGE, media_url=url, **base)
    if attachment.type == "audio":
        return InboundEvent(kind=InboundKind.AUDIO, media_url=url, file_name="audio.mp4", **base)
    if attachment.type == "video":
        return InboundEvent(kind=InboundKind.VIDEO, media_url=url, **base)
    if attachment.type == "file":
        return InboundEvent(kind=InboundKind.DOCUMENT, media_url=url, file_name="archivo", **base)
    return InboundEvent(kind=InboundKind.UNSUPPORTED, **base)


def build_button_templates(text: Optional[str], buttons: list[ReplyButton]) -> list[dict]:
    """Split URL buttons into ``button`` templates of at most three."""
    templates = []
    for start in range(0, len(buttons), MAX_TEMPLATE_BUTTONS):
        chunk = buttons[start : start + MAX_TEMPLATE_BUTTONS]
        templates.append(
            {
                "attachment": {
                    "type": "template",
                    "payload": {
                        "template_type": "button",
                        "text": (text if start == 0 and text else "Opciones")[:640],
                        "buttons": [{"type": "web_url", "url": b.url, "title": b.label[:20]} for b in chunk],
                    },
                }
            }
        )
    return templates


class MetaChannel:
    """Outbound side of one tenant's Messenger or Instagram account.

    Inbound traffic arrives through the webhook router, so there is no
    connection to keep alive.
    """

    def __init__(
        self,
        tenant_id: Optional[UUID],
        platform: str,
        store,
        on_event: EventHandler,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.tenant_id = tenant_id
        self.channel = platform
        self.store = store
        self.on_event = on_event
        self._client = client

    @property
    def log_context(self) -> dict:
        return {"tenant": tenant_cache_key(self.tenant_id), "channel": self.channel}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def handle_event(self, event: InboundEvent) -> None:
        event.tenant_key = tenant_cache_key(self.tenant_id)
        await self.on_event(event, self)

    async def resolve_access_token(self) -> Optional[str]:
        for key in token_keys(self.channel):
            value = await self.store.get_setting(self.tenant_id, key)
            if value:
                return value
        return None

    async def _post_message(self, token: str, recipient_id: str, message: dict) -> Optional[str]:
        url = f"{settings.meta_graph_api_url.rstrip('/')}/me/messages"
        try:
            response = await self._get_client().post(
                url,
                params={"access_token": token},
                json={"recipient": {"id": recipient_id}, "message": message},
            )
        except httpx.HTTPError as e:
            return str(e)
        if response.status_code != 200:
            return f"status={response.status_code} body={response.text[:200]}"
        return None

    async def send(
        self,
        external_id: str,
        text: Optional[str],
        photos: list[ReplyPhoto],
        buttons: list[ReplyButton],
    ) -> Result[None]:
        token = await self.resolve_access_token()
        if not token:
            logger.error("No Meta access token configured", extra={"context": self.log_context})
            return Result.failure(f"no access token for {self.channel}", "missing_token")

        messages = []
        if buttons:
            messages.extend(build_button_templates(text, buttons))
        elif text:
            messages.append({"text": text})
        for photo in photos:
            messages.append(
                {"attachment": {"type": "image", "payload": {"url": public_media_url(photo.url), "is_reusable": True}}}
            )

        errors = []
        for message in messages:
            error = await self._post_message(token, external_id, message)
            if error:
                logger.error(
                    "Meta send failed",
                    extra={"context": {**self.log_context, "recipient": external_id, "error": error}},
                )
                errors.append(error)

        if errors:
            return Result.failure("; ".join(errors), "meta_send_failed")
        return Result.success(None)
