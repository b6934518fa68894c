import json
from typing import Optional

from fastapi import APIRouter, Depends, Request

from omnichat.logging_config import get_logger
from omnichat.routers.deps import get_hub, tenant_from_path
from omnichat.schemas.telegram import TelegramUpdate, TelegramWebhookResponse
from omnichat.services.channel_hub import ChannelHub

logger = get_logger("telegram_webhook")

router = APIRouter(tags=["telegram"])


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            return json.loads(raw.decode(enc, errors="replace"))
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


@router.post("/telegram/{tenant_key}", response_model=TelegramWebhookResponse)
async def handle_telegram_webhook(tenant_key: str, request: Request, hub: ChannelHub = Depends(get_hub)):
    """Webhook entry for bots that are not long-polling."""
    tenant_id = tenant_from_path(tenant_key)

    body = await parse_telegram_update(request)
    if body is None:
        return TelegramWebhookResponse(success=False, message="Invalid telegram payload")

    transport = hub.get_transport(tenant_id, "telegram")
    if transport is None:
        transport = await hub.start_telegram(tenant_id)
    if transport is None:
        return TelegramWebhookResponse(success=False, message="Bot not configured")

    try:
        update = TelegramUpdate(**body)
        await transport.handle_update(update)
    except Exception as e:
        logger.error(
            "Telegram webhook handling failed",
            extra={"context": {"tenant": tenant_key, "error": str(e)}},
            exc_info=True,
        )
        return TelegramWebhookResponse(success=False, message="Update not processed")

    return TelegramWebhookResponse(success=True)
