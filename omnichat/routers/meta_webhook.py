from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from omnichat.config import settings
from omnichat.errors import WebhookVerificationError
from omnichat.logging_config import get_logger
from omnichat.routers.deps import get_hub, tenant_from_path
from omnichat.schemas.meta import MetaWebhookPayload
from omnichat.services.channel_hub import ChannelHub
from omnichat.services.channels.meta import (
    ACCEPTED_OBJECTS,
    VERIFY_TOKEN_SETTING,
    normalize_meta_event,
    platform_for_object,
    verify_signature,
)

logger = get_logger("meta_webhook")

router = APIRouter(prefix="/meta", tags=["meta"])


@router.get("/{tenant_key}", response_class=PlainTextResponse)
async def verify_meta_webhook(
    tenant_key: str,
    hub: ChannelHub = Depends(get_hub),
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
):
    tenant_id = tenant_from_path(tenant_key)
    expected = await hub.store.get_setting(tenant_id, VERIFY_TOKEN_SETTING)

    if mode == "subscribe" and token and expected and token == expected:
        logger.info("Meta webhook verified", extra={"context": {"tenant": tenant_key}})
        return PlainTextResponse(challenge or "")

    logger.warning("Meta webhook verification failed", extra={"context": {"tenant": tenant_key}})
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/{tenant_key}", response_class=PlainTextResponse)
async def handle_meta_webhook(
    tenant_key: str,
    request: Request,
    background_tasks: BackgroundTasks,
    hub: ChannelHub = Depends(get_hub),
    x_hub_signature_256: Optional[str] = Header(default=None, alias="X-Hub-Signature-256"),
):
    tenant_id = tenant_from_path(tenant_key)
    raw_body = await request.body()

    if settings.meta_app_secret:
        try:
            verify_signature(raw_body, x_hub_signature_256, settings.meta_app_secret)
        except WebhookVerificationError as e:
            logger.warning("Meta signature rejected", extra={"context": {"tenant": tenant_key, "error": str(e)}})
            raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        payload = MetaWebhookPayload.model_validate_json(raw_body)
    except ValidationError:
        raise HTTPException(status_code=404, detail="Unsupported payload")

    if payload.object not in ACCEPTED_OBJECTS:
        raise HTTPException(status_code=404, detail="Unsupported object")

    transport = hub.meta_channel(tenant_id, platform_for_object(payload.object))
    queued = 0
    for entry in payload.entry:
        for messaging in entry.messaging:
            event = normalize_meta_event(messaging, payload.object)
            if event is None:
                continue
            background_tasks.add_task(transport.handle_event, event)
            queued += 1

    logger.debug("Meta webhook received", extra={"context": {"tenant": tenant_key, "events": queued}})
    return PlainTextResponse("EVENT_RECEIVED")
