import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from omnichat.config import settings
from omnichat.database import async_session_maker
from omnichat.logging_config import get_logger, setup_logging
from omnichat.routers import admin, meta_webhook, telegram_webhook, whatsapp_webhook
from omnichat.services.channel_hub import ChannelHub
from omnichat.services.dedup_service import DedupGuard
from omnichat.services.llm import LLMService
from omnichat.services.store import ConversationStore

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="Omnichat API",
    description="Multi-channel AI assistant: message ingestion and conversation pipeline",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(telegram_webhook.router)
app.include_router(meta_webhook.router)
app.include_router(whatsapp_webhook.router)
app.include_router(admin.router)
app.mount("/uploads", StaticFiles(directory=settings.media_storage_dir, check_dir=False), name="uploads")


def _is_hub_autostart_enabled() -> bool:
    return not os.environ.get("PYTEST_CURRENT_TEST")


def build_hub() -> ChannelHub:
    store = ConversationStore(async_session_maker)
    return ChannelHub(store, LLMService(store), dedup=DedupGuard())


@app.on_event("startup")
async def start_hub() -> None:
    if not _is_hub_autostart_enabled():
        return
    os.makedirs(settings.media_storage_dir, exist_ok=True)
    hub = build_hub()
    app.state.hub = hub
    await hub.start()
    logger.info("Channel hub started", extra={"context": {"transports": len(hub.transports)}})


@app.on_event("shutdown")
async def stop_hub() -> None:
    hub = getattr(app.state, "hub", None)
    if hub is None:
        return
    await hub.shutdown()
    app.state.hub = None


@app.get("/health")
async def health(request: Request):
    hub = getattr(request.app.state, "hub", None)
    return {
        "status": "ok",
        "pending_buffers": hub.pending_count if hub else 0,
        "transports": len(hub.transports) if hub else 0,
    }
