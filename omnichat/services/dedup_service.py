from typing import Optional

import redis.asyncio as redis_async

from omnichat.config import settings
from omnichat.logging_config import get_logger

logger = get_logger("dedup_service")

DEDUP_SOCKET_TIMEOUT_SECONDS = 0.3


class DedupGuard:
    """Drops platform redeliveries of a message id already seen within the TTL.

    Webhook platforms retry on slow answers and pollers can replay an update
    after a reconnect. Redis outages fail open: the message is processed.
    """

    def __init__(self, redis_client=None, ttl_seconds: Optional[int] = None, redis_url: Optional[str] = None):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.dedup_ttl_seconds
        self._redis_url = redis_url or settings.redis_url
        self._client = redis_client

    def _get_client(self):
        if self._client is None:
            self._client = redis_async.from_url(
                self._redis_url,
                decode_responses=True,
                socket_connect_timeout=DEDUP_SOCKET_TIMEOUT_SECONDS,
                socket_timeout=DEDUP_SOCKET_TIMEOUT_SECONDS,
            )
        return self._client

    async def is_duplicate(self, scope: str, message_id: Optional[str]) -> bool:
        if not message_id:
            return False

        key = f"omnichat:dedup:{scope}:{message_id}"
        try:
            was_set = await self._get_client().set(key, "1", ex=self.ttl_seconds, nx=True)
        except Exception as e:
            logger.warning(f"Dedup redis unavailable, processing message: {e}")
            return False

        if not was_set:
            logger.info("Duplicate message id", extra={"context": {"scope": scope, "message_id": message_id}})
            return True
        return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
