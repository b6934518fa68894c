import time
from typing import Callable, Optional
from uuid import UUID

from omnichat.logging_config import get_logger

logger = get_logger("delay_resolver")

BUFFER_SETTING_KEY = "MESSAGE_BUFFER_SECONDS"
DEFAULT_BUFFER_SECONDS = 8
MIN_BUFFER_SECONDS = 1
MAX_BUFFER_SECONDS = 30
CACHE_TTL_SECONDS = 60.0


def tenant_cache_key(tenant_id: Optional[UUID]) -> str:
    return str(tenant_id) if tenant_id is not None else "global"


def parse_buffer_seconds(raw: Optional[str]) -> int:
    """Parse a stored MESSAGE_BUFFER_SECONDS value and clamp it to [1, 30].

    Missing or non-numeric values fall back to the 8 second default.
    """
    if raw is None:
        return DEFAULT_BUFFER_SECONDS
    try:
        seconds = int(float(str(raw).strip()))
    except (TypeError, ValueError):
        return DEFAULT_BUFFER_SECONDS
    return max(MIN_BUFFER_SECONDS, min(MAX_BUFFER_SECONDS, seconds))


class DelayResolver:
    """Per-tenant debounce window lookup with a short-lived cache."""

    def __init__(self, store, *, ttl_seconds: float = CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._cache: dict[str, tuple[int, float]] = {}

    async def get_delay_ms(self, tenant_id: Optional[UUID]) -> int:
        key = tenant_cache_key(tenant_id)
        cached = self._cache.get(key)
        now = self.clock()
        if cached and now - cached[1] < self.ttl_seconds:
            return cached[0]

        try:
            raw = await self.store.get_setting(tenant_id, BUFFER_SETTING_KEY)
        except Exception as e:
            logger.warning(
                "Buffer delay lookup failed, using default",
                extra={"context": {"tenant": key, "error": str(e)}},
            )
            return DEFAULT_BUFFER_SECONDS * 1000

        delay_ms = parse_buffer_seconds(raw) * 1000
        self._cache[key] = (delay_ms, now)
        return delay_ms

    def invalidate(self, tenant_id: Optional[UUID]) -> None:
        self._cache.pop(tenant_cache_key(tenant_id), None)

    def clear(self) -> None:
        self._cache.clear()
