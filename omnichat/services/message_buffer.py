"""Debounce buffer for bursts of inbound fragments.

A user typing "hola", "como", "estas" as three quick messages produces one
flush with "hola\\ncomo\\nestas" and therefore one reply. Each conversation key
moves through Idle -> Buffering(deadline) -> Flushing -> Idle. Every new
fragment resets the deadline (sliding window). On fire the entry leaves the
map before the callback runs, so a fragment arriving during a flush starts a
fresh buffer instead of racing the one in flight. Flushes of the same key run
one after another in arrival order.

All entry mutations happen between awaits on the event loop thread, which is
what makes append / re-arm / fire atomic with respect to each other.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol
from uuid import UUID

from omnichat.logging_config import get_logger
from omnichat.schemas.inbound import MEDIA_PLACEHOLDER, Fragment, Profile
from omnichat.services.delay_resolver import tenant_cache_key

logger = get_logger("message_buffer")


class BufferState(str, Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    FLUSHING = "flushing"


@dataclass
class FlushBatch:
    tenant_id: Optional[UUID]
    channel: str
    external_id: str
    profile: Profile
    text: str
    content_type: str
    media_url: Optional[str]
    fragment_count: int


FlushCallback = Callable[[FlushBatch], Awaitable[None]]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Timers on the running asyncio loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


def buffer_key(tenant_id: Optional[UUID], channel: str, external_id: str) -> str:
    return f"{tenant_cache_key(tenant_id)}_{channel}_{external_id}"


def coalesce_fragments(fragments: list[Fragment]) -> tuple[str, str, Optional[str]]:
    """Join fragment texts and pick the media of the last fragment that carried one.

    Returns (text, content_type, media_url). Blank fragments are left out of
    the join; an all-blank batch becomes the media placeholder.
    """
    parts = [f.text.strip() for f in fragments if f.text and f.text.strip()]
    combined = "\n".join(parts)

    last_media = next((f for f in reversed(fragments) if f.media_url), None)
    content_type = last_media.content_type if last_media else "text"
    media_url = last_media.media_url if last_media else None

    return combined or MEDIA_PLACEHOLDER, content_type, media_url


@dataclass
class BufferEntry:
    key: str
    tenant_id: Optional[UUID]
    channel: str
    external_id: str
    on_flush: FlushCallback
    fragments: list[Fragment] = field(default_factory=list)
    state: BufferState = BufferState.BUFFERING
    deadline: Optional[float] = None
    timer: Optional[TimerHandle] = None

    def to_batch(self) -> FlushBatch:
        text, content_type, media_url = coalesce_fragments(self.fragments)
        return FlushBatch(
            tenant_id=self.tenant_id,
            channel=self.channel,
            external_id=self.external_id,
            profile=self.fragments[-1].profile if self.fragments else Profile(),
            text=text,
            content_type=content_type,
            media_url=media_url,
            fragment_count=len(self.fragments),
        )


class MessageBuffer:
    def __init__(self, delay_resolver, scheduler: Optional[Scheduler] = None):
        self.delay_resolver = delay_resolver
        self.scheduler = scheduler or LoopScheduler()
        self._entries: dict[str, BufferEntry] = {}
        self._tails: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._entries)

    def get_entry(self, tenant_id: Optional[UUID], channel: str, external_id: str) -> Optional[BufferEntry]:
        return self._entries.get(buffer_key(tenant_id, channel, external_id))

    async def submit(
        self,
        tenant_id: Optional[UUID],
        channel: str,
        external_id: str,
        fragment: Fragment,
        on_flush: FlushCallback,
    ) -> None:
        key = buffer_key(tenant_id, channel, external_id)

        # Append before the first await so arrival order is the join order.
        entry = self._entries.get(key)
        if entry is None:
            entry = BufferEntry(
                key=key,
                tenant_id=tenant_id,
                channel=channel,
                external_id=str(external_id),
                on_flush=on_flush,
            )
            self._entries[key] = entry
            logger.debug("Buffer created", extra={"context": {"key": key}})
        else:
            logger.debug(
                "Buffer appended",
                extra={"context": {"key": key, "fragments": len(entry.fragments) + 1}},
            )
        entry.fragments.append(fragment)
        entry.on_flush = on_flush

        delay_ms = await self.delay_resolver.get_delay_ms(tenant_id)

        if self._entries.get(key) is not entry:
            # Fired while the delay was resolving; the fragment went out with that flush.
            return
        self.reset_deadline(entry, delay_ms / 1000.0)

    def reset_deadline(self, entry: BufferEntry, delay_seconds: float) -> None:
        """Buffering(deadline) -> Buffering(now + delay)."""
        if entry.timer is not None:
            entry.timer.cancel()
        entry.deadline = self.scheduler.now() + delay_seconds
        entry.timer = self.scheduler.call_later(delay_seconds, lambda: self._fire(entry))

    def _fire(self, entry: BufferEntry) -> None:
        if self._entries.get(entry.key) is not entry:
            return

        del self._entries[entry.key]
        entry.state = BufferState.FLUSHING
        entry.timer = None
        batch = entry.to_batch()

        logger.info(
            "Buffer flushed",
            extra={
                "context": {
                    "key": entry.key,
                    "fragments": batch.fragment_count,
                    "preview": batch.text[:50],
                }
            },
        )

        previous = self._tails.get(entry.key)
        task = asyncio.ensure_future(self._run_flush(entry, batch, previous))
        self._tails[entry.key] = task
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._forget(entry.key, t))

    async def _run_flush(self, entry: BufferEntry, batch: FlushBatch, previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            await entry.on_flush(batch)
        except Exception as e:
            logger.error(
                "Buffer flush callback failed",
                extra={"context": {"key": entry.key, "error": str(e)}},
                exc_info=True,
            )
        finally:
            entry.state = BufferState.IDLE

    def _forget(self, key: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._tails.get(key) is task:
            del self._tails[key]

    async def drain(self) -> None:
        """Wait until every flush that already started has finished."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))

    def shutdown(self) -> int:
        """Cancel pending timers and drop unflushed fragments. Returns dropped entries."""
        dropped = len(self._entries)
        for entry in self._entries.values():
            if entry.timer is not None:
                entry.timer.cancel()
            entry.state = BufferState.IDLE
        self._entries.clear()
        if dropped:
            logger.info("Buffers cleared", extra={"context": {"dropped": dropped}})
        return dropped
