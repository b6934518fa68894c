import asyncio
import uuid
from unittest.mock import AsyncMock

from omnichat.schemas.inbound import Fragment, Profile
from omnichat.services.message_buffer import (
    BufferState,
    MessageBuffer,
    buffer_key,
    coalesce_fragments,
)
from tests.fakes import ManualScheduler


def make_buffer(delay_ms: int = 8000, scheduler=None):
    resolver = AsyncMock()
    resolver.get_delay_ms.return_value = delay_ms
    return MessageBuffer(resolver, scheduler=scheduler or ManualScheduler())


class Recorder:
    def __init__(self):
        self.batches = []

    async def __call__(self, batch):
        self.batches.append(batch)


class TestBufferKey:
    def test_global_tenant(self):
        assert buffer_key(None, "telegram", "555") == "global_telegram_555"

    def test_channels_do_not_collide(self):
        tenant = uuid.uuid4()
        assert buffer_key(tenant, "telegram", "555") != buffer_key(tenant, "whatsapp", "555")


class TestCoalesceFragments:
    def test_joins_non_empty_texts_in_order(self):
        text, content_type, media = coalesce_fragments(
            [Fragment(text="hola"), Fragment(text="   "), Fragment(text=" necesito ayuda ")]
        )
        assert text == "hola\nnecesito ayuda"
        assert content_type == "text"
        assert media is None

    def test_media_comes_from_last_fragment_with_media(self):
        text, content_type, media = coalesce_fragments(
            [
                Fragment(text="mira", content_type="image", media_url="https://cdn/a.jpg"),
                Fragment(text="y esta", content_type="image", media_url="https://cdn/b.jpg"),
                Fragment(text="gracias"),
            ]
        )
        assert text == "mira\ny esta\ngracias"
        assert content_type == "image"
        assert media == "https://cdn/b.jpg"

    def test_all_blank_becomes_placeholder(self):
        text, content_type, media = coalesce_fragments(
            [Fragment(text="", content_type="image", media_url="https://cdn/a.jpg")]
        )
        assert text == "[Media]"
        assert media == "https://cdn/a.jpg"


class TestMessageBuffer:
    def test_burst_produces_single_flush(self):
        scheduler = ManualScheduler()
        buffer = make_buffer(scheduler=scheduler)
        recorder = Recorder()

        async def scenario():
            for text in ["hola", "como", "estas"]:
                await buffer.submit(None, "telegram", "555", Fragment(text=text), recorder)
                scheduler.advance(2)
            scheduler.advance(5.9)
            assert recorder.batches == []
            scheduler.advance(0.2)
            await buffer.drain()

        asyncio.run(scenario())

        assert len(recorder.batches) == 1
        batch = recorder.batches[0]
        assert batch.text == "hola\ncomo\nestas"
        assert batch.fragment_count == 3
        assert batch.channel == "telegram"
        assert batch.external_id == "555"

    def test_gap_longer_than_delay_gives_two_flushes(self):
        scheduler = ManualScheduler()
        buffer = make_buffer(delay_ms=3000, scheduler=scheduler)
        recorder = Recorder()

        async def scenario():
            await buffer.submit(None, "telegram", "1", Fragment(text="primero"), recorder)
            scheduler.advance(4)
            await buffer.drain()
            await buffer.submit(None, "telegram", "1", Fragment(text="segundo"), recorder)
            scheduler.advance(4)
            await buffer.drain()

        asyncio.run(scenario())

        assert [b.text for b in recorder.batches] == ["primero", "segundo"]

    def test_sliding_window_restarts_on_each_fragment(self):
        scheduler = ManualScheduler()
        buffer = make_buffer(delay_ms=5000, scheduler=scheduler)
        recorder = Recorder()

        async def scenario():
            for _ in range(5):
                await buffer.submit(None, "whatsapp", "x", Fragment(text="..."), recorder)
                scheduler.advance(4)
            assert recorder.batches == []
            entry = buffer.get_entry(None, "whatsapp", "x")
            assert entry.state == BufferState.BUFFERING
            assert entry.deadline == 16 + 5
            scheduler.advance(1)
            await buffer.drain()

        asyncio.run(scenario())
        assert len(recorder.batches) == 1

    def test_keys_flush_independently(self):
        scheduler = ManualScheduler()
        buffer = make_buffer(scheduler=scheduler)
        recorder = Recorder()
        tenant = uuid.uuid4()

        async def scenario():
            await buffer.submit(tenant, "telegram", "555", Fragment(text="a"), recorder)
            await buffer.submit(tenant, "instagram", "555", Fragment(text="b"), recorder)
            await buffer.submit(None, "telegram", "555", Fragment(text="c"), recorder)
            assert buffer.pending_count == 3
            scheduler.advance(9)
            await buffer.drain()

        asyncio.run(scenario())
        assert sorted(b.text for b in recorder.batches) == ["a", "b", "c"]

    def test_entry_removed_before_callback_runs(self):
        scheduler = ManualScheduler()
        buffer = make_buffer(delay_ms=1000, scheduler=scheduler)
        seen = []

        async def on_flush(batch):
            seen.append(buffer.get_entry(None, "telegram", "9"))
            await buffer.submit(None, "telegram", "9", Fragment(text="durante"), on_flush)

        async def scenario():
            await buffer.submit(None, "telegram", "9", Fragment(text="antes"), on_flush)
            scheduler.advance(1)
            await buffer.drain()
            assert buffer.get_entry(None, "telegram", "9") is not None
            buffer.shutdown()

        asyncio.run(scenario())
        assert seen == [None]

    def test_fragment_during_flush_starts_new_buffer(self):
        scheduler = ManualScheduler()
        buffer = make_buffer(delay_ms=1000, scheduler=scheduler)
        gate = None
        batches = []

        async def slow_flush(batch):
            batches.append(batch.text)
            if batch.text == "uno":
                await gate.wait()

        async def scenario():
            nonlocal gate
            gate = asyncio.Event()
            await buffer.submit(None, "telegram", "7", Fragment(text="uno"), slow_flush)
            scheduler.advance(1)
            await asyncio.sleep(0)
            await buffer.submit(None, "telegram", "7", Fragment(text="dos"), slow_flush)
            scheduler.advance(1)
            await asyncio.sleep(0)
            assert batches == ["uno"]
            gate.set()
            await buffer.drain()

        asyncio.run(scenario())
        assert batches == ["uno", "dos"]

    def test_callback_error_is_logged_not_raised(self, caplog):
        scheduler = ManualScheduler()
        buffer = make_buffer(delay_ms=1000, scheduler=scheduler)

        async def failing(batch):
            raise RuntimeError("boom")

        async def scenario():
            await buffer.submit(None, "telegram", "1", Fragment(text="hola"), failing)
            scheduler.advance(1)
            await buffer.drain()

        asyncio.run(scenario())

        assert buffer.pending_count == 0
        assert any("Buffer flush callback failed" in r.getMessage() for r in caplog.records)

    def test_last_callback_and_profile_win(self):
        scheduler = ManualScheduler()
        buffer = make_buffer(delay_ms=1000, scheduler=scheduler)
        first, second = Recorder(), Recorder()

        async def scenario():
            await buffer.submit(None, "telegram", "1", Fragment(text="a", profile=Profile(first_name="Ana")), first)
            await buffer.submit(None, "telegram", "1", Fragment(text="b", profile=Profile(first_name="Ana M")), second)
            scheduler.advance(1)
            await buffer.drain()

        asyncio.run(scenario())

        assert first.batches == []
        assert second.batches[0].profile.first_name == "Ana M"

    def test_shutdown_cancels_pending_timers(self):
        scheduler = ManualScheduler()
        buffer = make_buffer(scheduler=scheduler)
        recorder = Recorder()

        async def scenario():
            await buffer.submit(None, "telegram", "1", Fragment(text="a"), recorder)
            await buffer.submit(None, "telegram", "2", Fragment(text="b"), recorder)
            dropped = buffer.shutdown()
            scheduler.advance(30)
            await buffer.drain()
            return dropped

        assert asyncio.run(scenario()) == 2
        assert recorder.batches == []
        assert buffer.pending_count == 0
        assert scheduler.armed == []
