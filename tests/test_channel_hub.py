import asyncio
from unittest.mock import AsyncMock, Mock, patch

from omnichat.schemas.inbound import InboundEvent, InboundKind, Profile, Reply, ReplyButton
from omnichat.services.channel_hub import (
    MSG_AUDIO_ERROR,
    MSG_AUDIO_NOT_UNDERSTOOD,
    TELEGRAM_TOKEN_SETTING,
    ChannelHub,
)
from omnichat.services.conversation_service import ConversationService
from omnichat.services.delay_resolver import BUFFER_SETTING_KEY, DelayResolver
from omnichat.services.media_service import MediaService
from omnichat.services.message_buffer import MessageBuffer
from omnichat.services.result import Result


class FakeTransport:
    def __init__(self, tenant_id=None, channel="telegram", result=None):
        self.tenant_id = tenant_id
        self.channel = channel
        self.sent = []
        self.started = False
        self.stopped = False
        self.result = result or Result.success(None)

    async def send(self, external_id, text, photos, buttons):
        self.sent.append((external_id, text, photos, buttons))
        return self.result

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True


def make_hub(store, llm, scheduler, tmp_path=None, **kwargs):
    delay_resolver = DelayResolver(store)
    return ChannelHub(
        store,
        llm,
        conversation=ConversationService(store, llm),
        delay_resolver=delay_resolver,
        buffer=MessageBuffer(delay_resolver, scheduler=scheduler),
        media_service=MediaService(storage_dir=str(tmp_path) if tmp_path else "uploads"),
        **kwargs,
    )


def text_event(text, message_id=None, external_id="555", channel="telegram"):
    return InboundEvent(
        channel=channel,
        external_id=external_id,
        kind=InboundKind.TEXT,
        text=text,
        message_id=message_id,
        profile=Profile(first_name="Ana"),
    )


def audio_event(external_id="555"):
    return InboundEvent(
        channel="telegram",
        external_id=external_id,
        kind=InboundKind.AUDIO,
        media_url="https://api.telegram.org/file/bot/voice.ogg",
        file_name="audio.ogg",
        profile=Profile(first_name="Ana"),
    )


class TestBufferedConversation:
    def test_burst_is_answered_once_after_the_window(self, store, llm, scheduler):
        company = store.add_company()
        store.set_setting(company.id, BUFFER_SETTING_KEY, "8")
        hub = make_hub(store, llm, scheduler)
        transport = FakeTransport(tenant_id=company.id)

        async def scenario():
            await hub.handle_event(text_event("hola"), transport)
            scheduler.advance(2)
            await hub.handle_event(text_event("necesito ayuda"), transport)
            scheduler.advance(7.9)
            await asyncio.sleep(0)
            assert transport.sent == []
            assert hub.pending_count == 1
            scheduler.advance(0.2)
            await hub.buffer.drain()

        asyncio.run(scenario())

        assert len(transport.sent) == 1
        external_id, text, photos, buttons = transport.sent[0]
        assert external_id == "555"
        assert text == "¡Hola! ¿En qué te ayudo?"

        llm_messages = llm.chat_completion.await_args.args[1]
        assert llm_messages[-1] == {"role": "user", "content": "hola\nnecesito ayuda"}

        assert len(store.contacts) == 1
        assert store.contacts[0].company_id == company.id
        assert store.contacts[0].platform == "telegram"
        assert store.contacts[0].platform_id == "555"
        assert len(store.sessions) == 1

    def test_flush_uses_currently_registered_transport(self, store, llm, scheduler):
        hub = make_hub(store, llm, scheduler)
        old, new = FakeTransport(), FakeTransport()
        hub.register(old)

        async def scenario():
            await hub.handle_event(text_event("hola"), old)
            hub.register(new)
            scheduler.advance(9)
            await hub.buffer.drain()

        asyncio.run(scenario())

        assert old.sent == []
        assert len(new.sent) == 1

    def test_duplicate_delivery_is_dropped(self, store, llm, scheduler):
        dedup = AsyncMock()
        dedup.is_duplicate.side_effect = [False, True]
        hub = make_hub(store, llm, scheduler, dedup=dedup)
        transport = FakeTransport()

        async def scenario():
            await hub.handle_event(text_event("hola", message_id="555:1"), transport)
            await hub.handle_event(text_event("hola", message_id="555:1"), transport)
            return hub.buffer.get_entry(None, "telegram", "555")

        entry = asyncio.run(scenario())

        assert len(entry.fragments) == 1
        dedup.is_duplicate.assert_awaited_with("global:telegram", "555:1")

    def test_unsupported_kind_is_dropped(self, store, llm, scheduler):
        hub = make_hub(store, llm, scheduler)
        event = InboundEvent(channel="telegram", external_id="555", kind=InboundKind.UNSUPPORTED)

        asyncio.run(hub.handle_event(event, FakeTransport()))

        assert hub.pending_count == 0


class TestAudio:
    def test_voice_note_is_transcribed_and_answered(self, store, llm, scheduler, tmp_path):
        hub = make_hub(store, llm, scheduler, tmp_path=tmp_path)
        transport = FakeTransport()

        async def scenario():
            with patch(
                "omnichat.services.channel_hub.download_to_file",
                new_callable=AsyncMock,
                return_value=Result.success("ok"),
            ) as mock_download:
                await hub.handle_event(audio_event(), transport)
                await hub.shutdown()
            return mock_download

        mock_download = asyncio.run(scenario())

        target = mock_download.await_args.args[1]
        assert target.suffix == ".ogg"
        assert target.parent == tmp_path
        llm.transcribe_audio.assert_awaited_once_with(None, str(target))
        assert hub.pending_count == 0
        assert transport.sent[0][1] == "¡Hola! ¿En qué te ayudo?"
        user_message = store.messages[0]
        assert user_message.content == "texto transcrito"
        assert user_message.content_type == "audio"

    def test_empty_transcription_gets_not_understood(self, store, llm, scheduler, tmp_path):
        llm.transcribe_audio.return_value = ""
        hub = make_hub(store, llm, scheduler, tmp_path=tmp_path)
        transport = FakeTransport()

        async def scenario():
            with patch(
                "omnichat.services.channel_hub.download_to_file",
                new_callable=AsyncMock,
                return_value=Result.success("ok"),
            ):
                await hub.handle_event(audio_event(), transport)
                await hub.shutdown()

        asyncio.run(scenario())

        assert [s[1] for s in transport.sent] == [MSG_AUDIO_NOT_UNDERSTOOD]
        llm.chat_completion.assert_not_awaited()

    def test_download_failure_gets_error_reply(self, store, llm, scheduler, tmp_path):
        hub = make_hub(store, llm, scheduler, tmp_path=tmp_path)
        transport = FakeTransport()

        async def scenario():
            with patch(
                "omnichat.services.channel_hub.download_to_file",
                new_callable=AsyncMock,
                return_value=Result.failure("download exceeded size cap", "too_large"),
            ):
                await hub.handle_event(audio_event(), transport)
                await hub.shutdown()

        asyncio.run(scenario())

        assert [s[1] for s in transport.sent] == [MSG_AUDIO_ERROR]
        llm.transcribe_audio.assert_not_awaited()


class TestDispatch:
    def test_silent_reply_is_not_sent(self, store, llm, scheduler):
        hub = make_hub(store, llm, scheduler)
        transport = FakeTransport()

        assert asyncio.run(hub.dispatch_reply(transport, "555", Reply.silent())) is False
        assert transport.sent == []

    def test_failed_send_returns_false(self, store, llm, scheduler):
        hub = make_hub(store, llm, scheduler)
        transport = FakeTransport(result=Result.failure("boom", "telegram_send_failed"))

        assert asyncio.run(hub.dispatch_reply(transport, "555", Reply(text="hola"))) is False

    def test_buttons_only_reply_is_sent(self, store, llm, scheduler):
        hub = make_hub(store, llm, scheduler)
        transport = FakeTransport()
        reply = Reply(text="", buttons=[ReplyButton(label="Web", url="https://x.com")])

        assert asyncio.run(hub.dispatch_reply(transport, "555", reply)) is True


class TestRegistryAndManualSend:
    def test_manual_telegram_falls_back_to_global_bot(self, store, llm, scheduler):
        company = store.add_company()
        hub = make_hub(store, llm, scheduler)
        global_bot = FakeTransport()
        hub.register(global_bot)

        result = asyncio.run(hub.send_manual(company.id, "telegram", "555", "Hola desde soporte"))

        assert result.ok
        assert global_bot.sent == [("555", "Hola desde soporte", [], [])]

    def test_manual_without_transport_fails(self, store, llm, scheduler):
        hub = make_hub(store, llm, scheduler)

        result = asyncio.run(hub.send_manual(None, "whatsapp", "34600000000", "hola"))

        assert not result.ok
        assert result.error_code == "no_transport"

    def test_start_launches_configured_bots(self, store, llm, scheduler):
        company = store.add_company()
        silent_company = store.add_company()
        store.set_setting(None, TELEGRAM_TOKEN_SETTING, "global-token")
        store.set_setting(company.id, TELEGRAM_TOKEN_SETTING, "company-token")
        factory = Mock(side_effect=lambda tenant_id, token, on_event: FakeTransport(tenant_id=tenant_id))
        hub = make_hub(store, llm, scheduler, telegram_factory=factory, polling_enabled=True)

        asyncio.run(hub.start())

        tokens = [c.args[1] for c in factory.call_args_list]
        assert tokens == ["global-token", "company-token"]
        assert hub.get_transport(None, "telegram").started
        assert hub.get_transport(company.id, "telegram").started
        assert hub.get_transport(silent_company.id, "telegram") is None

    def test_invalidate_restarts_bot_and_clears_delay_cache(self, store, llm, scheduler):
        company = store.add_company()
        store.set_setting(company.id, TELEGRAM_TOKEN_SETTING, "old-token")
        store.set_setting(company.id, BUFFER_SETTING_KEY, "3")
        factory = Mock(side_effect=lambda tenant_id, token, on_event: FakeTransport(tenant_id=tenant_id))
        hub = make_hub(store, llm, scheduler, telegram_factory=factory, polling_enabled=False)

        async def scenario():
            first = await hub.start_telegram(company.id)
            assert await hub.delay_resolver.get_delay_ms(company.id) == 3000
            store.set_setting(company.id, BUFFER_SETTING_KEY, "12")
            await hub.invalidate_tenant(company.id)
            return first, await hub.delay_resolver.get_delay_ms(company.id)

        first, delay_ms = asyncio.run(scenario())

        assert first.stopped
        assert hub.get_transport(company.id, "telegram") is not first
        assert delay_ms == 12000

    def test_shutdown_stops_transports_and_drops_buffers(self, store, llm, scheduler):
        hub = make_hub(store, llm, scheduler, dedup=AsyncMock())
        hub.dedup.is_duplicate.return_value = False
        transport = FakeTransport()
        hub.register(transport)

        async def scenario():
            await hub.handle_event(text_event("hola"), transport)
            await hub.shutdown()

        asyncio.run(scenario())

        assert transport.stopped
        assert hub.pending_count == 0
        assert hub.transports == []
        hub.dedup.close.assert_awaited_once()
