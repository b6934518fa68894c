import asyncio
import uuid
from unittest.mock import AsyncMock

import pytest

from omnichat.services.delay_resolver import (
    BUFFER_SETTING_KEY,
    DelayResolver,
    parse_buffer_seconds,
    tenant_cache_key,
)


class FakeClock:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class TestParseBufferSeconds:
    @pytest.mark.parametrize(
        "raw,expected",
        [("0", 1), ("abc", 8), ("100", 30), (None, 8), ("5", 5), (" 12 ", 12), ("2.9", 2), ("-4", 1), ("", 8)],
    )
    def test_clamps_and_defaults(self, raw, expected):
        assert parse_buffer_seconds(raw) == expected


class TestTenantCacheKey:
    def test_global_scope(self):
        assert tenant_cache_key(None) == "global"

    def test_company_scope(self):
        tenant = uuid.uuid4()
        assert tenant_cache_key(tenant) == str(tenant)


class TestDelayResolver:
    def test_returns_clamped_milliseconds(self):
        store = AsyncMock()
        store.get_setting.return_value = "100"
        resolver = DelayResolver(store)

        assert asyncio.run(resolver.get_delay_ms(None)) == 30000
        store.get_setting.assert_awaited_once_with(None, BUFFER_SETTING_KEY)

    def test_invalid_setting_uses_default(self):
        store = AsyncMock()
        store.get_setting.return_value = "abc"
        resolver = DelayResolver(store)

        assert asyncio.run(resolver.get_delay_ms(uuid.uuid4())) == 8000

    def test_second_call_within_ttl_hits_cache(self):
        store = AsyncMock()
        store.get_setting.return_value = "3"
        clock = FakeClock()
        resolver = DelayResolver(store, clock=clock)
        tenant = uuid.uuid4()

        async def scenario():
            first = await resolver.get_delay_ms(tenant)
            clock.value += 59
            second = await resolver.get_delay_ms(tenant)
            return first, second

        assert asyncio.run(scenario()) == (3000, 3000)
        assert store.get_setting.await_count == 1

    def test_expired_entry_is_reloaded(self):
        store = AsyncMock()
        store.get_setting.side_effect = ["3", "10"]
        clock = FakeClock()
        resolver = DelayResolver(store, clock=clock)

        async def scenario():
            first = await resolver.get_delay_ms(None)
            clock.value += 61
            return first, await resolver.get_delay_ms(None)

        assert asyncio.run(scenario()) == (3000, 10000)
        assert store.get_setting.await_count == 2

    def test_tenants_are_cached_separately(self):
        store = AsyncMock()
        store.get_setting.side_effect = ["3", "20"]
        resolver = DelayResolver(store)

        async def scenario():
            return await resolver.get_delay_ms(uuid.uuid4()), await resolver.get_delay_ms(None)

        assert asyncio.run(scenario()) == (3000, 20000)

    def test_invalidate_forces_reload(self):
        store = AsyncMock()
        store.get_setting.side_effect = ["3", "15"]
        resolver = DelayResolver(store)
        tenant = uuid.uuid4()

        async def scenario():
            first = await resolver.get_delay_ms(tenant)
            resolver.invalidate(tenant)
            return first, await resolver.get_delay_ms(tenant)

        assert asyncio.run(scenario()) == (3000, 15000)

    def test_storage_error_falls_back_without_caching(self):
        store = AsyncMock()
        store.get_setting.side_effect = [RuntimeError("db down"), "4"]
        resolver = DelayResolver(store)

        async def scenario():
            return await resolver.get_delay_ms(None), await resolver.get_delay_ms(None)

        assert asyncio.run(scenario()) == (8000, 4000)
