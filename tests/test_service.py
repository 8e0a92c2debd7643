import asyncio

from conftest import FakeClock, FakeHelius, FakeJupiter, FakeStore

from solwatch import http
from solwatch.config import load_settings
from solwatch.service import HoldingsService


def _service(clock=None, **env):
    settings = load_settings({k: str(v) for k, v in env.items()})
    store = FakeStore()
    return HoldingsService(
        settings,
        store=store,
        helius=FakeHelius(),
        jupiter=FakeJupiter(),
        clock=clock or FakeClock(2000),
    )


def test_components_share_one_cache():
    service = _service()
    assert service.batcher.cache is service.cache
    assert service.sweeper.cache is service.cache
    assert service.wallet_refresher.cache is service.cache
    assert service.mint_refresher.cache is service.cache
    assert service.stats_refresher.cache is service.cache
    # the stats refresh shares the holdings provider window
    assert service.stats_refresher.gate is service.wallet_refresher.gate
    assert service.mint_refresher.gate is service.helius_gate


def test_settings_flow_into_components():
    service = _service(
        BATCH_FLUSH_SIZE=7,
        MINT_CLEANUP_UNDER_TOTAL=120,
        JUP_HOLDINGS_RPS=2,
        HELIUS_REFRESH_INTERVAL=90,
        EVENT_BUFFER_SIZE=50,
        MINT_MIN_TOTAL_FOR_REFRESH=3,
    )
    assert service.batcher.flush_size == 7
    assert service.sweeper.retention == 120
    assert service.wallet_refresher.per_tick == 2
    assert service.mint_refresher.sweep_interval == 90
    assert service.bus.capacity == 50
    assert service.cache.min_total == 3


def test_emit_test_records_updates_cache_and_bus():
    service = _service()
    emitted = service.emit_test_records(
        [{"signature": "S1", "mint": "M", "to_user_account": "W", "token_amount": 4, "timestamp": 1_700_000_000_000}]
    )
    assert emitted == 1
    assert service.cache.get("M").last_timestamp == 1_700_000_000
    kinds = [e.data.get("event") or e.data.get("type") for e in service.bus.events()]
    assert kinds == ["mint_card_update", "transaction"]


def test_start_and_stop_lifecycle():
    service = _service(SSE_HEARTBEAT_INTERVAL=1, HTTP_TIMEOUT_SEC=4)

    async def scenario():
        await service.start()
        running = [t.name for t in service.tasks if t.running]
        timeout = http._SESSION_TIMEOUT
        health = await service.health()
        await service.stop()
        return running, timeout, health, [t.running for t in service.tasks]

    running, timeout, health, after = asyncio.run(scenario())
    assert timeout == 4
    assert http._SESSION_TIMEOUT is None
    assert "holdings-jupiter" in running
    assert "cache-cleanup" in running
    assert health["status"] == "ok"
    assert health["store"] == "connected"
    assert not any(after)
    assert service.store.closed


def test_default_store_uses_async_driver_url(tmp_path):
    settings = load_settings({"DATABASE_URL": f"sqlite:///{tmp_path / 'tx.db'}"})
    service = HoldingsService(settings, helius=FakeHelius(), jupiter=FakeJupiter(), clock=FakeClock(2000))
    assert service.store.url == f"sqlite+aiosqlite:///{tmp_path / 'tx.db'}"
    asyncio.run(service.store.close())
