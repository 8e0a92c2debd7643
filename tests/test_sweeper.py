import asyncio

from conftest import FakeClock, Published

from solwatch.holdings_cache import HoldingsCache
from solwatch.sweeper import CleanupSweeper


def _upsert(cache, sig, amount, ts, mint="M", wallet="W1"):
    cache.upsert(
        {
            "signature": sig,
            "mint": mint,
            "to_user_account": wallet,
            "token_amount": amount,
            "timestamp": ts,
        }
    )


def test_sold_out_mint_is_evicted_after_retention():
    clock = FakeClock(1000)
    published = Published()
    cache = HoldingsCache(clock=clock)
    sweeper = CleanupSweeper(cache, published, retention=600, clock=clock)

    _upsert(cache, "S1", 100, 1000)
    clock.now = 1005
    _upsert(cache, "S2", 0, 1005)

    clock.now = 1300
    assert sweeper.sweep() is None
    assert "M" in cache

    clock.now = 1605
    payload = sweeper.sweep()
    assert payload is not None
    assert "M" not in cache
    cleanups = published.of_type("mint_cleanup")
    assert len(cleanups) == 1
    assert cleanups[0]["mints"] == ["M"]
    assert cleanups[0]["older_than"] == 600
    assert cleanups[0]["older_than_ms"] == 600_000
    assert cleanups[0]["threshold"] == 0


def test_first_sweep_only_marks_unmarked_mint():
    clock = FakeClock(1000)
    cache = HoldingsCache(clock=clock)
    _upsert(cache, "S1", 0, 1000)
    cache.get("M").under_threshold_since = None
    sweeper = CleanupSweeper(cache, Published(), retention=0, clock=clock)

    assert sweeper.sweep() is None
    assert cache.get("M").under_threshold_since == 1000
    assert sweeper.sweep() is not None
    assert len(cache) == 0


def test_recovery_restarts_the_clock():
    clock = FakeClock(1000)
    published = Published()
    cache = HoldingsCache(clock=clock)
    sweeper = CleanupSweeper(cache, published, retention=600, clock=clock)
    _upsert(cache, "S1", 0, 1000)

    clock.now = 1500
    _upsert(cache, "S2", 5, 1500)
    sweeper.sweep()
    assert cache.get("M").under_threshold_since is None

    clock.now = 1550
    _upsert(cache, "S3", 0, 1550)
    clock.now = 2100
    assert sweeper.sweep() is None
    clock.now = 2150
    assert sweeper.sweep() is not None
    assert published.of_type("mint_cleanup")[0]["mints"] == ["M"]


def test_one_event_lists_every_removed_mint():
    clock = FakeClock(1000)
    published = Published()
    cache = HoldingsCache(min_total=10, clock=clock)
    sweeper = CleanupSweeper(cache, published, retention=60, clock=clock)
    _upsert(cache, "A1", 5, 1000, mint="A")
    _upsert(cache, "B1", 1, 1000, mint="B")
    _upsert(cache, "C1", 50, 1000, mint="C")

    clock.now = 1060
    asyncio.run(sweeper.tick())
    events = published.of_type("mint_cleanup")
    assert len(events) == 1
    assert sorted(events[0]["mints"]) == ["A", "B"]
    assert [r.mint for r in cache] == ["C"]
