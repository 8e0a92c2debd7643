import asyncio

from aiohttp import test_utils, web

from conftest import FakeClock, FakeHelius, FakeJupiter, FakeStore, helius_tx

from solwatch.api import create_app
from solwatch.config import load_settings
from solwatch.service import HoldingsService


def _service():
    helius = FakeHelius(
        {
            "S1": helius_tx("S1", mint="M", payer="W1", amount=100, timestamp=1000),
            "S2": helius_tx("S2", mint="M", payer="W2", amount=50, timestamp=1005),
        }
    )
    jupiter = FakeJupiter({"M": {"id": "M", "symbol": "TKN", "mcap": 10.0}})
    settings = load_settings({"BATCH_FLUSH_SIZE": "2"})
    return HoldingsService(settings, store=FakeStore(), helius=helius, jupiter=jupiter, clock=FakeClock(2000))


async def _with_client(service, body):
    app = create_app(service, manage_service=False)
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        return await body(client)


def test_post_tx_processes_full_batch_and_serves_reads():
    service = _service()

    async def body(client):
        resp = await client.post("/tx", json={"source": "feed", "signatures": ["S1", "S2"]})
        posted = await resp.json()
        one = await client.get("/tx/S1")
        missing = await client.get("/tx/NOPE")
        listing = await client.get("/tx", params={"limit": "1"})
        mints = await client.get("/mints")
        with_wallets = await client.get("/mints", params={"includeWallets": "true"})
        card = await client.get("/mints/M", params={"limit": "1", "offset": "1"})
        unknown = await client.get("/mints/UNKNOWN")
        cached = await client.get("/cache/mints")
        return (
            resp.status,
            posted,
            one.status,
            (await one.json())["token_symbol"],
            missing.status,
            await listing.json(),
            await mints.json(),
            await with_wallets.json(),
            await card.json(),
            unknown.status,
            await cached.json(),
        )

    (
        status,
        posted,
        one_status,
        symbol,
        missing_status,
        listing,
        mints,
        with_wallets,
        card,
        unknown_status,
        cached,
    ) = asyncio.run(_with_client(service, body))

    assert status == 200
    assert posted["status"] == "processed"
    assert [r["status"] for r in posted["results"]] == ["inserted", "inserted"]
    assert one_status == 200
    assert symbol == "TKN"
    assert missing_status == 404
    assert listing["count"] == 2
    assert len(listing["data"]) == 1
    assert mints["count"] == 1
    assert "wallets" not in mints["data"][0]
    assert len(with_wallets["data"][0]["wallets"]) == 2
    assert card["page"] == {"limit": 1, "offset": 1, "total": 2}
    assert [w["wallet"] for w in card["wallets"]] == ["W1"]
    assert unknown_status == 404
    assert cached["mints"] == [{"mint": "M", "total": 150.0, "wallets": 2}]


def test_post_tx_queues_partial_batch_and_rejects_empty():
    service = _service()

    async def body(client):
        queued = await client.post("/tx", json={"entries": [{"signature": "S1"}]})
        empty = await client.post("/tx", json={"signatures": []})
        garbage = await client.post("/tx", data=b"{not json")
        result = (await queued.json(), empty.status, await empty.json(), garbage.status)
        await service.batcher.close()
        return result

    queued, empty_status, empty_body, garbage_status = asyncio.run(_with_client(service, body))
    assert queued["status"] == "queued"
    assert queued["pending"] == 1
    assert empty_status == 400
    assert "error" in empty_body
    assert garbage_status == 400


def test_feed_test_and_event_stream_replay():
    service = _service()

    async def body(client):
        posted = await client.post(
            "/feed/test",
            json={"signature": "T1", "mint": "X", "to_user_account": "W", "token_amount": 1, "timestamp": 1000},
        )
        first_id = service.bus.events()[0].id
        resp = await client.get("/feed/sse", headers={"Last-Event-ID": first_id})
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        chunks = b""
        while b"\"event\":\"transaction\"" not in chunks:
            chunks += await asyncio.wait_for(resp.content.readany(), 2)
        service.bus.close()
        resp.close()
        return posted.status, chunks.decode()

    status, text = asyncio.run(_with_client(service, body))
    assert status == 200
    assert "\"signature\":\"T1\"" in text
    assert "mint_card_update" not in text


def test_health_stats_and_metrics():
    service = _service()

    async def body(client):
        health = await client.get("/health")
        stats = await client.get("/stats")
        metrics = await client.get("/metrics")
        bad_limit = await client.get("/tx", params={"limit": "abc"})
        return await health.json(), await stats.json(), metrics.status, await metrics.text(), bad_limit.status

    health, stats, metrics_status, metrics_text, bad_limit_status = asyncio.run(_with_client(service, body))
    assert health["status"] == "ok"
    assert health["store"] == "connected"
    assert stats["total"] == 0
    assert stats["cached_mints"] == 0
    assert metrics_status == 200
    assert "solwatch_events_published_total" in metrics_text
    assert bad_limit_status == 400


def test_event_stream_receives_events_published_during_handshake(monkeypatch):
    service = _service()
    original_prepare = web.StreamResponse.prepare

    async def prepare(self, request):
        if request.path == "/feed/sse":
            service.publish({"type": "holding_update", "mint": "M", "wallet": "HANDSHAKE"})
        return await original_prepare(self, request)

    monkeypatch.setattr(web.StreamResponse, "prepare", prepare)

    async def body(client):
        resp = await client.get("/feed/sse")
        chunks = b""
        while b"HANDSHAKE" not in chunks:
            chunks += await asyncio.wait_for(resp.content.readany(), 2)
        service.bus.close()
        resp.close()
        return chunks.decode()

    text = asyncio.run(_with_client(service, body))
    assert "\"wallet\":\"HANDSHAKE\"" in text
