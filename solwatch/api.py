"""HTTP surface: ingestion, event stream and read-only cache/store views."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import orjson
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .amounts import to_seconds
from .service import HoldingsService

logger = logging.getLogger(__name__)

SERVICE_KEY = "service"
DEFAULT_PAGE = 100
MAX_PAGE = 1000


def _json(payload: Any, *, status: int = 200) -> web.Response:
    return web.json_response(
        payload,
        status=status,
        dumps=lambda obj: orjson.dumps(obj, default=str).decode(),
    )


def _error(message: str, status: int) -> web.Response:
    return _json({"error": message}, status=status)


def _service(request: web.Request) -> HoldingsService:
    return request.app[SERVICE_KEY]


def _int_param(request: web.Request, name: str, default: Optional[int], *, maximum: int | None = None) -> Optional[int]:
    raw = request.query.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise web.HTTPBadRequest(
            text=orjson.dumps({"error": f"{name} must be an integer"}).decode(),
            content_type="application/json",
        ) from exc
    value = max(0, value)
    if maximum is not None:
        value = min(value, maximum)
    return value


def _bool_param(request: web.Request, name: str) -> Optional[bool]:
    raw = request.query.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


async def _read_json(request: web.Request) -> Any:
    raw = await request.read()
    if not raw:
        return {}
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise web.HTTPBadRequest(
            text=orjson.dumps({"error": f"invalid JSON: {exc}"}).decode(),
            content_type="application/json",
        ) from exc


# ingestion ----------------------------------------------------------------
async def post_tx(request: web.Request) -> web.Response:
    payload = await _read_json(request)
    if not isinstance(payload, dict):
        return _error("Expected a JSON object", 400)
    try:
        outcome = await _service(request).batcher.submit(payload)
    except ValueError as exc:
        return _error(str(exc), 400)
    return _json(outcome)


async def post_feed_test(request: web.Request) -> web.Response:
    payload = await _read_json(request)
    if isinstance(payload, dict):
        records = payload.get("records")
        if records is None:
            records = [payload]
    elif isinstance(payload, list):
        records = payload
    else:
        return _error("Expected a JSON object or array", 400)
    if not records:
        return _error("No records provided", 400)
    try:
        emitted = _service(request).emit_test_records(records)
    except ValueError as exc:
        return _error(str(exc), 400)
    return _json({"emitted": emitted})


# event stream -------------------------------------------------------------
async def feed_sse(request: web.Request) -> web.StreamResponse:
    service = _service(request)
    last_id = request.headers.get("Last-Event-ID") or request.query.get("lastEventId")
    response = web.StreamResponse(
        status=200,
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
    # events published during the handshake are queued on the subscription
    with service.bus.subscription(last_id) as sub:
        logger.info("SSE client connected", extra={"subscriber": sub.id, "last_event_id": last_id})
        try:
            await response.prepare(request)
            await response.write(b": connected\n\n")
            async for frame in sub:
                await response.write(frame.encode("utf-8"))
        except ConnectionResetError:
            logger.info("SSE client disconnected", extra={"subscriber": sub.id})
    return response


# transactions -------------------------------------------------------------
async def get_tx(request: web.Request) -> web.Response:
    signature = request.match_info["signature"]
    record = await _service(request).store.get_by_signature(signature)
    if record is None:
        return _error("Transaction not found", 404)
    return _json(record)


async def list_tx(request: web.Request) -> web.Response:
    filters: Dict[str, Any] = {
        "mint": request.query.get("mint"),
        "signature": request.query.get("signature"),
        "token_symbol": request.query.get("token_symbol"),
    }
    for param, key in (("fromTimestamp", "from_timestamp"), ("toTimestamp", "to_timestamp")):
        raw = request.query.get(param)
        if raw:
            try:
                filters[key] = to_seconds(float(raw))
            except ValueError:
                return _error(f"{param} must be a number", 400)
    limit = _int_param(request, "limit", DEFAULT_PAGE, maximum=MAX_PAGE)
    offset = _int_param(request, "offset", 0) or 0
    try:
        result = await _service(request).store.query(
            filters,
            limit=limit,
            offset=offset,
            order_by=request.query.get("orderBy") or None,
            ascending=_bool_param(request, "ascending"),
        )
    except ValueError as exc:
        return _error(str(exc), 400)
    result.update({"limit": limit, "offset": offset})
    return _json(result)


async def get_stats(request: web.Request) -> web.Response:
    service = _service(request)
    stats = await service.store.stats()
    stats["cached_mints"] = len(service.cache)
    stats["buffered_events"] = len(service.bus)
    return _json(stats)


async def get_health(request: web.Request) -> web.Response:
    return _json(await _service(request).health())


async def get_metrics(_: web.Request) -> web.Response:
    resp = web.Response(body=generate_latest())
    resp.content_type = CONTENT_TYPE_LATEST.split(";")[0]
    return resp


# cache views --------------------------------------------------------------
async def list_cached_mints(request: web.Request) -> web.Response:
    cache = _service(request).cache
    mints = [
        {"mint": record.mint, "total": record.total(), "wallets": len(record.accounts)}
        for record in cache
    ]
    return _json({"count": len(mints), "mints": mints})


async def list_mints(request: web.Request) -> web.Response:
    limit = _int_param(request, "limit", DEFAULT_PAGE, maximum=MAX_PAGE)
    include_wallets = bool(_bool_param(request, "includeWallets"))
    cards = []
    for card in _service(request).cache.snapshot(limit=limit):
        item = dict(card)
        if not include_wallets:
            item.pop("wallets", None)
        cards.append(item)
    return _json({"count": len(cards), "data": cards})


async def get_mint(request: web.Request) -> web.Response:
    mint = request.match_info["mint"]
    card = _service(request).cache.card(mint)
    if card is None:
        return _error("Mint not found", 404)
    limit = _int_param(request, "limit", DEFAULT_PAGE, maximum=MAX_PAGE)
    offset = _int_param(request, "offset", 0) or 0
    wallets = card["wallets"]
    card["wallets"] = wallets[offset:offset + limit] if limit is not None else wallets[offset:]
    card["page"] = {"limit": limit, "offset": offset, "total": len(wallets)}
    return _json(card)


def create_app(service: HoldingsService, *, manage_service: bool = True) -> web.Application:
    """Build the application around ``service``.

    With ``manage_service`` the service is started and stopped with the app.
    """

    app = web.Application()
    app[SERVICE_KEY] = service

    app.router.add_post("/tx", post_tx)
    app.router.add_get("/tx", list_tx)
    app.router.add_get("/tx/{signature}", get_tx)
    app.router.add_post("/feed/test", post_feed_test)
    app.router.add_get("/feed/sse", feed_sse)
    app.router.add_get("/stats", get_stats)
    app.router.add_get("/health", get_health)
    app.router.add_get("/metrics", get_metrics)
    app.router.add_get("/cache/mints", list_cached_mints)
    app.router.add_get("/mints", list_mints)
    app.router.add_get("/mints/{mint}", get_mint)

    async def _on_startup(_: web.Application) -> None:
        if manage_service:
            await service.start()

    async def _on_shutdown(_: web.Application) -> None:
        # ends open event streams so the runner can finish their handlers
        service.bus.close()

    async def _on_cleanup(_: web.Application) -> None:
        if manage_service:
            await service.stop()

    app.on_startup.append(_on_startup)
    app.on_shutdown.append(_on_shutdown)
    app.on_cleanup.append(_on_cleanup)
    return app


__all__ = ["create_app", "SERVICE_KEY"]
