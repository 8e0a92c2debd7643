"""Composition root: builds every component and owns the periodic loops."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping

from . import events
from .amounts import to_seconds
from .clients.helius import HeliusClient
from .clients.jupiter import JupiterClient
from .config import Settings
from .event_bus import Event, EventBus
from .holdings_cache import HoldingsCache
from .http import close_session, set_session_timeout
from .ingestion import IngestionBatcher
from .metrics import EVENTS_PUBLISHED, SSE_SUBSCRIBERS, RefreshCounters
from .refresh import MintRefresher, MintStatsRefresher, WalletRefresher
from .scheduler import PeriodicTask, ProviderGate
from .store import TransactionStore
from .sweeper import CleanupSweeper

logger = logging.getLogger(__name__)

REFRESH_TICK = 1.0


class HoldingsService:
    """Holds the single cache instance and hands it to every component."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: Any = None,
        helius: Any = None,
        jupiter: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self.cache = HoldingsCache(
            min_total=settings.mint_min_total,
            clock=clock,
            source_labels=settings.source_labels,
        )
        self.bus = EventBus(settings.event_buffer_size, clock=clock, on_publish=self._on_publish)
        self.store = store if store is not None else TransactionStore(settings.async_database_url)
        self.helius = helius if helius is not None else HeliusClient(
            settings.helius_key,
            api_url=settings.helius_api_url,
            rpc_url=settings.helius_rpc_url,
            retries=settings.http_max_retries,
            backoff=settings.http_retry_backoff,
        )
        self.jupiter = jupiter if jupiter is not None else JupiterClient(
            settings.jup_base_url,
            api_key=settings.jup_key,
            holdings_path=settings.jup_holdings_path,
            retries=min(1, settings.http_max_retries),
            backoff=settings.http_retry_backoff,
        )

        self.counters = RefreshCounters()
        self.jupiter_gate = ProviderGate("Jupiter", settings.jup_backoff, clock=clock)
        self.helius_gate = ProviderGate("Helius", settings.helius_backoff, clock=clock)

        self.batcher = IngestionBatcher(
            self.cache,
            self.store,
            self.helius,
            self.jupiter,
            self.publish,
            flush_size=settings.flush_size,
            flush_delay=settings.flush_delay,
            enrich_batch_size=settings.enrich_batch_size,
            clock=clock,
        )
        self.sweeper = CleanupSweeper(
            self.cache,
            self.publish,
            retention=settings.cleanup_retention,
            clock=clock,
        )
        self.wallet_refresher = WalletRefresher(
            self.cache,
            self.jupiter,
            self.jupiter_gate,
            self.publish,
            per_tick=settings.jup_holdings_rps,
            counters=self.counters,
            clock=clock,
            log_ticks=settings.log_holdings_tick,
        )
        self.mint_refresher = MintRefresher(
            self.cache,
            self.helius,
            self.helius_gate,
            self.publish,
            per_tick=settings.helius_refresh_rps,
            sweep_interval=settings.helius_sweep_interval,
            counters=self.counters,
            clock=clock,
            log_ticks=settings.log_holdings_tick,
        )
        self.stats_refresher = MintStatsRefresher(
            self.cache,
            self.jupiter,
            self.jupiter_gate,
            self.publish,
            requests_per_tick=settings.jup_refresh_rps,
            batch_size=settings.jup_refresh_batch_size,
            enabled=settings.jup_refresh_enabled,
            clock=clock,
        )
        self.tasks: List[PeriodicTask] = [
            PeriodicTask("holdings-jupiter", self.wallet_refresher.tick, REFRESH_TICK),
            PeriodicTask("holdings-helius", self.mint_refresher.tick, REFRESH_TICK),
            PeriodicTask("mint-stats", self.stats_refresher.tick, REFRESH_TICK),
            PeriodicTask("cache-cleanup", self.sweeper.tick, settings.sweeper_interval),
            PeriodicTask("sse-heartbeat", self._heartbeat, settings.heartbeat_interval),
            PeriodicTask("refresh-summary", self._summary, settings.refresh_summary_interval),
        ]
        self.started = False

    # events ---------------------------------------------------------------
    def publish(self, data: Mapping[str, Any]) -> Event:
        return self.bus.publish(data)

    def _on_publish(self, event: Event) -> None:
        kind = event.data.get("event") or event.data.get("type") or "unknown"
        EVENTS_PUBLISHED.labels(str(kind)).inc()

    async def _heartbeat(self) -> None:
        SSE_SUBSCRIBERS.set(self.bus.heartbeat())

    async def _summary(self) -> None:
        self.counters.log_summary()

    def emit_test_records(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Merge synthetic records into the cache and publish them as-is."""

        emitted = 0
        now = self._clock()
        for data in records:
            if not isinstance(data, Mapping):
                raise ValueError("feed records must be JSON objects")
            normalized = dict(data)
            normalized["timestamp"] = to_seconds(data.get("timestamp"), now)
            self.cache.upsert(normalized)
            card = self.cache.card(normalized["mint"]) if normalized.get("mint") else None
            if card is not None:
                self.publish(events.mint_card_update(card, now))
            self.publish(events.transaction(normalized))
            emitted += 1
        return emitted

    # lifecycle ------------------------------------------------------------
    async def start(self) -> None:
        if self.started:
            return
        set_session_timeout(self.settings.http_timeout)
        if hasattr(self.store, "wait_ready"):
            await self.store.wait_ready()
        for task in self.tasks:
            if task.interval > 0:
                task.start()
        self.started = True
        logger.info(
            "holdings service started",
            extra={"tasks": [t.name for t in self.tasks if t.running]},
        )

    async def stop(self) -> None:
        for task in self.tasks:
            await task.stop()
        await self.batcher.close()
        self.bus.close()
        if hasattr(self.store, "close"):
            await self.store.close()
        await close_session()
        set_session_timeout(None)
        self.started = False

    async def health(self) -> Dict[str, Any]:
        connected = await self.store.test_connection()
        return {
            "status": "ok",
            "store": "connected" if connected else "disconnected",
            "sseClients": self.bus.subscriber_count,
            "bufferSize": len(self.bus),
            "pending": len(self.batcher.pending),
            "cachedMints": len(self.cache),
            "backoff": {
                "jupiter": self.jupiter_gate.remaining(),
                "helius": self.helius_gate.remaining(),
            },
        }


def build_service(settings: Settings, **kwargs: Any) -> HoldingsService:
    return HoldingsService(settings, **kwargs)


__all__ = ["HoldingsService", "build_service", "REFRESH_TICK"]
