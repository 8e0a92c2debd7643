"""Rate-limited holdings refresh loops.

Three independent tick functions keep the cache close to on-chain truth:

* :class:`WalletRefresher` asks Jupiter for the holdings of the most recently
  active wallets, a few per second;
* :class:`MintRefresher` periodically walks every active mint through the
  Helius token-accounts index;
* :class:`MintStatsRefresher` re-reads market stats of active mints through
  the Jupiter token search.

None of the loops ever creates a wallet; they only correct amounts of wallets
ingestion already discovered.  Each loop owns a persistent cursor and an
in-flight guard, and honours its provider's :class:`ProviderGate`.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

from . import events
from .clients.jupiter import live_fields, tokens_by_mint
from .holdings_cache import HoldingsCache
from .http import is_rate_limited
from .logging_utils import warn_once_per
from .metrics import PROVIDER_BACKOFFS, RefreshCounters
from .scheduler import ProviderGate

logger = logging.getLogger(__name__)

Publish = Callable[[Mapping[str, Any]], Any]

# warn_once_per takes minutes
STATS_FAILURE_LOG_EVERY = 5 / 60


def _apply_amounts(
    cache: HoldingsCache,
    mint: str,
    wallets: Sequence[str],
    amounts: Mapping[str, float],
    publish: Publish,
    now: float,
) -> int:
    """Write refreshed amounts (0 when absent) and publish each change."""

    changed = 0
    for wallet in wallets:
        amount = float(amounts.get(wallet, 0.0))
        if cache.set_wallet_amount(mint, wallet, amount):
            publish(events.holding_update(mint, wallet, amount, now))
            changed += 1
    return changed


class WalletRefresher:
    """Per-wallet refresh through the primary holdings provider."""

    provider = "jupiter"

    def __init__(
        self,
        cache: HoldingsCache,
        client: Any,
        gate: ProviderGate,
        publish: Publish,
        *,
        per_tick: int = 3,
        counters: RefreshCounters | None = None,
        clock: Callable[[], float] = time.time,
        log_ticks: bool = False,
    ) -> None:
        self.cache = cache
        self.client = client
        self.gate = gate
        self.publish = publish
        self.per_tick = max(0, int(per_tick))
        self.counters = counters or RefreshCounters()
        self._clock = clock
        self.log_ticks = log_ticks
        self.priority: List[str] = []
        self.cursor = 0
        self.in_flight = False

    def _rebuild(self) -> None:
        self.priority = self.cache.wallet_priority()
        self.cursor = 0

    async def tick(self) -> Dict[str, int]:
        stats = {"checked": 0, "updated": 0, "mints": 0}
        if self.per_tick == 0 or self.in_flight or self.gate.blocked():
            return stats
        if self.cursor >= len(self.priority):
            self._rebuild()
        if not self.priority:
            return stats

        self.in_flight = True
        changed_mints: Set[str] = set()
        try:
            while stats["checked"] < self.per_tick and self.cursor < len(self.priority):
                if self.gate.blocked():
                    break
                wallet = self.priority[self.cursor]
                self.cursor += 1
                try:
                    holdings = await self.client.holdings(wallet)
                except Exception as exc:
                    if is_rate_limited(exc):
                        # retry this wallet once the window closes
                        self.cursor -= 1
                        self.gate.trip()
                        PROVIDER_BACKOFFS.labels(self.provider).inc()
                        break
                    stats["checked"] += 1
                    logger.info(
                        "Jupiter holdings failed for %s: %s",
                        wallet,
                        exc,
                        extra={"wallet": wallet, "error_type": type(exc).__name__},
                    )
                    continue
                stats["checked"] += 1
                mints = self.cache.mints_for_wallet(wallet)
                self.counters.wallet_checked(len(mints))
                now = self._clock()
                for mint in mints:
                    amounts = {wallet: holdings.get(mint, 0.0)}
                    changed = _apply_amounts(self.cache, mint, [wallet], amounts, self.publish, now)
                    if changed:
                        stats["updated"] += changed
                        changed_mints.add(mint)
        finally:
            self.in_flight = False

        stats["mints"] = len(changed_mints)
        self.counters.wallet_mints_changed(stats["mints"])
        self.counters.wallet_updated(self.provider, stats["updated"])
        if self.log_ticks and stats["checked"]:
            logger.info(
                "Holdings refresh tick (Jupiter): checked %d wallets, updated %d, mintsChanged %d",
                stats["checked"],
                stats["updated"],
                stats["mints"],
            )
        return stats


class MintRefresher:
    """Per-mint consistency sweep through the fallback token-accounts index."""

    provider = "helius"

    def __init__(
        self,
        cache: HoldingsCache,
        client: Any,
        gate: ProviderGate,
        publish: Publish,
        *,
        per_tick: int = 8,
        sweep_interval: float = 60.0,
        counters: RefreshCounters | None = None,
        clock: Callable[[], float] = time.time,
        log_ticks: bool = False,
    ) -> None:
        self.cache = cache
        self.client = client
        self.gate = gate
        self.publish = publish
        self.per_tick = max(0, int(per_tick))
        self.sweep_interval = float(sweep_interval)
        self.counters = counters or RefreshCounters()
        self._clock = clock
        self.log_ticks = log_ticks
        self.mints: List[str] = []
        self.cursor = 0
        self.active = False
        self.last_start: Optional[float] = None
        self.in_flight = False

    def _start_sweep(self, now: float) -> None:
        self.mints = self.cache.active_mints()
        self.cursor = 0
        self.active = True
        self.last_start = now

    async def tick(self) -> Dict[str, int]:
        stats = {"scanned": 0, "updated": 0, "mints": 0}
        if self.per_tick == 0 or self.in_flight or self.gate.blocked():
            return stats
        now = self._clock()
        if not self.active:
            if self.last_start is not None and now - self.last_start < self.sweep_interval:
                return stats
            self._start_sweep(now)
        if not self.mints:
            self.active = False
            return stats

        self.in_flight = True
        try:
            while stats["scanned"] < self.per_tick and self.cursor < len(self.mints):
                if self.gate.blocked():
                    break
                mint = self.mints[self.cursor]
                self.cursor += 1
                try:
                    balances = await self.client.balances(mint)
                except Exception as exc:
                    if is_rate_limited(exc):
                        self.cursor -= 1
                        self.gate.trip()
                        PROVIDER_BACKOFFS.labels(self.provider).inc()
                        break
                    stats["scanned"] += 1
                    self.counters.mint_scanned(False)
                    logger.info(
                        "Helius getTokenAccounts failed for %s: %s",
                        mint,
                        exc,
                        extra={"mint": mint, "error_type": type(exc).__name__},
                    )
                    continue
                stats["scanned"] += 1
                record = self.cache.get(mint)
                changed = 0
                if record is not None:
                    wallets = list(record.accounts)
                    if not getattr(balances, "complete", True):
                        # a capped listing cannot prove a wallet sold out
                        wallets = [w for w in wallets if w in balances]
                    changed = _apply_amounts(self.cache, mint, wallets, balances, self.publish, self._clock())
                self.counters.mint_scanned(changed > 0)
                if changed:
                    stats["updated"] += changed
                    stats["mints"] += 1
        finally:
            self.in_flight = False

        self.counters.wallet_updated(self.provider, stats["updated"])
        if self.log_ticks and stats["scanned"]:
            logger.info(
                "Holdings refresh tick (Helius): scanned %d mints, updated %d wallets, "
                "mintsChanged %d, progress %d/%d",
                stats["scanned"],
                stats["updated"],
                stats["mints"],
                self.cursor,
                len(self.mints),
            )
        if self.cursor >= len(self.mints):
            self.active = False
        return stats


class MintStatsRefresher:
    """Batched market stat refresh through the Jupiter token search."""

    provider = "jupiter"

    def __init__(
        self,
        cache: HoldingsCache,
        client: Any,
        gate: ProviderGate,
        publish: Publish,
        *,
        requests_per_tick: int = 3,
        batch_size: int = 50,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.client = client
        self.gate = gate
        self.publish = publish
        self.requests_per_tick = max(0, int(requests_per_tick))
        self.batch_size = max(1, int(batch_size))
        self.enabled = enabled
        self._clock = clock
        self.cursor = 0
        self.in_flight = False

    async def _refresh_slice(self, queries: List[str]) -> int:
        try:
            data = await self.client.search_batch(queries)
        except Exception as exc:
            if is_rate_limited(exc):
                self.gate.trip()
                PROVIDER_BACKOFFS.labels(self.provider).inc()
            else:
                warn_once_per(
                    STATS_FAILURE_LOG_EVERY,
                    "jupiter-refresh",
                    "Jupiter refresh slice failed: %s",
                    exc,
                    logger=logger,
                )
            return 0
        updated = 0
        for mint, token in tokens_by_mint(data).items():
            if self.cache.merge_market(mint, live_fields(token)):
                updated += 1
        now = self._clock()
        for mint in queries:
            card = self.cache.card(mint)
            if card is not None:
                self.publish(events.mint_card_update(card, now))
        return updated

    async def tick(self) -> int:
        if not self.enabled or self.requests_per_tick == 0:
            return 0
        if self.in_flight or self.gate.blocked():
            return 0
        mints = self.cache.active_mints()
        if not mints:
            return 0

        self.in_flight = True
        try:
            if self.cursor >= len(mints):
                self.cursor = 0
            max_requests = min(self.requests_per_tick, math.ceil(len(mints) / self.batch_size))
            slices: List[List[str]] = []
            for _ in range(max_requests):
                if self.cursor >= len(mints):
                    break
                end = min(len(mints), self.cursor + self.batch_size)
                slices.append(mints[self.cursor:end])
                self.cursor = end
            results = await asyncio.gather(*(self._refresh_slice(q) for q in slices))
        finally:
            self.in_flight = False

        total = sum(results)
        if total:
            logger.info(
                "Jupiter refresh tick: updated %d mint cards (mcap, holder_count, price, liq).",
                total,
            )
        return total


__all__ = ["WalletRefresher", "MintRefresher", "MintStatsRefresher"]
