"""Prometheus counters and the periodic refresh summary."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Dict

from prometheus_client import Counter, Gauge

logger = logging.getLogger(__name__)

WALLETS_CHECKED = Counter(
    "solwatch_refresh_wallets_checked_total",
    "Wallets queried by the holdings refresh",
    ["provider"],
)
WALLETS_UPDATED = Counter(
    "solwatch_refresh_wallets_updated_total",
    "Wallet balances changed by the holdings refresh",
    ["provider"],
)
MINTS_SCANNED = Counter(
    "solwatch_refresh_mints_scanned_total",
    "Mints touched by the holdings refresh",
    ["provider"],
)
PROVIDER_BACKOFFS = Counter(
    "solwatch_provider_backoff_total",
    "Backoff windows opened after a provider rate limit",
    ["provider"],
)
EVENTS_PUBLISHED = Counter(
    "solwatch_events_published_total",
    "Events appended to the replay buffer",
    ["type"],
)
SIGNATURES_PROCESSED = Counter(
    "solwatch_signatures_total",
    "Ingested signatures by outcome",
    ["status"],
)
MINTS_EVICTED = Counter(
    "solwatch_mints_evicted_total",
    "Mints removed by the cleanup sweeper",
)
CACHED_MINTS = Gauge("solwatch_cached_mints", "Mints held in the holdings cache")
SSE_SUBSCRIBERS = Gauge("solwatch_sse_subscribers", "Connected event stream subscribers")


@dataclass
class RefreshCounters:
    """Counts accumulated between two refresh summary log lines."""

    j_checked: int = 0
    j_updated: int = 0
    j_mints: int = 0
    h_scanned: int = 0
    h_updated: int = 0
    h_mints: int = 0

    def wallet_checked(self, mints_looked_up: int) -> None:
        self.j_checked += 1
        WALLETS_CHECKED.labels("jupiter").inc()
        MINTS_SCANNED.labels("jupiter").inc(mints_looked_up)

    def wallet_mints_changed(self, count: int) -> None:
        """Distinct mints whose holdings a Jupiter tick changed."""
        self.j_mints += count

    def wallet_updated(self, provider: str, count: int = 1) -> None:
        if count <= 0:
            return
        if provider == "helius":
            self.h_updated += count
        else:
            self.j_updated += count
        WALLETS_UPDATED.labels(provider).inc(count)

    def mint_scanned(self, changed: bool) -> None:
        self.h_scanned += 1
        if changed:
            self.h_mints += 1
        MINTS_SCANNED.labels("helius").inc()

    def snapshot(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def reset(self) -> Dict[str, int]:
        values = self.snapshot()
        for f in fields(self):
            setattr(self, f.name, 0)
        return values

    def log_summary(self) -> Dict[str, int]:
        values = self.reset()
        if any(values.values()):
            logger.info(
                "Refresh summary: Jupiter wallets checked=%d, updated=%d, mints=%d | "
                "Helius mints scanned=%d, wallets updated=%d, mints=%d",
                values["j_checked"],
                values["j_updated"],
                values["j_mints"],
                values["h_scanned"],
                values["h_updated"],
                values["h_mints"],
                extra={"refresh": values},
            )
        return values


__all__ = [
    "WALLETS_CHECKED",
    "WALLETS_UPDATED",
    "MINTS_SCANNED",
    "PROVIDER_BACKOFFS",
    "EVENTS_PUBLISHED",
    "SIGNATURES_PROCESSED",
    "MINTS_EVICTED",
    "CACHED_MINTS",
    "SSE_SUBSCRIBERS",
    "RefreshCounters",
]
