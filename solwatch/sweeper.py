from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from . import events
from .holdings_cache import HoldingsCache
from .metrics import CACHED_MINTS, MINTS_EVICTED

logger = logging.getLogger(__name__)


class CleanupSweeper:
    """Evict mints that stayed below the activity threshold for ``retention`` seconds.

    A mint is marked the first sweep it is found inactive and removed by the
    first sweep at least ``retention`` seconds later.  Any sweep that finds it
    active again clears the mark, which restarts the clock.  All mints removed
    by one sweep are announced in a single ``mint_cleanup`` event.
    """

    def __init__(
        self,
        cache: HoldingsCache,
        publish: Callable[[Mapping[str, Any]], Any],
        *,
        retention: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.publish = publish
        self.retention = float(retention)
        self._clock = clock

    def sweep(self) -> Optional[Dict[str, Any]]:
        """Run one pass; return the published cleanup payload, if any."""

        now = self._clock()
        removed: List[Dict[str, Any]] = []
        for record in self.cache:
            total = record.total()
            if self.cache.is_active(total):
                record.under_threshold_since = None
                continue
            if record.under_threshold_since is None:
                record.under_threshold_since = now
                continue
            if now - record.under_threshold_since >= self.retention:
                self.cache.remove(record.mint)
                removed.append({"mint": record.mint, "total": total})

        CACHED_MINTS.set(len(self.cache))
        if not removed:
            return None
        MINTS_EVICTED.inc(len(removed))
        logger.info(
            "Cache cleanup: removed %d mints under total < %s for > %dm",
            len(removed),
            self.cache.min_total,
            round(self.retention / 60),
            extra={"mints": [item["mint"] for item in removed]},
        )
        payload = events.mint_cleanup(
            removed,
            threshold=self.cache.min_total,
            older_than=self.retention,
            ts=now,
        )
        self.publish(payload)
        return payload

    async def tick(self) -> None:
        self.sweep()


__all__ = ["CleanupSweeper"]
