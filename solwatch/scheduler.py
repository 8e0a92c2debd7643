from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

Tick = Callable[[], Awaitable[object]]


class ProviderGate:
    """Provider-wide backoff window opened after a rate limit response."""

    def __init__(self, name: str, backoff: float, *, clock: Callable[[], float] = time.time) -> None:
        self.name = name
        self.backoff = float(backoff)
        self.backoff_until = 0.0
        self._clock = clock

    def blocked(self) -> bool:
        return self._clock() < self.backoff_until

    def remaining(self) -> float:
        return max(0.0, self.backoff_until - self._clock())

    def trip(self, duration: float | None = None) -> float:
        """Close the gate for ``duration`` (default ``backoff``) seconds."""

        wait = self.backoff if duration is None else float(duration)
        self.backoff_until = max(self.backoff_until, self._clock() + wait)
        logger.warning(
            "%s rate limited (429). Backing off for %ds",
            self.name,
            round(wait),
            extra={"provider": self.name, "backoff_until": self.backoff_until},
        )
        return self.backoff_until

    def reset(self) -> None:
        self.backoff_until = 0.0


class PeriodicTask:
    """Fire ``tick`` every ``interval`` seconds.

    Ticks are started as independent tasks, so a slow tick never delays the
    next one; callers guard against overlap themselves.  Exceptions raised by
    a tick are logged and never stop the schedule.
    """

    def __init__(
        self,
        name: str,
        tick: Tick,
        interval: float = 1.0,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.tick = tick
        self.interval = max(0.0, float(interval))
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s tick failed", self.name)

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            task = loop.create_task(self.run_once())
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)
            await self._sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)

    async def stop(self) -> None:
        tasks = list(self._ticks)
        if self._task is not None:
            tasks.append(self._task)
            self._task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._ticks.clear()


__all__ = ["ProviderGate", "PeriodicTask"]
