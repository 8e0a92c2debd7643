"""Replayable event fan-out for live subscribers.

Every published payload is wrapped in an immutable :class:`Event`, appended to
a bounded ring buffer and pushed, already serialised as a Server-Sent Events
frame, onto the queue of every registered :class:`Subscription`.  A subscriber
that reconnects with the id of the last event it saw receives every later
buffered event before live delivery resumes.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, Generator, List, Mapping, Optional

import orjson

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000
DEFAULT_SUBSCRIBER_QUEUE = 2000
HEARTBEAT_FRAME = ":heartbeat\n\n"


@dataclass(frozen=True, slots=True)
class Event:
    id: str
    data: Mapping[str, Any]
    timestamp: float


def format_sse(event: Event) -> str:
    """Serialise ``event`` as an SSE frame."""

    body = orjson.dumps(dict(event.data), default=str).decode()
    return f"id: {event.id}\ndata: {body}\n\n"


class SubscriberClosed(Exception):
    """Raised when delivering to a subscription that has gone away."""


class Subscription:
    """Per-client delivery queue of pre-serialised frames."""

    def __init__(self, sid: int, maxsize: int = DEFAULT_SUBSCRIBER_QUEUE) -> None:
        self.id = sid
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, frame: str) -> None:
        if self.closed:
            raise SubscriberClosed(self.id)
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull as exc:
            raise SubscriberClosed(self.id) from exc

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(None)

    def pending(self) -> int:
        return self._queue.qsize()

    def get_nowait(self) -> Optional[str]:
        """Return the next queued frame, ``None`` when nothing is waiting."""

        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def next_frame(self) -> Optional[str]:
        """Wait for the next frame; ``None`` once the subscription is closed."""

        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> str:
        frame = await self.next_frame()
        if frame is None:
            raise StopAsyncIteration
        return frame


class EventBus:
    """Bounded replay buffer plus fan-out to live subscribers."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        *,
        clock: Callable[[], float] = time.time,
        subscriber_queue: int = DEFAULT_SUBSCRIBER_QUEUE,
        on_publish: Callable[[Event], None] | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._clock = clock
        self._buffer: Deque[Event] = deque(maxlen=capacity)
        self._subscribers: Dict[int, Subscription] = {}
        self._seq = itertools.count(1)
        self._sid = itertools.count(1)
        self._subscriber_queue = subscriber_queue
        self._on_publish = on_publish

    # buffer ---------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._buffer)

    def events(self) -> List[Event]:
        return list(self._buffer)

    def replay_after(self, last_id: str | None) -> List[Event]:
        """Return buffered events strictly after ``last_id``.

        Unknown or evicted ids yield an empty list.
        """

        if last_id is None:
            return []
        wanted = str(last_id).strip()
        for index, event in enumerate(self._buffer):
            if event.id == wanted:
                return list(itertools.islice(self._buffer, index + 1, None))
        return []

    # subscribers ----------------------------------------------------------
    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, last_id: str | None = None) -> Subscription:
        """Register a subscriber, pre-filled with the replay after ``last_id``."""

        sub = Subscription(next(self._sid), maxsize=self._subscriber_queue)
        for event in self.replay_after(last_id):
            try:
                sub.deliver(format_sse(event))
            except SubscriberClosed:
                logger.warning("replay overflowed subscriber queue", extra={"subscriber": sub.id})
                break
        self._subscribers[sub.id] = sub
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subscribers.pop(sub.id, None)
        sub.close()

    @contextmanager
    def subscription(self, last_id: str | None = None) -> Generator[Subscription, None, None]:
        sub = self.subscribe(last_id)
        try:
            yield sub
        finally:
            self.unsubscribe(sub)

    def _broadcast(self, frame: str) -> int:
        delivered = 0
        for sub in list(self._subscribers.values()):
            try:
                sub.deliver(frame)
            except SubscriberClosed:
                logger.debug("dropping subscriber %s", sub.id)
                self.unsubscribe(sub)
                continue
            delivered += 1
        return delivered

    # publishing -----------------------------------------------------------
    def publish(self, data: Mapping[str, Any]) -> Event:
        """Append ``data`` to the buffer and deliver it to all subscribers."""

        event = Event(id=str(next(self._seq)), data=MappingProxyType(dict(data)), timestamp=self._clock())
        self._buffer.append(event)
        self._broadcast(format_sse(event))
        if self._on_publish is not None:
            self._on_publish(event)
        return event

    def heartbeat(self) -> int:
        """Send a comment frame to every subscriber; returns the live count."""

        return self._broadcast(HEARTBEAT_FRAME)

    def close(self) -> None:
        for sub in list(self._subscribers.values()):
            self.unsubscribe(sub)


__all__ = [
    "DEFAULT_CAPACITY",
    "HEARTBEAT_FRAME",
    "Event",
    "EventBus",
    "Subscription",
    "SubscriberClosed",
    "format_sse",
]
