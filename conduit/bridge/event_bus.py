"""Per-session fan-out of unified events to subscribers.

Every subscriber gets its own bounded queue. Publishing never waits:
when a subscriber's queue is full the event is dropped for that
subscriber only and counted, so a slow UI client can lag but can never
stall the session that produces the events. The tape is written before
fan-out and is not subject to this policy.

A subscriber sees events published after it subscribed, in publish
order, followed by end-of-stream when the session closes.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from ..engine.events import UnifiedEvent

logger = logging.getLogger(__name__)

# Log the first drop and then every Nth one per subscriber.
_DROP_LOG_EVERY = 100

_END = object()


class Subscription:
    """One subscriber's view of a session's live event stream."""

    def __init__(self, hub: EventHub, session_id: str, maxsize: int) -> None:
        self._hub = hub
        self.session_id = session_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.delivered = 0
        self._ended = False

    @property
    def ended(self) -> bool:
        return self._ended

    def _offer(self, event: UnifiedEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % _DROP_LOG_EVERY == 0:
                logger.warning(
                    "Subscriber on session %s is lagging: dropped %d events",
                    self.session_id[:8], self.dropped,
                )

    def _end(self) -> None:
        try:
            self._queue.put_nowait(_END)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(_END)

    async def get(self) -> UnifiedEvent | None:
        """Next event, or None once the stream has ended."""
        if self._ended:
            return None
        item = await self._queue.get()
        if item is _END:
            self._ended = True
            return None
        self.delivered += 1
        return item

    def get_nowait(self) -> UnifiedEvent | None:
        """Next buffered event; None if nothing is buffered or ended."""
        if self._ended or self._queue.empty():
            return None
        item = self._queue.get_nowait()
        if item is _END:
            self._ended = True
            return None
        self.delivered += 1
        return item

    def __aiter__(self) -> AsyncIterator[UnifiedEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[UnifiedEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        """Unsubscribe. Pending events are discarded."""
        self._hub.unsubscribe(self)
        if not self._ended:
            self._end()


class EventHub:
    """Routes published events to the subscribers of each session."""

    def __init__(self, queue_size: int = 1000) -> None:
        self.queue_size = queue_size
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribe(self, session_id: str, maxsize: int | None = None) -> Subscription:
        sub = Subscription(self, session_id, maxsize or self.queue_size)
        self._subscribers.setdefault(session_id, []).append(sub)
        logger.debug(
            "Subscriber added to session %s (%d total)",
            session_id[:8], len(self._subscribers[session_id]),
        )
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.session_id)
        if not subs or sub not in subs:
            return
        subs.remove(sub)
        if not subs:
            del self._subscribers[sub.session_id]
        if sub.dropped:
            logger.info(
                "Subscriber left session %s: delivered=%d dropped=%d",
                sub.session_id[:8], sub.delivered, sub.dropped,
            )

    def publish(self, session_id: str, event: UnifiedEvent) -> None:
        for sub in self._subscribers.get(session_id, ()):
            sub._offer(event)

    def close(self, session_id: str) -> None:
        """Signal end-of-stream to every subscriber of ``session_id``."""
        for sub in self._subscribers.pop(session_id, []):
            sub._end()

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def dropped_count(self, session_id: str) -> int:
        return sum(s.dropped for s in self._subscribers.get(session_id, ()))
