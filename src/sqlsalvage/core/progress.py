# src/sqlsalvage/core/progress.py
"""Per-session publish/subscribe channel for live progress.

A live status feed, not a log: events published while nobody is subscribed
are dropped, and late subscribers see nothing that came before them. Each
subscriber gets its own queue; when a session's last subscriber leaves, the
session entry is removed so the registry never grows with dead sessions.

The registry is guarded by a lock and delivery goes through
``loop.call_soon_threadsafe``, so publishing from worker threads is safe.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from sqlsalvage.contracts import ProgressEvent
from sqlsalvage.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 256


class Subscription:
    """One observer of one session.

    Iterate with ``async for``; iteration ends after a terminal event.
    """

    def __init__(self, session_id: str, loop: asyncio.AbstractEventLoop, maxsize: int) -> None:
        self.session_id = session_id
        self._loop = loop
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, event: ProgressEvent) -> None:
        # Runs on the subscriber's loop.
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    def deliver(self, event: ProgressEvent) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._offer(event)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._offer, event)

    async def get(self) -> ProgressEvent:
        return await self._queue.get()

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                return


class ProgressChannel:
    """Registry of subscribers keyed by session id."""

    def __init__(self, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}

    def publish(self, session_id: str, event: ProgressEvent) -> int:
        """Fan an event out to the session's current subscribers.

        Returns the number of subscribers it was handed to (0 is a no-op).
        """
        with self._lock:
            targets = list(self._subscribers.get(session_id, ()))
        for subscription in targets:
            subscription.deliver(event)
        return len(targets)

    def add(self, session_id: str) -> Subscription:
        subscription = Subscription(session_id, asyncio.get_running_loop(), self._queue_size)
        with self._lock:
            self._subscribers.setdefault(session_id, []).append(subscription)
        logger.debug("Progress subscriber added", session_id=session_id)
        return subscription

    def remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.session_id)
            if subscribers is None:
                return
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                del self._subscribers[subscription.session_id]
        logger.debug("Progress subscriber removed", session_id=subscription.session_id)

    @asynccontextmanager
    async def subscribe(self, session_id: str) -> AsyncIterator[Subscription]:
        """Subscribe for the lifetime of the ``async with`` block."""
        subscription = self.add(session_id)
        try:
            yield subscription
        finally:
            self.remove(subscription)

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, ()))

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._subscribers)


class SessionProgress:
    """Publisher bound to one session id.

    Handed down the strategy chain so components never see other sessions.
    """

    def __init__(
        self,
        channel: ProgressChannel,
        session_id: str,
        *,
        listener: Callable[[ProgressEvent], None] | None = None,
    ) -> None:
        self._channel = channel
        self._listener = listener
        self.session_id = session_id
        self.last_event: ProgressEvent | None = None

    def publish(self, event: ProgressEvent) -> None:
        self.last_event = event
        self._channel.publish(self.session_id, event)
        if self._listener is not None:
            self._listener(event)
