"""Typed event bus and signals connecting the router to its consumers."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable

from autocare.core.types import EventKind
from autocare.realtime.models import InboundEvent

logger = logging.getLogger(__name__)

EventListener = Callable[[InboundEvent], None]


class EventBus:
    """Fans inbound events out to listeners filtered by ``EventKind``.

    Listener failures are logged and isolated so one consumer cannot stop
    delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: list[tuple[frozenset[EventKind] | None, EventListener]] = []

    def subscribe(
        self,
        listener: EventListener,
        kinds: Iterable[EventKind] | None = None,
    ) -> Callable[[], None]:
        """Register ``listener``; returns a callable that removes it."""
        entry = (frozenset(kinds) if kinds is not None else None, listener)
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _unsubscribe

    def publish(self, event: InboundEvent) -> None:
        for kinds, listener in list(self._listeners):
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s event", event.kind)

    def stream(self, *kinds: EventKind) -> EventStream:
        """Open an awaitable stream of events of the given kinds (all if none)."""
        return EventStream(self, kinds or None)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


class EventStream:
    """Queue-backed view of the bus for consumers that ``await`` events.

    Use as an async context manager so the underlying listener is removed::

        async with bus.stream(EventKind.CHAT_MESSAGE) as events:
            event = await events.get()
    """

    def __init__(self, bus: EventBus, kinds: Iterable[EventKind] | None) -> None:
        self._queue: asyncio.Queue[InboundEvent] = asyncio.Queue()
        self._unsubscribe = bus.subscribe(self._queue.put_nowait, kinds)

    async def get(self) -> InboundEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._unsubscribe()

    async def __aenter__(self) -> EventStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> InboundEvent:
        return await self.get()


class Signal:
    """A payload-less notification, e.g. "unread counts may have changed"."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._receivers: list[Callable[[], None]] = []

    def connect(self, receiver: Callable[[], None]) -> Callable[[], None]:
        self._receivers.append(receiver)

        def _disconnect() -> None:
            if receiver in self._receivers:
                self._receivers.remove(receiver)

        return _disconnect

    def emit(self) -> None:
        for receiver in list(self._receivers):
            try:
                receiver()
            except Exception:
                logger.exception("Receiver of signal %s failed", self.name)
