"""Session-scoped notification store.

Holds the capped, arrival-ordered event log and the two unread counters
(notifications and direct messages). Consumers read through
``autocare.live.views``; every mutation goes through the methods here.
"""

from __future__ import annotations

import logging
from collections import OrderedDict, deque
from typing import Callable

from autocare.core.config import NotificationConfig
from autocare.core.types import CounterState, EventKind
from autocare.notifications.counter import UnreadCounter
from autocare.realtime.events import Signal
from autocare.realtime.models import ChatMessagePayload, InboundEvent

logger = logging.getLogger(__name__)


class NotificationStore:
    """Rolling event log plus reconciled unread counters.

    Args:
        config: Log capacity and dedup sizing.
        notifications: Counter backed by the notification count endpoint.
        messages: Counter backed by the direct-message count endpoint.
        user_id: The signed-in user, used to recognise self-sent echoes.
    """

    def __init__(
        self,
        config: NotificationConfig,
        notifications: UnreadCounter,
        messages: UnreadCounter,
        *,
        user_id: str | int | None = None,
    ) -> None:
        self._config = config
        self._log: deque[InboundEvent] = deque(maxlen=max(1, config.log_capacity))
        self._seen: OrderedDict[tuple[EventKind, str], None] = OrderedDict()
        self._appended = 0
        self._user_id = str(user_id) if user_id is not None else None
        self._listeners: list[Callable[[], None]] = []
        self._closed = False

        self.notifications = notifications
        self.messages = messages
        # Fired whenever direct-message unread state may have changed.
        self.unread_refresh = Signal("unread_refresh")
        self._disconnect = [
            notifications.subscribe(lambda _value: self._notify()),
            messages.subscribe(lambda _value: self._notify()),
            self.unread_refresh.connect(messages.request_sync),
        ]

    # -- observation ---------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self.notifications.initialized

    @property
    def state(self) -> CounterState:
        return self.notifications.state

    @property
    def unread_count(self) -> int:
        return self.notifications.value

    @property
    def unread_messages(self) -> int:
        return self.messages.value

    @property
    def log(self) -> list[InboundEvent]:
        return list(self._log)

    @property
    def cursor(self) -> int:
        """Total number of events ever appended; a position for ``events_since``."""
        return self._appended

    def events_since(self, cursor: int) -> list[InboundEvent]:
        """Events appended after ``cursor`` that are still in the log."""
        missed = self._appended - cursor
        if missed <= 0:
            return []
        if missed > len(self._log):
            logger.debug("Cursor %d fell behind the log; %d event(s) pruned", cursor, missed - len(self._log))
            missed = len(self._log)
        return list(self._log)[-missed:]

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Initialise both counters from the server and begin polling."""
        await self.notifications.start()
        await self.messages.start()
        self._notify()

    def close(self) -> None:
        self._closed = True
        for disconnect in self._disconnect:
            disconnect()
        self.notifications.close()
        self.messages.close()
        self._listeners.clear()

    # -- mutations -----------------------------------------------------------

    def append(self, event: InboundEvent) -> bool:
        """Record an event in arrival order; returns ``False`` if it was dropped.

        Inbound messages and notifications trigger a counter re-sync rather
        than a local increment.
        """
        if self._closed:
            return False
        key = event.dedup_key
        if key is not None:
            if key in self._seen:
                logger.debug("Dropping duplicate %s event %s", event.kind, event.server_id)
                return False
            self._seen[key] = None
            while len(self._seen) > self._config.dedup_window:
                self._seen.popitem(last=False)

        self._log.append(event)
        self._appended += 1

        if not self._is_echo(event):
            if event.kind is EventKind.CHAT_MESSAGE:
                self.unread_refresh.emit()
            else:
                self.notifications.request_sync()
        self._notify()
        return True

    async def mark_all_read(self) -> None:
        await self.notifications.mark_all_read()

    async def refresh_count(self) -> int:
        return await self.notifications.refresh()

    async def clear_all(self) -> None:
        """Mark everything read on the server and empty the local log."""
        await self.mark_all_read()
        self._log.clear()
        self._notify()

    # -- internal ------------------------------------------------------------

    def _is_echo(self, event: InboundEvent) -> bool:
        if self._user_id is None:
            return False
        payload = event.payload
        return isinstance(payload, ChatMessagePayload) and str(payload.sender_id) == self._user_id

    def _notify(self) -> None:
        if self._closed:
            return
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Notification store listener failed")
