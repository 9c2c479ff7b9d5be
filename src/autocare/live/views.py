"""Read-only consumer views over a ``LiveSession``.

Each view subscribes to the session's store when mounted and
unsubscribes when unmounted. Views never mutate the store, and they read
as empty/zero while the store is still uninitialized.

Typical use from UI code::

    with BadgeCount(session, on_change=render_badge) as badge:
        render_badge(badge.value)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Generic, Iterable, TypeVar

from autocare.core.types import ConnectionStatus, EventKind
from autocare.live.session import LiveSession
from autocare.realtime.models import ChatMessagePayload, InboundEvent, ServiceUpdatePayload

logger = logging.getLogger(__name__)

T = TypeVar("T")

BADGE_CAP = 99


def format_badge(count: int) -> str:
    """Badge text: empty for zero, ``"99+"`` above the cap."""
    if count <= 0:
        return ""
    return f"{BADGE_CAP}+" if count > BADGE_CAP else str(count)


class StoreView(Generic[T]):
    """Base class handling mount/unmount and change notification."""

    def __init__(self, session: LiveSession, on_change: Callable[[T], None] | None = None) -> None:
        self._session = session
        self._on_change = on_change
        self._unsubscribe: Callable[[], None] | None = None
        self._last: T | None = None

    @property
    def mounted(self) -> bool:
        return self._unsubscribe is not None

    @property
    def value(self) -> T:
        return self._compute()

    def mount(self) -> None:
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self._session.store.subscribe(self._changed)
        self._last = self._compute()

    def unmount(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def __enter__(self) -> StoreView[T]:
        self.mount()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unmount()

    def _compute(self) -> T:
        raise NotImplementedError

    def _changed(self) -> None:
        current = self._compute()
        if current == self._last:
            return
        self._last = current
        if self._on_change is not None:
            self._on_change(current)


class BadgeCount(StoreView[int]):
    """Unread notification count for the bell badge."""

    def _compute(self) -> int:
        store = self._session.store
        return store.unread_count if store.initialized else 0

    @property
    def label(self) -> str:
        return format_badge(self.value)


class UnreadMessages(StoreView[int]):
    """Unread direct-message count."""

    def _compute(self) -> int:
        counter = self._session.store.messages
        return counter.value if counter.initialized else 0

    def refresh_signal(self) -> None:
        """Ask for a re-sync after the UI has displayed or read messages."""
        self._session.request_unread_refresh()


class RecentNotifications(StoreView[list[InboundEvent]]):
    """The most recent non-chat events, newest first."""

    def __init__(
        self,
        session: LiveSession,
        limit: int | None = None,
        on_change: Callable[[list[InboundEvent]], None] | None = None,
    ) -> None:
        super().__init__(session, on_change)
        self._limit = limit or session.settings.notification.recent_limit

    def _compute(self) -> list[InboundEvent]:
        events = [e for e in self._session.store.log if e.kind is not EventKind.CHAT_MESSAGE]
        return list(reversed(events[-self._limit:]))


class ServiceProgress(StoreView[ServiceUpdatePayload | None]):
    """Latest service-progress record, optionally for one service."""

    def __init__(
        self,
        session: LiveSession,
        service_id: int | None = None,
        on_change: Callable[[ServiceUpdatePayload | None], None] | None = None,
    ) -> None:
        super().__init__(session, on_change)
        self._service_id = service_id

    def _updates(self) -> Iterable[ServiceUpdatePayload]:
        for event in self._session.store.log:
            if isinstance(event.payload, ServiceUpdatePayload):
                yield event.payload

    def _compute(self) -> ServiceUpdatePayload | None:
        latest: ServiceUpdatePayload | None = None
        for update in self._updates():
            if self._service_id is None or update.service_id == self._service_id:
                latest = update
        return latest

    def latest_by_service(self) -> dict[int, ServiceUpdatePayload]:
        latest: dict[int, ServiceUpdatePayload] = {}
        for update in self._updates():
            latest[update.service_id] = update
        return latest

    def merge(self, services: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Overlay live progress onto active-service records keyed by ``id``.

        Fields missing from an update keep their previous value.
        """
        latest = self.latest_by_service()
        merged: list[dict[str, Any]] = []
        for service in services:
            update = latest.get(service.get("id"))
            if update is None:
                merged.append(service)
                continue
            merged.append(
                {
                    **service,
                    "progress": update.progress if update.progress is not None else service.get("progress"),
                    "status": update.status or service.get("status"),
                    "currentStep": update.current_step or service.get("currentStep"),
                    "lastUpdate": "Just now",
                }
            )
        return merged


class ChatTranscript(StoreView[list[ChatMessagePayload]]):
    """Messages of one conversation: fetched history, then live arrivals.

    Live messages are appended in arrival order. Nothing is reordered or
    compared by content; a message is skipped only when its server id is
    already present.
    """

    def __init__(
        self,
        session: LiveSession,
        other_user_id: int | None = None,
        history: Iterable[ChatMessagePayload] = (),
        on_change: Callable[[list[ChatMessagePayload]], None] | None = None,
    ) -> None:
        super().__init__(session, on_change)
        self._other = other_user_id
        self._messages: list[ChatMessagePayload] = []
        self._ids: set[int] = set()
        self._cursor = session.store.cursor
        self._extend(history)

    async def load_history(self) -> list[ChatMessagePayload]:
        """Fetch stored history and place it before anything already shown."""
        history = await self._session.client.conversation_history(self._other, self._session.role)
        live, self._messages, self._ids = self._messages, [], set()
        self._extend(history)
        self._extend(live)
        self._changed()
        return self.value

    def mount(self) -> None:
        self._catch_up()
        super().mount()

    def _extend(self, messages: Iterable[ChatMessagePayload]) -> None:
        for message in messages:
            if message.id is not None:
                if message.id in self._ids:
                    continue
                self._ids.add(message.id)
            self._messages.append(message)

    def _relevant(self, message: ChatMessagePayload) -> bool:
        return self._other is None or message.involves(self._other)

    def _catch_up(self) -> None:
        store = self._session.store
        new = store.events_since(self._cursor)
        self._cursor = store.cursor
        self._extend(
            e.payload
            for e in new
            if isinstance(e.payload, ChatMessagePayload) and self._relevant(e.payload)
        )

    def _changed(self) -> None:
        self._catch_up()
        current = self._compute()
        if self._last is not None and len(current) == len(self._last):
            return
        self._last = current
        if self._on_change is not None:
            self._on_change(current)

    def _compute(self) -> list[ChatMessagePayload]:
        return list(self._messages)


class ConnectionIndicator:
    """Passive connected/disconnected indicator fed by transport status."""

    def __init__(
        self,
        session: LiveSession,
        on_change: Callable[[ConnectionStatus], None] | None = None,
    ) -> None:
        self._session = session
        self._on_change = on_change
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def value(self) -> ConnectionStatus:
        return self._session.transport.status

    @property
    def connected(self) -> bool:
        return self.value is ConnectionStatus.CONNECTED

    def mount(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._session.transport.on_status(self._status_changed)

    def unmount(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def __enter__(self) -> ConnectionIndicator:
        self.mount()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unmount()

    def _status_changed(self, status: ConnectionStatus) -> None:
        if self._on_change is not None:
            self._on_change(status)
