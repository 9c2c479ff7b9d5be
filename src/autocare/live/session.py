"""Session-scoped provider owning the transport, router and store.

One ``LiveSession`` exists per signed-in session. It is an explicit
object passed to the consumer views, so independent sessions can coexist
(e.g. in tests). ``start`` / ``close`` bracket its lifetime; after
``close`` no timer, socket or late callback mutates the store.
"""

from __future__ import annotations

import logging
from typing import Callable

from autocare.api.client import ServiceCenterClient, mask_token
from autocare.core.config import Settings
from autocare.core.errors import AuthRejected, CountFetchError
from autocare.core.types import ConnectionStatus, UserRole
from autocare.notifications.counter import UnreadCounter
from autocare.notifications.store import NotificationStore
from autocare.realtime.events import EventBus
from autocare.realtime.router import EventRouter
from autocare.realtime.timers import LoopScheduler, Scheduler
from autocare.realtime.transport import Connector, ConnectionState, StompTransport

logger = logging.getLogger(__name__)


class LiveSession:
    """Real-time notification and messaging context for one signed-in user.

    Args:
        settings: Application settings; loaded from the environment if omitted.
        token: Bearer credential. Without it the session stays offline and
            every count reads as zero.
        user_id: Numeric id of the signed-in user (for echo detection and
            conversation filtering).
        role: Dashboard role; detected via ``/users/me`` when omitted.
        scheduler: Timer facility; a loop-backed one is created if omitted.
        client: HTTP client; one is built from ``settings.api`` if omitted.
        connector: WebSocket factory override for the transport.
        on_auth_rejected: Called once when the server refuses the credential.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        token: str | None = None,
        user_id: int | None = None,
        role: UserRole | None = None,
        scheduler: Scheduler | None = None,
        client: ServiceCenterClient | None = None,
        connector: Connector | None = None,
        on_auth_rejected: Callable[[AuthRejected], None] | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.token = token
        self.user_id = user_id
        self._role = role
        self._owns_scheduler = scheduler is None
        self.scheduler: Scheduler = scheduler or LoopScheduler()
        self._owns_client = client is None
        self.client = client or ServiceCenterClient(self.settings.api, token)
        self._on_auth_rejected = on_auth_rejected
        self._auth_reported = False

        self.bus = EventBus()
        self.transport = StompTransport(
            self.settings.ws_url,
            self.settings.realtime,
            self.scheduler,
            connector=connector,
        )
        self.transport.on_auth_rejected(self._auth_rejected)

        cfg = self.settings.notification
        notifications = UnreadCounter(
            "notifications",
            self.client.unread_notification_count,
            self.scheduler,
            poll_interval=cfg.poll_interval_seconds,
            suppression_window=cfg.suppression_window_seconds,
            mark_all=self.client.mark_all_notifications_read,
            on_auth_rejected=self._auth_rejected,
        )
        messages = UnreadCounter(
            "messages",
            self._fetch_message_count,
            self.scheduler,
            poll_interval=cfg.poll_interval_seconds,
            suppression_window=cfg.suppression_window_seconds,
            on_auth_rejected=self._auth_rejected,
        )
        self.store = NotificationStore(cfg, notifications, messages, user_id=user_id)
        self.router: EventRouter | None = None
        self._detach_store: Callable[[], None] | None = None
        self._started = False
        self._closed = False

    # -- observation ---------------------------------------------------------

    @property
    def role(self) -> UserRole:
        return self._role or UserRole.OTHER

    @property
    def started(self) -> bool:
        return self._started

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connection(self) -> ConnectionState:
        return self.transport.state

    @property
    def connected(self) -> bool:
        return self.transport.status is ConnectionStatus.CONNECTED

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Fetch initial counts, then open the real-time connection."""
        if self._started or self._closed:
            return
        self._started = True
        if self._role is None and self.client.has_credential:
            self._role = await self._detect_role()
        if self._closed:
            return

        self.router = EventRouter(
            self.transport, self.bus, self.settings.realtime.resolved_channels(), self.role
        )
        self._detach_store = self.bus.subscribe(self.store.append)

        await self.store.start()
        if self._closed:
            return
        if self.token and not self._auth_reported:
            logger.info("Starting live session (role %s, token %s)", self.role, mask_token(self.token))
            self.transport.connect(self.token)
        else:
            logger.info("No credential available; live session stays offline")

    async def close(self) -> None:
        """End the session: drop subscriptions, socket, timers and listeners."""
        if self._closed:
            return
        self._closed = True
        self.store.close()
        if self._detach_store is not None:
            self._detach_store()
            self._detach_store = None
        if self.router is not None:
            await self.router.dispose()
        await self.transport.disconnect()
        if self._owns_scheduler:
            await self.scheduler.close()
        if self._owns_client:
            await self.client.close()
        logger.info("Live session closed")

    async def __aenter__(self) -> LiveSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- operations ----------------------------------------------------------

    async def send_chat(self, receiver_id: int, message: str) -> None:
        """Publish a chat message.

        Raises:
            NotConnected: If the connection is not open; nothing is queued.
        """
        await self.transport.publish(
            self.settings.realtime.chat_send_destination,
            {"receiverId": receiver_id, "message": message},
        )

    async def mark_all_read(self) -> None:
        await self.store.mark_all_read()

    async def clear_all(self) -> None:
        await self.store.clear_all()

    async def refresh_count(self) -> int:
        return await self.store.refresh_count()

    async def mark_conversation_read(self, other_user_id: int) -> None:
        """Mark one conversation read, then re-sync the message counter."""
        try:
            await self.client.mark_conversation_read(other_user_id)
        except CountFetchError as exc:
            logger.warning("Marking conversation %s read failed: %s", other_user_id, exc)
        await self.store.messages.refresh()

    def request_unread_refresh(self) -> None:
        """Signal that direct-message unread state may have changed elsewhere."""
        if not self._closed:
            self.store.unread_refresh.emit()

    async def on_focus(self) -> None:
        """Window focus or visibility regained: re-read both counters."""
        if self._closed:
            return
        await self.store.refresh_count()
        await self.store.messages.refresh()

    # -- internal ------------------------------------------------------------

    async def _fetch_message_count(self) -> int:
        return await self.client.unread_message_count(self.role)

    async def _detect_role(self) -> UserRole:
        try:
            return await self.client.current_role()
        except AuthRejected as exc:
            self._auth_rejected(exc)
        except CountFetchError as exc:
            logger.warning("Could not detect role, defaulting to %s: %s", UserRole.OTHER, exc)
        return UserRole.OTHER

    def _auth_rejected(self, exc: AuthRejected) -> None:
        if self._auth_reported or self._closed:
            return
        self._auth_reported = True
        logger.warning("Credential rejected; re-authentication required")
        # A refused credential is not retried by polling.
        self.store.notifications.stop_polling()
        self.store.messages.stop_polling()
        if self._on_auth_rejected is not None:
            self._on_auth_rejected(exc)
