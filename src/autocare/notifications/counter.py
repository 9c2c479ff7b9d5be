"""Unread counter reconciled against the server's authoritative count.

The server is the single source of truth. Locally the counter only ever
changes in two ways: by accepting a fetched value, or by the optimistic
zero applied by ``mark_all_read``. After an optimistic clear, fetched
values are discarded when either

* the fetch started before the clear (it read pre-clear state), or
* the fetch completes inside the suppression window.

Once the window has elapsed a confirm fetch runs and its value is
trusted, as is every later poll.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from autocare.core.errors import AuthRejected, CountFetchError
from autocare.core.types import CounterState
from autocare.realtime.timers import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

CountFetcher = Callable[[], Awaitable[int]]
MarkAllAction = Callable[[], Awaitable[None]]


class UnreadCounter:
    """Poll-driven unread counter with optimistic clearing.

    Args:
        name: Label used in log messages.
        fetch: Coroutine function returning the authoritative count.
        scheduler: Timer facility for the poll interval and windows.
        poll_interval: Seconds between periodic fetches; ``0`` disables polling.
        suppression_window: Seconds after an optimistic clear during which
            fetched values are ignored.
        mark_all: Server action backing ``mark_all_read``.
        on_auth_rejected: Called when a fetch is refused for the credential.
    """

    def __init__(
        self,
        name: str,
        fetch: CountFetcher,
        scheduler: Scheduler,
        *,
        poll_interval: float = 30.0,
        suppression_window: float = 2.0,
        mark_all: MarkAllAction | None = None,
        on_auth_rejected: Callable[[AuthRejected], None] | None = None,
    ) -> None:
        self.name = name
        self._fetch = fetch
        self._scheduler = scheduler
        self._poll_interval = poll_interval
        self._window = suppression_window
        self._mark_all = mark_all
        self._on_auth_rejected = on_auth_rejected

        self._value = 0
        self._state = CounterState.UNINITIALIZED
        self._generation = 0
        self._cleared_at: float | None = None
        self._in_flight = 0
        self._polling = True
        self._closed = False
        self._poll_handle: TimerHandle | None = None
        self._sync_handle: TimerHandle | None = None
        self._confirm_handle: TimerHandle | None = None
        self._listeners: list[Callable[[int], None]] = []

    # -- observation ---------------------------------------------------------

    @property
    def value(self) -> int:
        return self._value

    @property
    def state(self) -> CounterState:
        return self._state

    @property
    def initialized(self) -> bool:
        return self._state is not CounterState.UNINITIALIZED

    def subscribe(self, listener: Callable[[int], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Initial authoritative fetch, then periodic polling."""
        if self._closed:
            return
        await self._sync("initial")
        self._schedule_poll()

    def close(self) -> None:
        """Cancel every timer; in-flight fetches resolve into no-ops."""
        self._closed = True
        for handle in (self._poll_handle, self._sync_handle, self._confirm_handle):
            if handle is not None:
                handle.cancel()
        self._poll_handle = self._sync_handle = self._confirm_handle = None
        self._listeners.clear()

    def stop_polling(self) -> None:
        """Stop periodic fetches; explicit refreshes and requested syncs still run."""
        self._polling = False
        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None

    # -- operations ----------------------------------------------------------

    async def refresh(self) -> int:
        """Fetch now, bypassing the poll interval."""
        await self._sync("refresh")
        return self._value

    def request_sync(self) -> None:
        """Schedule a re-sync on the next tick; repeated requests coalesce."""
        if self._closed or self._sync_handle is not None:
            return
        self._sync_handle = self._scheduler.call_later(0, self._run_requested_sync)

    async def mark_all_read(self) -> None:
        """Optimistically zero the counter, tell the server, then confirm.

        Raises:
            AuthRejected: If the server refuses the credential.
        """
        if self._closed:
            return
        if self._mark_all is None:
            raise RuntimeError(f"Counter {self.name!r} has no mark-all action")
        self._generation += 1
        self._cleared_at = self._scheduler.now()
        self._state = CounterState.MARKING
        self._set_value(0)
        try:
            await self._mark_all()
        except AuthRejected:
            self._state = CounterState.IDLE
            raise
        except CountFetchError as exc:
            # The confirm fetch below restores the server's view.
            logger.warning("Mark-all-read for %s failed: %s", self.name, exc)
        if self._closed:
            return
        if self._confirm_handle is not None:
            self._confirm_handle.cancel()
        self._confirm_handle = self._scheduler.call_later(self._window, self._confirm)

    # -- internal ------------------------------------------------------------

    def _schedule_poll(self) -> None:
        if self._closed or not self._polling or self._poll_interval <= 0:
            return
        self._poll_handle = self._scheduler.call_later(self._poll_interval, self._poll_tick)

    async def _poll_tick(self) -> None:
        self._poll_handle = None
        self._schedule_poll()
        if self._in_flight:
            logger.debug("Skipping %s poll: previous fetch still running", self.name)
            return
        await self._sync("poll")

    async def _run_requested_sync(self) -> None:
        self._sync_handle = None
        await self._sync("requested")

    async def _confirm(self) -> None:
        self._confirm_handle = None
        self._state = CounterState.SYNCING
        await self._sync("confirm")

    def _suppressed(self) -> bool:
        if self._cleared_at is None:
            return False
        return self._scheduler.now() - self._cleared_at < self._window

    async def _sync(self, reason: str) -> None:
        if self._closed:
            return
        generation = self._generation
        if self._state is not CounterState.MARKING:
            self._state = CounterState.SYNCING
        self._in_flight += 1
        try:
            fetched = await self._fetch()
        except AuthRejected as exc:
            logger.warning("Unread count for %s rejected: %s", self.name, exc)
            if not self._closed:
                self._settle()
                if self._on_auth_rejected is not None:
                    self._on_auth_rejected(exc)
            return
        except CountFetchError as exc:
            logger.warning("Unread count for %s unavailable (%s): %s", self.name, reason, exc)
            if not self._closed:
                self._settle()
            return
        finally:
            self._in_flight -= 1

        if self._closed:
            return
        if generation != self._generation:
            logger.debug("Discarding %s count %s for %s: fetched before clear", reason, fetched, self.name)
            return
        if self._suppressed():
            logger.debug("Discarding %s count %s for %s: inside suppression window", reason, fetched, self.name)
            return
        self._set_value(max(0, int(fetched)))
        self._settle()

    def _settle(self) -> None:
        if self._state is not CounterState.MARKING:
            self._state = CounterState.IDLE

    def _set_value(self, value: int) -> None:
        changed = value != self._value
        self._value = value
        if not changed:
            return
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("Unread counter listener failed for %s", self.name)
