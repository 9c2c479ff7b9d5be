"""STOMP-over-WebSocket transport owning one authenticated connection.

The transport never raises into UI code while connecting: failures turn
into status transitions (``reconnecting`` after a fixed delay, or
``disconnected`` when the credential is rejected). Only ``publish`` and
``subscribe`` raise, with ``NotConnected``, when called while the
connection is not open.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Awaitable, Callable, Protocol
from urllib.parse import urlsplit

import websockets

from autocare.core.config import RealtimeConfig
from autocare.core.errors import (
    AuthRejected,
    NotConnected,
    RealtimeConnectionError,
    StompProtocolError,
)
from autocare.core.types import ConnectionStatus
from autocare.realtime import stomp
from autocare.realtime.stomp import StompFrame
from autocare.realtime.timers import Scheduler

logger = logging.getLogger(__name__)

# Credential failures only; other broker errors are recovered by reconnecting.
_AUTH_REJECTION = re.compile(
    r"\b40[13]\b"
    r"|unauthori[sz]ed|forbidden|access denied|authentication failed"
    r"|(?:invalid|expired|missing|bad)\s+(?:access\s+|bearer\s+)?(?:token|jwt|credentials?)",
    re.IGNORECASE,
)


class WebSocketLike(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


Connector = Callable[[str], AsyncContextManager[WebSocketLike]]
StatusListener = Callable[[ConnectionStatus], "Awaitable[None] | None"]
FrameListener = Callable[[StompFrame], "Awaitable[None] | None"]
AuthListener = Callable[[AuthRejected], None]


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus
    last_error: str | None = None


def default_connector(url: str, *, open_timeout: float = 10.0) -> AsyncContextManager[WebSocketLike]:
    return websockets.connect(
        url,
        subprotocols=["v12.stomp", "v11.stomp"],
        open_timeout=open_timeout,
        ping_interval=None,
    )


def _is_auth_error(frame: StompFrame) -> bool:
    """Whether a CONNECT-time ERROR frame refuses the credential.

    Only the ``message`` header is inspected; bodies carry free-form
    server diagnostics.
    """
    return bool(_AUTH_REJECTION.search(frame.headers.get("message", "")))


async def _call(listener: Callable[..., Any], *args: Any) -> None:
    try:
        result = listener(*args)
        if inspect.isawaitable(result):
            await result
    except (NotConnected, asyncio.CancelledError):
        raise
    except Exception:
        logger.exception("Transport listener %r failed", listener)


class StompTransport:
    """One persistent STOMP session with fixed-delay reconnect and heart-beats."""

    def __init__(
        self,
        url: str,
        config: RealtimeConfig,
        scheduler: Scheduler,
        *,
        connector: Connector | None = None,
    ) -> None:
        self._url = url
        self._config = config
        self._scheduler = scheduler
        if connector is None:
            timeout = config.connect_timeout_seconds

            def connector(target: str) -> AsyncContextManager[WebSocketLike]:
                return default_connector(target, open_timeout=timeout)

        self._connector = connector
        self._host = urlsplit(url).hostname or "localhost"
        self._status = ConnectionStatus.DISCONNECTED
        self._last_error: str | None = None
        self._token: str | None = None
        self._ws: WebSocketLike | None = None
        self._task: asyncio.Task | None = None
        self._disposed = False
        self._status_listeners: list[StatusListener] = []
        self._frame_listeners: list[FrameListener] = []
        self._auth_listeners: list[AuthListener] = []
        self._ids = itertools.count()
        self._send_lock = asyncio.Lock()

    # -- observation ---------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def state(self) -> ConnectionState:
        return ConnectionState(self._status, self._last_error)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def on_status(self, listener: StatusListener) -> Callable[[], None]:
        return self._add(self._status_listeners, listener)

    def on_frame(self, listener: FrameListener) -> Callable[[], None]:
        return self._add(self._frame_listeners, listener)

    def on_auth_rejected(self, listener: AuthListener) -> Callable[[], None]:
        return self._add(self._auth_listeners, listener)

    @staticmethod
    def _add(bucket: list, listener: Any) -> Callable[[], None]:
        bucket.append(listener)

        def _remove() -> None:
            if listener in bucket:
                bucket.remove(listener)

        return _remove

    # -- public API ----------------------------------------------------------

    def connect(self, token: str) -> None:
        """Start the connection loop in the background.

        The credential travels in the STOMP CONNECT headers only. Calling
        ``connect`` while a loop is already running is a no-op.
        """
        if not token:
            raise AuthRejected("A credential is required to open the real-time connection")
        if self._disposed:
            raise RealtimeConnectionError("Transport has been disconnected and cannot be reused")
        if self._task is not None and not self._task.done():
            return
        self._token = token
        self._task = self._scheduler.spawn(self._run())

    async def publish(self, destination: str, body: dict[str, Any] | str) -> None:
        """Send a SEND frame; raises ``NotConnected`` unless connected."""
        payload = body if isinstance(body, str) else json.dumps(body)
        await self._send_checked(stomp.send_frame(destination, payload))

    def next_subscription_id(self) -> str:
        return f"sub-{next(self._ids)}"

    async def subscribe(self, subscription_id: str, destination: str) -> None:
        await self._send_checked(stomp.subscribe_frame(subscription_id, destination))

    async def unsubscribe(self, subscription_id: str) -> None:
        """Best-effort UNSUBSCRIBE; silently skipped while not connected."""
        if self._status is not ConnectionStatus.CONNECTED or self._ws is None:
            return
        try:
            await self._send_checked(stomp.unsubscribe_frame(subscription_id))
        except (NotConnected, OSError, websockets.WebSocketException) as exc:
            logger.debug("UNSUBSCRIBE %s not delivered: %s", subscription_id, exc)

    async def disconnect(self) -> None:
        """Tear down the socket and every timer; safe mid-connect and repeatable."""
        if self._disposed and self._task is None:
            return
        self._disposed = True
        ws = self._ws
        if ws is not None and self._status is ConnectionStatus.CONNECTED:
            try:
                async with self._send_lock:
                    await ws.send(stomp.encode_frame(stomp.disconnect_frame()))
            except (OSError, websockets.WebSocketException) as exc:
                logger.debug("DISCONNECT frame not delivered: %s", exc)
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._ws = None
        await self._set_status(ConnectionStatus.DISCONNECTED, force=True)
        logger.info("Real-time transport closed")

    # -- connection loop -----------------------------------------------------

    async def _run(self) -> None:
        attempt_status = ConnectionStatus.CONNECTING
        while not self._disposed:
            await self._set_status(attempt_status)
            try:
                await self._session()
            except AuthRejected as exc:
                self._last_error = str(exc)
                logger.warning("Real-time connection rejected: %s", exc)
                await self._set_status(ConnectionStatus.DISCONNECTED)
                for listener in list(self._auth_listeners):
                    await _call(listener, exc)
                return
            except (
                RealtimeConnectionError,
                OSError,
                asyncio.TimeoutError,
                websockets.WebSocketException,
            ) as exc:
                self._last_error = str(exc) or type(exc).__name__
                logger.info("Real-time connection to %s lost: %s", self._url, self._last_error)
            if self._disposed:
                break
            attempt_status = ConnectionStatus.RECONNECTING
            await self._set_status(attempt_status)
            await self._scheduler.sleep(self._config.reconnect_delay_seconds)

    async def _session(self) -> None:
        logger.info("Connecting to %s", self._url)
        async with self._connector(self._url) as ws:
            offer = (self._config.heartbeat_outgoing_ms, self._config.heartbeat_incoming_ms)
            await ws.send(stomp.encode_frame(stomp.connect_frame(self._host, self._token or "", offer)))
            reply = await asyncio.wait_for(
                self._next_frame(ws, None), timeout=self._config.connect_timeout_seconds
            )
            if reply.command == "ERROR":
                message = reply.headers.get("message", "") or reply.body
                if _is_auth_error(reply):
                    raise AuthRejected(message or "STOMP CONNECT rejected")
                raise RealtimeConnectionError(message or "STOMP CONNECT failed")
            if reply.command != "CONNECTED":
                raise StompProtocolError(f"Expected CONNECTED, got {reply.command}")
            if self._disposed:
                return

            outgoing, incoming = stomp.negotiate_heartbeat(offer, reply.headers.get("heart-beat"))
            self._ws = ws
            self._last_error = None
            heartbeat = self._scheduler.spawn(self._send_heartbeats(ws, outgoing)) if outgoing else None
            try:
                await self._set_status(ConnectionStatus.CONNECTED)
                logger.info("Connected to %s", self._url)
                await self._pump(ws, incoming)
            finally:
                self._ws = None
                if heartbeat is not None:
                    heartbeat.cancel()

    async def _next_frame(self, ws: WebSocketLike, incoming_ms: int | None) -> StompFrame:
        # Incoming heart-beats are checked with a grace factor of two periods.
        timeout = (incoming_ms * 2 / 1000.0) if incoming_ms else None
        while True:
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise RealtimeConnectionError("Heart-beat timeout") from exc
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            if stomp.is_heartbeat(raw):
                continue
            try:
                return stomp.decode_frame(raw)
            except StompProtocolError as exc:
                logger.warning("Dropping malformed STOMP frame: %s", exc)

    async def _pump(self, ws: WebSocketLike, incoming_ms: int) -> None:
        while not self._disposed:
            frame = await self._next_frame(ws, incoming_ms)
            if self._disposed:
                return
            if frame.command == "ERROR":
                logger.error(
                    "STOMP error: %s %s", frame.headers.get("message", ""), frame.body.strip()
                )
                # A revoked credential is refused by the next CONNECT instead.
                raise RealtimeConnectionError(frame.headers.get("message", "") or "STOMP error")
            for listener in list(self._frame_listeners):
                await _call(listener, frame)

    async def _send_heartbeats(self, ws: WebSocketLike, outgoing_ms: int) -> None:
        while not self._disposed:
            await self._scheduler.sleep(outgoing_ms / 1000.0)
            if self._ws is not ws:
                return
            try:
                async with self._send_lock:
                    await ws.send(stomp.HEARTBEAT)
            except (OSError, websockets.WebSocketException):
                return

    # -- internal ------------------------------------------------------------

    async def _send_checked(self, frame: StompFrame) -> None:
        ws = self._ws
        if self._disposed or self._status is not ConnectionStatus.CONNECTED or ws is None:
            raise NotConnected(f"Cannot send {frame.command}: connection is {self._status}")
        try:
            async with self._send_lock:
                await ws.send(stomp.encode_frame(frame))
        except (OSError, websockets.WebSocketException) as exc:
            raise NotConnected(f"Cannot send {frame.command}: {exc}") from exc

    async def _set_status(self, status: ConnectionStatus, *, force: bool = False) -> None:
        if self._disposed and not force:
            return
        if status is self._status:
            return
        logger.debug("Transport status %s -> %s", self._status, status)
        self._status = status
        for listener in list(self._status_listeners):
            try:
                await _call(listener, status)
            except NotConnected as exc:
                logger.debug("Status listener raced a dropped connection: %s", exc)
