"""Shared test fixtures and helpers."""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any, Callable

import pytest

from autocare.core.config import NotificationConfig, RealtimeConfig, Settings
from autocare.core.types import EventKind
from autocare.realtime import stomp
from autocare.realtime.models import InboundEvent
from autocare.realtime.router import parse_frame
from autocare.realtime.stomp import StompFrame

TOKEN = "test-access-token-0123456789"
API = "http://localhost:8080/api"

_CLOSED = object()


async def until(predicate: Callable[[], bool], rounds: int = 500) -> None:
    """Yield to the loop until ``predicate`` holds; fail if it never does."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def make_settings(**notification: Any) -> Settings:
    return Settings(
        realtime=RealtimeConfig(
            heartbeat_outgoing_ms=0,
            heartbeat_incoming_ms=0,
            reconnect_delay_seconds=5.0,
        ),
        notification=NotificationConfig(**notification),
    )


@pytest.fixture
def settings() -> Settings:
    return make_settings()


class FakeSocket:
    """In-memory WebSocket peer that records what the client sends."""

    def __init__(self, server: FakeStompServer) -> None:
        self._server = server
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(message)
        self._server.received(self, message)

    async def recv(self) -> str:
        item = await self._incoming.get()
        if item is _CLOSED:
            raise ConnectionResetError("connection dropped by peer")
        return item

    async def close(self) -> None:
        self.closed = True

    def push(self, text: str) -> None:
        self._incoming.put_nowait(text)

    def drop(self) -> None:
        self._incoming.put_nowait(_CLOSED)

    def frames(self, command: str | None = None) -> list[StompFrame]:
        out = []
        for raw in self.sent:
            if stomp.is_heartbeat(raw):
                continue
            frame = stomp.decode_frame(raw)
            if command is None or frame.command == command:
                out.append(frame)
        return out


class FakeStompServer:
    """Answers CONNECT frames and delivers MESSAGE frames to subscribers."""

    def __init__(self, *, reject: str | None = None, heartbeat: str = "0,0") -> None:
        self.reject = reject
        self.reject_body = ""
        self.heartbeat = heartbeat
        self.fail_next = 0
        self.hold: asyncio.Event | None = None
        self.sockets: list[FakeSocket] = []
        self.urls: list[str] = []
        self.attempts = 0
        self._message_ids = 0

    @property
    def socket(self) -> FakeSocket:
        return self.sockets[-1]

    def connector(self, url: str):
        return self._connect(url)

    @contextlib.asynccontextmanager
    async def _connect(self, url: str):
        self.attempts += 1
        self.urls.append(url)
        if self.hold is not None:
            await self.hold.wait()
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ConnectionRefusedError("connection refused")
        sock = FakeSocket(self)
        self.sockets.append(sock)
        try:
            yield sock
        finally:
            sock.closed = True

    def received(self, sock: FakeSocket, message: str) -> None:
        if stomp.is_heartbeat(message):
            return
        frame = stomp.decode_frame(message)
        if frame.command != "CONNECT":
            return
        if self.reject is not None:
            reply = StompFrame("ERROR", {"message": self.reject}, self.reject_body)
        else:
            reply = StompFrame("CONNECTED", {"version": "1.2", "heart-beat": self.heartbeat})
        sock.push(stomp.encode_frame(reply))

    def subscription_id(self, destination: str, sock: FakeSocket | None = None) -> str:
        sock = sock or self.socket
        ids = [f.headers["id"] for f in sock.frames("SUBSCRIBE") if f.destination == destination]
        assert ids, f"client never subscribed to {destination}"
        return ids[-1]

    def deliver(
        self,
        destination: str,
        body: Any,
        *,
        subscription: str | None = None,
        sock: FakeSocket | None = None,
    ) -> None:
        sock = sock or self.socket
        self._message_ids += 1
        text = body if isinstance(body, str) else json.dumps(body)
        frame = StompFrame(
            "MESSAGE",
            {
                "destination": destination,
                "subscription": subscription or self.subscription_id(destination, sock),
                "message-id": str(self._message_ids),
                "content-type": "application/json",
            },
            text,
        )
        sock.push(stomp.encode_frame(frame))


@pytest.fixture
def server() -> FakeStompServer:
    return FakeStompServer()


def chat_body(message_id: int | None, sender: int, receiver: int, text: str) -> dict[str, Any]:
    body: dict[str, Any] = {
        "senderId": sender,
        "receiverId": receiver,
        "senderName": f"user-{sender}",
        "senderRole": "EMPLOYEE",
        "message": text,
        "createdAt": "2026-10-19T09:30:00Z",
        "isRead": False,
    }
    if message_id is not None:
        body["id"] = message_id
    return body


def service_envelope(service_id: int, status: str, progress: float | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {"serviceId": service_id, "status": status}
    if progress is not None:
        data["progress"] = progress
    return {"type": "service_update", "data": data, "timestamp": "2026-10-19T09:30:00Z"}


def service_event(service_id: int, status: str = "in-progress", progress: float | None = None) -> InboundEvent:
    body = json.dumps(service_envelope(service_id, status, progress))
    return parse_frame(body, "/topic/service-updates", EventKind.SERVICE_UPDATE)


def chat_event(message_id: int | None, sender: int, receiver: int = 7, text: str = "hi") -> InboundEvent:
    body = json.dumps(chat_body(message_id, sender, receiver, text))
    return parse_frame(body, "/user/queue/messages", EventKind.CHAT_MESSAGE)


class FakeCountSource:
    """Stands in for a count endpoint and its read-all action."""

    def __init__(self, count: int = 0) -> None:
        self.count = count
        self.error: Exception | None = None
        self.mark_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.calls = 0
        self.marks = 0

    async def fetch(self) -> int:
        self.calls += 1
        # Read before waiting so a held fetch returns the state it started on.
        count = self.count
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return count

    async def mark_all(self) -> None:
        self.marks += 1
        if self.mark_error is not None:
            raise self.mark_error
        self.count = 0
