"""Tests for the STOMP-over-WebSocket transport."""

from __future__ import annotations

import asyncio
import json

import pytest

from autocare.core.config import RealtimeConfig
from autocare.core.errors import AuthRejected, NotConnected, RealtimeConnectionError
from autocare.core.types import ConnectionStatus
from autocare.realtime import stomp
from autocare.realtime.stomp import StompFrame
from autocare.realtime.timers import ManualScheduler, settle
from autocare.realtime.transport import StompTransport, _is_auth_error
from tests.conftest import TOKEN, FakeStompServer, make_settings, until

URL = "ws://localhost:8080/ws"


class TestStompTransport:
    def setup_method(self) -> None:
        self.scheduler = ManualScheduler()
        self.server = FakeStompServer()
        self.transport = StompTransport(
            URL, make_settings().realtime, self.scheduler, connector=self.server.connector
        )
        self.statuses: list[ConnectionStatus] = []
        self.transport.on_status(self.statuses.append)

    async def _connected(self):
        self.transport.connect(TOKEN)
        await until(lambda: self.transport.status is ConnectionStatus.CONNECTED)

    @pytest.mark.asyncio
    async def test_credential_travels_in_connect_headers(self) -> None:
        try:
            await self._connected()
            connect = self.server.socket.frames("CONNECT")[0]
            assert connect.headers["Authorization"] == f"Bearer {TOKEN}"
            assert connect.headers["host"] == "localhost"
            assert self.server.urls == [URL]
            assert TOKEN not in self.server.urls[0]
            assert self.statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
        finally:
            await self.transport.disconnect()
        assert self.statuses[-1] is ConnectionStatus.DISCONNECTED

    def test_connect_requires_credential(self) -> None:
        with pytest.raises(AuthRejected):
            self.transport.connect("")

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self) -> None:
        try:
            await self._connected()
            self.transport.connect(TOKEN)
            await settle()
            assert self.server.attempts == 1
        finally:
            await self.transport.disconnect()

    @pytest.mark.asyncio
    async def test_publish_while_disconnected_raises(self) -> None:
        with pytest.raises(NotConnected):
            await self.transport.publish("/app/chat/send", {"receiverId": 1, "message": "hi"})

    @pytest.mark.asyncio
    async def test_publish_sends_json_body(self) -> None:
        try:
            await self._connected()
            await self.transport.publish("/app/chat/send", {"receiverId": 3, "message": "hi"})
            sent = self.server.socket.frames("SEND")
            assert len(sent) == 1
            assert sent[0].destination == "/app/chat/send"
            assert json.loads(sent[0].body) == {"receiverId": 3, "message": "hi"}
        finally:
            await self.transport.disconnect()

    @pytest.mark.asyncio
    async def test_reconnects_after_fixed_delay(self) -> None:
        try:
            await self._connected()
            self.server.socket.drop()
            await until(lambda: self.transport.status is ConnectionStatus.RECONNECTING)
            assert self.transport.state.last_error

            await self.scheduler.advance(4.9)
            assert self.server.attempts == 1
            await self.scheduler.advance(0.1)
            await until(lambda: self.transport.status is ConnectionStatus.CONNECTED)
            assert self.server.attempts == 2
            assert self.statuses == [
                ConnectionStatus.CONNECTING,
                ConnectionStatus.CONNECTED,
                ConnectionStatus.RECONNECTING,
                ConnectionStatus.CONNECTED,
            ]
        finally:
            await self.transport.disconnect()

    @pytest.mark.asyncio
    async def test_refused_connection_retries_with_same_delay(self) -> None:
        self.server.fail_next = 2
        try:
            self.transport.connect(TOKEN)
            await until(lambda: self.transport.status is ConnectionStatus.RECONNECTING)
            await self.scheduler.advance(5)
            await until(lambda: self.server.attempts == 2)
            await settle()
            await self.scheduler.advance(5)
            await until(lambda: self.transport.status is ConnectionStatus.CONNECTED)
            assert self.server.attempts == 3
        finally:
            await self.transport.disconnect()

    @pytest.mark.asyncio
    async def test_auth_error_frame_stops_reconnecting(self) -> None:
        self.server.reject = "401 Unauthorized: invalid JWT"
        rejected: list[AuthRejected] = []
        self.transport.on_auth_rejected(rejected.append)
        try:
            self.transport.connect(TOKEN)
            await until(lambda: bool(rejected))
            assert self.transport.status is ConnectionStatus.DISCONNECTED
            assert "401" in (self.transport.state.last_error or "")
            await self.scheduler.advance(60)
            assert self.server.attempts == 1
        finally:
            await self.transport.disconnect()

    @pytest.mark.asyncio
    async def test_other_error_frame_reconnects(self) -> None:
        self.server.reject = "broker unavailable"
        try:
            self.transport.connect(TOKEN)
            await until(lambda: self.transport.status is ConnectionStatus.RECONNECTING)
            assert self.transport.state.last_error == "broker unavailable"
        finally:
            await self.transport.disconnect()

    @pytest.mark.asyncio
    async def test_connect_error_with_token_in_body_reconnects(self) -> None:
        self.server.reject = "Failed to initialise session"
        self.server.reject_body = "JSON parse error: Unrecognized token 'oops'"
        rejected: list[AuthRejected] = []
        self.transport.on_auth_rejected(rejected.append)
        try:
            self.transport.connect(TOKEN)
            await until(lambda: self.transport.status is ConnectionStatus.RECONNECTING)
            await self.scheduler.advance(5)
            await until(lambda: self.server.attempts == 2)
            assert rejected == []
        finally:
            await self.transport.disconnect()

    @pytest.mark.asyncio
    async def test_mid_session_error_frame_reconnects(self) -> None:
        rejected: list[AuthRejected] = []
        self.transport.on_auth_rejected(rejected.append)
        try:
            await self._connected()
            error = StompFrame(
                "ERROR",
                {"message": "Failed to send message to ExecutorSubscribableChannel"},
                "JSON parse error: Unrecognized token 'oops'",
            )
            self.server.socket.push(stomp.encode_frame(error))
            await until(lambda: self.transport.status is ConnectionStatus.RECONNECTING)
            await self.scheduler.advance(30)
            await until(lambda: self.transport.status is ConnectionStatus.CONNECTED)
            assert self.server.attempts == 2
            assert rejected == []
        finally:
            await self.transport.disconnect()

    @pytest.mark.asyncio
    async def test_revoked_credential_refused_on_reconnect(self) -> None:
        rejected: list[AuthRejected] = []
        self.transport.on_auth_rejected(rejected.append)
        try:
            await self._connected()
            self.server.reject = "403 Forbidden: expired JWT"
            self.server.socket.push(stomp.encode_frame(StompFrame("ERROR", {"message": "Access denied"}, "")))
            await until(lambda: self.transport.status is ConnectionStatus.RECONNECTING)
            await self.scheduler.advance(5)
            await until(lambda: bool(rejected))
            assert self.transport.status is ConnectionStatus.DISCONNECTED
            await self.scheduler.advance(60)
            assert self.server.attempts == 2
        finally:
            await self.transport.disconnect()

    @pytest.mark.parametrize(
        "message, expected",
        [
            ("401 Unauthorized", True),
            ("403 Forbidden", True),
            ("Invalid token", True),
            ("JWT expired token rejected", True),
            ("Expired JWT", True),
            ("Authentication failed", True),
            ("Failed to send message to ExecutorSubscribableChannel", False),
            ("broker unavailable", False),
            ("Session closed: token bucket exhausted", False),
            ("", False),
        ],
    )
    def test_credential_rejection_read_from_message_header(self, message, expected) -> None:
        frame = StompFrame("ERROR", {"message": message}, "Unrecognized token; bad credentials in body")
        assert _is_auth_error(frame) is expected

    @pytest.mark.asyncio
    async def test_disconnect_during_pending_connect_is_silent(self) -> None:
        frames: list[StompFrame] = []
        self.transport.on_frame(frames.append)
        self.server.hold = asyncio.Event()
        self.transport.connect(TOKEN)
        await until(lambda: self.server.attempts == 1)

        await self.transport.disconnect()
        self.server.hold.set()
        await settle()
        await self.scheduler.advance(30)

        assert ConnectionStatus.CONNECTED not in self.statuses
        assert self.statuses[-1] is ConnectionStatus.DISCONNECTED
        assert self.server.sockets == []
        assert frames == []

    @pytest.mark.asyncio
    async def test_disconnect_sends_disconnect_frame_once(self) -> None:
        await self._connected()
        sock = self.server.socket
        await self.transport.disconnect()
        await self.transport.disconnect()
        assert len(sock.frames("DISCONNECT")) == 1
        assert sock.closed
        assert self.transport.status is ConnectionStatus.DISCONNECTED
        with pytest.raises(RealtimeConnectionError):
            self.transport.connect(TOKEN)

    @pytest.mark.asyncio
    async def test_disconnect_frame_follows_pending_send(self) -> None:
        await self._connected()
        sock = self.server.socket
        await asyncio.gather(
            self.transport.publish("/app/chat.send", {"text": "bye"}),
            self.transport.disconnect(),
        )
        assert [f.command for f in sock.frames()][-2:] == ["SEND", "DISCONNECT"]

    @pytest.mark.asyncio
    async def test_frames_forwarded_verbatim(self) -> None:
        frames: list[StompFrame] = []
        self.transport.on_frame(frames.append)
        try:
            await self._connected()
            sock = self.server.socket
            sock.push(stomp.HEARTBEAT)
            sock.push("garbage without terminator")
            message = StompFrame("MESSAGE", {"destination": "/topic/x", "subscription": "s"}, "raw body")
            sock.push(stomp.encode_frame(message))
            await until(lambda: bool(frames))
            assert frames == [message]
            assert self.transport.status is ConnectionStatus.CONNECTED
        finally:
            await self.transport.disconnect()

    @pytest.mark.asyncio
    async def test_outgoing_heartbeats(self) -> None:
        config = RealtimeConfig(heartbeat_outgoing_ms=4000, heartbeat_incoming_ms=0)
        server = FakeStompServer(heartbeat="0,4000")
        transport = StompTransport(URL, config, self.scheduler, connector=server.connector)
        try:
            transport.connect(TOKEN)
            await until(lambda: transport.status is ConnectionStatus.CONNECTED)
            await settle()
            assert stomp.HEARTBEAT not in server.socket.sent
            await self.scheduler.advance(4)
            await until(lambda: stomp.HEARTBEAT in server.socket.sent)
        finally:
            await transport.disconnect()
