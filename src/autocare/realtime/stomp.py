"""Minimal STOMP 1.2 frame codec for text WebSocket messages.

A frame is ``COMMAND\\n`` followed by ``name:value`` header lines, a blank
line, the body and a terminating NUL octet. A message consisting only of
end-of-line characters is a heart-beat.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from autocare.core.errors import StompProtocolError

NUL = "\x00"
HEARTBEAT = "\n"

# CONNECT and CONNECTED headers are sent without escaping (STOMP 1.2 §Value Encoding).
_UNESCAPED_COMMANDS = frozenset({"CONNECT", "CONNECTED"})

_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r", ":": "\\c"}
_UNESCAPES = {"\\": "\\", "n": "\n", "r": "\r", "c": ":"}


@dataclass
class StompFrame:
    """A decoded STOMP frame."""

    command: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def destination(self) -> str | None:
        return self.headers.get("destination")


def _escape(value: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def _unescape(value: str) -> str:
    out: list[str] = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == "\\":
            if i + 1 >= len(value) or value[i + 1] not in _UNESCAPES:
                raise StompProtocolError(f"Invalid escape sequence in header {value!r}")
            out.append(_UNESCAPES[value[i + 1]])
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def encode_frame(frame: StompFrame) -> str:
    """Serialize a frame to its wire text, including the trailing NUL."""
    escape = frame.command not in _UNESCAPED_COMMANDS
    lines = [frame.command]
    for name, value in frame.headers.items():
        if escape:
            name, value = _escape(name), _escape(value)
        lines.append(f"{name}:{value}")
    return "\n".join(lines) + "\n\n" + frame.body + NUL


def is_heartbeat(data: str) -> bool:
    return data != "" and data.strip("\r\n") == ""


def decode_frame(data: str) -> StompFrame:
    """Parse one wire message into a frame.

    Raises:
        StompProtocolError: If the message is not a well-formed frame.
    """
    # Servers may prefix a frame with heart-beat EOLs.
    data = data.lstrip("\r\n")
    head, sep, rest = data.partition("\n\n")
    if not sep:
        head, sep, rest = data.partition("\r\n\r\n")
    if not sep:
        raise StompProtocolError("Frame has no header terminator")

    head_lines = head.replace("\r\n", "\n").split("\n")
    command = head_lines[0].strip()
    if not command:
        raise StompProtocolError("Frame has no command")

    escaped = command not in _UNESCAPED_COMMANDS
    headers: dict[str, str] = {}
    for line in head_lines[1:]:
        if not line:
            continue
        name, colon, value = line.partition(":")
        if not colon:
            raise StompProtocolError(f"Malformed header line {line!r}")
        if escaped:
            name, value = _unescape(name), _unescape(value)
        # Repeated headers: the first occurrence wins.
        headers.setdefault(name, value)

    if "content-length" in headers:
        try:
            length = int(headers["content-length"])
        except ValueError as exc:
            raise StompProtocolError("Invalid content-length header") from exc
        encoded = rest.encode("utf-8")
        if len(encoded) < length:
            raise StompProtocolError("Frame body shorter than content-length")
        body = encoded[:length].decode("utf-8")
    else:
        body, nul, _ = rest.partition(NUL)
        if not nul:
            raise StompProtocolError("Frame is not NUL-terminated")

    return StompFrame(command=command, headers=headers, body=body)


def negotiate_heartbeat(client: tuple[int, int], server_header: str | None) -> tuple[int, int]:
    """Resolve the (outgoing_ms, incoming_ms) heart-beat periods.

    ``client`` is what we offered in CONNECT; ``server_header`` is the
    ``heart-beat`` header of CONNECTED. Zero on either side disables that
    direction.
    """
    client_out, client_in = client
    server_out, server_in = 0, 0
    if server_header:
        try:
            sx, sy = (int(part) for part in server_header.split(","))
            server_out, server_in = sx, sy
        except ValueError:
            server_out, server_in = 0, 0
    outgoing = 0 if client_out == 0 or server_in == 0 else max(client_out, server_in)
    incoming = 0 if client_in == 0 or server_out == 0 else max(client_in, server_out)
    return outgoing, incoming


def connect_frame(host: str, token: str, heartbeat: tuple[int, int]) -> StompFrame:
    """Build the CONNECT frame carrying the bearer credential."""
    return StompFrame(
        command="CONNECT",
        headers={
            "accept-version": "1.2,1.1",
            "host": host,
            "heart-beat": f"{heartbeat[0]},{heartbeat[1]}",
            "Authorization": f"Bearer {token}",
        },
    )


def subscribe_frame(subscription_id: str, destination: str) -> StompFrame:
    return StompFrame(
        command="SUBSCRIBE",
        headers={"id": subscription_id, "destination": destination, "ack": "auto"},
    )


def unsubscribe_frame(subscription_id: str) -> StompFrame:
    return StompFrame(command="UNSUBSCRIBE", headers={"id": subscription_id})


def send_frame(destination: str, body: str) -> StompFrame:
    return StompFrame(
        command="SEND",
        headers={
            "destination": destination,
            "content-type": "application/json",
            "content-length": str(len(body.encode("utf-8"))),
        },
        body=body,
    )


def disconnect_frame() -> StompFrame:
    return StompFrame(command="DISCONNECT", headers={"receipt": "disconnect"})
