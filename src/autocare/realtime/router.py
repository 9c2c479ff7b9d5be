"""Event router: destination-qualified STOMP frames -> typed ``InboundEvent``s.

The router owns every channel subscription. It subscribes when the
transport reports ``connected``, forgets all subscriptions as soon as the
connection drops, and classifies each frame by the destination it was
subscribed on.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from pydantic import ValidationError

from autocare.core.config import ChannelSpec
from autocare.core.errors import FrameParseError, NotConnected
from autocare.core.types import ConnectionStatus, EventKind, UserRole
from autocare.realtime.events import EventBus
from autocare.realtime.models import InboundEvent, payload_adapter
from autocare.realtime.stomp import StompFrame
from autocare.realtime.transport import StompTransport

logger = logging.getLogger(__name__)

# Kinds whose payload ``id`` names the message itself. For service and
# appointment updates it names the entity, which many events share.
_MESSAGE_ID_KINDS = frozenset({EventKind.CHAT_MESSAGE, EventKind.SYSTEM_NOTIFICATION})


@dataclass(frozen=True)
class Subscription:
    """An active channel binding on the current connection."""

    id: str
    destination: str
    kind: EventKind


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_frame(body: str, destination: str, kind: EventKind) -> InboundEvent:
    """Build an event from a frame body delivered on ``destination``.

    Bodies are either an envelope ``{type, data, timestamp, userId?}`` or a
    bare payload object. ``kind`` always comes from the channel.

    Raises:
        FrameParseError: If the body is not JSON or lacks the fields the
            kind requires.
    """
    try:
        body_data = json.loads(body)
    except (json.JSONDecodeError, TypeError) as exc:
        raise FrameParseError(destination, f"invalid JSON ({exc})") from exc
    if not isinstance(body_data, dict):
        raise FrameParseError(destination, "body is not an object")

    envelope = "type" in body_data and isinstance(body_data.get("data"), dict)
    if envelope:
        data = body_data["data"]
        if body_data.get("type") not in (kind.value, "notification"):
            logger.debug(
                "Envelope type %r on %s; classifying as %s", body_data.get("type"), destination, kind
            )
        sent_at = _parse_timestamp(body_data.get("timestamp"))
        user_id = body_data.get("userId")
        server_id = body_data.get("id")
        if server_id is None and kind in _MESSAGE_ID_KINDS:
            server_id = data.get("id")
    else:
        data = body_data
        sent_at = _parse_timestamp(data.get("createdAt") or data.get("timestamp"))
        user_id = None
        server_id = data.get("id") if kind in _MESSAGE_ID_KINDS else None

    try:
        payload = payload_adapter.validate_python({**data, "kind": kind})
    except ValidationError as exc:
        raise FrameParseError(destination, f"{exc.error_count()} invalid field(s)") from exc

    return InboundEvent(
        kind=kind,
        payload=payload,
        destination=destination,
        sent_at=sent_at,
        user_id=str(user_id) if user_id is not None else None,
        server_id=str(server_id) if server_id is not None else None,
    )


class EventRouter:
    """Subscribes to the session's channels and publishes parsed events."""

    def __init__(
        self,
        transport: StompTransport,
        bus: EventBus,
        channels: Iterable[ChannelSpec],
        role: UserRole,
    ) -> None:
        self._transport = transport
        self._bus = bus
        self._role = role
        self._channels = {c.destination: c.kind for c in channels if c.applies_to(role)}
        self._subscriptions: dict[str, Subscription] = {}
        self._disposed = False
        self._detach = [
            transport.on_status(self._on_status),
            transport.on_frame(self._on_frame),
        ]

    @property
    def channels(self) -> dict[str, EventKind]:
        return dict(self._channels)

    @property
    def subscriptions(self) -> dict[str, Subscription]:
        return dict(self._subscriptions)

    async def subscribe(self, destination: str) -> Subscription:
        """Subscribe to one of the session's channels.

        Idempotent: a held subscription for ``destination`` is returned
        as-is instead of opening a second delivery path.

        Raises:
            NotConnected: If the transport is not connected.
            KeyError: If ``destination`` is not a channel for this role.
        """
        existing = self._subscriptions.get(destination)
        if existing is not None:
            return existing
        kind = self._channels[destination]
        sub = Subscription(self._transport.next_subscription_id(), destination, kind)
        # Reserve before the await so a concurrent call sees the reference.
        self._subscriptions[destination] = sub
        try:
            await self._transport.subscribe(sub.id, destination)
        except BaseException:
            if self._subscriptions.get(destination) is sub:
                del self._subscriptions[destination]
            raise
        logger.debug("Subscribed to %s as %s", destination, sub.id)
        return sub

    async def subscribe_all(self) -> list[Subscription]:
        return [await self.subscribe(destination) for destination in self._channels]

    async def unsubscribe(self, destination: str) -> None:
        sub = self._subscriptions.pop(destination, None)
        if sub is None:
            return
        await self._transport.unsubscribe(sub.id)
        logger.debug("Unsubscribed from %s", destination)

    async def unsubscribe_all(self) -> None:
        for destination in list(self._subscriptions):
            await self.unsubscribe(destination)

    def release_all(self) -> None:
        """Forget every subscription without wire traffic (the connection is gone)."""
        if self._subscriptions:
            logger.debug("Releasing %d subscription(s)", len(self._subscriptions))
        self._subscriptions.clear()

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        await self.unsubscribe_all()
        self.release_all()
        for detach in self._detach:
            detach()

    # -- transport callbacks -------------------------------------------------

    async def _on_status(self, status: ConnectionStatus) -> None:
        if status is not ConnectionStatus.CONNECTED:
            self.release_all()
            return
        if self._disposed:
            return
        try:
            await self.subscribe_all()
        except NotConnected as exc:
            logger.debug("Connection dropped while subscribing: %s", exc)
            self.release_all()

    def _find(self, frame: StompFrame) -> Subscription | None:
        sub_id = frame.headers.get("subscription")
        if sub_id is not None:
            for sub in self._subscriptions.values():
                if sub.id == sub_id:
                    return sub
            return None
        destination = frame.destination
        return self._subscriptions.get(destination) if destination else None

    def _on_frame(self, frame: StompFrame) -> None:
        if self._disposed or frame.command != "MESSAGE":
            return
        sub = self._find(frame)
        if sub is None:
            logger.debug(
                "Dropping frame for unknown subscription %s on %s",
                frame.headers.get("subscription"),
                frame.destination,
            )
            return
        try:
            event = parse_frame(frame.body, sub.destination, sub.kind)
        except FrameParseError as exc:
            logger.warning("%s", exc)
            return
        self._bus.publish(event)
