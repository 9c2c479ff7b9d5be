"""Inbound real-time event models.

``InboundEvent.payload`` is a tagged union keyed by ``kind``; each variant
declares the fields its kind requires. The kind is injected by the router
from the destination the frame arrived on, never read from the payload.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator

from autocare.core.types import EventKind

_PAYLOAD_CONFIG = {"populate_by_name": True, "extra": "ignore"}


class ServiceUpdatePayload(BaseModel):
    """Progress of a service job on a vehicle."""

    model_config = _PAYLOAD_CONFIG

    kind: Literal[EventKind.SERVICE_UPDATE] = EventKind.SERVICE_UPDATE
    service_id: int = Field(alias="serviceId")
    status: str | None = None
    progress: float | None = None
    current_step: str | None = Field(default=None, alias="currentStep")
    vehicle: str | None = None
    service: str | None = None
    notification_title: str | None = Field(default=None, alias="notificationTitle")
    notification_message: str | None = Field(default=None, alias="notificationMessage")

    @property
    def title(self) -> str:
        return self.notification_title or "Service Update"

    def describe(self) -> str:
        if self.notification_message:
            return self.notification_message
        return f"Service #{self.service_id} status updated to {self.status or 'unknown'}"


class AppointmentUpdatePayload(BaseModel):
    model_config = _PAYLOAD_CONFIG

    kind: Literal[EventKind.APPOINTMENT_UPDATE] = EventKind.APPOINTMENT_UPDATE
    appointment_id: int | None = Field(default=None, alias="appointmentId")
    date: str
    status: str | None = None
    message: str | None = None

    @property
    def title(self) -> str:
        return "Appointment Update"

    def describe(self) -> str:
        return self.message or f"Appointment scheduled for {self.date}"


class ChatMessagePayload(BaseModel):
    """A direct or broadcast chat message between a customer and staff."""

    model_config = _PAYLOAD_CONFIG

    kind: Literal[EventKind.CHAT_MESSAGE] = EventKind.CHAT_MESSAGE
    id: int | None = None
    sender_id: int = Field(alias="senderId")
    receiver_id: int | None = Field(default=None, alias="receiverId")
    sender_name: str | None = Field(default=None, alias="senderName")
    sender_role: str | None = Field(default=None, alias="senderRole")
    message: str
    created_at: str | None = Field(default=None, alias="createdAt")
    is_read: bool = Field(default=False, alias="isRead")

    @property
    def title(self) -> str:
        return f"Message from {self.sender_name}" if self.sender_name else "New Message"

    def describe(self) -> str:
        return self.message

    def involves(self, user_id: int) -> bool:
        return self.sender_id == user_id or self.receiver_id == user_id


class SystemNotificationPayload(BaseModel):
    model_config = _PAYLOAD_CONFIG

    kind: Literal[EventKind.SYSTEM_NOTIFICATION] = EventKind.SYSTEM_NOTIFICATION
    id: int | None = None
    title_text: str | None = Field(default=None, alias="title")
    message: str | None = None

    @property
    def title(self) -> str:
        return self.title_text or "New Notification"

    def describe(self) -> str:
        return self.message or "You have a new update"


EventPayload = Annotated[
    Union[
        ServiceUpdatePayload,
        AppointmentUpdatePayload,
        ChatMessagePayload,
        SystemNotificationPayload,
    ],
    Field(discriminator="kind"),
]

payload_adapter: TypeAdapter[Any] = TypeAdapter(EventPayload)


class InboundEvent(BaseModel):
    """A normalized unit of real-time information."""

    kind: EventKind
    payload: EventPayload
    destination: str
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sent_at: datetime | None = None
    user_id: str | None = None
    server_id: str | None = None

    @model_validator(mode="after")
    def _kind_matches_payload(self) -> InboundEvent:
        if self.payload.kind != self.kind:
            raise ValueError(f"payload kind {self.payload.kind} does not match event kind {self.kind}")
        return self

    @property
    def dedup_key(self) -> tuple[EventKind, str] | None:
        return (self.kind, self.server_id) if self.server_id is not None else None

    @property
    def title(self) -> str:
        return self.payload.title

    def describe(self) -> str:
        return self.payload.describe()
