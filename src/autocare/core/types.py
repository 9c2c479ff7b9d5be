"""Core type definitions shared across the autocare live client."""

from __future__ import annotations

from enum import StrEnum


class ConnectionStatus(StrEnum):
    """Lifecycle of the single real-time connection owned by a session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class EventKind(StrEnum):
    """Kinds of inbound real-time events, resolved from the destination."""

    SERVICE_UPDATE = "service_update"
    APPOINTMENT_UPDATE = "appointment_update"
    CHAT_MESSAGE = "chat_message"
    SYSTEM_NOTIFICATION = "system_notification"


class UserRole(StrEnum):
    """Dashboard role of the signed-in user."""

    CUSTOMER = "customer"
    EMPLOYEE = "employee"
    ADMIN = "admin"
    OTHER = "other"


class CounterState(StrEnum):
    """States of an unread counter reconciler."""

    UNINITIALIZED = "uninitialized"
    SYNCING = "syncing"
    IDLE = "idle"
    MARKING = "marking"
