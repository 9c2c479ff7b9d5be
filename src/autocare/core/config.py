"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from autocare.core.types import EventKind, UserRole


class ChannelSpec(BaseModel):
    """A server destination the router subscribes to.

    ``roles`` limits the subscription to sessions with one of the given
    roles; ``None`` means every role subscribes.
    """

    destination: str
    kind: EventKind
    roles: list[UserRole] | None = None

    def applies_to(self, role: UserRole) -> bool:
        return self.roles is None or role in self.roles


def _default_channels() -> list[ChannelSpec]:
    return [
        ChannelSpec(destination="/user/queue/messages", kind=EventKind.CHAT_MESSAGE),
        ChannelSpec(destination="/user/queue/notifications", kind=EventKind.SYSTEM_NOTIFICATION),
        ChannelSpec(destination="/topic/service-updates", kind=EventKind.SERVICE_UPDATE),
        ChannelSpec(destination="/topic/appointment-updates", kind=EventKind.APPOINTMENT_UPDATE),
        ChannelSpec(
            destination="/topic/employee-messages",
            kind=EventKind.CHAT_MESSAGE,
            roles=[UserRole.EMPLOYEE, UserRole.ADMIN],
        ),
    ]


def load_channels(path: str | Path) -> list[ChannelSpec]:
    """Load a channel table from YAML.

    Expected shape::

        channels:
          - destination: /topic/service-updates
            kind: service_update
            roles: [customer, employee]
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Channel config not found: {path}")
    with open(path) as fh:
        data = yaml.safe_load(fh) or {}
    return [ChannelSpec.model_validate(entry) for entry in data.get("channels", [])]


class ApiConfig(BaseSettings):
    """REST API configuration.

    ``AUTOCARE_API_BASE_URL`` overrides the local-dev default.
    """

    model_config = {"env_prefix": "AUTOCARE_API_"}

    base_url: str = "http://localhost:8080"
    api_prefix: str = "/api"
    timeout_seconds: float = 10.0


class RealtimeConfig(BaseSettings):
    """STOMP-over-WebSocket configuration."""

    model_config = {"env_prefix": "AUTOCARE_REALTIME_"}

    ws_path: str = "/ws"
    reconnect_delay_seconds: float = 5.0
    heartbeat_outgoing_ms: int = 4000
    heartbeat_incoming_ms: int = 4000
    connect_timeout_seconds: float = 10.0
    chat_send_destination: str = "/app/chat/send"
    channels: list[ChannelSpec] = Field(default_factory=_default_channels)
    channels_path: str | None = None

    def resolved_channels(self) -> list[ChannelSpec]:
        """Channel table from ``channels_path`` when set, else ``channels``."""
        if self.channels_path:
            return load_channels(self.channels_path)
        return list(self.channels)


class NotificationConfig(BaseSettings):
    """Notification log and unread counter configuration."""

    model_config = {"env_prefix": "AUTOCARE_NOTIFICATION_"}

    poll_interval_seconds: float = 30.0
    suppression_window_seconds: float = 2.0
    log_capacity: int = 100
    recent_limit: int = 10
    dedup_window: int = 500


class Settings(BaseSettings):
    """Root application settings."""

    model_config = {"env_prefix": "AUTOCARE_"}

    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    api: ApiConfig = Field(default_factory=ApiConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)

    @property
    def ws_url(self) -> str:
        """WebSocket endpoint derived from the API base URL."""
        base = self.api.base_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return base + self.realtime.ws_path
