"""Session-scoped live notification context and its consumer views."""

from autocare.live.session import LiveSession
from autocare.live.views import (
    BadgeCount,
    ChatTranscript,
    ConnectionIndicator,
    RecentNotifications,
    ServiceProgress,
    UnreadMessages,
    format_badge,
)

__all__ = [
    "BadgeCount",
    "ChatTranscript",
    "ConnectionIndicator",
    "LiveSession",
    "RecentNotifications",
    "ServiceProgress",
    "UnreadMessages",
    "format_badge",
]
