"""Real-time layer: STOMP transport, event routing and timers."""

from autocare.realtime.events import EventBus, EventStream, Signal
from autocare.realtime.models import InboundEvent
from autocare.realtime.router import EventRouter, Subscription
from autocare.realtime.timers import LoopScheduler, ManualScheduler, Scheduler
from autocare.realtime.transport import ConnectionState, StompTransport

__all__ = [
    "ConnectionState",
    "EventBus",
    "EventRouter",
    "EventStream",
    "InboundEvent",
    "LoopScheduler",
    "ManualScheduler",
    "Scheduler",
    "Signal",
    "StompTransport",
    "Subscription",
]
