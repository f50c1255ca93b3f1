"""
Notifications Package.

Outbound events emitted by the engine and the sinks that receive them.
"""

from .dispatcher import (
    EngineEvent,
    EventType,
    InMemoryNotificationSink,
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationSink,
)

__all__ = [
    "EngineEvent",
    "EventType",
    "InMemoryNotificationSink",
    "LoggingNotificationSink",
    "NotificationDispatcher",
    "NotificationSink",
]
