"""
Notification Dispatcher for the Clearance Engine.

Fans engine events ("step became available", "request reached a terminal
state") out to registered sinks after a change has been committed. Delivery
(email, in-app notification) is the sink's business; the dispatcher only
guarantees that a failing sink does not affect the others or the engine.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from threading import RLock
from typing import Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..models import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    STEP_AVAILABLE = "step_available"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_TERMINAL = "request_terminal"


class EngineEvent(BaseModel):
    """An outbound engine event.

    ``event_id`` is stable per occurrence so sinks can drop redeliveries.
    """
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    request_id: str
    reference_code: str
    step_id: Optional[str] = None
    order: Optional[int] = None
    step_name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    status: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)


class NotificationSink(ABC):
    """Receives engine events."""

    @abstractmethod
    def deliver(self, event: EngineEvent) -> None:
        pass


class LoggingNotificationSink(NotificationSink):
    """Writes every event to the log."""

    def deliver(self, event: EngineEvent) -> None:
        if event.event_type == EventType.STEP_AVAILABLE:
            logger.info(
                f"[{event.reference_code}] step {event.order} ({event.step_name}) available for "
                f"{', '.join(event.roles)}"
            )
        else:
            logger.info(f"[{event.reference_code}] request reached {event.status}")


class InMemoryNotificationSink(NotificationSink):
    """Collects events in memory, deduplicating by event_id."""

    def __init__(self):
        self.events: List[EngineEvent] = []
        self._seen = set()

    def deliver(self, event: EngineEvent) -> None:
        if event.event_id in self._seen:
            return
        self._seen.add(event.event_id)
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[EngineEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self):
        self.events.clear()
        self._seen.clear()


class NotificationDispatcher:
    """Fan-out dispatcher that forwards EngineEvents to sinks."""

    def __init__(self, sinks: Optional[Iterable[NotificationSink]] = None):
        self._lock = RLock()
        self._sinks: List[NotificationSink] = list(sinks or [])

    def add_sink(self, sink: NotificationSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def remove_sink(self, sink: NotificationSink) -> None:
        with self._lock:
            self._sinks = [s for s in self._sinks if s is not sink]

    def sinks(self) -> Sequence[NotificationSink]:
        with self._lock:
            return tuple(self._sinks)

    def publish(self, events: Iterable[EngineEvent]) -> int:
        """
        Deliver events to every sink.

        Returns:
            Number of failed deliveries
        """
        sinks = self.sinks()
        failures = 0

        for event in events:
            for sink in sinks:
                try:
                    sink.deliver(event)
                except Exception as e:
                    failures += 1
                    logger.error(
                        f"Notification sink {type(sink).__name__} failed for event {event.event_id}: {e}"
                    )

        return failures
