"""Event emitters for the control plane."""

import logging
from collections import deque
from abc import ABC, abstractmethod
from typing import Iterable

from control_plane.core.events_model import ControlPlaneEvent

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "deployment.started",
    "deployment.completed",
    "deployment.failed",
    "alert.triggered",
    "job.failed",
}


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[ControlPlaneEvent]) -> None:
        """Emit one or more events."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Logs events and keeps the most recent ones in memory for inspection."""

    def __init__(self, keep: int = 1000):
        self.events = deque(maxlen=keep)

    def emit(self, events: Iterable[ControlPlaneEvent]) -> None:
        for event in events:
            # Validation
            if event.event_type not in ALLOWED_EVENTS:
                raise ValueError(f"Invalid event type: {event.event_type}")

            self.events.append(event)
            logger.info(f"[EVENT] {event.event_type} | subject={event.subject_id} | {event.metadata}")


class MultiEventEmitter:
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[ControlPlaneEvent]):
        """Emit to all emitters."""
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)


class NullEventEmitter(EventEmitter):
    """No-op emitter (used when events are not needed)."""

    def emit(self, events: Iterable[ControlPlaneEvent]) -> None:
        """Do nothing."""
        pass
