"""Event emitters and notifiers for the control plane."""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, List

from hft_control.core.events_model import ControlEvent

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "deployment.failed",
    "deployment.succeeded",
    "health.probe",
    "failover.switched",
    "bot.desync",
    "bot.control",
    "order.placed",
    "order.blocked",
    "balance.partial",
}


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[ControlEvent]) -> None:
        """Emit one or more events."""
        pass


class LogEventEmitter(EventEmitter):
    """Logs events and keeps them in memory for inspection."""

    def __init__(self):
        self.events: List[ControlEvent] = []

    def emit(self, events: Iterable[ControlEvent]) -> None:
        for event in events:
            if event.event_type not in ALLOWED_EVENTS:
                raise ValueError(f"Invalid event type: {event.event_type}")
            if not event.subject:
                raise ValueError("Event must have a subject")

            self.events.append(event)
            logger.info(f"[event] {event.event_type} | {event.subject} | {event.metadata}")

    def of_type(self, event_type: str) -> List[ControlEvent]:
        return [e for e in self.events if e.event_type == event_type]


class MultiEventEmitter(EventEmitter):
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[ControlEvent]) -> None:
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)


class NullEventEmitter(EventEmitter):
    """No-op emitter (used when events are not needed)."""

    def emit(self, events: Iterable[ControlEvent]) -> None:
        pass


# ============================================
# NOTIFICATIONS (messaging collaborator)
# ============================================

class Notifier(ABC):
    """Operator notification side-channel."""

    @abstractmethod
    def notify(self, title: str, message: str) -> None:
        pass


class LogNotifier(Notifier):
    """Writes notifications to the log and remembers them."""

    def __init__(self):
        self.sent: List[tuple] = []

    def notify(self, title: str, message: str) -> None:
        self.sent.append((title, message))
        logger.warning(f"[notify] {title}: {message}")


class NullNotifier(Notifier):
    def notify(self, title: str, message: str) -> None:
        pass
