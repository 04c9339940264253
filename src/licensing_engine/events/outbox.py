"""In-process outbox that buffers committed events until delivered."""

import threading

from licensing_engine.events.base import DomainEvent, EventName, EventSink


class OutboxSink(EventSink):
    """Thread-safe FIFO buffer of published events."""

    def __init__(self) -> None:
        self._events: list[DomainEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            self._events.append(event)

    def pending(self) -> list[DomainEvent]:
        with self._lock:
            return list(self._events)

    def named(self, name: EventName) -> list[DomainEvent]:
        return [e for e in self.pending() if e.name == name]

    def drain(self) -> list[DomainEvent]:
        """Remove and return everything buffered so far."""
        with self._lock:
            events, self._events = self._events, []
        return events

    def requeue(self, events: list[DomainEvent]) -> None:
        """Put undelivered events back at the head of the buffer."""
        with self._lock:
            self._events[:0] = events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
