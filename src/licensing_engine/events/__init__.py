"""Domain events emitted after a license transaction commits.

Consumers (notifications, billing) receive events through an EventSink.
The engine never blocks on delivery and a failing sink never rolls back
the transaction that produced the events.
"""

from licensing_engine.events.base import DomainEvent, EventName, EventSink
from licensing_engine.events.outbox import OutboxSink
from licensing_engine.events.webhook import DeliveryReport, WebhookDispatcher

__all__ = [
    "DomainEvent",
    "EventName",
    "EventSink",
    "OutboxSink",
    "DeliveryReport",
    "WebhookDispatcher",
]
