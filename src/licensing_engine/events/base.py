"""Base interface for event sinks."""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class EventName(str, Enum):
    LICENSE_PROPOSED = "LicenseProposed"
    LICENSE_ACTIVATED = "LicenseActivated"
    LICENSE_EXPIRING_SOON = "LicenseExpiringSoon"
    LICENSE_EXPIRED = "LicenseExpired"
    LICENSE_RENEWED = "LicenseRenewed"
    LICENSE_TERMINATED = "LicenseTerminated"
    AMENDMENT_PROPOSED = "AmendmentProposed"
    AMENDMENT_RESOLVED = "AmendmentResolved"
    EXTENSION_REQUESTED = "ExtensionRequested"
    EXTENSION_RESOLVED = "ExtensionResolved"
    RENEWAL_OFFER_GENERATED = "RenewalOfferGenerated"
    BILLING_INTENT = "BillingIntent"


@dataclass
class DomainEvent:
    """Something that happened to a license, for outside consumers.

    Attributes:
        name: Event kind.
        license_id: License the event concerns.
        occurred_at: Commit-time timestamp from the engine clock.
        payload: JSON-safe event detail.
        id: Unique event id, usable as an idempotency key.
    """

    name: EventName
    license_id: str
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name.value,
            "license_id": self.license_id,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


def billing_intent(
    license_id: str,
    amount: int,
    billing_frequency: str,
    occurred_at: datetime,
    source: str,
    reference_id: Optional[str] = None,
) -> DomainEvent:
    """Build a BillingIntent event. Charging is the consumer's job."""
    return DomainEvent(
        name=EventName.BILLING_INTENT,
        license_id=license_id,
        occurred_at=occurred_at,
        payload={
            "amount": amount,
            "billing_frequency": billing_frequency,
            "source": source,
            "reference_id": reference_id,
        },
    )


class EventSink(ABC):
    """Abstract base class for event sinks."""

    @abstractmethod
    def publish(self, event: DomainEvent) -> None:
        """Accept one committed event.

        Implementations may raise; the engine logs and swallows sink errors.
        """
        ...
