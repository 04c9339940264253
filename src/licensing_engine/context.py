"""Per-transaction working state shared by the engine's workflows."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from licensing_engine.events.base import DomainEvent, EventName, billing_intent
from licensing_engine.models import License
from licensing_engine.store import StoreSession


@dataclass
class OperationContext:
    """One engine operation: its open session, its clock reading, its events.

    Events collected here are published only after the session commits.
    """

    session: StoreSession
    now: datetime
    events: list[DomainEvent] = field(default_factory=list)

    @property
    def today(self) -> date:
        return self.now.date()

    def emit(self, name: EventName, license_id: str, **payload: Any) -> None:
        self.events.append(
            DomainEvent(name=name, license_id=license_id, occurred_at=self.now, payload=payload)
        )

    def bill(
        self, lic: License, amount: int, source: str, reference_id: Optional[str] = None
    ) -> None:
        self.events.append(
            billing_intent(
                lic.id,
                amount,
                lic.billing_frequency.value,
                self.now,
                source,
                reference_id,
            )
        )
