"""In-memory ownership ledger, for embedding and tests."""

import uuid
from datetime import date, datetime

from licensing_engine.models import Owner, OwnershipRecord, OwnershipType
from licensing_engine.ownership.base import (
    OwnershipLedger,
    owners_from_records,
    validate_shares,
)


class InMemoryOwnershipLedger(OwnershipLedger):
    """Ledger kept in a dict of asset id to records."""

    def __init__(self) -> None:
        self._records: dict[str, list[OwnershipRecord]] = {}

    def get_owners(self, asset_id: str, at: date) -> list[Owner]:
        return owners_from_records(self._records.get(asset_id, []), at)

    def has_open_disputes(self, asset_id: str) -> bool:
        return any(
            r.disputed and r.dispute_resolved_at is None
            for r in self._records.get(asset_id, [])
        )

    def replace_owners(
        self, asset_id: str, shares: list[tuple[str, int]], effective: date
    ) -> list[OwnershipRecord]:
        validate_shares(shares)
        records = self._records.setdefault(asset_id, [])
        for record in records:
            if record.end_date is None or record.end_date > effective:
                record.end_date = effective
        new_records = [
            OwnershipRecord(
                id=str(uuid.uuid4()),
                ip_asset_id=asset_id,
                creator_id=creator_id,
                share_bps=share_bps,
                ownership_type=OwnershipType.PRIMARY if i == 0 else OwnershipType.CONTRIBUTOR,
                start_date=effective,
            )
            for i, (creator_id, share_bps) in enumerate(shares)
        ]
        records.extend(new_records)
        return new_records

    def set_dispute(self, asset_id: str, creator_id: str, opened: bool, at: datetime) -> None:
        for record in self._records.get(asset_id, []):
            if record.creator_id == creator_id and record.is_current(at.date()):
                record.disputed = True
                record.dispute_resolved_at = None if opened else at

    def records(self, asset_id: str) -> list[OwnershipRecord]:
        return list(self._records.get(asset_id, []))
