"""Ownership ledger backed by the engine's SQLite store."""

import logging
import uuid
from datetime import date, datetime

from licensing_engine.models import Owner, OwnershipRecord, OwnershipType
from licensing_engine.ownership.base import (
    OwnershipLedger,
    owners_from_records,
    validate_shares,
)
from licensing_engine.store import LicenseStore

logger = logging.getLogger(__name__)


class StoreOwnershipLedger(OwnershipLedger):
    """Reads and writes the ``ownership_records`` table."""

    def __init__(self, store: LicenseStore) -> None:
        self.store = store

    def get_owners(self, asset_id: str, at: date) -> list[Owner]:
        with self.store.reader() as session:
            return owners_from_records(session.ownership_records(asset_id), at)

    def has_open_disputes(self, asset_id: str) -> bool:
        with self.store.reader() as session:
            records = session.ownership_records(asset_id)
        return any(r.disputed and r.dispute_resolved_at is None for r in records)

    def replace_owners(
        self, asset_id: str, shares: list[tuple[str, int]], effective: date
    ) -> list[OwnershipRecord]:
        validate_shares(shares)
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
        with self.store.transaction() as session:
            for record in session.ownership_records(asset_id):
                if record.end_date is None or record.end_date > effective:
                    session.end_ownership(record.id, effective)
            for record in new_records:
                session.insert_ownership(record)

        logger.info(
            "Recorded %d owner(s) for asset %s effective %s",
            len(new_records),
            asset_id,
            effective,
        )
        return new_records

    def set_dispute(self, asset_id: str, creator_id: str, opened: bool, at: datetime) -> None:
        today: date = at.date()
        with self.store.transaction() as session:
            for record in session.ownership_records(asset_id):
                if record.creator_id == creator_id and record.is_current(today):
                    session.set_ownership_dispute(record.id, True, None if opened else at)
        logger.info(
            "Ownership dispute %s for %s on asset %s",
            "opened" if opened else "resolved",
            creator_id,
            asset_id,
        )
