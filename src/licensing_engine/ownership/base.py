"""Base interface for ownership ledgers.

A ledger records which creators own an IP asset, with what share, over
which period. Shares of concurrently valid records always sum to exactly
FULL_SHARE_BPS.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date, datetime
from typing import Iterable

from licensing_engine.errors import ValidationError
from licensing_engine.models import FULL_SHARE_BPS, Owner, OwnershipRecord


def validate_shares(shares: Iterable[tuple[str, int]]) -> None:
    """Check a complete owner set before it is recorded.

    Args:
        shares: (creator_id, share_bps) pairs valid at the same instant.

    Raises:
        ValidationError: On out-of-range shares, duplicate creators, or a
            total other than FULL_SHARE_BPS.
    """
    errors = []
    seen = set()
    total = 0
    for creator_id, share_bps in shares:
        if not creator_id:
            errors.append("creator_id is required")
        if creator_id in seen:
            errors.append(f"Duplicate owner {creator_id}")
        seen.add(creator_id)
        if not 0 <= share_bps <= FULL_SHARE_BPS:
            errors.append(f"Share for {creator_id} must be between 0 and {FULL_SHARE_BPS}")
        total += share_bps
    if total != FULL_SHARE_BPS:
        errors.append(f"Ownership shares sum to {total}, expected {FULL_SHARE_BPS}")
    if errors:
        raise ValidationError(errors[0], errors)


def owners_from_records(records: Iterable[OwnershipRecord], at: date) -> list[Owner]:
    """Collapse ledger records into the owners holding a share at `at`."""
    shares: dict[str, int] = defaultdict(int)
    for record in records:
        if record.is_current(at):
            shares[record.creator_id] += record.share_bps
    return [
        Owner(creator_id=creator_id, share_bps=share)
        for creator_id, share in sorted(shares.items())
        if share > 0
    ]


class OwnershipLedger(ABC):
    """Abstract base class for ownership ledgers."""

    @abstractmethod
    def get_owners(self, asset_id: str, at: date) -> list[Owner]:
        """Return creators with a non-zero share of the asset at `at`.

        Args:
            asset_id: IP asset identifier.
            at: Date the ownership must be valid on.

        Returns:
            Owners sorted by creator id. Empty if the asset is unknown.
        """
        ...

    @abstractmethod
    def has_open_disputes(self, asset_id: str) -> bool:
        """Return True if any ownership record of the asset is under dispute."""
        ...

    @abstractmethod
    def replace_owners(
        self, asset_id: str, shares: list[tuple[str, int]], effective: date
    ) -> list[OwnershipRecord]:
        """Close the current owner set and open a new one from `effective`.

        Raises:
            ValidationError: If the new shares do not form a complete set.
        """
        ...

    @abstractmethod
    def set_dispute(self, asset_id: str, creator_id: str, opened: bool, at: datetime) -> None:
        """Open (opened=True) or resolve a dispute on a creator's current records."""
        ...

    def is_owner(self, asset_id: str, creator_id: str, at: date) -> bool:
        return any(o.creator_id == creator_id for o in self.get_owners(asset_id, at))
