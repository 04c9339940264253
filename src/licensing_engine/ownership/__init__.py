"""Ownership ledger adapters.

The engine consumes the ledger to find who must approve a change and who is
royalty-eligible. Adapters answer for the SQLite store or for an in-memory
table.
"""

from licensing_engine.ownership.base import OwnershipLedger, validate_shares
from licensing_engine.ownership.memory import InMemoryOwnershipLedger
from licensing_engine.ownership.sqlite import StoreOwnershipLedger

__all__ = [
    "OwnershipLedger",
    "validate_shares",
    "InMemoryOwnershipLedger",
    "StoreOwnershipLedger",
]
