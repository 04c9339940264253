"""SQLite persistence for licenses and their satellite records.

Every mutating engine operation runs inside ``LicenseStore.transaction()``,
which opens ``BEGIN IMMEDIATE`` so that conflict-detection reads and the
writes they gate share one write lock. License rows additionally carry a
``version`` column that ``update_license`` checks, so a stale in-memory
copy can never overwrite a newer row.
"""

import contextlib
import json
import logging
import sqlite3
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Optional

from licensing_engine.models import (
    ActorRole,
    Amendment,
    AmendmentStatus,
    AmendmentType,
    Approval,
    BillingFrequency,
    Decision,
    Extension,
    ExtensionStatus,
    License,
    LicenseScope,
    LicenseStatus,
    LicenseType,
    OfferStatus,
    OwnershipRecord,
    OwnershipType,
    PricingAdjustment,
    PricingBreakdown,
    PricingStrategy,
    RenewalOffer,
    StatusHistoryEntry,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS licenses (
    id TEXT PRIMARY KEY,
    ip_asset_id TEXT NOT NULL,
    brand_id TEXT NOT NULL,
    license_type TEXT NOT NULL,
    status TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    fee_amount INTEGER NOT NULL CHECK (fee_amount >= 0),
    rev_share_bps INTEGER NOT NULL CHECK (rev_share_bps BETWEEN 0 AND 10000),
    scope TEXT NOT NULL,
    billing_frequency TEXT NOT NULL,
    payment_terms TEXT,
    auto_renew INTEGER NOT NULL DEFAULT 0,
    signature_required INTEGER NOT NULL DEFAULT 0,
    parent_license_id TEXT REFERENCES licenses(id),
    amendment_count INTEGER NOT NULL DEFAULT 0,
    extension_count INTEGER NOT NULL DEFAULT 0,
    created_by TEXT,
    created_at TEXT,
    updated_at TEXT,
    signed_at TEXT,
    terminated_at TEXT,
    termination_reason TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    CHECK (end_date > start_date)
);
CREATE INDEX IF NOT EXISTS idx_licenses_asset ON licenses(ip_asset_id, status);
CREATE INDEX IF NOT EXISTS idx_licenses_due ON licenses(status, end_date);
CREATE INDEX IF NOT EXISTS idx_licenses_parent ON licenses(parent_license_id);

CREATE TABLE IF NOT EXISTS status_history (
    license_id TEXT NOT NULL REFERENCES licenses(id),
    sequence INTEGER NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    event TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    actor_role TEXT NOT NULL,
    reason TEXT,
    at TEXT NOT NULL,
    PRIMARY KEY (license_id, sequence)
);
CREATE TRIGGER IF NOT EXISTS status_history_no_update
BEFORE UPDATE ON status_history
BEGIN
    SELECT RAISE(ABORT, 'status_history is append-only');
END;
CREATE TRIGGER IF NOT EXISTS status_history_no_delete
BEFORE DELETE ON status_history
BEGIN
    SELECT RAISE(ABORT, 'status_history is append-only');
END;

CREATE TABLE IF NOT EXISTS approvals (
    subject_type TEXT NOT NULL,
    subject_id TEXT NOT NULL,
    approver_id TEXT NOT NULL,
    role TEXT NOT NULL,
    decision TEXT NOT NULL,
    decided_at TEXT,
    comments TEXT,
    PRIMARY KEY (subject_type, subject_id, approver_id)
);

CREATE TABLE IF NOT EXISTS amendments (
    id TEXT PRIMARY KEY,
    license_id TEXT NOT NULL REFERENCES licenses(id),
    number INTEGER NOT NULL,
    amendment_type TEXT NOT NULL,
    status TEXT NOT NULL,
    proposed_by TEXT NOT NULL,
    proposed_by_role TEXT NOT NULL,
    justification TEXT NOT NULL,
    before_values TEXT NOT NULL,
    after_values TEXT NOT NULL,
    approval_deadline TEXT NOT NULL,
    created_at TEXT NOT NULL,
    resolved_at TEXT,
    UNIQUE (license_id, number)
);

CREATE TABLE IF NOT EXISTS extensions (
    id TEXT PRIMARY KEY,
    license_id TEXT NOT NULL REFERENCES licenses(id),
    requested_by TEXT NOT NULL,
    extension_days INTEGER NOT NULL,
    justification TEXT NOT NULL,
    original_end_date TEXT NOT NULL,
    new_end_date TEXT NOT NULL,
    additional_fee INTEGER NOT NULL,
    approval_required INTEGER NOT NULL,
    status TEXT NOT NULL,
    approval_deadline TEXT NOT NULL,
    created_at TEXT NOT NULL,
    resolved_at TEXT,
    rejection_reason TEXT
);

CREATE TABLE IF NOT EXISTS renewal_offers (
    id TEXT PRIMARY KEY,
    license_id TEXT NOT NULL REFERENCES licenses(id),
    strategy TEXT NOT NULL,
    breakdown TEXT NOT NULL,
    proposed_start_date TEXT NOT NULL,
    proposed_end_date TEXT NOT NULL,
    generated_by TEXT NOT NULL,
    generated_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    status TEXT NOT NULL,
    accepted_license_id TEXT
);

CREATE TABLE IF NOT EXISTS ownership_records (
    id TEXT PRIMARY KEY,
    ip_asset_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    share_bps INTEGER NOT NULL CHECK (share_bps BETWEEN 0 AND 10000),
    ownership_type TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT,
    disputed INTEGER NOT NULL DEFAULT 0,
    dispute_resolved_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_ownership_asset ON ownership_records(ip_asset_id);
"""

_LICENSE_COLUMNS = (
    "id, ip_asset_id, brand_id, license_type, status, start_date, end_date, "
    "fee_amount, rev_share_bps, scope, billing_frequency, payment_terms, "
    "auto_renew, signature_required, parent_license_id, amendment_count, "
    "extension_count, created_by, created_at, updated_at, signed_at, "
    "terminated_at, termination_reason, version"
)


class StaleWriteError(Exception):
    """A license row changed underneath an update. Safe to retry."""


def is_contention_error(exc: BaseException) -> bool:
    """Return True for storage errors that a fresh attempt may not hit."""
    if isinstance(exc, StaleWriteError):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        message = str(exc).lower()
        return "locked" in message or "busy" in message
    return False


def _iso(value: Optional[date | datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dumps(data: Any) -> str:
    return json.dumps(data, default=str, sort_keys=True)


def breakdown_to_dict(breakdown: PricingBreakdown) -> dict[str, Any]:
    """JSON-safe form of a pricing breakdown (Decimals become strings)."""
    return json.loads(_dumps(asdict(breakdown)))


def breakdown_from_dict(data: dict[str, Any]) -> PricingBreakdown:
    adjustments = [
        PricingAdjustment(
            kind=a["kind"],
            label=a["label"],
            percent=Decimal(a["percent"]),
            amount=int(a["amount"]),
            reason=a["reason"],
        )
        for a in data.get("adjustments", [])
    ]
    return PricingBreakdown(
        original_fee=int(data["original_fee"]),
        base_renewal_fee=int(data["base_renewal_fee"]),
        adjustments=adjustments,
        subtotal=int(data["subtotal"]),
        final_fee=int(data["final_fee"]),
        final_rev_share_bps=int(data["final_rev_share_bps"]),
        strategy=PricingStrategy(data["strategy"]),
        confidence_score=int(data["confidence_score"]),
        reasoning=list(data.get("reasoning", [])),
        clamp_applied=bool(data.get("clamp_applied", False)),
        cap_applied=bool(data.get("cap_applied", False)),
        minimum_enforced=bool(data.get("minimum_enforced", False)),
        historical_renewal_count=int(data.get("historical_renewal_count", 0)),
        relationship_months=int(data.get("relationship_months", 0)),
        expected_creator_revenue=int(data.get("expected_creator_revenue", 0)),
        percent_change=Decimal(str(data.get("percent_change", "0"))),
        absolute_change=int(data.get("absolute_change", 0)),
        projected_annual_value=int(data.get("projected_annual_value", 0)),
    )


class StoreSession:
    """Row-level access bound to one open connection.

    Obtained from LicenseStore.transaction() for writes or
    LicenseStore.reader() for lock-free reads.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # ------------------------------------------------------------------
    # Licenses
    # ------------------------------------------------------------------

    def get_license(self, license_id: str) -> Optional[License]:
        row = self.conn.execute(
            f"SELECT {_LICENSE_COLUMNS} FROM licenses WHERE id = ?", (license_id,)
        ).fetchone()
        return self._license_from_row(row) if row else None

    def insert_license(self, lic: License) -> None:
        self.conn.execute(
            f"INSERT INTO licenses ({_LICENSE_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            self._license_params(lic),
        )

    def update_license(self, lic: License) -> None:
        """Write every mutable column, guarded by the row version.

        Raises:
            StaleWriteError: If the stored version differs from lic.version.
        """
        cursor = self.conn.execute(
            """
            UPDATE licenses SET
                license_type = ?, status = ?, start_date = ?, end_date = ?,
                fee_amount = ?, rev_share_bps = ?, scope = ?,
                billing_frequency = ?, payment_terms = ?, auto_renew = ?,
                signature_required = ?, amendment_count = ?,
                extension_count = ?, updated_at = ?, signed_at = ?,
                terminated_at = ?, termination_reason = ?,
                version = version + 1
            WHERE id = ? AND version = ?
            """,
            (
                lic.license_type.value,
                lic.status.value,
                _iso(lic.start_date),
                _iso(lic.end_date),
                lic.fee_amount,
                lic.rev_share_bps,
                _dumps(lic.scope.to_dict()),
                lic.billing_frequency.value,
                lic.payment_terms,
                int(lic.auto_renew),
                int(lic.signature_required),
                lic.amendment_count,
                lic.extension_count,
                _iso(lic.updated_at),
                _iso(lic.signed_at),
                _iso(lic.terminated_at),
                lic.termination_reason,
                lic.id,
                lic.version,
            ),
        )
        if cursor.rowcount != 1:
            raise StaleWriteError(f"License {lic.id} changed since version {lic.version}")
        lic.version += 1

    def licenses_for_asset(
        self,
        asset_id: str,
        statuses: frozenset[LicenseStatus] | set[LicenseStatus],
        exclude_id: Optional[str] = None,
    ) -> list[License]:
        status_values = sorted(s.value for s in statuses)
        placeholders = ",".join(["?"] * len(status_values))
        rows = self.conn.execute(
            f"""
            SELECT {_LICENSE_COLUMNS} FROM licenses
            WHERE ip_asset_id = ? AND status IN ({placeholders})
              AND (? IS NULL OR id != ?)
            ORDER BY start_date, id
            """,
            (asset_id, *status_values, exclude_id, exclude_id),
        ).fetchall()
        return [self._license_from_row(r) for r in rows]

    def list_licenses(
        self,
        brand_id: Optional[str] = None,
        asset_id: Optional[str] = None,
        status: Optional[LicenseStatus] = None,
    ) -> list[License]:
        clauses = []
        params: list[Any] = []
        if brand_id is not None:
            clauses.append("brand_id = ?")
            params.append(brand_id)
        if asset_id is not None:
            clauses.append("ip_asset_id = ?")
            params.append(asset_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT {_LICENSE_COLUMNS} FROM licenses {where} ORDER BY created_at, id",
            params,
        ).fetchall()
        return [self._license_from_row(r) for r in rows]

    def children_of(self, license_id: str) -> list[License]:
        rows = self.conn.execute(
            f"SELECT {_LICENSE_COLUMNS} FROM licenses WHERE parent_license_id = ? "
            "ORDER BY created_at, id",
            (license_id,),
        ).fetchall()
        return [self._license_from_row(r) for r in rows]

    def count_prior_renewals(self, asset_id: str, brand_id: str) -> int:
        """Renewal licenses this brand has held on this asset."""
        row = self.conn.execute(
            """
            SELECT COUNT(*) FROM licenses
            WHERE ip_asset_id = ? AND brand_id = ?
              AND parent_license_id IS NOT NULL
              AND status IN ('ACTIVE', 'EXPIRING_SOON', 'EXPIRED', 'RENEWED')
            """,
            (asset_id, brand_id),
        ).fetchone()
        return int(row[0])

    def first_license_start(self, asset_id: str, brand_id: str) -> Optional[date]:
        row = self.conn.execute(
            "SELECT MIN(start_date) FROM licenses WHERE ip_asset_id = ? AND brand_id = ?",
            (asset_id, brand_id),
        ).fetchone()
        return _date(row[0]) if row and row[0] else None

    def ids_ending_between(
        self, status: LicenseStatus, after: date, on_or_before: date
    ) -> list[str]:
        rows = self.conn.execute(
            """
            SELECT id FROM licenses
            WHERE status = ? AND end_date > ? AND end_date <= ?
            ORDER BY end_date, id
            """,
            (status.value, after.isoformat(), on_or_before.isoformat()),
        ).fetchall()
        return [r[0] for r in rows]

    def ids_ended(self, statuses: set[LicenseStatus], today: date) -> list[str]:
        status_values = sorted(s.value for s in statuses)
        placeholders = ",".join(["?"] * len(status_values))
        rows = self.conn.execute(
            f"""
            SELECT id FROM licenses
            WHERE status IN ({placeholders}) AND end_date <= ?
            ORDER BY end_date, id
            """,
            (*status_values, today.isoformat()),
        ).fetchall()
        return [r[0] for r in rows]

    def auto_renew_ids_ending_between(self, after: date, on_or_before: date) -> list[str]:
        """Auto-renewing occupying licenses ending in the range and not yet renewed."""
        rows = self.conn.execute(
            """
            SELECT l.id FROM licenses l
            WHERE l.auto_renew = 1
              AND l.status IN ('ACTIVE', 'EXPIRING_SOON')
              AND l.end_date > ? AND l.end_date <= ?
              AND NOT EXISTS (
                  SELECT 1 FROM licenses c
                  WHERE c.parent_license_id = l.id AND c.status != 'CANCELED'
              )
            ORDER BY l.end_date, l.id
            """,
            (after.isoformat(), on_or_before.isoformat()),
        ).fetchall()
        return [r[0] for r in rows]

    def expired_ids_with_active_child(self) -> list[str]:
        rows = self.conn.execute(
            """
            SELECT DISTINCT p.id FROM licenses p
            JOIN licenses c ON c.parent_license_id = p.id
            WHERE p.status = 'EXPIRED' AND c.status IN ('ACTIVE', 'EXPIRING_SOON')
            ORDER BY p.id
            """
        ).fetchall()
        return [r[0] for r in rows]

    def draft_ids_created_before(self, cutoff: datetime) -> list[str]:
        rows = self.conn.execute(
            "SELECT id FROM licenses WHERE status = 'DRAFT' AND created_at < ? ORDER BY id",
            (cutoff.isoformat(),),
        ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Status history (append-only)
    # ------------------------------------------------------------------

    def append_history(self, entry: StatusHistoryEntry) -> StatusHistoryEntry:
        row = self.conn.execute(
            "SELECT COALESCE(MAX(sequence), 0) FROM status_history WHERE license_id = ?",
            (entry.license_id,),
        ).fetchone()
        entry.sequence = int(row[0]) + 1
        self.conn.execute(
            """
            INSERT INTO status_history
            (license_id, sequence, from_status, to_status, event, actor_id,
             actor_role, reason, at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.license_id,
                entry.sequence,
                entry.from_status.value if entry.from_status else None,
                entry.to_status.value,
                entry.event,
                entry.actor_id,
                entry.actor_role.value,
                entry.reason,
                entry.at.isoformat(),
            ),
        )
        return entry

    def history_for(self, license_id: str) -> list[StatusHistoryEntry]:
        rows = self.conn.execute(
            """
            SELECT license_id, sequence, from_status, to_status, event,
                   actor_id, actor_role, reason, at
            FROM status_history WHERE license_id = ? ORDER BY sequence
            """,
            (license_id,),
        ).fetchall()
        return [
            StatusHistoryEntry(
                license_id=r["license_id"],
                sequence=r["sequence"],
                from_status=LicenseStatus(r["from_status"]) if r["from_status"] else None,
                to_status=LicenseStatus(r["to_status"]),
                event=r["event"],
                actor_id=r["actor_id"],
                actor_role=ActorRole(r["actor_role"]),
                reason=r["reason"],
                at=datetime.fromisoformat(r["at"]),
            )
            for r in rows
        ]

    def license_ids_that_reached(
        self, status: LicenseStatus, license_ids: Optional[list[str]] = None
    ) -> set[str]:
        rows = self.conn.execute(
            "SELECT DISTINCT license_id FROM status_history WHERE to_status = ?",
            (status.value,),
        ).fetchall()
        reached = {r[0] for r in rows}
        if license_ids is not None:
            reached &= set(license_ids)
        return reached

    # ------------------------------------------------------------------
    # Approval slots (licenses, amendments, extensions)
    # ------------------------------------------------------------------

    def replace_approvals(
        self, subject_type: str, subject_id: str, approvals: list[Approval]
    ) -> None:
        self.conn.execute(
            "DELETE FROM approvals WHERE subject_type = ? AND subject_id = ?",
            (subject_type, subject_id),
        )
        self.conn.executemany(
            """
            INSERT INTO approvals
            (subject_type, subject_id, approver_id, role, decision, decided_at, comments)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    subject_type,
                    subject_id,
                    a.approver_id,
                    a.role.value,
                    a.decision.value,
                    _iso(a.decided_at),
                    a.comments,
                )
                for a in approvals
            ],
        )

    def approvals_for(self, subject_type: str, subject_id: str) -> list[Approval]:
        rows = self.conn.execute(
            """
            SELECT approver_id, role, decision, decided_at, comments FROM approvals
            WHERE subject_type = ? AND subject_id = ? ORDER BY rowid
            """,
            (subject_type, subject_id),
        ).fetchall()
        return [
            Approval(
                approver_id=r["approver_id"],
                role=ActorRole(r["role"]),
                decision=Decision(r["decision"]),
                decided_at=_datetime(r["decided_at"]),
                comments=r["comments"],
            )
            for r in rows
        ]

    def update_approval(self, subject_type: str, subject_id: str, approval: Approval) -> None:
        self.conn.execute(
            """
            UPDATE approvals SET decision = ?, decided_at = ?, comments = ?
            WHERE subject_type = ? AND subject_id = ? AND approver_id = ?
            """,
            (
                approval.decision.value,
                _iso(approval.decided_at),
                approval.comments,
                subject_type,
                subject_id,
                approval.approver_id,
            ),
        )

    # ------------------------------------------------------------------
    # Amendments
    # ------------------------------------------------------------------

    def next_amendment_number(self, license_id: str) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(MAX(number), 0) FROM amendments WHERE license_id = ?",
            (license_id,),
        ).fetchone()
        return int(row[0]) + 1

    def insert_amendment(self, amendment: Amendment) -> None:
        self.conn.execute(
            """
            INSERT INTO amendments
            (id, license_id, number, amendment_type, status, proposed_by,
             proposed_by_role, justification, before_values, after_values,
             approval_deadline, created_at, resolved_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                amendment.id,
                amendment.license_id,
                amendment.number,
                amendment.amendment_type.value,
                amendment.status.value,
                amendment.proposed_by,
                amendment.proposed_by_role.value,
                amendment.justification,
                _dumps(amendment.before_values),
                _dumps(amendment.after_values),
                amendment.approval_deadline.isoformat(),
                amendment.created_at.isoformat(),
                _iso(amendment.resolved_at),
            ),
        )
        self.replace_approvals("amendment", amendment.id, amendment.approvals)

    def update_amendment_status(self, amendment: Amendment) -> None:
        self.conn.execute(
            "UPDATE amendments SET status = ?, resolved_at = ? WHERE id = ?",
            (amendment.status.value, _iso(amendment.resolved_at), amendment.id),
        )

    def get_amendment(self, amendment_id: str) -> Optional[Amendment]:
        row = self.conn.execute(
            "SELECT * FROM amendments WHERE id = ?", (amendment_id,)
        ).fetchone()
        return self._amendment_from_row(row) if row else None

    def amendments_for(
        self, license_id: str, status: Optional[AmendmentStatus] = None
    ) -> list[Amendment]:
        rows = self.conn.execute(
            """
            SELECT * FROM amendments
            WHERE license_id = ? AND (? IS NULL OR status = ?)
            ORDER BY number
            """,
            (license_id, status.value if status else None, status.value if status else None),
        ).fetchall()
        return [self._amendment_from_row(r) for r in rows]

    def overdue_amendments(self, now: datetime) -> list[tuple[str, str]]:
        rows = self.conn.execute(
            """
            SELECT id, license_id FROM amendments
            WHERE status = 'PROPOSED' AND approval_deadline < ?
            ORDER BY approval_deadline
            """,
            (now.isoformat(),),
        ).fetchall()
        return [(r["id"], r["license_id"]) for r in rows]

    # ------------------------------------------------------------------
    # Extensions
    # ------------------------------------------------------------------

    def insert_extension(self, extension: Extension) -> None:
        self.conn.execute(
            """
            INSERT INTO extensions
            (id, license_id, requested_by, extension_days, justification,
             original_end_date, new_end_date, additional_fee, approval_required,
             status, approval_deadline, created_at, resolved_at, rejection_reason)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                extension.id,
                extension.license_id,
                extension.requested_by,
                extension.extension_days,
                extension.justification,
                extension.original_end_date.isoformat(),
                extension.new_end_date.isoformat(),
                extension.additional_fee,
                int(extension.approval_required),
                extension.status.value,
                extension.approval_deadline.isoformat(),
                extension.created_at.isoformat(),
                _iso(extension.resolved_at),
                extension.rejection_reason,
            ),
        )
        self.replace_approvals("extension", extension.id, extension.approvals)

    def update_extension_status(self, extension: Extension) -> None:
        self.conn.execute(
            """
            UPDATE extensions SET status = ?, resolved_at = ?, rejection_reason = ?
            WHERE id = ?
            """,
            (
                extension.status.value,
                _iso(extension.resolved_at),
                extension.rejection_reason,
                extension.id,
            ),
        )

    def get_extension(self, extension_id: str) -> Optional[Extension]:
        row = self.conn.execute(
            "SELECT * FROM extensions WHERE id = ?", (extension_id,)
        ).fetchone()
        return self._extension_from_row(row) if row else None

    def extensions_for(self, license_id: str) -> list[Extension]:
        rows = self.conn.execute(
            "SELECT * FROM extensions WHERE license_id = ? ORDER BY created_at, id",
            (license_id,),
        ).fetchall()
        return [self._extension_from_row(r) for r in rows]

    def overdue_extensions(self, now: datetime) -> list[tuple[str, str]]:
        rows = self.conn.execute(
            """
            SELECT id, license_id FROM extensions
            WHERE status = 'PENDING' AND approval_deadline < ?
            ORDER BY approval_deadline
            """,
            (now.isoformat(),),
        ).fetchall()
        return [(r["id"], r["license_id"]) for r in rows]

    # ------------------------------------------------------------------
    # Renewal offers
    # ------------------------------------------------------------------

    def insert_offer(self, offer: RenewalOffer) -> None:
        self.conn.execute(
            """
            INSERT INTO renewal_offers
            (id, license_id, strategy, breakdown, proposed_start_date,
             proposed_end_date, generated_by, generated_at, expires_at, status,
             accepted_license_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                offer.id,
                offer.license_id,
                offer.strategy.value,
                _dumps(breakdown_to_dict(offer.breakdown)),
                offer.proposed_start_date.isoformat(),
                offer.proposed_end_date.isoformat(),
                offer.generated_by,
                offer.generated_at.isoformat(),
                offer.expires_at.isoformat(),
                offer.status.value,
                offer.accepted_license_id,
            ),
        )

    def update_offer_status(self, offer: RenewalOffer) -> None:
        self.conn.execute(
            "UPDATE renewal_offers SET status = ?, accepted_license_id = ? WHERE id = ?",
            (offer.status.value, offer.accepted_license_id, offer.id),
        )

    def get_offer(self, offer_id: str) -> Optional[RenewalOffer]:
        row = self.conn.execute(
            "SELECT * FROM renewal_offers WHERE id = ?", (offer_id,)
        ).fetchone()
        return self._offer_from_row(row) if row else None

    def offers_for(
        self, license_id: str, status: Optional[OfferStatus] = None
    ) -> list[RenewalOffer]:
        rows = self.conn.execute(
            """
            SELECT * FROM renewal_offers
            WHERE license_id = ? AND (? IS NULL OR status = ?)
            ORDER BY generated_at, id
            """,
            (license_id, status.value if status else None, status.value if status else None),
        ).fetchall()
        return [self._offer_from_row(r) for r in rows]

    def overdue_offers(self, now: datetime) -> list[tuple[str, str]]:
        rows = self.conn.execute(
            """
            SELECT id, license_id FROM renewal_offers
            WHERE status = 'PENDING' AND expires_at <= ?
            ORDER BY expires_at
            """,
            (now.isoformat(),),
        ).fetchall()
        return [(r["id"], r["license_id"]) for r in rows]

    # ------------------------------------------------------------------
    # Ownership ledger
    # ------------------------------------------------------------------

    def insert_ownership(self, record: OwnershipRecord) -> None:
        self.conn.execute(
            """
            INSERT INTO ownership_records
            (id, ip_asset_id, creator_id, share_bps, ownership_type, start_date,
             end_date, disputed, dispute_resolved_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.ip_asset_id,
                record.creator_id,
                record.share_bps,
                record.ownership_type.value,
                record.start_date.isoformat(),
                _iso(record.end_date),
                int(record.disputed),
                _iso(record.dispute_resolved_at),
            ),
        )

    def end_ownership(self, record_id: str, end_date: date) -> None:
        self.conn.execute(
            "UPDATE ownership_records SET end_date = ? WHERE id = ?",
            (end_date.isoformat(), record_id),
        )

    def set_ownership_dispute(
        self, record_id: str, disputed: bool, resolved_at: Optional[datetime]
    ) -> None:
        self.conn.execute(
            "UPDATE ownership_records SET disputed = ?, dispute_resolved_at = ? WHERE id = ?",
            (int(disputed), _iso(resolved_at), record_id),
        )

    def ownership_records(self, asset_id: str) -> list[OwnershipRecord]:
        rows = self.conn.execute(
            "SELECT * FROM ownership_records WHERE ip_asset_id = ? ORDER BY start_date, id",
            (asset_id,),
        ).fetchall()
        return [
            OwnershipRecord(
                id=r["id"],
                ip_asset_id=r["ip_asset_id"],
                creator_id=r["creator_id"],
                share_bps=r["share_bps"],
                ownership_type=OwnershipType(r["ownership_type"]),
                start_date=date.fromisoformat(r["start_date"]),
                end_date=_date(r["end_date"]),
                disputed=bool(r["disputed"]),
                dispute_resolved_at=_datetime(r["dispute_resolved_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _license_params(lic: License) -> tuple:
        return (
            lic.id,
            lic.ip_asset_id,
            lic.brand_id,
            lic.license_type.value,
            lic.status.value,
            _iso(lic.start_date),
            _iso(lic.end_date),
            lic.fee_amount,
            lic.rev_share_bps,
            _dumps(lic.scope.to_dict()),
            lic.billing_frequency.value,
            lic.payment_terms,
            int(lic.auto_renew),
            int(lic.signature_required),
            lic.parent_license_id,
            lic.amendment_count,
            lic.extension_count,
            lic.created_by,
            _iso(lic.created_at),
            _iso(lic.updated_at),
            _iso(lic.signed_at),
            _iso(lic.terminated_at),
            lic.termination_reason,
            lic.version,
        )

    @staticmethod
    def _license_from_row(row: sqlite3.Row) -> License:
        return License(
            id=row["id"],
            ip_asset_id=row["ip_asset_id"],
            brand_id=row["brand_id"],
            license_type=LicenseType(row["license_type"]),
            status=LicenseStatus(row["status"]),
            start_date=date.fromisoformat(row["start_date"]),
            end_date=date.fromisoformat(row["end_date"]),
            fee_amount=row["fee_amount"],
            rev_share_bps=row["rev_share_bps"],
            scope=LicenseScope.from_dict(json.loads(row["scope"])),
            billing_frequency=BillingFrequency(row["billing_frequency"]),
            payment_terms=row["payment_terms"],
            auto_renew=bool(row["auto_renew"]),
            signature_required=bool(row["signature_required"]),
            parent_license_id=row["parent_license_id"],
            amendment_count=row["amendment_count"],
            extension_count=row["extension_count"],
            created_by=row["created_by"],
            created_at=_datetime(row["created_at"]),
            updated_at=_datetime(row["updated_at"]),
            signed_at=_datetime(row["signed_at"]),
            terminated_at=_datetime(row["terminated_at"]),
            termination_reason=row["termination_reason"],
            version=row["version"],
        )

    def _amendment_from_row(self, row: sqlite3.Row) -> Amendment:
        return Amendment(
            id=row["id"],
            license_id=row["license_id"],
            number=row["number"],
            amendment_type=AmendmentType(row["amendment_type"]),
            status=AmendmentStatus(row["status"]),
            proposed_by=row["proposed_by"],
            proposed_by_role=ActorRole(row["proposed_by_role"]),
            justification=row["justification"],
            before_values=json.loads(row["before_values"]),
            after_values=json.loads(row["after_values"]),
            approval_deadline=datetime.fromisoformat(row["approval_deadline"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            approvals=self.approvals_for("amendment", row["id"]),
            resolved_at=_datetime(row["resolved_at"]),
        )

    def _extension_from_row(self, row: sqlite3.Row) -> Extension:
        return Extension(
            id=row["id"],
            license_id=row["license_id"],
            requested_by=row["requested_by"],
            extension_days=row["extension_days"],
            justification=row["justification"],
            original_end_date=date.fromisoformat(row["original_end_date"]),
            new_end_date=date.fromisoformat(row["new_end_date"]),
            additional_fee=row["additional_fee"],
            approval_required=bool(row["approval_required"]),
            status=ExtensionStatus(row["status"]),
            approval_deadline=datetime.fromisoformat(row["approval_deadline"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            approvals=self.approvals_for("extension", row["id"]),
            resolved_at=_datetime(row["resolved_at"]),
            rejection_reason=row["rejection_reason"],
        )

    @staticmethod
    def _offer_from_row(row: sqlite3.Row) -> RenewalOffer:
        return RenewalOffer(
            id=row["id"],
            license_id=row["license_id"],
            strategy=PricingStrategy(row["strategy"]),
            breakdown=breakdown_from_dict(json.loads(row["breakdown"])),
            proposed_start_date=date.fromisoformat(row["proposed_start_date"]),
            proposed_end_date=date.fromisoformat(row["proposed_end_date"]),
            generated_by=row["generated_by"],
            generated_at=datetime.fromisoformat(row["generated_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]),
            status=OfferStatus(row["status"]),
            accepted_license_id=row["accepted_license_id"],
        )


class LicenseStore:
    """SQLite-backed store for the licensing engine.

    Attributes:
        db_path: Path to the SQLite database file.
        lock_timeout: Seconds a connection waits on a locked database.
    """

    def __init__(self, db_path: Optional[Path] = None, lock_timeout: float = 5.0) -> None:
        """Initialize the store and create the schema if needed.

        Args:
            db_path: Path to SQLite database. If None, uses
                ~/.local/share/licensing_engine/licensing.db.
            lock_timeout: Busy timeout for each connection, in seconds.
        """
        if db_path is None:
            data_dir = Path.home() / ".local" / "share" / "licensing_engine"
            data_dir.mkdir(parents=True, exist_ok=True)
            db_path = data_dir / "licensing.db"

        self.db_path = db_path
        self.lock_timeout = lock_timeout
        self._init_database()

    def _open(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly below
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.lock_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_database(self) -> None:
        """Initialize the database schema if it doesn't exist."""
        conn = self._open()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[StoreSession]:
        """Open a write transaction holding the database write lock.

        Commits on normal exit and rolls back on any exception, so a
        multi-field change is either fully visible or not at all.
        """
        conn = self._open()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield StoreSession(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextlib.contextmanager
    def reader(self) -> Iterator[StoreSession]:
        """Open a lock-free connection for read-only queries."""
        conn = self._open()
        try:
            yield StoreSession(conn)
        finally:
            conn.close()

    def info(self) -> dict:
        """Get store statistics.

        Returns:
            Dictionary with the database path, license count and file size.
        """
        with self.reader() as session:
            count = session.conn.execute("SELECT COUNT(*) FROM licenses").fetchone()[0]

        size_bytes = self.db_path.stat().st_size if self.db_path.exists() else 0

        return {
            "path": str(self.db_path),
            "licenses": count,
            "size_bytes": size_bytes,
        }
