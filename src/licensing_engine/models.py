"""Core data models for licensing_engine.

This module defines the entities the engine governs (licenses, amendments,
extensions, renewal offers), the ephemeral values it computes (conflict
results, pricing breakdowns, eligibility) and the facts it consumes from
the ownership ledger.

Money is always an integer amount of minor currency units. Shares and
revenue splits are integer parts-per-10000 (basis points).
"""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

FULL_SHARE_BPS = 10_000


class LicenseType(str, Enum):
    """How much of the asset's scope a license occupies."""

    EXCLUSIVE = "EXCLUSIVE"
    NON_EXCLUSIVE = "NON_EXCLUSIVE"
    EXCLUSIVE_TERRITORY = "EXCLUSIVE_TERRITORY"


class LicenseStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    PENDING_SIGNATURE = "PENDING_SIGNATURE"
    ACTIVE = "ACTIVE"
    EXPIRING_SOON = "EXPIRING_SOON"
    EXPIRED = "EXPIRED"
    RENEWED = "RENEWED"
    TERMINATED = "TERMINATED"
    DISPUTED = "DISPUTED"
    CANCELED = "CANCELED"
    SUSPENDED = "SUSPENDED"


# Statuses in which a license holds its scope.
OCCUPYING_STATUSES = frozenset({LicenseStatus.ACTIVE, LicenseStatus.EXPIRING_SOON})

# Statuses the conflict detector considers as competitors.
CANDIDATE_STATUSES = frozenset(
    {
        LicenseStatus.ACTIVE,
        LicenseStatus.EXPIRING_SOON,
        LicenseStatus.PENDING_APPROVAL,
        LicenseStatus.PENDING_SIGNATURE,
    }
)


class BillingFrequency(str, Enum):
    ONE_TIME = "ONE_TIME"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUALLY = "ANNUALLY"


class ActorRole(str, Enum):
    BRAND = "BRAND"
    CREATOR = "CREATOR"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class Decision(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class AmendmentType(str, Enum):
    FINANCIAL = "FINANCIAL"
    SCOPE = "SCOPE"
    DATES = "DATES"
    OTHER = "OTHER"


class AmendmentStatus(str, Enum):
    PROPOSED = "PROPOSED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SUPERSEDED = "SUPERSEDED"


class ExtensionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class ConflictReason(str, Enum):
    EXCLUSIVE_OVERLAP = "EXCLUSIVE_OVERLAP"
    TERRITORY_OVERLAP = "TERRITORY_OVERLAP"
    COMPETITOR_BLOCKED = "COMPETITOR_BLOCKED"
    DATE_OVERLAP = "DATE_OVERLAP"


HARD_BLOCKING_REASONS = frozenset(
    {
        ConflictReason.EXCLUSIVE_OVERLAP,
        ConflictReason.TERRITORY_OVERLAP,
        ConflictReason.COMPETITOR_BLOCKED,
    }
)


class PricingStrategy(str, Enum):
    FLAT_RENEWAL = "FLAT_RENEWAL"
    USAGE_BASED = "USAGE_BASED"
    PERFORMANCE_BASED = "PERFORMANCE_BASED"
    MARKET_RATE = "MARKET_RATE"
    NEGOTIATED = "NEGOTIATED"
    AUTOMATIC = "AUTOMATIC"


class OfferStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"
    SUPERSEDED = "SUPERSEDED"


class OwnershipType(str, Enum):
    PRIMARY = "PRIMARY"
    CONTRIBUTOR = "CONTRIBUTOR"
    DERIVATIVE = "DERIVATIVE"
    TRANSFER = "TRANSFER"


MEDIA_CHANNELS = ("digital", "print", "broadcast", "ooh")
PLACEMENTS = ("social", "website", "email", "paid_ads", "packaging")
GLOBAL_TERRITORY = "GLOBAL"


@dataclass(frozen=True)
class Actor:
    """Authenticated identity performing an operation.

    For brands the id is the brand id, for creators the creator id.
    """

    id: str
    role: ActorRole

    @classmethod
    def system(cls) -> "Actor":
        return cls(id="system", role=ActorRole.SYSTEM)


@dataclass
class LicenseScope:
    """What a license grants: channels, placements, geography and exclusivity.

    Attributes:
        media: Enabled media channels (subset of MEDIA_CHANNELS).
        placements: Enabled placement contexts (subset of PLACEMENTS).
        territories: ISO country codes, or "GLOBAL".
        exclusivity_category: Competitive category, e.g. "Beauty".
        blocked_competitors: Brand ids that may not license the asset
            in the same category while this license holds it.
        allow_edits: Whether edits and cutdowns are permitted.
        max_cutdown_seconds: Maximum cutdown length for video.
        aspect_ratios: Permitted aspect ratios, e.g. "16:9".
        attribution_required: Whether the creator must be credited.
        attribution_format: Credit line template.
    """

    media: list[str] = field(default_factory=list)
    placements: list[str] = field(default_factory=list)
    territories: list[str] = field(default_factory=lambda: [GLOBAL_TERRITORY])
    exclusivity_category: Optional[str] = None
    blocked_competitors: list[str] = field(default_factory=list)
    allow_edits: bool = False
    max_cutdown_seconds: Optional[int] = None
    aspect_ratios: list[str] = field(default_factory=list)
    attribution_required: bool = False
    attribution_format: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LicenseScope":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class License:
    """The central entity: a grant of rights over one IP asset to one brand.

    The interval [start_date, end_date) is half-open.
    """

    id: str
    ip_asset_id: str
    brand_id: str
    license_type: LicenseType
    status: LicenseStatus
    start_date: date
    end_date: date
    fee_amount: int
    rev_share_bps: int
    scope: LicenseScope
    billing_frequency: BillingFrequency = BillingFrequency.ONE_TIME
    payment_terms: Optional[str] = None
    auto_renew: bool = False
    signature_required: bool = False
    parent_license_id: Optional[str] = None
    amendment_count: int = 0
    extension_count: int = 0
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None
    termination_reason: Optional[str] = None
    version: int = 1

    @property
    def duration_days(self) -> int:
        return (self.end_date - self.start_date).days

    @property
    def is_exclusive(self) -> bool:
        return self.license_type != LicenseType.NON_EXCLUSIVE

    def overlaps(self, start: date, end: date) -> bool:
        """Half-open interval intersection with [start, end)."""
        return self.start_date < end and start < self.end_date

    def days_until_end(self, as_of: date) -> int:
        return (self.end_date - as_of).days


@dataclass(frozen=True)
class Owner:
    """A creator entitled to approve and to be paid, with their share."""

    creator_id: str
    share_bps: int


@dataclass
class OwnershipRecord:
    """A fractional, time-bounded ownership fact from the ledger."""

    id: str
    ip_asset_id: str
    creator_id: str
    share_bps: int
    ownership_type: OwnershipType
    start_date: date
    end_date: Optional[date] = None
    disputed: bool = False
    dispute_resolved_at: Optional[datetime] = None

    def is_current(self, at: date) -> bool:
        return self.start_date <= at and (self.end_date is None or at < self.end_date)


@dataclass
class Approval:
    """One required approver's slot on an approval-gated change."""

    approver_id: str
    role: ActorRole
    decision: Decision = Decision.PENDING
    decided_at: Optional[datetime] = None
    comments: Optional[str] = None


def reduce_approvals(approvals: list[Approval]) -> Decision:
    """Collapse approval slots into one outcome.

    Any REJECTED wins, all APPROVED approves, anything else is PENDING.
    """
    if any(a.decision == Decision.REJECTED for a in approvals):
        return Decision.REJECTED
    if approvals and all(a.decision == Decision.APPROVED for a in approvals):
        return Decision.APPROVED
    return Decision.PENDING


@dataclass
class StatusHistoryEntry:
    """One immutable row of the status audit trail."""

    license_id: str
    sequence: int
    from_status: Optional[LicenseStatus]
    to_status: LicenseStatus
    event: str
    actor_id: str
    actor_role: ActorRole
    at: datetime
    reason: Optional[str] = None


@dataclass
class Amendment:
    """A proposed change to an ACTIVE license's terms."""

    id: str
    license_id: str
    number: int
    amendment_type: AmendmentType
    status: AmendmentStatus
    proposed_by: str
    proposed_by_role: ActorRole
    justification: str
    before_values: dict[str, Any]
    after_values: dict[str, Any]
    approval_deadline: datetime
    created_at: datetime
    approvals: list[Approval] = field(default_factory=list)
    resolved_at: Optional[datetime] = None

    @property
    def fields_changed(self) -> list[str]:
        return sorted(self.after_values)


@dataclass
class Extension:
    """A request to push a license's end date forward."""

    id: str
    license_id: str
    requested_by: str
    extension_days: int
    justification: str
    original_end_date: date
    new_end_date: date
    additional_fee: int
    approval_required: bool
    status: ExtensionStatus
    approval_deadline: datetime
    created_at: datetime
    approvals: list[Approval] = field(default_factory=list)
    resolved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


@dataclass
class Conflict:
    """One reason a proposed grant collides with an existing license."""

    license_id: str
    reason: ConflictReason
    details: str
    brand_id: str
    license_type: LicenseType
    status: LicenseStatus
    start_date: date
    end_date: date

    @property
    def is_hard_blocking(self) -> bool:
        return self.reason in HARD_BLOCKING_REASONS and self.status in OCCUPYING_STATUSES


@dataclass
class ConflictCheckResult:
    """Ephemeral output of the conflict detector."""

    conflicts: list[Conflict] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def blocking(self) -> list[Conflict]:
        """Conflicts that must stop an activation.

        Hard reasons against licenses that already hold their scope.
        """
        return [c for c in self.conflicts if c.is_hard_blocking]

    def warnings(self) -> list[Conflict]:
        return [c for c in self.conflicts if not c.is_hard_blocking]

    def involving(self, license_id: str) -> list[Conflict]:
        return [c for c in self.conflicts if c.license_id == license_id]


@dataclass
class ConflictPreview:
    """Summary of what an asset already has committed."""

    ip_asset_id: str
    occupying_licenses: int
    exclusive_licenses: int
    blocked_media: list[str]
    territories_in_use: list[str]
    suggested_start_date: Optional[date]


@dataclass(frozen=True)
class RenewalHistory:
    """Relationship facts the pricing engine needs about a license."""

    prior_renewal_count: int = 0
    relationship_start: Optional[date] = None


@dataclass(frozen=True)
class PerformanceMetrics:
    """Engagement of the licensed content against its segment benchmark."""

    engagement_rate: Decimal
    benchmark_rate: Decimal


@dataclass
class PricingAdjustment:
    """One named step of a renewal price computation."""

    kind: str
    label: str
    percent: Decimal
    amount: int
    reason: str


@dataclass
class PricingBreakdown:
    """Full, auditable output of the renewal pricing engine."""

    original_fee: int
    base_renewal_fee: int
    adjustments: list[PricingAdjustment]
    subtotal: int
    final_fee: int
    final_rev_share_bps: int
    strategy: PricingStrategy
    confidence_score: int
    reasoning: list[str]
    clamp_applied: bool = False
    cap_applied: bool = False
    minimum_enforced: bool = False
    historical_renewal_count: int = 0
    relationship_months: int = 0
    expected_creator_revenue: int = 0
    percent_change: Decimal = Decimal("0")
    absolute_change: int = 0
    projected_annual_value: int = 0


@dataclass
class RenewalOffer:
    """A time-boxed, unsigned proposal of terms for a renewal."""

    id: str
    license_id: str
    strategy: PricingStrategy
    breakdown: PricingBreakdown
    proposed_start_date: date
    proposed_end_date: date
    generated_by: str
    generated_at: datetime
    expires_at: datetime
    status: OfferStatus = OfferStatus.PENDING
    accepted_license_id: Optional[str] = None


@dataclass
class RenewalEligibility:
    """Outcome of a renewal eligibility check."""

    license_id: str
    eligible: bool
    reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    days_until_expiration: int = 0
    proposed_start_date: Optional[date] = None
    proposed_end_date: Optional[date] = None
    conflicts: list[Conflict] = field(default_factory=list)


@dataclass
class LicenseStats:
    """Portfolio statistics, optionally narrowed to one brand or asset."""

    total: int
    by_status: dict[str, int]
    total_active: int
    exclusive_licenses: int
    non_exclusive_licenses: int
    territory_exclusive_licenses: int
    active_fee_total: int
    expiring_in_30_days: int
    expiring_in_60_days: int
    expiring_in_90_days: int
    average_active_duration_days: int
    renewal_rate: float


@dataclass
class ReconciliationReport:
    """Result of one lifecycle sweep."""

    marked_expiring: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    renewed: list[str] = field(default_factory=list)
    auto_renewed: list[str] = field(default_factory=list)
    canceled_drafts: list[str] = field(default_factory=list)
    expired_offers: list[str] = field(default_factory=list)
    rejected_amendments: list[str] = field(default_factory=list)
    expired_extensions: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return (
            len(self.marked_expiring)
            + len(self.expired)
            + len(self.renewed)
            + len(self.auto_renewed)
            + len(self.canceled_drafts)
            + len(self.expired_offers)
            + len(self.rejected_amendments)
            + len(self.expired_extensions)
        )
