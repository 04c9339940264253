"""LicensingEngine: the caller-facing API of the licensing engine.

Every mutating method runs one unit of work inside a single SQLite write
transaction. Contention (a locked database or a stale license version) is
retried with exponential backoff; once retries run out the caller gets
ConcurrentModification. Domain events collected during the unit of work are
published only after it commits.
"""

import logging
import uuid
from collections import Counter
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from licensing_engine.amendments import AmendmentWorkflow, normalize_changes
from licensing_engine.config import EngineConfig
from licensing_engine.conflicts import ConflictDetector
from licensing_engine.context import OperationContext
from licensing_engine.errors import (
    ConcurrentModification,
    ConflictDetected,
    Forbidden,
    InvalidTransition,
    NotFound,
    OfferExpired,
    ValidationError,
)
from licensing_engine.events.base import DomainEvent, EventSink
from licensing_engine.events.outbox import OutboxSink
from licensing_engine.extensions import ExtensionWorkflow
from licensing_engine.lifecycle import LicenseEvent, LicenseStateMachine, validate_reason
from licensing_engine.models import (
    OCCUPYING_STATUSES,
    Actor,
    ActorRole,
    Amendment,
    AmendmentType,
    Approval,
    BillingFrequency,
    ConflictCheckResult,
    ConflictPreview,
    Decision,
    Extension,
    License,
    LicenseScope,
    LicenseStats,
    LicenseStatus,
    LicenseType,
    PerformanceMetrics,
    PricingBreakdown,
    PricingStrategy,
    ReconciliationReport,
    RenewalEligibility,
    RenewalOffer,
    StatusHistoryEntry,
)
from licensing_engine.ownership.base import OwnershipLedger
from licensing_engine.ownership.sqlite import StoreOwnershipLedger
from licensing_engine.reconcile import Reconciler
from licensing_engine.renewals import RenewalOrchestrator
from licensing_engine.reporters.base import LicenseDossier
from licensing_engine.store import LicenseStore, StoreSession, is_contention_error
from licensing_engine.validation import validate_terms

logger = logging.getLogger(__name__)

T = TypeVar("T")

EDITABLE_STATUSES = frozenset({LicenseStatus.DRAFT, LicenseStatus.PENDING_APPROVAL})
EDITABLE_FIELDS = frozenset(
    {
        "license_type",
        "start_date",
        "end_date",
        "fee_amount",
        "rev_share_bps",
        "scope",
        "billing_frequency",
        "payment_terms",
        "auto_renew",
        "signature_required",
    }
)

_AMENDMENT_TYPES = (
    ("scope", AmendmentType.SCOPE),
    ("end_date", AmendmentType.DATES),
    ("fee_amount", AmendmentType.FINANCIAL),
    ("rev_share_bps", AmendmentType.FINANCIAL),
    ("billing_frequency", AmendmentType.FINANCIAL),
    ("payment_terms", AmendmentType.FINANCIAL),
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _infer_amendment_type(changes: dict[str, Any]) -> AmendmentType:
    for name, amendment_type in _AMENDMENT_TYPES:
        if name in changes:
            return amendment_type
    return AmendmentType.OTHER


class LicensingEngine:
    """Entry point for every licensing operation.

    Args:
        config: Engine configuration. Defaults to EngineConfig().
        store: Persistence. Defaults to a LicenseStore at config.db_path.
        ledger: Ownership ledger. Defaults to the store-backed ledger.
        sink: Receiver of committed domain events. Defaults to an OutboxSink.
        clock: Returns the current timezone-aware datetime.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[LicenseStore] = None,
        ledger: Optional[OwnershipLedger] = None,
        sink: Optional[EventSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store or LicenseStore(
            self.config.db_path, lock_timeout=self.config.lock_timeout_seconds
        )
        self.ledger = ledger or StoreOwnershipLedger(self.store)
        self.sink = sink if sink is not None else OutboxSink()
        self.clock = clock or _utcnow

        self.detector = ConflictDetector()
        self.state_machine = LicenseStateMachine(
            self.detector, self.ledger, self.config.lifecycle
        )
        self.amendments = AmendmentWorkflow(
            self.detector, self.ledger, self.state_machine, self.config.amendment
        )
        self.extensions = ExtensionWorkflow(
            self.detector,
            self.ledger,
            self.state_machine,
            self.config.extension,
        )
        self.renewals = RenewalOrchestrator(
            self.detector,
            self.ledger,
            self.state_machine,
            self.config.pricing,
            self.config.renewal,
        )
        self.reconciler = Reconciler(
            self.store,
            self._run,
            self.state_machine,
            self.amendments,
            self.extensions,
            self.renewals,
            self.config.lifecycle,
        )

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _run(
        self,
        operation: Callable[[OperationContext], T],
        now: Optional[datetime] = None,
    ) -> T:
        """Run `operation` in a write transaction, retrying on contention."""
        attempts = max(1, self.config.max_retries)
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=0.05, max=1),
            retry=retry_if_exception(is_contention_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        try:
            for attempt in retrying:
                with attempt:
                    with self.store.transaction() as session:
                        ctx = OperationContext(session=session, now=now or self.clock())
                        result = operation(ctx)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise ConcurrentModification(
                f"Gave up after {attempts} attempt(s) due to contention: {last}"
            ) from last

        self._publish(ctx.events)
        return result

    def _publish(self, events: list[DomainEvent]) -> None:
        for event in events:
            try:
                self.sink.publish(event)
            except Exception as e:
                logger.warning(
                    "Failed to publish %s for %s: %s", event.name.value, event.license_id, e
                )

    @staticmethod
    def _load(session: StoreSession, license_id: str) -> License:
        lic = session.get_license(license_id)
        if lic is None:
            raise NotFound(f"License {license_id} not found")
        return lic

    # ------------------------------------------------------------------
    # Licenses
    # ------------------------------------------------------------------

    def create(
        self,
        actor: Actor,
        ip_asset_id: str,
        brand_id: str,
        license_type: LicenseType,
        start_date: date,
        end_date: date,
        fee_amount: int,
        rev_share_bps: int = 0,
        scope: Optional[LicenseScope] = None,
        billing_frequency: BillingFrequency = BillingFrequency.ONE_TIME,
        payment_terms: Optional[str] = None,
        auto_renew: bool = False,
        signature_required: bool = False,
        submit: bool = True,
    ) -> License:
        """Create a license and, unless submit=False, submit it for approval.

        Raises:
            ValidationError: Malformed terms.
            Forbidden: Actor is neither that brand nor an admin.
            ConflictDetected: The grant collides with an occupying license.
        """
        scope = scope or LicenseScope()
        validate_terms(start_date, end_date, fee_amount, rev_share_bps, scope)
        if not ip_asset_id or not brand_id:
            raise ValidationError("ip_asset_id and brand_id are required")
        if not (
            actor.role == ActorRole.ADMIN
            or (actor.role == ActorRole.BRAND and actor.id == brand_id)
        ):
            raise Forbidden(f"{actor.id} may not create licenses for brand {brand_id}")

        def operation(ctx: OperationContext) -> License:
            blocking = self.detector.check(
                ctx.session,
                ip_asset_id,
                start_date,
                end_date,
                license_type,
                scope,
                brand_id=brand_id,
            ).blocking()
            if blocking:
                raise ConflictDetected(blocking)

            lic = License(
                id=str(uuid.uuid4()),
                ip_asset_id=ip_asset_id,
                brand_id=brand_id,
                license_type=license_type,
                status=LicenseStatus.DRAFT,
                start_date=start_date,
                end_date=end_date,
                fee_amount=fee_amount,
                rev_share_bps=rev_share_bps,
                scope=scope,
                billing_frequency=billing_frequency,
                payment_terms=payment_terms,
                auto_renew=auto_renew,
                signature_required=signature_required,
                created_by=actor.id,
                created_at=ctx.now,
                updated_at=ctx.now,
            )
            ctx.session.insert_license(lic)
            self.state_machine.record_creation(ctx, lic, actor)
            if submit:
                self.state_machine.apply(ctx, lic, LicenseEvent.SUBMIT, actor)
            return lic

        lic = self._run(operation)
        logger.info("Created license %s (%s) on asset %s", lic.id, lic.status.value, ip_asset_id)
        return lic

    def submit(self, license_id: str, actor: Actor) -> License:
        return self.transition(license_id, LicenseEvent.SUBMIT, actor)

    def approve(
        self,
        license_id: str,
        actor: Actor,
        decision: Decision = Decision.APPROVED,
        comments: Optional[str] = None,
    ) -> License:
        """Record an owner's decision on a license awaiting approval."""
        if decision == Decision.PENDING:
            raise ValidationError("Decision must be APPROVED or REJECTED")
        return self._run(
            lambda ctx: self.state_machine.record_owner_decision(
                ctx, self._load(ctx.session, license_id), actor, decision, comments
            )
        )

    def update(self, license_id: str, actor: Actor, **changes: Any) -> License:
        """Edit the terms of a DRAFT or PENDING_APPROVAL license.

        Editing a license awaiting approval resets every owner's decision.
        Active licenses change through amendments instead.
        """
        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(unknown)}")
        if not changes:
            raise ValidationError("No changes given")

        def operation(ctx: OperationContext) -> License:
            lic = self._load(ctx.session, license_id)
            if lic.status not in EDITABLE_STATUSES:
                raise InvalidTransition(
                    f"License {lic.id} is {lic.status.value}; propose an amendment instead"
                )
            if not (
                actor.role == ActorRole.ADMIN
                or (actor.role == ActorRole.BRAND and actor.id == lic.brand_id)
            ):
                raise Forbidden(f"{actor.id} may not update license {lic.id}")

            for name, value in changes.items():
                if name == "scope" and isinstance(value, dict):
                    value = LicenseScope.from_dict(value)
                elif name == "license_type":
                    value = LicenseType(value)
                elif name == "billing_frequency":
                    value = BillingFrequency(value)
                elif name in ("start_date", "end_date") and not isinstance(value, date):
                    try:
                        value = date.fromisoformat(str(value))
                    except ValueError:
                        raise ValidationError(f"{name} must be an ISO date") from None
                setattr(lic, name, value)
            validate_terms(
                lic.start_date, lic.end_date, lic.fee_amount, lic.rev_share_bps, lic.scope
            )

            if {"license_type", "start_date", "end_date", "scope"} & set(changes):
                blocking = self.detector.check_license(ctx.session, lic).blocking()
                if blocking:
                    raise ConflictDetected(blocking)

            lic.updated_at = ctx.now
            ctx.session.update_license(lic)
            if lic.status == LicenseStatus.PENDING_APPROVAL:
                slots = ctx.session.approvals_for("license", lic.id)
                ctx.session.replace_approvals(
                    "license",
                    lic.id,
                    [Approval(approver_id=a.approver_id, role=a.role) for a in slots],
                )
            logger.info("Updated license %s: %s", lic.id, ", ".join(sorted(changes)))
            return lic

        return self._run(operation)

    def transition(
        self,
        license_id: str,
        event: LicenseEvent | str,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> License:
        """Apply one event from the transition table to a license."""
        try:
            event = LicenseEvent(event)
        except ValueError:
            raise ValidationError(f"Unknown event {event!r}") from None
        reason = validate_reason(event, reason, self.config.lifecycle)
        return self._run(
            lambda ctx: self.state_machine.apply(
                ctx, self._load(ctx.session, license_id), event, actor, reason
            )
        )

    def terminate(self, license_id: str, actor: Actor, reason: str) -> License:
        """Irreversibly terminate a license. The reason is mandatory."""
        return self.transition(license_id, LicenseEvent.TERMINATE, actor, reason)

    def get(self, license_id: str) -> License:
        with self.store.reader() as session:
            return self._load(session, license_id)

    def list_licenses(
        self,
        brand_id: Optional[str] = None,
        ip_asset_id: Optional[str] = None,
        status: Optional[LicenseStatus] = None,
    ) -> list[License]:
        with self.store.reader() as session:
            return session.list_licenses(brand_id=brand_id, asset_id=ip_asset_id, status=status)

    def get_status_history(self, license_id: str) -> list[StatusHistoryEntry]:
        with self.store.reader() as session:
            self._load(session, license_id)
            return session.history_for(license_id)

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def check_conflicts(
        self,
        ip_asset_id: str,
        start_date: date,
        end_date: date,
        license_type: LicenseType,
        scope: Optional[LicenseScope] = None,
        brand_id: Optional[str] = None,
        exclude_license_id: Optional[str] = None,
    ) -> ConflictCheckResult:
        """Check a prospective grant without reserving anything."""
        if end_date <= start_date:
            raise ValidationError("end_date must be after start_date")
        with self.store.reader() as session:
            return self.detector.check(
                session,
                ip_asset_id,
                start_date,
                end_date,
                license_type,
                scope or LicenseScope(),
                brand_id=brand_id,
                exclude_license_id=exclude_license_id,
            )

    def conflict_preview(self, ip_asset_id: str, as_of: Optional[date] = None) -> ConflictPreview:
        with self.store.reader() as session:
            return self.detector.preview(session, ip_asset_id, as_of or self.clock().date())

    # ------------------------------------------------------------------
    # Amendments
    # ------------------------------------------------------------------

    def propose_amendment(
        self,
        license_id: str,
        actor: Actor,
        changes: dict[str, Any],
        justification: str,
        amendment_type: Optional[AmendmentType] = None,
        deadline_days: Optional[int] = None,
    ) -> Amendment:
        """Propose a change to an ACTIVE license's terms."""
        normalized = normalize_changes(changes)
        if not justification or not justification.strip():
            raise ValidationError("A justification is required")
        deadline_days = self.amendments.validate_deadline(deadline_days)
        amendment_type = amendment_type or _infer_amendment_type(normalized)

        return self._run(
            lambda ctx: self.amendments.propose(
                ctx,
                self._load(ctx.session, license_id),
                normalized,
                amendment_type,
                justification.strip(),
                deadline_days,
                actor,
            )
        )

    def process_amendment_approval(
        self,
        amendment_id: str,
        actor: Actor,
        decision: Decision,
        comments: Optional[str] = None,
    ) -> Amendment:
        """Record a decision on an amendment.

        Raises:
            InvalidTransition: The amendment is resolved, or its deadline has
                passed (it is then marked REJECTED before this is raised).
        """
        if decision == Decision.PENDING:
            raise ValidationError("Decision must be APPROVED or REJECTED")

        def operation(ctx: OperationContext) -> tuple[bool, Amendment]:
            amendment = ctx.session.get_amendment(amendment_id)
            if amendment is None:
                raise NotFound(f"Amendment {amendment_id} not found")
            if self.amendments.expire_if_overdue(ctx, amendment):
                return True, amendment
            return False, self.amendments.record_approval(
                ctx, amendment, actor, decision, comments
            )

        expired, amendment = self._run(operation)
        if expired:
            raise InvalidTransition(
                f"Amendment {amendment_id} passed its approval deadline and was rejected"
            )
        return amendment

    def list_amendments(self, license_id: str) -> list[Amendment]:
        with self.store.reader() as session:
            self._load(session, license_id)
            return session.amendments_for(license_id)

    # ------------------------------------------------------------------
    # Extensions
    # ------------------------------------------------------------------

    def request_extension(
        self,
        license_id: str,
        actor: Actor,
        extension_days: int,
        justification: str,
    ) -> Extension:
        """Request more days on an active license."""
        self.extensions.validate_days(extension_days)
        if not justification or not justification.strip():
            raise ValidationError("A justification is required")
        return self._run(
            lambda ctx: self.extensions.request(
                ctx,
                self._load(ctx.session, license_id),
                extension_days,
                justification.strip(),
                actor,
            )
        )

    def process_extension_approval(
        self,
        extension_id: str,
        actor: Actor,
        decision: Decision,
        comments: Optional[str] = None,
    ) -> Extension:
        """Record a decision on an extension.

        Raises:
            InvalidTransition: The extension is resolved, or its deadline has
                passed (it is then marked EXPIRED before this is raised).
        """
        if decision == Decision.PENDING:
            raise ValidationError("Decision must be APPROVED or REJECTED")

        def operation(ctx: OperationContext) -> tuple[bool, Extension]:
            extension = ctx.session.get_extension(extension_id)
            if extension is None:
                raise NotFound(f"Extension {extension_id} not found")
            if self.extensions.expire_if_overdue(ctx, extension):
                return True, extension
            return False, self.extensions.record_approval(
                ctx, extension, actor, decision, comments
            )

        expired, extension = self._run(operation)
        if expired:
            raise InvalidTransition(
                f"Extension {extension_id} passed its approval deadline and expired"
            )
        return extension

    def list_extensions(self, license_id: str) -> list[Extension]:
        with self.store.reader() as session:
            self._load(session, license_id)
            return session.extensions_for(license_id)

    # ------------------------------------------------------------------
    # Renewals
    # ------------------------------------------------------------------

    def check_renewal_eligibility(
        self, license_id: str, as_of: Optional[date] = None
    ) -> RenewalEligibility:
        with self.store.reader() as session:
            lic = self._load(session, license_id)
            return self.renewals.check_eligibility(session, lic, as_of or self.clock().date())

    def preview_renewal_pricing(
        self,
        license_id: str,
        strategy: PricingStrategy = PricingStrategy.AUTOMATIC,
        custom_adjustment_percent: Optional[Decimal] = None,
        metrics: Optional[PerformanceMetrics] = None,
        market_benchmark_fee: Optional[int] = None,
        as_of: Optional[date] = None,
    ) -> PricingBreakdown:
        """Price a renewal without storing anything."""
        with self.store.reader() as session:
            lic = self._load(session, license_id)
            return self.renewals.preview(
                session,
                lic,
                strategy,
                as_of or self.clock().date(),
                custom_adjustment_percent=custom_adjustment_percent,
                metrics=metrics,
                market_benchmark_fee=market_benchmark_fee,
            )

    def generate_renewal_offer(
        self,
        license_id: str,
        actor: Actor,
        strategy: PricingStrategy = PricingStrategy.AUTOMATIC,
        custom_adjustment_percent: Optional[Decimal] = None,
        metrics: Optional[PerformanceMetrics] = None,
        market_benchmark_fee: Optional[int] = None,
    ) -> RenewalOffer:
        return self._run(
            lambda ctx: self.renewals.generate_offer(
                ctx,
                self._load(ctx.session, license_id),
                actor,
                strategy,
                custom_adjustment_percent=custom_adjustment_percent,
                metrics=metrics,
                market_benchmark_fee=market_benchmark_fee,
            )
        )

    def accept_renewal_offer(self, offer_id: str, actor: Actor) -> License:
        """Accept an offer, creating the renewal license.

        Raises:
            OfferExpired: The offer expired (it is then marked EXPIRED before
                this is raised) or was already accepted or superseded.
        """

        def operation(ctx: OperationContext) -> tuple[bool, Optional[License]]:
            offer = ctx.session.get_offer(offer_id)
            if offer is None:
                raise NotFound(f"Renewal offer {offer_id} not found")
            if self.renewals.expire_if_overdue(ctx, offer):
                return True, None
            return False, self.renewals.accept_offer(ctx, offer, actor)

        expired, child = self._run(operation)
        if expired:
            raise OfferExpired(f"Renewal offer {offer_id} has expired")
        return child

    def list_renewal_offers(self, license_id: str) -> list[RenewalOffer]:
        with self.store.reader() as session:
            self._load(session, license_id)
            return session.offers_for(license_id)

    # ------------------------------------------------------------------
    # Ownership, statistics and the sweep
    # ------------------------------------------------------------------

    def record_ownership(
        self, ip_asset_id: str, shares: list[tuple[str, int]], effective: Optional[date] = None
    ) -> None:
        """Replace an asset's owner set in the ledger from `effective` on."""
        self.ledger.replace_owners(ip_asset_id, shares, effective or self.clock().date())

    def get_stats(
        self,
        brand_id: Optional[str] = None,
        ip_asset_id: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> LicenseStats:
        """Portfolio statistics. The renewal rate is read from status history."""
        as_of = as_of or self.clock().date()
        with self.store.reader() as session:
            licenses = session.list_licenses(brand_id=brand_id, asset_id=ip_asset_id)
            ids = [lic.id for lic in licenses]
            reached_expired = session.license_ids_that_reached(LicenseStatus.EXPIRED, ids)
            reached_renewed = session.license_ids_that_reached(LicenseStatus.RENEWED, ids)

        by_status = Counter(lic.status.value for lic in licenses)
        by_type = Counter(lic.license_type for lic in licenses)
        active = [lic for lic in licenses if lic.status in OCCUPYING_STATUSES]

        def expiring_within(days: int) -> int:
            return sum(1 for lic in active if 0 <= lic.days_until_end(as_of) <= days)

        return LicenseStats(
            total=len(licenses),
            by_status=dict(sorted(by_status.items())),
            total_active=len(active),
            exclusive_licenses=by_type[LicenseType.EXCLUSIVE],
            non_exclusive_licenses=by_type[LicenseType.NON_EXCLUSIVE],
            territory_exclusive_licenses=by_type[LicenseType.EXCLUSIVE_TERRITORY],
            active_fee_total=sum(lic.fee_amount for lic in active),
            expiring_in_30_days=expiring_within(30),
            expiring_in_60_days=expiring_within(60),
            expiring_in_90_days=expiring_within(90),
            average_active_duration_days=(
                round(sum(lic.duration_days for lic in active) / len(active)) if active else 0
            ),
            renewal_rate=(
                round(len(reached_renewed) / len(reached_expired), 4) if reached_expired else 0.0
            ),
        )

    def dossier(self, license_id: str) -> LicenseDossier:
        """Gather a license and its satellite records for reporting."""
        with self.store.reader() as session:
            lic = self._load(session, license_id)
            return LicenseDossier(
                license=lic,
                history=session.history_for(license_id),
                amendments=session.amendments_for(license_id),
                extensions=session.extensions_for(license_id),
                offers=session.offers_for(license_id),
            )

    def reconcile(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """Run the lifecycle sweep."""
        return self.reconciler.reconcile(now or self.clock())
