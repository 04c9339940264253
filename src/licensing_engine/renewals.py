"""Renewal orchestrator: eligibility, offer generation and acceptance.

A renewal never flips the original license directly. Accepting an offer
creates a child license in PENDING_APPROVAL; the parent becomes RENEWED
only once that child is ACTIVE and the parent has EXPIRED, so coverage
never has a gap.
"""

import logging
import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from licensing_engine.config import PricingConfig, RenewalConfig
from licensing_engine.conflicts import ConflictDetector
from licensing_engine.context import OperationContext
from licensing_engine.errors import Forbidden, IneligibleForRenewal, OfferExpired
from licensing_engine.events.base import EventName
from licensing_engine.lifecycle import LicenseEvent, LicenseStateMachine
from licensing_engine.models import (
    Actor,
    ActorRole,
    License,
    LicenseScope,
    LicenseStatus,
    OfferStatus,
    PerformanceMetrics,
    PricingBreakdown,
    PricingStrategy,
    RenewalEligibility,
    RenewalHistory,
    RenewalOffer,
)
from licensing_engine.ownership.base import OwnershipLedger
from licensing_engine.pricing import price
from licensing_engine.store import StoreSession

logger = logging.getLogger(__name__)

RENEWABLE_STATUSES = frozenset(
    {LicenseStatus.ACTIVE, LicenseStatus.EXPIRING_SOON, LicenseStatus.EXPIRED}
)
AUTO_RENEW_STATUSES = frozenset({LicenseStatus.ACTIVE, LicenseStatus.EXPIRING_SOON})


def supersede_pending_offers(ctx: OperationContext, license_id: str, reason: str) -> list[str]:
    """Mark every PENDING renewal offer of a license SUPERSEDED."""
    superseded = []
    for pending in ctx.session.offers_for(license_id, OfferStatus.PENDING):
        pending.status = OfferStatus.SUPERSEDED
        ctx.session.update_offer_status(pending)
        superseded.append(pending.id)
        logger.info("Renewal offer %s superseded: %s", pending.id, reason)
    return superseded


class RenewalOrchestrator:
    """Coordinates the ledger, conflict detector and pricing for renewals."""

    def __init__(
        self,
        detector: ConflictDetector,
        ledger: OwnershipLedger,
        state_machine: LicenseStateMachine,
        pricing: Optional[PricingConfig] = None,
        config: Optional[RenewalConfig] = None,
    ) -> None:
        self.detector = detector
        self.ledger = ledger
        self.state_machine = state_machine
        self.pricing = pricing or PricingConfig()
        self.config = config or RenewalConfig()

    def check_eligibility(
        self, session: StoreSession, lic: License, as_of: date
    ) -> RenewalEligibility:
        """Decide whether `lic` can be renewed on `as_of`.

        The prospective renewal runs from the current end date for the same
        duration as the current term.
        """
        days = lic.days_until_end(as_of)
        start = lic.end_date
        end = start + timedelta(days=lic.duration_days)
        result = RenewalEligibility(
            license_id=lic.id,
            eligible=False,
            days_until_expiration=days,
            proposed_start_date=start,
            proposed_end_date=end,
        )

        if lic.status not in RENEWABLE_STATUSES:
            result.reasons.append(f"License status {lic.status.value} cannot be renewed")

        window = self.config.window_days_before
        grace = self.config.grace_days_after
        if days > window:
            result.reasons.append(
                f"Renewal opens {window} days before expiration ({days - window} days from now)"
            )
        elif days < -grace:
            result.reasons.append(
                f"Renewal grace period of {grace} days after expiration has passed"
            )

        children = [
            c for c in session.children_of(lic.id) if c.status != LicenseStatus.CANCELED
        ]
        if children:
            result.reasons.append(f"License already renewed by {children[0].id}")

        if not self.ledger.get_owners(lic.ip_asset_id, as_of):
            result.reasons.append(f"Asset {lic.ip_asset_id} has no registered owners")
        if self.ledger.has_open_disputes(lic.ip_asset_id):
            result.reasons.append(f"Ownership of asset {lic.ip_asset_id} is disputed")

        conflicts = self.detector.check(
            session,
            lic.ip_asset_id,
            start,
            end,
            lic.license_type,
            lic.scope,
            brand_id=lic.brand_id,
            exclude_license_id=lic.id,
        )
        result.conflicts = conflicts.conflicts
        blocking = conflicts.blocking()
        if blocking:
            ids = ", ".join(sorted({c.license_id for c in blocking}))
            result.reasons.append(f"Renewal term conflicts with {ids}")
        for warning in conflicts.warnings():
            result.warnings.append(
                f"{warning.reason.value} with {warning.license_id} ({warning.status.value})"
            )

        result.eligible = not result.reasons
        logger.debug(
            "Renewal eligibility of %s on %s: %s",
            lic.id,
            as_of,
            "eligible" if result.eligible else "; ".join(result.reasons),
        )
        return result

    def history(self, session: StoreSession, lic: License) -> RenewalHistory:
        return RenewalHistory(
            prior_renewal_count=session.count_prior_renewals(lic.ip_asset_id, lic.brand_id),
            relationship_start=session.first_license_start(lic.ip_asset_id, lic.brand_id),
        )

    def preview(
        self,
        session: StoreSession,
        lic: License,
        strategy: PricingStrategy,
        as_of: date,
        custom_adjustment_percent: Optional[Decimal] = None,
        metrics: Optional[PerformanceMetrics] = None,
        market_benchmark_fee: Optional[int] = None,
    ) -> PricingBreakdown:
        return price(
            lic,
            self.history(session, lic),
            strategy,
            self.pricing,
            as_of,
            custom_adjustment_percent=custom_adjustment_percent,
            metrics=metrics,
            market_benchmark_fee=market_benchmark_fee,
        )

    def generate_offer(
        self,
        ctx: OperationContext,
        lic: License,
        actor: Actor,
        strategy: PricingStrategy,
        custom_adjustment_percent: Optional[Decimal] = None,
        metrics: Optional[PerformanceMetrics] = None,
        market_benchmark_fee: Optional[int] = None,
    ) -> RenewalOffer:
        """Price and store a renewal offer, superseding earlier pending ones.

        Raises:
            Forbidden: Actor is not the brand, an admin or the system.
            IneligibleForRenewal: The eligibility check failed.
        """
        self._authorize(lic, actor, "generate a renewal offer for")
        eligibility = self.check_eligibility(ctx.session, lic, ctx.today)
        if not eligibility.eligible:
            raise IneligibleForRenewal(eligibility.reasons)

        breakdown = self.preview(
            ctx.session,
            lic,
            strategy,
            ctx.today,
            custom_adjustment_percent=custom_adjustment_percent,
            metrics=metrics,
            market_benchmark_fee=market_benchmark_fee,
        )

        supersede_pending_offers(ctx, lic.id, "new offer generated")

        offer = RenewalOffer(
            id=str(uuid.uuid4()),
            license_id=lic.id,
            strategy=strategy,
            breakdown=breakdown,
            proposed_start_date=eligibility.proposed_start_date,
            proposed_end_date=eligibility.proposed_end_date,
            generated_by=actor.id,
            generated_at=ctx.now,
            expires_at=ctx.now + timedelta(days=self.config.offer_validity_days),
        )
        ctx.session.insert_offer(offer)
        ctx.emit(
            EventName.RENEWAL_OFFER_GENERATED,
            lic.id,
            offer_id=offer.id,
            final_fee=breakdown.final_fee,
            expires_at=offer.expires_at.isoformat(),
        )
        logger.info(
            "Renewal offer %s for %s: %d -> %d (%s)",
            offer.id,
            lic.id,
            breakdown.original_fee,
            breakdown.final_fee,
            strategy.value,
        )
        return offer

    def expire_if_overdue(self, ctx: OperationContext, offer: RenewalOffer) -> bool:
        if offer.status != OfferStatus.PENDING or ctx.now < offer.expires_at:
            return False
        offer.status = OfferStatus.EXPIRED
        ctx.session.update_offer_status(offer)
        logger.warning("Renewal offer %s for %s expired", offer.id, offer.license_id)
        return True

    def accept_offer(self, ctx: OperationContext, offer: RenewalOffer, actor: Actor) -> License:
        """Turn a pending offer into a child license awaiting owner approval.

        Raises:
            OfferExpired: The offer is no longer PENDING.
            Forbidden: Actor is not the brand or an admin.
            IneligibleForRenewal: Facts changed since the offer was generated.
        """
        if offer.status != OfferStatus.PENDING:
            raise OfferExpired(f"Renewal offer {offer.id} is {offer.status.value}")

        parent = ctx.session.get_license(offer.license_id)
        if actor.role == ActorRole.SYSTEM:
            raise Forbidden("Renewal offers must be accepted by the brand or an admin")
        self._authorize(parent, actor, "accept a renewal offer for")
        return self._create_child(ctx, parent, offer, actor)

    def auto_renew(self, ctx: OperationContext, lic: License) -> Optional[License]:
        """Generate and accept an AUTOMATIC offer for an auto-renewing license.

        Only ACTIVE or EXPIRING_SOON licenses with auto_renew set, ending
        within RenewalConfig.auto_renew_days_before and not yet renewed,
        are handled. Anything else returns None.

        Raises:
            IneligibleForRenewal: The license is due but cannot be renewed.
        """
        if not lic.auto_renew or lic.status not in AUTO_RENEW_STATUSES:
            return None
        if not 0 < lic.days_until_end(ctx.today) <= self.config.auto_renew_days_before:
            return None
        if any(c.status != LicenseStatus.CANCELED for c in ctx.session.children_of(lic.id)):
            return None

        system = Actor.system()
        offer = self.generate_offer(ctx, lic, system, PricingStrategy.AUTOMATIC)
        child = self._create_child(ctx, lic, offer, system)
        logger.info("Auto-renewed %s as %s", lic.id, child.id)
        return child

    def _create_child(
        self, ctx: OperationContext, parent: License, offer: RenewalOffer, actor: Actor
    ) -> License:
        eligibility = self.check_eligibility(ctx.session, parent, ctx.today)
        if not eligibility.eligible:
            raise IneligibleForRenewal(eligibility.reasons)
        # The conflict check above ran on the term following the current end date.
        offered = (offer.proposed_start_date, offer.proposed_end_date)
        if offered != (eligibility.proposed_start_date, eligibility.proposed_end_date):
            raise IneligibleForRenewal(
                [
                    f"Offer term {offered[0]} to {offered[1]} no longer follows "
                    f"license {parent.id}, which now ends {parent.end_date}"
                ]
            )

        child = License(
            id=str(uuid.uuid4()),
            ip_asset_id=parent.ip_asset_id,
            brand_id=parent.brand_id,
            license_type=parent.license_type,
            status=LicenseStatus.DRAFT,
            start_date=offer.proposed_start_date,
            end_date=offer.proposed_end_date,
            fee_amount=offer.breakdown.final_fee,
            rev_share_bps=offer.breakdown.final_rev_share_bps,
            scope=LicenseScope.from_dict(parent.scope.to_dict()),
            billing_frequency=parent.billing_frequency,
            payment_terms=parent.payment_terms,
            auto_renew=parent.auto_renew,
            signature_required=parent.signature_required,
            parent_license_id=parent.id,
            created_by=actor.id,
            created_at=ctx.now,
            updated_at=ctx.now,
        )
        ctx.session.insert_license(child)
        self.state_machine.record_creation(ctx, child, actor)
        self.state_machine.apply(ctx, child, LicenseEvent.SUBMIT, actor, check_roles=False)

        offer.status = OfferStatus.ACCEPTED
        offer.accepted_license_id = child.id
        ctx.session.update_offer_status(offer)
        logger.info(
            "Renewal offer %s accepted: %s renews %s", offer.id, child.id, parent.id
        )
        return child

    @staticmethod
    def _authorize(lic: License, actor: Actor, action: str) -> None:
        if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return
        if actor.role == ActorRole.BRAND and actor.id == lic.brand_id:
            return
        raise Forbidden(f"{actor.id} may not {action} license {lic.id}")
