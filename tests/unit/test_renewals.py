"""Unit tests for renewal eligibility, offers and acceptance."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from licensing_engine.errors import (
    Forbidden,
    IneligibleForRenewal,
    OfferExpired,
)
from licensing_engine.events.base import EventName
from licensing_engine.models import (
    Actor,
    ActorRole,
    Decision,
    LicenseStatus,
    OfferStatus,
    PricingStrategy,
)

BRAND = Actor("acme", ActorRole.BRAND)
RIVAL = Actor("globex", ActorRole.BRAND)
ALICE = Actor("alice", ActorRole.CREATOR)
BOB = Actor("bob", ActorRole.CREATOR)

IN_WINDOW = date(2025, 10, 18)  # 75 days before the default end date


class TestEligibility:
    """Test the renewal window and the facts that block a renewal."""

    def test_too_early(self, engine, activate):
        lic = activate()

        result = engine.check_renewal_eligibility(lic.id)

        assert not result.eligible
        assert result.days_until_expiration == 365
        assert "opens 90 days before" in result.reasons[0]

    def test_inside_window(self, engine, activate):
        lic = activate()

        result = engine.check_renewal_eligibility(lic.id, as_of=IN_WINDOW)

        assert result.eligible
        assert result.reasons == []
        assert result.days_until_expiration == 75
        assert result.proposed_start_date == date(2026, 1, 1)
        assert result.proposed_end_date == date(2027, 1, 1)

    def test_grace_period(self, engine, activate):
        lic = activate()

        assert engine.check_renewal_eligibility(lic.id, as_of=date(2026, 1, 20)).eligible
        late = engine.check_renewal_eligibility(lic.id, as_of=date(2026, 2, 15))
        assert not late.eligible
        assert "grace period" in late.reasons[0]

    def test_pending_license_cannot_renew(self, engine, propose):
        lic = propose()
        result = engine.check_renewal_eligibility(lic.id, as_of=IN_WINDOW)
        assert "PENDING_APPROVAL cannot be renewed" in result.reasons[0]

    def test_disputed_ownership(self, engine, activate, clock):
        lic = activate()
        engine.ledger.set_dispute("asset-1", "bob", True, clock.now)

        result = engine.check_renewal_eligibility(lic.id, as_of=IN_WINDOW)

        assert not result.eligible
        assert any("disputed" in r for r in result.reasons)

    def test_conflicting_successor_term(self, engine, activate):
        lic = activate()
        rival = activate(brand=RIVAL, start=date(2026, 1, 1), end=date(2026, 6, 1))

        result = engine.check_renewal_eligibility(lic.id, as_of=IN_WINDOW)

        assert not result.eligible
        assert [c.license_id for c in result.conflicts] == [rival.id]
        assert rival.id in result.reasons[-1]


class TestOffers:
    """Test offer generation and acceptance."""

    def test_generate_offer(self, engine, activate, clock, outbox):
        lic = activate()
        clock.set_date(IN_WINDOW)

        offer = engine.generate_renewal_offer(lic.id, BRAND)

        assert offer.status == OfferStatus.PENDING
        assert offer.breakdown.final_fee == 498_750
        assert offer.proposed_start_date == date(2026, 1, 1)
        assert offer.expires_at == clock.now + timedelta(days=30)
        event = outbox.named(EventName.RENEWAL_OFFER_GENERATED)[0]
        assert event.payload["offer_id"] == offer.id

    def test_ineligible_offer(self, engine, activate):
        lic = activate()
        with pytest.raises(IneligibleForRenewal) as exc_info:
            engine.generate_renewal_offer(lic.id, BRAND)
        assert exc_info.value.reasons

    def test_only_brand_or_admin(self, engine, activate, clock):
        lic = activate()
        clock.set_date(IN_WINDOW)
        with pytest.raises(Forbidden):
            engine.generate_renewal_offer(lic.id, ALICE)

    def test_new_offer_supersedes_pending(self, engine, activate, clock):
        lic = activate()
        clock.set_date(IN_WINDOW)
        first = engine.generate_renewal_offer(lic.id, BRAND)

        second = engine.generate_renewal_offer(
            lic.id,
            BRAND,
            PricingStrategy.NEGOTIATED,
            custom_adjustment_percent=Decimal("10"),
        )

        statuses = {o.id: o.status for o in engine.list_renewal_offers(lic.id)}
        assert statuses == {first.id: OfferStatus.SUPERSEDED, second.id: OfferStatus.PENDING}
        with pytest.raises(OfferExpired):
            engine.accept_renewal_offer(first.id, BRAND)

    def test_accept_creates_pending_child(self, engine, activate, clock):
        lic = activate()
        clock.set_date(IN_WINDOW)
        offer = engine.generate_renewal_offer(lic.id, BRAND)

        child = engine.accept_renewal_offer(offer.id, BRAND)

        assert child.status == LicenseStatus.PENDING_APPROVAL
        assert child.parent_license_id == lic.id
        assert child.fee_amount == 498_750
        assert (child.start_date, child.end_date) == (date(2026, 1, 1), date(2027, 1, 1))
        assert engine.get(lic.id).status == LicenseStatus.ACTIVE
        accepted = engine.list_renewal_offers(lic.id)[0]
        assert accepted.status == OfferStatus.ACCEPTED
        assert accepted.accepted_license_id == child.id

    def test_offer_is_single_use(self, engine, activate, clock):
        lic = activate()
        clock.set_date(IN_WINDOW)
        offer = engine.generate_renewal_offer(lic.id, BRAND)
        engine.accept_renewal_offer(offer.id, BRAND)

        with pytest.raises(OfferExpired):
            engine.accept_renewal_offer(offer.id, BRAND)

    def test_system_cannot_accept(self, engine, activate, clock):
        lic = activate()
        clock.set_date(IN_WINDOW)
        offer = engine.generate_renewal_offer(lic.id, BRAND)
        with pytest.raises(Forbidden):
            engine.accept_renewal_offer(offer.id, Actor.system())

    def test_expired_offer(self, engine, activate, clock):
        lic = activate()
        clock.set_date(IN_WINDOW)
        offer = engine.generate_renewal_offer(lic.id, BRAND)
        clock.advance(days=30)

        with pytest.raises(OfferExpired):
            engine.accept_renewal_offer(offer.id, BRAND)

        assert engine.list_renewal_offers(lic.id)[0].status == OfferStatus.EXPIRED
        assert engine.get(lic.id).status == LicenseStatus.ACTIVE


class TestSuccession:
    """Test how a parent hands over to its renewal."""

    def _renew(self, engine, clock):
        lic = engine.list_licenses()[0]
        clock.set_date(IN_WINDOW)
        offer = engine.generate_renewal_offer(lic.id, BRAND)
        return lic, engine.accept_renewal_offer(offer.id, BRAND)

    def test_child_activated_before_parent_expires(self, engine, activate, clock):
        activate()
        parent, child = self._renew(engine, clock)
        engine.approve(child.id, ALICE)
        engine.approve(child.id, BOB)
        assert engine.get(parent.id).status == LicenseStatus.ACTIVE

        clock.set_date(date(2026, 1, 1))
        report = engine.reconcile()

        assert parent.id in report.expired
        assert engine.get(parent.id).status == LicenseStatus.RENEWED
        assert engine.get(child.id).status == LicenseStatus.ACTIVE

    def test_child_activated_after_parent_expires(self, engine, activate, clock):
        activate()
        parent, child = self._renew(engine, clock)
        clock.set_date(date(2026, 1, 2))
        engine.reconcile()
        assert engine.get(parent.id).status == LicenseStatus.EXPIRED

        engine.approve(child.id, ALICE)
        engine.approve(child.id, BOB)

        assert engine.get(parent.id).status == LicenseStatus.RENEWED

    def test_renewed_parent_is_no_longer_eligible(self, engine, activate, clock):
        activate()
        parent, child = self._renew(engine, clock)

        result = engine.check_renewal_eligibility(parent.id)

        assert not result.eligible
        assert f"already renewed by {child.id}" in result.reasons[0]

    def test_renewals_count_toward_loyalty(self, engine, activate, clock):
        activate()
        _, child = self._renew(engine, clock)
        engine.approve(child.id, ALICE)
        engine.approve(child.id, BOB)

        breakdown = engine.preview_renewal_pricing(child.id, as_of=date(2026, 10, 1))

        assert breakdown.historical_renewal_count == 1
        assert breakdown.relationship_months == 21


def test_third_term_with_two_prior_renewals(engine, activate, clock):
    """A license 75 days out with two prior renewals gets stacked discounts."""
    current = activate()
    for year in (2025, 2026):
        clock.set_date(date(year, 10, 18))
        offer = engine.generate_renewal_offer(current.id, BRAND)
        current = engine.accept_renewal_offer(offer.id, BRAND)
        engine.approve(current.id, ALICE)
        current = engine.approve(current.id, BOB)
    assert current.end_date == date(2028, 1, 1)

    clock.set_date(date(2027, 10, 18))
    assert engine.check_renewal_eligibility(current.id).eligible
    offer = engine.generate_renewal_offer(current.id, BRAND)

    breakdown = offer.breakdown
    assert breakdown.historical_renewal_count == 2
    assert [a.kind for a in breakdown.adjustments] == ["loyalty", "early_renewal"]
    assert breakdown.final_fee < breakdown.base_renewal_fee

    child = engine.accept_renewal_offer(offer.id, BRAND)
    assert child.parent_license_id == current.id
    assert child.status == LicenseStatus.PENDING_APPROVAL
    with pytest.raises(OfferExpired):
        engine.accept_renewal_offer(offer.id, BRAND)


class TestMovedTerm:
    """Offers priced for a term that no longer follows the license."""

    def test_extension_supersedes_pending_offer(self, engine, activate, clock):
        lic = activate()
        clock.set_date(IN_WINDOW)
        offer = engine.generate_renewal_offer(lic.id, BRAND)

        engine.request_extension(lic.id, BRAND, 10, "Shoot slipped")

        assert engine.list_renewal_offers(lic.id)[0].status == OfferStatus.SUPERSEDED
        with pytest.raises(OfferExpired):
            engine.accept_renewal_offer(offer.id, BRAND)
        assert engine.list_licenses(status=LicenseStatus.PENDING_APPROVAL) == []

    def test_end_date_amendment_supersedes_pending_offer(self, engine, activate, clock):
        lic = activate()
        clock.set_date(IN_WINDOW)
        offer = engine.generate_renewal_offer(lic.id, BRAND)
        amendment = engine.propose_amendment(
            lic.id, BRAND, {"end_date": date(2026, 2, 1)}, "Campaign runs longer"
        )
        engine.process_amendment_approval(amendment.id, ALICE, Decision.APPROVED)
        assert engine.list_renewal_offers(lic.id)[0].status == OfferStatus.PENDING

        engine.process_amendment_approval(amendment.id, BOB, Decision.APPROVED)

        with pytest.raises(OfferExpired):
            engine.accept_renewal_offer(offer.id, BRAND)

    def test_fresh_offer_follows_the_new_end_date(self, engine, activate, clock):
        lic = activate()
        clock.set_date(IN_WINDOW)
        engine.generate_renewal_offer(lic.id, BRAND)
        engine.request_extension(lic.id, BRAND, 10, "Shoot slipped")

        offer = engine.generate_renewal_offer(lic.id, BRAND)
        child = engine.accept_renewal_offer(offer.id, BRAND)
        engine.approve(child.id, ALICE)
        child = engine.approve(child.id, BOB)

        assert child.start_date == date(2026, 1, 11)
        assert child.status == LicenseStatus.ACTIVE

    def test_offer_for_stale_term_is_refused(self, engine, activate, clock):
        lic = activate()
        clock.set_date(IN_WINDOW)
        offer = engine.generate_renewal_offer(lic.id, BRAND)
        with engine.store.transaction() as session:
            moved = session.get_license(lic.id)
            moved.end_date = date(2026, 1, 11)
            session.update_license(moved)

        with pytest.raises(IneligibleForRenewal, match="no longer follows"):
            engine.accept_renewal_offer(offer.id, BRAND)

        assert engine.list_renewal_offers(lic.id)[0].status == OfferStatus.PENDING
        assert engine.list_licenses(status=LicenseStatus.PENDING_APPROVAL) == []
