"""Unit tests for the extension workflow."""

from datetime import date

import pytest

from licensing_engine.errors import (
    ConflictDetected,
    Forbidden,
    InvalidTransition,
    ValidationError,
)
from licensing_engine.events.base import EventName
from licensing_engine.extensions import extension_fee
from licensing_engine.models import (
    Actor,
    ActorRole,
    Decision,
    ExtensionStatus,
    LicenseStatus,
)

BRAND = Actor("acme", ActorRole.BRAND)
RIVAL = Actor("globex", ActorRole.BRAND)
ALICE = Actor("alice", ActorRole.CREATOR)
BOB = Actor("bob", ActorRole.CREATOR)


def test_extension_fee_is_pro_rata(activate):
    lic = activate()
    assert lic.duration_days == 365
    assert extension_fee(lic, 10) == 13699
    assert extension_fee(lic, 365) == 500_000


class TestShortExtensions:
    """Extensions under the threshold are approved on request."""

    def test_auto_approved(self, engine, activate, outbox):
        lic = activate()

        extension = engine.request_extension(lic.id, BRAND, 10, "Campaign slipped")

        assert extension.status == ExtensionStatus.APPROVED
        assert not extension.approval_required
        lic = engine.get(lic.id)
        assert lic.end_date == date(2026, 1, 11)
        assert lic.fee_amount == 513_699
        assert lic.extension_count == 1
        assert outbox.named(EventName.EXTENSION_RESOLVED)[0].payload["status"] == "APPROVED"
        billing = [
            e for e in outbox.named(EventName.BILLING_INTENT) if e.payload["source"] == "extension"
        ]
        assert billing[0].payload["amount"] == 13_699

    def test_conflicting_extension_refused(self, engine, activate):
        lic = activate(end=date(2025, 7, 1))
        activate(brand=RIVAL, start=date(2025, 7, 1), end=date(2026, 1, 1))

        with pytest.raises(ConflictDetected):
            engine.request_extension(lic.id, BRAND, 5, "Overlap")

        assert engine.get(lic.id).end_date == date(2025, 7, 1)
        assert engine.list_extensions(lic.id) == []

    def test_extension_reactivates_expiring_license(self, engine, activate, clock):
        lic = activate(end=date(2025, 1, 21))
        engine.reconcile()
        assert engine.get(lic.id).status == LicenseStatus.EXPIRING_SOON

        engine.request_extension(lic.id, BRAND, 29, "Keep running")

        lic = engine.get(lic.id)
        assert lic.end_date == date(2025, 2, 19)
        assert lic.status == LicenseStatus.ACTIVE

    def test_extension_inside_window_stays_expiring(self, engine, activate):
        lic = activate(end=date(2025, 1, 11))
        engine.reconcile()

        engine.request_extension(lic.id, BRAND, 5, "A few more days")

        assert engine.get(lic.id).status == LicenseStatus.EXPIRING_SOON


class TestApprovedExtensions:
    """Extensions at or above the threshold need every owner."""

    def test_owner_approval_applies(self, engine, activate):
        lic = activate()
        extension = engine.request_extension(lic.id, BRAND, 60, "Second season")

        assert extension.status == ExtensionStatus.PENDING
        assert {a.approver_id for a in extension.approvals} == {"alice", "bob"}
        assert engine.get(lic.id).end_date == date(2026, 1, 1)

        engine.process_extension_approval(extension.id, ALICE, Decision.APPROVED)
        extension = engine.process_extension_approval(extension.id, BOB, Decision.APPROVED)

        assert extension.status == ExtensionStatus.APPROVED
        assert engine.get(lic.id).end_date == date(2026, 3, 2)

    def test_rejection(self, engine, activate):
        lic = activate()
        extension = engine.request_extension(lic.id, BRAND, 60, "Second season")

        extension = engine.process_extension_approval(
            extension.id, ALICE, Decision.REJECTED, "Asset is committed elsewhere"
        )

        assert extension.status == ExtensionStatus.REJECTED
        assert extension.rejection_reason == "Asset is committed elsewhere"
        assert engine.get(lic.id).end_date == date(2026, 1, 1)

    def test_overdue_request_expires(self, engine, activate, clock):
        lic = activate()
        extension = engine.request_extension(lic.id, BRAND, 60, "Second season")
        clock.advance(days=15)

        with pytest.raises(InvalidTransition):
            engine.process_extension_approval(extension.id, ALICE, Decision.APPROVED)

        assert engine.list_extensions(lic.id)[0].status == ExtensionStatus.EXPIRED

    def test_stale_request_cannot_apply(self, engine, activate):
        lic = activate()
        pending = engine.request_extension(lic.id, BRAND, 60, "Second season")
        engine.request_extension(lic.id, BRAND, 10, "Short bump")

        engine.process_extension_approval(pending.id, ALICE, Decision.APPROVED)
        with pytest.raises(InvalidTransition, match="end date changed"):
            engine.process_extension_approval(pending.id, BOB, Decision.APPROVED)


class TestRequestValidation:
    @pytest.mark.parametrize("days", [0, 366])
    def test_day_bounds(self, engine, activate, days):
        lic = activate()
        with pytest.raises(ValidationError):
            engine.request_extension(lic.id, BRAND, days, "Out of range")

    def test_only_brand_or_admin(self, engine, activate):
        lic = activate()
        with pytest.raises(Forbidden):
            engine.request_extension(lic.id, ALICE, 10, "Owner asking")

    def test_only_occupying_licenses(self, engine, propose):
        lic = propose()
        with pytest.raises(InvalidTransition):
            engine.request_extension(lic.id, BRAND, 10, "Not active yet")


def test_owner_id_under_other_role_cannot_approve(engine, activate):
    lic = activate()
    extension = engine.request_extension(lic.id, BRAND, 60, "Second season")

    with pytest.raises(Forbidden):
        engine.process_extension_approval(
            extension.id, Actor("alice", ActorRole.BRAND), Decision.APPROVED
        )

    pending = engine.list_extensions(lic.id)[0]
    assert pending.status == ExtensionStatus.PENDING
    assert all(a.decision == Decision.PENDING for a in pending.approvals)
