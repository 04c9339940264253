"""Unit tests for the license state machine."""

from datetime import date

import pytest

from licensing_engine.config import LifecycleConfig
from licensing_engine.errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from licensing_engine.events.base import EventName
from licensing_engine.lifecycle import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    LicenseEvent,
    legal_events,
    next_status,
    validate_reason,
)
from licensing_engine.models import (
    Actor,
    ActorRole,
    Decision,
    LicenseStatus,
    LicenseType,
)

BRAND = Actor("acme", ActorRole.BRAND)
ALICE = Actor("alice", ActorRole.CREATOR)
BOB = Actor("bob", ActorRole.CREATOR)
CAROL = Actor("carol", ActorRole.CREATOR)
ADMIN = Actor("root", ActorRole.ADMIN)

REASON = "Brand breached the usage terms"


class TestTransitionTable:
    """Test the static table of legal transitions."""

    def test_terminal_statuses_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert legal_events(status) == []

    def test_expired_can_only_be_renewed(self):
        assert legal_events(LicenseStatus.EXPIRED) == [LicenseEvent.RENEW]

    def test_next_status(self):
        assert next_status(LicenseStatus.DRAFT, LicenseEvent.SUBMIT) == LicenseStatus.PENDING_APPROVAL
        assert next_status(LicenseStatus.SUSPENDED, LicenseEvent.REINSTATE) == LicenseStatus.ACTIVE

    def test_illegal_transition(self):
        with pytest.raises(InvalidTransition):
            next_status(LicenseStatus.DRAFT, LicenseEvent.SIGN)

    def test_every_event_has_a_transition(self):
        assert set(TRANSITIONS) == set(LicenseEvent)


class TestReasons:
    config = LifecycleConfig()

    @pytest.mark.parametrize(
        "event", [LicenseEvent.TERMINATE, LicenseEvent.DISPUTE, LicenseEvent.SUSPEND]
    )
    def test_reason_required(self, event):
        with pytest.raises(ValidationError):
            validate_reason(event, "   ", self.config)

    def test_termination_reason_length(self):
        with pytest.raises(ValidationError, match="between 10 and 500"):
            validate_reason(LicenseEvent.TERMINATE, "too short", self.config)
        with pytest.raises(ValidationError):
            validate_reason(LicenseEvent.TERMINATE, "x" * 501, self.config)

    def test_reason_is_stripped(self):
        assert validate_reason(LicenseEvent.DISPUTE, "  late  ", self.config) == "late"

    def test_reason_optional_elsewhere(self):
        assert validate_reason(LicenseEvent.CANCEL, None, self.config) is None


class TestProposalAndApproval:
    """Test submission and owner approval."""

    def test_create_submits_for_owner_approval(self, engine, propose, outbox):
        lic = propose()

        assert lic.status == LicenseStatus.PENDING_APPROVAL
        history = engine.get_status_history(lic.id)
        assert [(h.from_status, h.to_status, h.event) for h in history] == [
            (None, LicenseStatus.DRAFT, "CREATE"),
            (LicenseStatus.DRAFT, LicenseStatus.PENDING_APPROVAL, "SUBMIT"),
        ]
        assert [e.license_id for e in outbox.named(EventName.LICENSE_PROPOSED)] == [lic.id]

    def test_draft_then_submit(self, engine, propose):
        lic = propose(submit=False)
        assert lic.status == LicenseStatus.DRAFT

        lic = engine.submit(lic.id, BRAND)
        assert lic.status == LicenseStatus.PENDING_APPROVAL

    def test_brand_must_match(self, engine):
        with pytest.raises(Forbidden):
            engine.create(
                Actor("globex", ActorRole.BRAND),
                ip_asset_id="asset-1",
                brand_id="acme",
                license_type=LicenseType.EXCLUSIVE,
                start_date=date(2025, 1, 1),
                end_date=date(2025, 6, 1),
                fee_amount=1000,
            )

    def test_validation_happens_before_anything_is_stored(self, engine, propose):
        with pytest.raises(ValidationError):
            propose(start=date(2025, 6, 1), end=date(2025, 1, 1))
        assert engine.list_licenses() == []

    def test_asset_without_owners_cannot_be_submitted(self, engine, propose):
        with pytest.raises(ValidationError, match="no registered owners"):
            propose(asset="orphan")
        assert engine.list_licenses() == []

    def test_all_owners_must_approve(self, engine, propose, outbox):
        lic = propose()

        assert engine.approve(lic.id, ALICE).status == LicenseStatus.PENDING_APPROVAL
        lic = engine.approve(lic.id, BOB)

        assert lic.status == LicenseStatus.ACTIVE
        assert [e.license_id for e in outbox.named(EventName.LICENSE_ACTIVATED)] == [lic.id]
        billing = outbox.named(EventName.BILLING_INTENT)
        assert billing[0].payload["amount"] == 500_000
        assert billing[0].payload["source"] == "activation"

    def test_any_rejection_returns_to_draft(self, engine, propose):
        lic = propose()

        engine.approve(lic.id, ALICE)
        lic = engine.approve(lic.id, BOB, Decision.REJECTED, "Fee too low")

        assert lic.status == LicenseStatus.DRAFT
        assert engine.get_status_history(lic.id)[-1].reason == "Fee too low"

    def test_non_owner_cannot_approve(self, engine, propose):
        lic = propose()
        with pytest.raises(Forbidden):
            engine.approve(lic.id, CAROL)
        with pytest.raises(Forbidden):
            engine.approve(lic.id, Actor("alice", ActorRole.BRAND))

    def test_signature_path(self, engine, propose):
        lic = propose(signature_required=True)
        engine.approve(lic.id, ALICE)
        lic = engine.approve(lic.id, BOB)
        assert lic.status == LicenseStatus.PENDING_SIGNATURE

        with pytest.raises(Forbidden):
            engine.transition(lic.id, LicenseEvent.SIGN, ALICE)
        lic = engine.transition(lic.id, LicenseEvent.SIGN, BRAND)

        assert lic.status == LicenseStatus.ACTIVE
        assert lic.signed_at is not None

    def test_editing_pending_license_resets_approvals(self, engine, propose):
        lic = propose()
        engine.approve(lic.id, ALICE)

        engine.update(lic.id, BRAND, fee_amount=600_000)
        lic = engine.approve(lic.id, BOB)

        assert lic.status == LicenseStatus.PENDING_APPROVAL
        assert lic.fee_amount == 600_000

    def test_update_accepts_iso_dates(self, engine, propose):
        lic = propose()

        lic = engine.update(lic.id, BRAND, end_date="2025-12-01")

        assert lic.end_date == date(2025, 12, 1)

    def test_update_rejects_malformed_dates(self, engine, propose):
        lic = propose()
        with pytest.raises(ValidationError, match="ISO date"):
            engine.update(lic.id, BRAND, start_date="first of june")

    def test_active_license_cannot_be_edited(self, engine, activate):
        lic = activate()
        with pytest.raises(InvalidTransition, match="amendment"):
            engine.update(lic.id, BRAND, fee_amount=1)


class TestTransitions:
    """Test direct lifecycle events."""

    def test_system_events_are_not_callable_directly(self, engine, propose):
        lic = propose()
        with pytest.raises(Forbidden):
            engine.transition(lic.id, LicenseEvent.APPROVE, ADMIN)

    def test_unknown_event(self, engine, propose):
        lic = propose()
        with pytest.raises(ValidationError):
            engine.transition(lic.id, "EXPLODE", BRAND)

    def test_unknown_license(self, engine):
        with pytest.raises(NotFound):
            engine.transition("missing", LicenseEvent.CANCEL, BRAND)

    def test_cancel_pending(self, engine, propose):
        lic = propose()
        assert engine.transition(lic.id, "CANCEL", BRAND).status == LicenseStatus.CANCELED

    def test_terminate_records_reason(self, engine, activate, outbox, clock):
        lic = activate()

        lic = engine.terminate(lic.id, BRAND, REASON)

        assert lic.status == LicenseStatus.TERMINATED
        assert lic.termination_reason == REASON
        assert lic.terminated_at == clock.now
        event = outbox.named(EventName.LICENSE_TERMINATED)[0]
        assert event.payload["previous_status"] == "ACTIVE"

    def test_owner_may_terminate(self, engine, activate):
        lic = activate()
        assert engine.terminate(lic.id, ALICE, REASON).status == LicenseStatus.TERMINATED

    def test_stranger_may_not_terminate(self, engine, activate):
        lic = activate()
        with pytest.raises(Forbidden):
            engine.terminate(lic.id, CAROL, REASON)

    def test_terminated_is_final(self, engine, activate):
        lic = activate()
        engine.terminate(lic.id, BRAND, REASON)
        with pytest.raises(InvalidTransition):
            engine.transition(lic.id, LicenseEvent.DISPUTE, BRAND, "still unhappy")

    def test_dispute_suspend_reinstate(self, engine, activate):
        lic = activate()

        lic = engine.transition(lic.id, LicenseEvent.DISPUTE, ALICE, "Unpaid invoice")
        assert lic.status == LicenseStatus.DISPUTED
        with pytest.raises(Forbidden):
            engine.transition(lic.id, LicenseEvent.RESOLVE, BRAND)

        lic = engine.transition(lic.id, LicenseEvent.SUSPEND, ADMIN, "Pending review")
        assert lic.status == LicenseStatus.SUSPENDED
        lic = engine.transition(lic.id, LicenseEvent.REINSTATE, ADMIN)
        assert lic.status == LicenseStatus.ACTIVE

    def test_history_is_complete(self, engine, activate):
        lic = activate()
        engine.terminate(lic.id, BRAND, REASON)

        history = engine.get_status_history(lic.id)

        assert [h.sequence for h in history] == [1, 2, 3, 4]
        assert [h.to_status for h in history] == [
            LicenseStatus.DRAFT,
            LicenseStatus.PENDING_APPROVAL,
            LicenseStatus.ACTIVE,
            LicenseStatus.TERMINATED,
        ]
        for previous, current in zip(history, history[1:]):
            assert current.from_status == previous.to_status
