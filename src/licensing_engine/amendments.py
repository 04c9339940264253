"""Amendment workflow: multi-party approval of changes to an ACTIVE license."""

import logging
import uuid
from datetime import date, timedelta
from typing import Any, Optional

from licensing_engine.config import AmendmentConfig
from licensing_engine.conflicts import ConflictDetector
from licensing_engine.context import OperationContext
from licensing_engine.errors import (
    ConflictDetected,
    Forbidden,
    InvalidTransition,
    ValidationError,
)
from licensing_engine.events.base import EventName
from licensing_engine.lifecycle import LicenseStateMachine
from licensing_engine.models import (
    FULL_SHARE_BPS,
    OCCUPYING_STATUSES,
    Actor,
    ActorRole,
    Amendment,
    AmendmentStatus,
    AmendmentType,
    Approval,
    BillingFrequency,
    Decision,
    License,
    LicenseScope,
    LicenseStatus,
    reduce_approvals,
)
from licensing_engine.ownership.base import OwnershipLedger
from licensing_engine.renewals import supersede_pending_offers
from licensing_engine.validation import validate_scope

logger = logging.getLogger(__name__)

AMENDABLE_FIELDS = (
    "fee_amount",
    "rev_share_bps",
    "scope",
    "end_date",
    "billing_frequency",
    "payment_terms",
    "auto_renew",
)

# Changes that can alter what a license occupies.
RECHECK_FIELDS = frozenset({"scope", "end_date"})


def normalize_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Validate proposed changes and convert them to their stored JSON form.

    Raises:
        ValidationError: Unknown field, wrong type or out-of-range value.
    """
    if not changes:
        raise ValidationError("An amendment must change at least one field")

    errors = []
    normalized: dict[str, Any] = {}
    for name, value in changes.items():
        if name not in AMENDABLE_FIELDS:
            errors.append(f"Field {name} cannot be amended")
            continue
        if name == "fee_amount":
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                errors.append("fee_amount must be a non-negative integer")
            normalized[name] = value
        elif name == "rev_share_bps":
            if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= FULL_SHARE_BPS:
                errors.append(f"rev_share_bps must be between 0 and {FULL_SHARE_BPS}")
            normalized[name] = value
        elif name == "scope":
            scope = value if isinstance(value, LicenseScope) else LicenseScope.from_dict(value)
            errors.extend(validate_scope(scope))
            normalized[name] = scope.to_dict()
        elif name == "end_date":
            try:
                end = value if isinstance(value, date) else date.fromisoformat(str(value))
            except ValueError:
                errors.append("end_date must be an ISO date")
                continue
            normalized[name] = end.isoformat()
        elif name == "billing_frequency":
            try:
                normalized[name] = BillingFrequency(value).value
            except ValueError:
                errors.append(f"Unknown billing frequency {value!r}")
        elif name == "payment_terms":
            normalized[name] = str(value) if value is not None else None
        elif name == "auto_renew":
            if not isinstance(value, bool):
                errors.append("auto_renew must be a boolean")
            normalized[name] = value

    if errors:
        raise ValidationError(errors[0], errors)
    return normalized


def snapshot(lic: License, fields: list[str]) -> dict[str, Any]:
    """Stored JSON form of the current values of `fields`."""
    values: dict[str, Any] = {}
    for name in fields:
        value = getattr(lic, name)
        if name == "scope":
            value = value.to_dict()
        elif name == "end_date":
            value = value.isoformat()
        elif name == "billing_frequency":
            value = value.value
        values[name] = value
    return values


def apply_values(lic: License, values: dict[str, Any]) -> None:
    """Set stored JSON values back onto a license, field by field."""
    for name, value in values.items():
        if name == "scope":
            value = LicenseScope.from_dict(value)
        elif name == "end_date":
            value = date.fromisoformat(value)
        elif name == "billing_frequency":
            value = BillingFrequency(value)
        setattr(lic, name, value)


class AmendmentWorkflow:
    """Proposes, approves and applies amendments inside an operation context."""

    def __init__(
        self,
        detector: ConflictDetector,
        ledger: OwnershipLedger,
        state_machine: LicenseStateMachine,
        config: Optional[AmendmentConfig] = None,
    ) -> None:
        self.detector = detector
        self.ledger = ledger
        self.state_machine = state_machine
        self.config = config or AmendmentConfig()

    def validate_deadline(self, deadline_days: Optional[int]) -> int:
        if deadline_days is None:
            return self.config.default_deadline_days
        if not 1 <= deadline_days <= self.config.max_deadline_days:
            raise ValidationError(
                f"Approval deadline must be between 1 and "
                f"{self.config.max_deadline_days} days"
            )
        return deadline_days

    def propose(
        self,
        ctx: OperationContext,
        lic: License,
        changes: dict[str, Any],
        amendment_type: AmendmentType,
        justification: str,
        deadline_days: int,
        actor: Actor,
    ) -> Amendment:
        """Open an amendment against an ACTIVE license.

        Args:
            changes: Output of normalize_changes().

        Raises:
            InvalidTransition: License is not ACTIVE.
            Forbidden: Proposer is not the brand, an owner or an admin.
            ValidationError: The changes leave the license inconsistent.
        """
        if lic.status != LicenseStatus.ACTIVE:
            raise InvalidTransition(
                f"Only ACTIVE licenses can be amended; {lic.id} is {lic.status.value}"
            )

        owners = self.ledger.get_owners(lic.ip_asset_id, ctx.today)
        owner_ids = {o.creator_id for o in owners}
        allowed = (
            actor.role == ActorRole.ADMIN
            or (actor.role == ActorRole.BRAND and actor.id == lic.brand_id)
            or (actor.role == ActorRole.CREATOR and actor.id in owner_ids)
        )
        if not allowed:
            raise Forbidden(f"{actor.id} may not amend license {lic.id}")

        before = snapshot(lic, sorted(changes))
        after = {k: v for k, v in changes.items() if before.get(k) != v}
        if not after:
            raise ValidationError("Proposed values are identical to the current terms")
        before = {k: before[k] for k in after}
        if "end_date" in after and date.fromisoformat(after["end_date"]) <= lic.start_date:
            raise ValidationError("end_date must be after start_date")

        for pending in ctx.session.amendments_for(lic.id, AmendmentStatus.PROPOSED):
            pending.status = AmendmentStatus.SUPERSEDED
            pending.resolved_at = ctx.now
            ctx.session.update_amendment_status(pending)
            logger.info("Amendment %s superseded", pending.id)

        approvals = [Approval(approver_id=lic.brand_id, role=ActorRole.BRAND)]
        for owner in owners:
            if owner.creator_id not in {a.approver_id for a in approvals}:
                approvals.append(Approval(approver_id=owner.creator_id, role=ActorRole.CREATOR))
        for approval in approvals:
            if approval.approver_id == actor.id and approval.role == actor.role:
                approval.decision = Decision.APPROVED
                approval.decided_at = ctx.now

        amendment = Amendment(
            id=str(uuid.uuid4()),
            license_id=lic.id,
            number=ctx.session.next_amendment_number(lic.id),
            amendment_type=amendment_type,
            status=AmendmentStatus.PROPOSED,
            proposed_by=actor.id,
            proposed_by_role=actor.role,
            justification=justification,
            before_values=before,
            after_values=after,
            approval_deadline=ctx.now + timedelta(days=deadline_days),
            created_at=ctx.now,
            approvals=approvals,
        )
        ctx.session.insert_amendment(amendment)
        ctx.emit(
            EventName.AMENDMENT_PROPOSED,
            lic.id,
            amendment_id=amendment.id,
            number=amendment.number,
            fields=amendment.fields_changed,
            approvers=[a.approver_id for a in approvals],
        )
        logger.info(
            "Amendment #%d proposed on %s by %s: %s",
            amendment.number,
            lic.id,
            actor.id,
            ", ".join(amendment.fields_changed),
        )

        if reduce_approvals(approvals) == Decision.APPROVED:
            self._apply(ctx, amendment, lic)
        return amendment

    def expire_if_overdue(self, ctx: OperationContext, amendment: Amendment) -> bool:
        """Reject a PROPOSED amendment whose deadline has passed."""
        if amendment.status != AmendmentStatus.PROPOSED or ctx.now <= amendment.approval_deadline:
            return False
        amendment.status = AmendmentStatus.REJECTED
        amendment.resolved_at = ctx.now
        ctx.session.update_amendment_status(amendment)
        ctx.emit(
            EventName.AMENDMENT_RESOLVED,
            amendment.license_id,
            amendment_id=amendment.id,
            status=amendment.status.value,
            reason="approval deadline passed",
        )
        logger.warning(
            "Amendment %s on %s expired at its deadline", amendment.id, amendment.license_id
        )
        return True

    def record_approval(
        self,
        ctx: OperationContext,
        amendment: Amendment,
        actor: Actor,
        decision: Decision,
        comments: Optional[str] = None,
    ) -> Amendment:
        """Record one approver's decision and resolve the amendment if possible."""
        if amendment.status != AmendmentStatus.PROPOSED:
            raise InvalidTransition(
                f"Amendment {amendment.id} is already {amendment.status.value}"
            )
        slot = next(
            (
                a
                for a in amendment.approvals
                if a.approver_id == actor.id and a.role == actor.role
            ),
            None,
        )
        if slot is None:
            raise Forbidden(f"{actor.id} is not a required approver of amendment {amendment.id}")

        slot.decision = decision
        slot.decided_at = ctx.now
        slot.comments = comments
        ctx.session.update_approval("amendment", amendment.id, slot)

        outcome = reduce_approvals(amendment.approvals)
        if outcome == Decision.REJECTED:
            amendment.status = AmendmentStatus.REJECTED
            amendment.resolved_at = ctx.now
            ctx.session.update_amendment_status(amendment)
            ctx.emit(
                EventName.AMENDMENT_RESOLVED,
                amendment.license_id,
                amendment_id=amendment.id,
                status=amendment.status.value,
                rejected_by=actor.id,
            )
            logger.info("Amendment %s rejected by %s", amendment.id, actor.id)
        elif outcome == Decision.APPROVED:
            lic = ctx.session.get_license(amendment.license_id)
            self._apply(ctx, amendment, lic)
        return amendment

    def _apply(self, ctx: OperationContext, amendment: Amendment, lic: License) -> None:
        if lic.status not in OCCUPYING_STATUSES:
            raise InvalidTransition(
                f"License {lic.id} is {lic.status.value}; amendment cannot be applied"
            )
        old_fee = lic.fee_amount
        apply_values(lic, amendment.after_values)
        if lic.end_date <= lic.start_date:
            raise ValidationError("end_date must be after start_date")

        if RECHECK_FIELDS & set(amendment.after_values):
            blocking = self.detector.check_license(ctx.session, lic).blocking()
            if blocking:
                raise ConflictDetected(blocking)

        lic.amendment_count += 1
        lic.updated_at = ctx.now
        ctx.session.update_license(lic)

        amendment.status = AmendmentStatus.APPROVED
        amendment.resolved_at = ctx.now
        ctx.session.update_amendment_status(amendment)

        ctx.emit(
            EventName.AMENDMENT_RESOLVED,
            lic.id,
            amendment_id=amendment.id,
            status=amendment.status.value,
            fields=amendment.fields_changed,
        )
        if lic.fee_amount != old_fee:
            ctx.bill(lic, lic.fee_amount, "amendment", amendment.id)
        if "end_date" in amendment.after_values:
            supersede_pending_offers(ctx, lic.id, "license end date changed")
            self.state_machine.reactivate_if_outside_window(ctx, lic)
        logger.info(
            "Amendment #%d applied to %s (%s)",
            amendment.number,
            lic.id,
            ", ".join(amendment.fields_changed),
        )
