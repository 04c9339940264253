"""License state machine.

The legal transitions live in one table. Every status change goes through
LicenseStateMachine.apply(), which checks the table and the actor's role,
re-runs the conflict detector inside the open transaction when a license
starts occupying its scope, writes the license, appends a status-history
row and queues the matching domain events.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from licensing_engine.config import LifecycleConfig
from licensing_engine.conflicts import ConflictDetector
from licensing_engine.context import OperationContext
from licensing_engine.errors import (
    ConflictDetected,
    Forbidden,
    InvalidTransition,
    ValidationError,
)
from licensing_engine.events.base import EventName
from licensing_engine.models import (
    OCCUPYING_STATUSES,
    Actor,
    ActorRole,
    Approval,
    Decision,
    License,
    LicenseStatus,
    StatusHistoryEntry,
    reduce_approvals,
)
from licensing_engine.ownership.base import OwnershipLedger

logger = logging.getLogger(__name__)

S = LicenseStatus


class LicenseEvent(str, Enum):
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    REQUEST_SIGNATURE = "REQUEST_SIGNATURE"
    SIGN = "SIGN"
    REJECT = "REJECT"
    CANCEL = "CANCEL"
    MARK_EXPIRING = "MARK_EXPIRING"
    EXPIRE = "EXPIRE"
    RENEW = "RENEW"
    REACTIVATE = "REACTIVATE"
    TERMINATE = "TERMINATE"
    DISPUTE = "DISPUTE"
    RESOLVE = "RESOLVE"
    SUSPEND = "SUSPEND"
    REINSTATE = "REINSTATE"


# Marker event for the first history row of a license.
CREATE_EVENT = "CREATE"


@dataclass(frozen=True)
class Transition:
    sources: frozenset[LicenseStatus]
    target: LicenseStatus


TRANSITIONS: dict[LicenseEvent, Transition] = {
    LicenseEvent.SUBMIT: Transition(frozenset({S.DRAFT}), S.PENDING_APPROVAL),
    LicenseEvent.APPROVE: Transition(frozenset({S.PENDING_APPROVAL}), S.ACTIVE),
    LicenseEvent.REQUEST_SIGNATURE: Transition(
        frozenset({S.PENDING_APPROVAL}), S.PENDING_SIGNATURE
    ),
    LicenseEvent.SIGN: Transition(frozenset({S.PENDING_SIGNATURE}), S.ACTIVE),
    LicenseEvent.REJECT: Transition(
        frozenset({S.PENDING_APPROVAL, S.PENDING_SIGNATURE}), S.DRAFT
    ),
    LicenseEvent.CANCEL: Transition(
        frozenset({S.DRAFT, S.PENDING_APPROVAL, S.PENDING_SIGNATURE}), S.CANCELED
    ),
    LicenseEvent.MARK_EXPIRING: Transition(frozenset({S.ACTIVE}), S.EXPIRING_SOON),
    LicenseEvent.EXPIRE: Transition(frozenset({S.ACTIVE, S.EXPIRING_SOON}), S.EXPIRED),
    LicenseEvent.RENEW: Transition(frozenset({S.EXPIRED}), S.RENEWED),
    LicenseEvent.REACTIVATE: Transition(frozenset({S.EXPIRING_SOON}), S.ACTIVE),
    LicenseEvent.TERMINATE: Transition(
        frozenset(
            {S.ACTIVE, S.EXPIRING_SOON, S.PENDING_APPROVAL, S.DISPUTED, S.SUSPENDED}
        ),
        S.TERMINATED,
    ),
    LicenseEvent.DISPUTE: Transition(
        frozenset({S.ACTIVE, S.EXPIRING_SOON, S.SUSPENDED}), S.DISPUTED
    ),
    LicenseEvent.RESOLVE: Transition(frozenset({S.DISPUTED}), S.ACTIVE),
    LicenseEvent.SUSPEND: Transition(
        frozenset({S.ACTIVE, S.EXPIRING_SOON, S.DISPUTED}), S.SUSPENDED
    ),
    LicenseEvent.REINSTATE: Transition(frozenset({S.SUSPENDED}), S.ACTIVE),
}

TERMINAL_STATUSES = frozenset({S.RENEWED, S.TERMINATED, S.CANCELED})

REASON_REQUIRED = frozenset(
    {LicenseEvent.TERMINATE, LicenseEvent.DISPUTE, LicenseEvent.SUSPEND}
)

# Events only the engine itself may trigger directly.
SYSTEM_EVENTS = frozenset(
    {
        LicenseEvent.APPROVE,
        LicenseEvent.REQUEST_SIGNATURE,
        LicenseEvent.REJECT,
        LicenseEvent.MARK_EXPIRING,
        LicenseEvent.EXPIRE,
        LicenseEvent.RENEW,
        LicenseEvent.REACTIVATE,
    }
)
ADMIN_EVENTS = frozenset(
    {LicenseEvent.RESOLVE, LicenseEvent.SUSPEND, LicenseEvent.REINSTATE}
)


def next_status(status: LicenseStatus, event: LicenseEvent) -> LicenseStatus:
    """Look up the target status, or raise InvalidTransition."""
    transition = TRANSITIONS[event]
    if status not in transition.sources:
        raise InvalidTransition(f"Cannot {event.value} a license in status {status.value}")
    return transition.target


def legal_events(status: LicenseStatus) -> list[LicenseEvent]:
    return [e for e, t in TRANSITIONS.items() if status in t.sources]


def validate_reason(
    event: LicenseEvent, reason: Optional[str], config: LifecycleConfig
) -> Optional[str]:
    """Normalize and check the reason an event requires.

    Raises:
        ValidationError: If a required reason is missing or a termination
            reason falls outside the configured length bounds.
    """
    reason = reason.strip() if reason else None
    if event in REASON_REQUIRED and not reason:
        raise ValidationError(f"A reason is required to {event.value.lower()} a license")
    if event == LicenseEvent.TERMINATE:
        low = config.termination_reason_min_length
        high = config.termination_reason_max_length
        if not low <= len(reason) <= high:
            raise ValidationError(
                f"Termination reason must be between {low} and {high} characters"
            )
    return reason


class LicenseStateMachine:
    """Applies transitions to licenses inside an open operation context."""

    def __init__(
        self,
        detector: ConflictDetector,
        ledger: OwnershipLedger,
        config: Optional[LifecycleConfig] = None,
    ) -> None:
        self.detector = detector
        self.ledger = ledger
        self.config = config or LifecycleConfig()

    def authorize(self, ctx: OperationContext, lic: License, event: LicenseEvent, actor: Actor) -> None:
        """Raise Forbidden unless the actor may trigger `event` on `lic`."""
        role = actor.role
        is_brand = role == ActorRole.BRAND and actor.id == lic.brand_id
        is_admin = role == ActorRole.ADMIN

        if event in SYSTEM_EVENTS:
            allowed = role == ActorRole.SYSTEM
        elif event in ADMIN_EVENTS:
            allowed = is_admin
        elif event in (LicenseEvent.SUBMIT, LicenseEvent.CANCEL):
            allowed = is_brand or is_admin
        elif event == LicenseEvent.SIGN:
            allowed = is_brand
        elif event == LicenseEvent.TERMINATE:
            allowed = is_brand or is_admin or self._is_owner(ctx, lic, actor)
        elif event == LicenseEvent.DISPUTE:
            allowed = is_brand or self._is_owner(ctx, lic, actor)
        else:
            allowed = False

        if not allowed:
            raise Forbidden(
                f"{role.value} {actor.id} may not {event.value} license {lic.id}"
            )

    def _is_owner(self, ctx: OperationContext, lic: License, actor: Actor) -> bool:
        return actor.role == ActorRole.CREATOR and self.ledger.is_owner(
            lic.ip_asset_id, actor.id, ctx.today
        )

    def record_creation(self, ctx: OperationContext, lic: License, actor: Actor) -> None:
        """Write the opening history row of a new license."""
        ctx.session.append_history(
            StatusHistoryEntry(
                license_id=lic.id,
                sequence=0,
                from_status=None,
                to_status=lic.status,
                event=CREATE_EVENT,
                actor_id=actor.id,
                actor_role=actor.role,
                at=ctx.now,
            )
        )

    def apply(
        self,
        ctx: OperationContext,
        lic: License,
        event: LicenseEvent,
        actor: Actor,
        reason: Optional[str] = None,
        check_roles: bool = True,
    ) -> License:
        """Move `lic` along `event` and persist the change.

        Args:
            ctx: Open operation context.
            lic: License as read inside ctx.session.
            event: Transition to apply.
            actor: Who triggers it; recorded in history.
            reason: Free-text reason, required for some events.
            check_roles: False when the engine drives the transition on
                behalf of a completed approval or a sweep.

        Returns:
            The updated license.

        Raises:
            InvalidTransition: Event not legal from the current status.
            Forbidden: Actor lacks the required role.
            ConflictDetected: Activation would violate exclusivity.
            ValidationError: Missing or malformed reason.
        """
        reason = validate_reason(event, reason, self.config)
        previous = lic.status
        target = next_status(previous, event)
        if check_roles:
            self.authorize(ctx, lic, event, actor)

        if target in OCCUPYING_STATUSES and previous not in OCCUPYING_STATUSES:
            blocking = self.detector.check_license(ctx.session, lic).blocking()
            if blocking:
                logger.warning(
                    "Refusing %s on %s: %d blocking conflict(s)",
                    event.value,
                    lic.id,
                    len(blocking),
                )
                raise ConflictDetected(blocking)

        if event == LicenseEvent.SUBMIT:
            self._open_owner_approvals(ctx, lic)

        lic.status = target
        lic.updated_at = ctx.now
        if event == LicenseEvent.SIGN:
            lic.signed_at = ctx.now
        if target == S.TERMINATED:
            lic.terminated_at = ctx.now
            lic.termination_reason = reason

        ctx.session.update_license(lic)
        ctx.session.append_history(
            StatusHistoryEntry(
                license_id=lic.id,
                sequence=0,
                from_status=previous,
                to_status=target,
                event=event.value,
                actor_id=actor.id,
                actor_role=actor.role,
                at=ctx.now,
                reason=reason,
            )
        )
        logger.info(
            "License %s %s -> %s (%s by %s)",
            lic.id,
            previous.value,
            target.value,
            event.value,
            actor.id,
        )

        self._after_transition(ctx, lic, previous, event)
        return lic

    def _after_transition(
        self,
        ctx: OperationContext,
        lic: License,
        previous: LicenseStatus,
        event: LicenseEvent,
    ) -> None:
        target = lic.status
        if event == LicenseEvent.SUBMIT:
            ctx.emit(
                EventName.LICENSE_PROPOSED,
                lic.id,
                brand_id=lic.brand_id,
                ip_asset_id=lic.ip_asset_id,
                fee_amount=lic.fee_amount,
            )
        elif target == S.ACTIVE and previous not in OCCUPYING_STATUSES:
            ctx.emit(
                EventName.LICENSE_ACTIVATED,
                lic.id,
                brand_id=lic.brand_id,
                start_date=lic.start_date.isoformat(),
                end_date=lic.end_date.isoformat(),
            )
            if event in (LicenseEvent.APPROVE, LicenseEvent.SIGN):
                ctx.bill(lic, lic.fee_amount, "activation")
                self._renew_expired_parent(ctx, lic)
        elif target == S.EXPIRING_SOON:
            ctx.emit(
                EventName.LICENSE_EXPIRING_SOON,
                lic.id,
                end_date=lic.end_date.isoformat(),
            )
        elif target == S.EXPIRED:
            ctx.emit(EventName.LICENSE_EXPIRED, lic.id, end_date=lic.end_date.isoformat())
            self.renew_if_succeeded(ctx, lic)
        elif target == S.RENEWED:
            ctx.emit(EventName.LICENSE_RENEWED, lic.id)
        elif target == S.TERMINATED:
            ctx.emit(
                EventName.LICENSE_TERMINATED,
                lic.id,
                reason=lic.termination_reason,
                previous_status=previous.value,
            )

    def _renew_expired_parent(self, ctx: OperationContext, child: License) -> None:
        if child.parent_license_id is None:
            return
        parent = ctx.session.get_license(child.parent_license_id)
        if parent is not None and parent.status == S.EXPIRED:
            self.apply(ctx, parent, LicenseEvent.RENEW, Actor.system(), check_roles=False)

    def renew_if_succeeded(self, ctx: OperationContext, lic: License) -> bool:
        """Move an EXPIRED license to RENEWED if a child already holds the scope."""
        if lic.status != S.EXPIRED:
            return False
        if any(c.status in OCCUPYING_STATUSES for c in ctx.session.children_of(lic.id)):
            self.apply(ctx, lic, LicenseEvent.RENEW, Actor.system(), check_roles=False)
            return True
        return False

    def reactivate_if_outside_window(self, ctx: OperationContext, lic: License) -> bool:
        """Move an EXPIRING_SOON license back to ACTIVE once its end moved out."""
        if lic.status != S.EXPIRING_SOON:
            return False
        if lic.days_until_end(ctx.today) <= self.config.expiring_soon_days:
            return False
        self.apply(ctx, lic, LicenseEvent.REACTIVATE, Actor.system(), check_roles=False)
        return True

    # ------------------------------------------------------------------
    # Owner approval of a submitted license
    # ------------------------------------------------------------------

    def _open_owner_approvals(self, ctx: OperationContext, lic: License) -> None:
        owners = self.ledger.get_owners(lic.ip_asset_id, ctx.today)
        if not owners:
            raise ValidationError(f"Asset {lic.ip_asset_id} has no registered owners")
        ctx.session.replace_approvals(
            "license",
            lic.id,
            [Approval(approver_id=o.creator_id, role=ActorRole.CREATOR) for o in owners],
        )

    def record_owner_decision(
        self,
        ctx: OperationContext,
        lic: License,
        actor: Actor,
        decision: Decision,
        comments: Optional[str] = None,
    ) -> License:
        """Record one owner's decision on a submitted license.

        Any rejection sends the license back to DRAFT. Once every owner has
        approved it moves to PENDING_SIGNATURE or ACTIVE.
        """
        if lic.status != S.PENDING_APPROVAL:
            raise InvalidTransition(
                f"License {lic.id} is {lic.status.value}, not awaiting owner approval"
            )
        approvals = ctx.session.approvals_for("license", lic.id)
        slot = next((a for a in approvals if a.approver_id == actor.id), None)
        if slot is None or actor.role != ActorRole.CREATOR:
            raise Forbidden(f"{actor.id} is not a required approver of license {lic.id}")

        slot.decision = decision
        slot.decided_at = ctx.now
        slot.comments = comments
        ctx.session.update_approval("license", lic.id, slot)
        logger.info("Owner %s %s license %s", actor.id, decision.value.lower(), lic.id)

        outcome = reduce_approvals(approvals)
        if outcome == Decision.REJECTED:
            return self.apply(
                ctx, lic, LicenseEvent.REJECT, actor, reason=comments, check_roles=False
            )
        if outcome == Decision.APPROVED:
            event = (
                LicenseEvent.REQUEST_SIGNATURE
                if lic.signature_required
                else LicenseEvent.APPROVE
            )
            return self.apply(ctx, lic, event, actor, check_roles=False)
        return lic
