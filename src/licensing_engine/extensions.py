"""Extension workflow: pushing a license's end date forward."""

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from licensing_engine.config import ExtensionConfig
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
    OCCUPYING_STATUSES,
    Actor,
    ActorRole,
    Approval,
    Decision,
    Extension,
    ExtensionStatus,
    License,
    reduce_approvals,
)
from licensing_engine.ownership.base import OwnershipLedger
from licensing_engine.pricing import round_half_up
from licensing_engine.renewals import supersede_pending_offers

logger = logging.getLogger(__name__)


def extension_fee(lic: License, extension_days: int) -> int:
    """Pro-rata fee for the extra days at the license's current daily rate."""
    return round_half_up(Decimal(lic.fee_amount) * extension_days / lic.duration_days)


class ExtensionWorkflow:
    """Requests, approves and applies extensions inside an operation context."""

    def __init__(
        self,
        detector: ConflictDetector,
        ledger: OwnershipLedger,
        state_machine: LicenseStateMachine,
        config: Optional[ExtensionConfig] = None,
    ) -> None:
        self.detector = detector
        self.ledger = ledger
        self.state_machine = state_machine
        self.config = config or ExtensionConfig()

    def validate_days(self, extension_days: int) -> None:
        if not 1 <= extension_days <= self.config.max_days:
            raise ValidationError(
                f"extension_days must be between 1 and {self.config.max_days}"
            )

    def request(
        self,
        ctx: OperationContext,
        lic: License,
        extension_days: int,
        justification: str,
        actor: Actor,
    ) -> Extension:
        """Request an extension; short ones are approved and applied at once.

        Raises:
            Forbidden: Requester is not the license's brand or an admin.
            InvalidTransition: License is not ACTIVE or EXPIRING_SOON.
            ConflictDetected: A fast-path extension collides with another grant.
        """
        if not (
            actor.role == ActorRole.ADMIN
            or (actor.role == ActorRole.BRAND and actor.id == lic.brand_id)
        ):
            raise Forbidden(f"{actor.id} may not extend license {lic.id}")
        if lic.status not in OCCUPYING_STATUSES:
            raise InvalidTransition(
                f"Only active licenses can be extended; {lic.id} is {lic.status.value}"
            )

        new_end = lic.end_date + timedelta(days=extension_days)
        auto_approve = extension_days < self.config.auto_approve_threshold_days
        extension = Extension(
            id=str(uuid.uuid4()),
            license_id=lic.id,
            requested_by=actor.id,
            extension_days=extension_days,
            justification=justification,
            original_end_date=lic.end_date,
            new_end_date=new_end,
            additional_fee=extension_fee(lic, extension_days),
            approval_required=not auto_approve,
            status=ExtensionStatus.PENDING,
            approval_deadline=ctx.now + timedelta(days=self.config.approval_deadline_days),
            created_at=ctx.now,
        )

        if auto_approve:
            extension.approval_deadline = ctx.now
            self._check_conflicts(ctx, lic, extension)
            ctx.session.insert_extension(extension)
            ctx.emit(
                EventName.EXTENSION_REQUESTED,
                lic.id,
                extension_id=extension.id,
                extension_days=extension_days,
                additional_fee=extension.additional_fee,
                approvers=[],
            )
            self._apply(ctx, extension, lic)
            logger.info(
                "Extension of %s by %d day(s) auto-approved", lic.id, extension_days
            )
            return extension

        owners = self.ledger.get_owners(lic.ip_asset_id, ctx.today)
        if not owners:
            raise ValidationError(f"Asset {lic.ip_asset_id} has no registered owners")
        extension.approvals = [
            Approval(approver_id=o.creator_id, role=ActorRole.CREATOR) for o in owners
        ]
        ctx.session.insert_extension(extension)
        ctx.emit(
            EventName.EXTENSION_REQUESTED,
            lic.id,
            extension_id=extension.id,
            extension_days=extension_days,
            additional_fee=extension.additional_fee,
            approvers=[a.approver_id for a in extension.approvals],
        )
        logger.info(
            "Extension of %s by %d day(s) awaiting %d approval(s)",
            lic.id,
            extension_days,
            len(extension.approvals),
        )
        return extension

    def expire_if_overdue(self, ctx: OperationContext, extension: Extension) -> bool:
        """Expire a PENDING extension whose approval deadline has passed."""
        if extension.status != ExtensionStatus.PENDING or ctx.now <= extension.approval_deadline:
            return False
        extension.status = ExtensionStatus.EXPIRED
        extension.resolved_at = ctx.now
        ctx.session.update_extension_status(extension)
        ctx.emit(
            EventName.EXTENSION_RESOLVED,
            extension.license_id,
            extension_id=extension.id,
            status=extension.status.value,
        )
        logger.warning(
            "Extension %s on %s expired at its deadline", extension.id, extension.license_id
        )
        return True

    def record_approval(
        self,
        ctx: OperationContext,
        extension: Extension,
        actor: Actor,
        decision: Decision,
        comments: Optional[str] = None,
    ) -> Extension:
        """Record one owner's decision and resolve the extension if possible."""
        if extension.status != ExtensionStatus.PENDING:
            raise InvalidTransition(
                f"Extension {extension.id} is already {extension.status.value}"
            )
        slot = next(
            (
                a
                for a in extension.approvals
                if a.approver_id == actor.id and a.role == actor.role
            ),
            None,
        )
        if slot is None:
            raise Forbidden(f"{actor.id} is not a required approver of extension {extension.id}")

        slot.decision = decision
        slot.decided_at = ctx.now
        slot.comments = comments
        ctx.session.update_approval("extension", extension.id, slot)

        outcome = reduce_approvals(extension.approvals)
        if outcome == Decision.REJECTED:
            extension.status = ExtensionStatus.REJECTED
            extension.resolved_at = ctx.now
            extension.rejection_reason = comments
            ctx.session.update_extension_status(extension)
            ctx.emit(
                EventName.EXTENSION_RESOLVED,
                extension.license_id,
                extension_id=extension.id,
                status=extension.status.value,
                rejected_by=actor.id,
            )
            logger.info("Extension %s rejected by %s", extension.id, actor.id)
        elif outcome == Decision.APPROVED:
            lic = ctx.session.get_license(extension.license_id)
            if lic.end_date != extension.original_end_date:
                raise InvalidTransition(
                    f"License {lic.id} end date changed since extension {extension.id} "
                    "was requested"
                )
            self._check_conflicts(ctx, lic, extension)
            self._apply(ctx, extension, lic)
        return extension

    def _check_conflicts(self, ctx: OperationContext, lic: License, extension: Extension) -> None:
        result = self.detector.check(
            ctx.session,
            lic.ip_asset_id,
            lic.start_date,
            extension.new_end_date,
            lic.license_type,
            lic.scope,
            brand_id=lic.brand_id,
            exclude_license_id=lic.id,
        )
        blocking = result.blocking()
        if blocking:
            raise ConflictDetected(blocking)

    def _apply(self, ctx: OperationContext, extension: Extension, lic: License) -> None:
        if lic.status not in OCCUPYING_STATUSES:
            raise InvalidTransition(
                f"License {lic.id} is {lic.status.value}; extension cannot be applied"
            )
        lic.end_date = extension.new_end_date
        lic.fee_amount += extension.additional_fee
        lic.extension_count += 1
        lic.updated_at = ctx.now
        ctx.session.update_license(lic)

        extension.status = ExtensionStatus.APPROVED
        extension.resolved_at = ctx.now
        ctx.session.update_extension_status(extension)

        ctx.emit(
            EventName.EXTENSION_RESOLVED,
            lic.id,
            extension_id=extension.id,
            status=extension.status.value,
            new_end_date=extension.new_end_date.isoformat(),
        )
        if extension.additional_fee:
            ctx.bill(lic, extension.additional_fee, "extension", extension.id)

        supersede_pending_offers(ctx, lic.id, "license end date changed")
        self.state_machine.reactivate_if_outside_window(ctx, lic)
