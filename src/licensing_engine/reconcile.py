"""Idempotent lifecycle sweep.

The sweep reads the "due" sets without a lock, then handles each item in
its own transaction, re-reading and re-checking it under the write lock.
An item another process already advanced is skipped, so concurrent sweeps
and user-triggered transitions are safe.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, TypeVar

from licensing_engine.amendments import AmendmentWorkflow
from licensing_engine.config import LifecycleConfig
from licensing_engine.context import OperationContext
from licensing_engine.extensions import ExtensionWorkflow
from licensing_engine.lifecycle import LicenseEvent, LicenseStateMachine
from licensing_engine.models import (
    OCCUPYING_STATUSES,
    Actor,
    LicenseStatus,
    ReconciliationReport,
)
from licensing_engine.renewals import RenewalOrchestrator
from licensing_engine.store import LicenseStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
Runner = Callable[[Callable[[OperationContext], T], Optional[datetime]], T]


class Reconciler:
    """Moves licenses, offers, amendments and extensions along with time.

    Auto-renewing licenses close to their end get an AUTOMATIC renewal
    offer that is accepted on the brand's behalf.
    """

    def __init__(
        self,
        store: LicenseStore,
        run: Runner,
        state_machine: LicenseStateMachine,
        amendments: AmendmentWorkflow,
        extensions: ExtensionWorkflow,
        renewals: RenewalOrchestrator,
        config: Optional[LifecycleConfig] = None,
    ) -> None:
        self.store = store
        self.run = run
        self.state_machine = state_machine
        self.amendments = amendments
        self.extensions = extensions
        self.renewals = renewals
        self.config = config or LifecycleConfig()

    def reconcile(self, now: datetime) -> ReconciliationReport:
        """Run one sweep as of `now`. Failures are reported, not raised."""
        report = ReconciliationReport()
        today = now.date()
        horizon = today + timedelta(days=self.config.expiring_soon_days)
        draft_cutoff = now - timedelta(days=self.config.abandoned_draft_days)
        auto_horizon = today + timedelta(days=self.renewals.config.auto_renew_days_before)

        with self.store.reader() as session:
            due_expired = session.ids_ended(set(OCCUPYING_STATUSES), today)
            due_expiring = session.ids_ending_between(LicenseStatus.ACTIVE, today, horizon)
            due_auto = session.auto_renew_ids_ending_between(today, auto_horizon)
            due_offers = session.overdue_offers(now)
            due_amendments = session.overdue_amendments(now)
            due_extensions = session.overdue_extensions(now)
            due_drafts = session.draft_ids_created_before(draft_cutoff)

        self._each(report, report.expired, due_expired, self._expire, now)
        self._each(report, report.marked_expiring, due_expiring, self._mark_expiring, now)
        self._each(report, report.auto_renewed, due_auto, self._auto_renew, now)

        with self.store.reader() as session:
            due_renewed = session.expired_ids_with_active_child()
        self._each(report, report.renewed, due_renewed, self._renew, now)

        self._each(report, report.expired_offers, [i for i, _ in due_offers], self._expire_offer, now)
        self._each(
            report,
            report.rejected_amendments,
            [i for i, _ in due_amendments],
            self._expire_amendment,
            now,
        )
        self._each(
            report,
            report.expired_extensions,
            [i for i, _ in due_extensions],
            self._expire_extension,
            now,
        )
        self._each(report, report.canceled_drafts, due_drafts, self._cancel_draft, now)

        logger.info(
            "Sweep at %s: %d item(s) processed, %d error(s)",
            now.isoformat(),
            report.processed,
            len(report.errors),
        )
        return report

    def _each(
        self,
        report: ReconciliationReport,
        bucket: list[str],
        ids: list[str],
        step: Callable[[OperationContext, str], bool],
        now: datetime,
    ) -> None:
        for item_id in ids:
            try:
                changed = self.run(lambda ctx, item_id=item_id: step(ctx, item_id), now)
            except Exception as e:
                logger.error("Sweep step %s failed for %s: %s", step.__name__, item_id, e)
                report.errors.append(f"{item_id}: {e}")
                continue
            if changed:
                bucket.append(item_id)

    def _expire(self, ctx: OperationContext, license_id: str) -> bool:
        lic = ctx.session.get_license(license_id)
        if lic is None or lic.status not in OCCUPYING_STATUSES or lic.end_date > ctx.today:
            return False
        self.state_machine.apply(ctx, lic, LicenseEvent.EXPIRE, Actor.system())
        return True

    def _mark_expiring(self, ctx: OperationContext, license_id: str) -> bool:
        lic = ctx.session.get_license(license_id)
        if lic is None or lic.status != LicenseStatus.ACTIVE:
            return False
        if not 0 < lic.days_until_end(ctx.today) <= self.config.expiring_soon_days:
            return False
        self.state_machine.apply(ctx, lic, LicenseEvent.MARK_EXPIRING, Actor.system())
        return True

    def _renew(self, ctx: OperationContext, license_id: str) -> bool:
        lic = ctx.session.get_license(license_id)
        return lic is not None and self.state_machine.renew_if_succeeded(ctx, lic)

    def _auto_renew(self, ctx: OperationContext, license_id: str) -> bool:
        lic = ctx.session.get_license(license_id)
        return lic is not None and self.renewals.auto_renew(ctx, lic) is not None

    def _expire_offer(self, ctx: OperationContext, offer_id: str) -> bool:
        offer = ctx.session.get_offer(offer_id)
        return offer is not None and self.renewals.expire_if_overdue(ctx, offer)

    def _expire_amendment(self, ctx: OperationContext, amendment_id: str) -> bool:
        amendment = ctx.session.get_amendment(amendment_id)
        return amendment is not None and self.amendments.expire_if_overdue(ctx, amendment)

    def _expire_extension(self, ctx: OperationContext, extension_id: str) -> bool:
        extension = ctx.session.get_extension(extension_id)
        return extension is not None and self.extensions.expire_if_overdue(ctx, extension)

    def _cancel_draft(self, ctx: OperationContext, license_id: str) -> bool:
        lic = ctx.session.get_license(license_id)
        if lic is None or lic.status != LicenseStatus.DRAFT:
            return False
        self.state_machine.apply(
            ctx,
            lic,
            LicenseEvent.CANCEL,
            Actor.system(),
            reason="Abandoned draft",
            check_roles=False,
        )
        return True
