from datetime import date

from licensing_engine.models import (
    Approval,
    ActorRole,
    Conflict,
    ConflictCheckResult,
    ConflictReason,
    Decision,
    License,
    LicenseScope,
    LicenseStatus,
    LicenseType,
    OwnershipRecord,
    OwnershipType,
    reduce_approvals,
)


def _license(**overrides) -> License:
    fields = dict(
        id="lic-1",
        ip_asset_id="asset-1",
        brand_id="acme",
        license_type=LicenseType.EXCLUSIVE,
        status=LicenseStatus.ACTIVE,
        start_date=date(2025, 1, 1),
        end_date=date(2025, 4, 1),
        fee_amount=100_000,
        rev_share_bps=0,
        scope=LicenseScope(),
    )
    fields.update(overrides)
    return License(**fields)


def _conflict(reason: ConflictReason, status: LicenseStatus) -> Conflict:
    return Conflict(
        license_id="other",
        reason=reason,
        details="",
        brand_id="globex",
        license_type=LicenseType.EXCLUSIVE,
        status=status,
        start_date=date(2025, 1, 1),
        end_date=date(2025, 2, 1),
    )


def test_license_interval_is_half_open():
    """Test that a license ending on a day does not overlap one starting that day."""
    lic = _license()
    assert lic.duration_days == 90
    assert lic.overlaps(date(2025, 3, 31), date(2025, 5, 1))
    assert not lic.overlaps(date(2025, 4, 1), date(2025, 5, 1))
    assert not lic.overlaps(date(2024, 12, 1), date(2025, 1, 1))


def test_days_until_end():
    lic = _license()
    assert lic.days_until_end(date(2025, 3, 2)) == 30
    assert lic.days_until_end(date(2025, 4, 3)) == -2


def test_scope_round_trips_through_dict_and_ignores_unknown_keys():
    scope = LicenseScope(media=["digital"], territories=["US", "CA"], exclusivity_category="Beverage")
    data = scope.to_dict()
    data["legacy_field"] = True
    assert LicenseScope.from_dict(data) == scope


def test_default_scope_is_global():
    assert LicenseScope().territories == ["GLOBAL"]


class TestReduceApprovals:
    """Test collapsing approval slots into one decision."""

    def test_any_rejection_wins(self):
        approvals = [
            Approval("alice", ActorRole.CREATOR, Decision.APPROVED),
            Approval("bob", ActorRole.CREATOR, Decision.REJECTED),
        ]
        assert reduce_approvals(approvals) == Decision.REJECTED

    def test_all_approved(self):
        approvals = [
            Approval("alice", ActorRole.CREATOR, Decision.APPROVED),
            Approval("bob", ActorRole.CREATOR, Decision.APPROVED),
        ]
        assert reduce_approvals(approvals) == Decision.APPROVED

    def test_partial_is_pending(self):
        approvals = [
            Approval("alice", ActorRole.CREATOR, Decision.APPROVED),
            Approval("bob", ActorRole.CREATOR),
        ]
        assert reduce_approvals(approvals) == Decision.PENDING

    def test_no_slots_is_pending(self):
        assert reduce_approvals([]) == Decision.PENDING


def test_only_hard_reasons_against_occupying_licenses_block():
    result = ConflictCheckResult(
        conflicts=[
            _conflict(ConflictReason.EXCLUSIVE_OVERLAP, LicenseStatus.ACTIVE),
            _conflict(ConflictReason.EXCLUSIVE_OVERLAP, LicenseStatus.PENDING_APPROVAL),
            _conflict(ConflictReason.DATE_OVERLAP, LicenseStatus.ACTIVE),
        ]
    )
    assert len(result.blocking()) == 1
    assert len(result.warnings()) == 2
    assert result.has_conflicts


def test_ownership_record_is_current():
    record = OwnershipRecord(
        id="r1",
        ip_asset_id="asset-1",
        creator_id="alice",
        share_bps=10_000,
        ownership_type=OwnershipType.PRIMARY,
        start_date=date(2025, 1, 1),
        end_date=date(2025, 6, 1),
    )
    assert record.is_current(date(2025, 1, 1))
    assert not record.is_current(date(2024, 12, 31))
    assert not record.is_current(date(2025, 6, 1))
