"""Unit tests for portfolio statistics."""

from datetime import date

from licensing_engine.models import (
    Actor,
    ActorRole,
    LicenseScope,
    LicenseType,
)

BRAND = Actor("acme", ActorRole.BRAND)
RIVAL = Actor("globex", ActorRole.BRAND)
ALICE = Actor("alice", ActorRole.CREATOR)
BOB = Actor("bob", ActorRole.CREATOR)


def test_empty_portfolio(engine):
    stats = engine.get_stats()

    assert stats.total == 0
    assert stats.by_status == {}
    assert stats.average_active_duration_days == 0
    assert stats.renewal_rate == 0.0


def test_portfolio_counts(engine, activate, propose):
    activate(end=date(2025, 3, 1), fee=100_000)
    propose(
        brand=RIVAL,
        license_type=LicenseType.NON_EXCLUSIVE,
        start=date(2025, 3, 1),
        end=date(2025, 6, 1),
    )
    activate(
        license_type=LicenseType.EXCLUSIVE_TERRITORY,
        start=date(2025, 6, 1),
        end=date(2025, 12, 1),
        fee=300_000,
        scope=LicenseScope(territories=["US"]),
    )

    stats = engine.get_stats()

    assert stats.total == 3
    assert stats.by_status == {"ACTIVE": 2, "PENDING_APPROVAL": 1}
    assert stats.total_active == 2
    assert (
        stats.exclusive_licenses,
        stats.non_exclusive_licenses,
        stats.territory_exclusive_licenses,
    ) == (1, 1, 1)
    assert stats.active_fee_total == 400_000
    assert stats.expiring_in_30_days == 0
    assert stats.expiring_in_60_days == 1
    assert stats.expiring_in_90_days == 1
    assert stats.average_active_duration_days == 121


def test_filters(engine, activate, propose):
    activate(end=date(2025, 3, 1))
    propose(brand=RIVAL, start=date(2025, 3, 1), end=date(2025, 6, 1))

    assert engine.get_stats(brand_id="globex").total == 1
    assert engine.get_stats(ip_asset_id="asset-2").total == 0


def test_renewal_rate_follows_history(engine, activate, clock):
    parent = activate()
    clock.set_date(date(2025, 10, 18))
    offer = engine.generate_renewal_offer(parent.id, BRAND)
    child = engine.accept_renewal_offer(offer.id, BRAND)
    engine.approve(child.id, ALICE)
    engine.approve(child.id, BOB)
    clock.set_date(date(2026, 1, 1))
    engine.reconcile()

    stats = engine.get_stats()

    assert stats.by_status == {"ACTIVE": 1, "RENEWED": 1}
    assert stats.renewal_rate == 1.0
