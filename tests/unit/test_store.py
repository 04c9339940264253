"""Unit tests for the SQLite store."""

import sqlite3
from datetime import UTC, date, datetime

import pytest

from licensing_engine.models import (
    ActorRole,
    License,
    LicenseScope,
    LicenseStatus,
    LicenseType,
    StatusHistoryEntry,
)
from licensing_engine.store import StaleWriteError, is_contention_error

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


def _license(license_id: str = "lic-1", **overrides) -> License:
    fields = dict(
        id=license_id,
        ip_asset_id="asset-1",
        brand_id="acme",
        license_type=LicenseType.EXCLUSIVE,
        status=LicenseStatus.ACTIVE,
        start_date=date(2025, 1, 1),
        end_date=date(2025, 7, 1),
        fee_amount=100_000,
        rev_share_bps=500,
        scope=LicenseScope(media=["digital"], territories=["US"]),
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return License(**fields)


def _entry(license_id: str, to_status: LicenseStatus) -> StatusHistoryEntry:
    return StatusHistoryEntry(
        license_id=license_id,
        sequence=0,
        from_status=None,
        to_status=to_status,
        event="CREATE",
        actor_id="acme",
        actor_role=ActorRole.BRAND,
        at=NOW,
    )


class TestLicenses:
    """Test license persistence."""

    def test_insert_and_get(self, store):
        with store.transaction() as session:
            session.insert_license(_license())

        with store.reader() as session:
            lic = session.get_license("lic-1")

        assert lic == _license()
        assert lic.scope.territories == ["US"]

    def test_get_missing_returns_none(self, store):
        with store.reader() as session:
            assert session.get_license("nope") is None

    def test_update_bumps_version(self, store):
        with store.transaction() as session:
            session.insert_license(_license())

        with store.transaction() as session:
            lic = session.get_license("lic-1")
            lic.fee_amount = 200_000
            session.update_license(lic)
            assert lic.version == 2

        with store.reader() as session:
            stored = session.get_license("lic-1")
        assert stored.fee_amount == 200_000
        assert stored.version == 2

    def test_stale_update_is_refused(self, store):
        """Test that writing an outdated copy raises StaleWriteError."""
        with store.transaction() as session:
            session.insert_license(_license())

        with store.reader() as session:
            stale = session.get_license("lic-1")

        with store.transaction() as session:
            fresh = session.get_license("lic-1")
            fresh.status = LicenseStatus.SUSPENDED
            session.update_license(fresh)

        with pytest.raises(StaleWriteError):
            with store.transaction() as session:
                stale.status = LicenseStatus.TERMINATED
                session.update_license(stale)

        with store.reader() as session:
            assert session.get_license("lic-1").status == LicenseStatus.SUSPENDED

    def test_transaction_rolls_back_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as session:
                session.insert_license(_license())
                raise RuntimeError("boom")

        with store.reader() as session:
            assert session.get_license("lic-1") is None

    def test_end_must_follow_start(self, store):
        with pytest.raises(sqlite3.IntegrityError):
            with store.transaction() as session:
                session.insert_license(_license(end_date=date(2025, 1, 1)))

    def test_licenses_for_asset_filters_status_and_excludes(self, store):
        with store.transaction() as session:
            session.insert_license(_license("a"))
            session.insert_license(_license("b", status=LicenseStatus.EXPIRED))
            session.insert_license(_license("c", status=LicenseStatus.PENDING_APPROVAL))

        with store.reader() as session:
            found = session.licenses_for_asset(
                "asset-1",
                {LicenseStatus.ACTIVE, LicenseStatus.PENDING_APPROVAL},
                exclude_id="c",
            )
        assert [lic.id for lic in found] == ["a"]

    def test_sweep_queries(self, store):
        with store.transaction() as session:
            session.insert_license(_license("ended", end_date=date(2025, 3, 1)))
            session.insert_license(_license("soon", end_date=date(2025, 3, 20)))
            session.insert_license(_license("later", end_date=date(2025, 9, 1)))

        today = date(2025, 3, 1)
        with store.reader() as session:
            assert session.ids_ended({LicenseStatus.ACTIVE}, today) == ["ended"]
            assert session.ids_ending_between(
                LicenseStatus.ACTIVE, today, date(2025, 3, 31)
            ) == ["soon"]


class TestStatusHistory:
    """Test the append-only audit trail."""

    def test_sequence_numbers_are_assigned(self, store):
        with store.transaction() as session:
            session.insert_license(_license())
            first = session.append_history(_entry("lic-1", LicenseStatus.DRAFT))
            second = session.append_history(_entry("lic-1", LicenseStatus.PENDING_APPROVAL))

        assert (first.sequence, second.sequence) == (1, 2)
        with store.reader() as session:
            history = session.history_for("lic-1")
        assert [h.to_status for h in history] == [
            LicenseStatus.DRAFT,
            LicenseStatus.PENDING_APPROVAL,
        ]

    def test_history_cannot_be_updated(self, store):
        with store.transaction() as session:
            session.insert_license(_license())
            session.append_history(_entry("lic-1", LicenseStatus.DRAFT))

        with pytest.raises(sqlite3.IntegrityError, match="append-only"):
            with store.transaction() as session:
                session.conn.execute("UPDATE status_history SET reason = 'edited'")

    def test_history_cannot_be_deleted(self, store):
        with store.transaction() as session:
            session.insert_license(_license())
            session.append_history(_entry("lic-1", LicenseStatus.DRAFT))

        with pytest.raises(sqlite3.IntegrityError, match="append-only"):
            with store.transaction() as session:
                session.conn.execute("DELETE FROM status_history")


def test_contention_errors():
    assert is_contention_error(StaleWriteError("x"))
    assert is_contention_error(sqlite3.OperationalError("database is locked"))
    assert not is_contention_error(sqlite3.OperationalError("no such table: x"))
    assert not is_contention_error(ValueError("locked"))


def test_info(store):
    with store.transaction() as session:
        session.insert_license(_license())

    info = store.info()

    assert info["path"] == str(store.db_path)
    assert info["licenses"] == 1
    assert info["size_bytes"] > 0
