"""Pytest configuration and fixtures."""

from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Callable

import pytest

from licensing_engine.config import EngineConfig
from licensing_engine.events.outbox import OutboxSink
from licensing_engine.models import (
    Actor,
    ActorRole,
    License,
    LicenseScope,
    LicenseType,
)
from licensing_engine.service import LicensingEngine
from licensing_engine.store import LicenseStore

ASSET = "asset-1"
BRAND = Actor(id="acme", role=ActorRole.BRAND)
RIVAL = Actor(id="globex", role=ActorRole.BRAND)
ALICE = Actor(id="alice", role=ActorRole.CREATOR)
BOB = Actor(id="bob", role=ActorRole.CREATOR)
ADMIN = Actor(id="root", role=ActorRole.ADMIN)


class FakeClock:
    """Settable engine clock."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def set_date(self, day: date) -> None:
        self.now = datetime(day.year, day.month, day.day, 12, 0, tzinfo=UTC)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Temporary SQLite database file."""
    return tmp_path / "licensing.db"


@pytest.fixture
def store(db_path: Path) -> LicenseStore:
    return LicenseStore(db_path=db_path, lock_timeout=5.0)


@pytest.fixture
def clock() -> FakeClock:
    """Clock pinned to 2025-01-01 12:00 UTC."""
    return FakeClock(datetime(2025, 1, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def outbox() -> OutboxSink:
    return OutboxSink()


@pytest.fixture
def engine(db_path: Path, store: LicenseStore, outbox: OutboxSink, clock: FakeClock) -> LicensingEngine:
    """Engine with asset-1 owned 60/40 by alice and bob."""
    eng = LicensingEngine(
        config=EngineConfig(db_path=db_path, max_retries=5),
        store=store,
        sink=outbox,
        clock=clock,
    )
    eng.record_ownership(ASSET, [("alice", 6000), ("bob", 4000)], effective=date(2024, 1, 1))
    return eng


@pytest.fixture
def propose(engine: LicensingEngine) -> Callable[..., License]:
    """Factory creating a submitted license with sensible defaults."""

    def _propose(
        brand: Actor = BRAND,
        license_type: LicenseType = LicenseType.EXCLUSIVE,
        start: date = date(2025, 1, 1),
        end: date = date(2026, 1, 1),
        fee: int = 500_000,
        scope: LicenseScope | None = None,
        **kwargs,
    ) -> License:
        return engine.create(
            brand,
            ip_asset_id=kwargs.pop("asset", ASSET),
            brand_id=brand.id,
            license_type=license_type,
            start_date=start,
            end_date=end,
            fee_amount=fee,
            scope=scope,
            **kwargs,
        )

    return _propose


@pytest.fixture
def activate(engine: LicensingEngine, propose) -> Callable[..., License]:
    """Factory creating a license and having both owners approve it."""

    def _activate(**kwargs) -> License:
        lic = propose(**kwargs)
        engine.approve(lic.id, ALICE)
        return engine.approve(lic.id, BOB)

    return _activate
