"""Configuration for the licensing engine.

Configuration is an explicit value passed into the engine, the pricing
function and the renewal orchestrator. Nothing reads ambient global state
at call time, so pricing stays pure and tests can pin every knob.

Environment variables
=====================

``EngineConfig.from_env()`` applies these overrides on top of the defaults:

- LICENSING_DB_PATH: SQLite database file.
- LICENSING_LOCK_TIMEOUT: Seconds a writer waits for the lock (float).
- LICENSING_MAX_RETRIES: Attempts before ConcurrentModification (int).
- LICENSING_WEBHOOK_URL: Endpoint receiving domain events.
- LICENSING_EXPIRING_SOON_DAYS: Days before end_date a license is flagged.
- LICENSING_RENEWAL_WINDOW_DAYS: Days before end_date renewal opens.
- LICENSING_RENEWAL_GRACE_DAYS: Days after end_date renewal stays open.
- LICENSING_STANDARD_RATE_PERCENT: Base renewal rate adjustment (decimal).
- LICENSING_EXTENSION_AUTO_APPROVE_DAYS: Auto-approval threshold.
"""

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LifecycleConfig:
    expiring_soon_days: int = 30
    termination_reason_min_length: int = 10
    termination_reason_max_length: int = 500
    abandoned_draft_days: int = 90


@dataclass(frozen=True)
class PricingConfig:
    """Knobs of the renewal pricing engine. Percentages are Decimals."""

    standard_rate_percent: Decimal = Decimal("5")
    # (minimum prior renewals, discount percent), checked highest first
    loyalty_tiers: tuple[tuple[int, Decimal], ...] = (
        (2, Decimal("5")),
        (3, Decimal("10")),
        (5, Decimal("15")),
    )
    loyalty_cap_percent: Decimal = Decimal("15")
    # (renewing more than N days before end, discount percent)
    early_renewal_tiers: tuple[tuple[int, Decimal], ...] = ((60, Decimal("5")),)
    performance_high_ratio: Decimal = Decimal("1.25")
    performance_low_ratio: Decimal = Decimal("0.75")
    performance_bonus_percent: Decimal = Decimal("15")
    performance_penalty_percent: Decimal = Decimal("5")
    market_threshold_percent: Decimal = Decimal("10")
    market_cap_percent: Decimal = Decimal("15")
    negotiated_min_percent: Decimal = Decimal("-50")
    negotiated_max_percent: Decimal = Decimal("100")
    max_increase_percent: Decimal = Decimal("25")
    max_decrease_percent: Decimal = Decimal("20")
    minimum_fee: int = 10_000
    platform_fee_percent: Decimal = Decimal("10")


@dataclass(frozen=True)
class RenewalConfig:
    window_days_before: int = 90
    grace_days_after: int = 30
    offer_validity_days: int = 30
    auto_renew_days_before: int = 60


@dataclass(frozen=True)
class AmendmentConfig:
    default_deadline_days: int = 14
    max_deadline_days: int = 90


@dataclass(frozen=True)
class ExtensionConfig:
    max_days: int = 365
    auto_approve_threshold_days: int = 30
    approval_deadline_days: int = 14


@dataclass(frozen=True)
class EngineConfig:
    """Top-level configuration.

    Attributes:
        db_path: SQLite database file. None means
            ~/.local/share/licensing_engine/licensing.db.
        lock_timeout_seconds: How long a writer waits on a locked database
            before the attempt counts as contended.
        max_retries: Attempts for a contended write before
            ConcurrentModification surfaces.
        webhook_url: Where the CLI delivers buffered domain events.
    """

    db_path: Optional[Path] = None
    lock_timeout_seconds: float = 5.0
    max_retries: int = 3
    webhook_url: Optional[str] = None
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    renewal: RenewalConfig = field(default_factory=RenewalConfig)
    amendment: AmendmentConfig = field(default_factory=AmendmentConfig)
    extension: ExtensionConfig = field(default_factory=ExtensionConfig)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config using LICENSING_* environment variables as overrides."""
        db_raw = os.getenv("LICENSING_DB_PATH", "").strip()
        webhook_url = os.getenv("LICENSING_WEBHOOK_URL", "").strip() or None

        lifecycle = LifecycleConfig(
            expiring_soon_days=_env_int(
                "LICENSING_EXPIRING_SOON_DAYS", LifecycleConfig.expiring_soon_days
            ),
        )
        renewal = RenewalConfig(
            window_days_before=_env_int(
                "LICENSING_RENEWAL_WINDOW_DAYS", RenewalConfig.window_days_before
            ),
            grace_days_after=_env_int(
                "LICENSING_RENEWAL_GRACE_DAYS", RenewalConfig.grace_days_after
            ),
            auto_renew_days_before=_env_int(
                "LICENSING_AUTO_RENEW_DAYS", RenewalConfig.auto_renew_days_before
            ),
        )
        pricing = PricingConfig(
            standard_rate_percent=_env_decimal(
                "LICENSING_STANDARD_RATE_PERCENT", PricingConfig.standard_rate_percent
            ),
        )
        extension = ExtensionConfig(
            auto_approve_threshold_days=_env_int(
                "LICENSING_EXTENSION_AUTO_APPROVE_DAYS",
                ExtensionConfig.auto_approve_threshold_days,
            ),
        )

        return cls(
            db_path=Path(db_raw) if db_raw else None,
            lock_timeout_seconds=_env_float(
                "LICENSING_LOCK_TIMEOUT", cls.lock_timeout_seconds
            ),
            max_retries=_env_int("LICENSING_MAX_RETRIES", cls.max_retries),
            webhook_url=webhook_url,
            lifecycle=lifecycle,
            pricing=pricing,
            renewal=renewal,
            extension=extension,
        )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default
    return value if value >= 0 else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return Decimal(raw)
    except InvalidOperation:
        logger.warning("Ignoring non-decimal %s=%r", name, raw)
        return default
