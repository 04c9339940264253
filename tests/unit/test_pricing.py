"""Unit tests for the renewal pricing engine."""

from datetime import date
from decimal import Decimal

import pytest

from licensing_engine.config import PricingConfig
from licensing_engine.errors import ValidationError
from licensing_engine.models import (
    License,
    LicenseScope,
    LicenseStatus,
    LicenseType,
    PerformanceMetrics,
    PricingStrategy,
    RenewalHistory,
)
from licensing_engine.pricing import (
    apply_percent,
    loyalty_percent,
    months_between,
    price,
    round_half_up,
)

CONFIG = PricingConfig()
EARLY = date(2025, 10, 18)  # 75 days before end
LATE = date(2025, 12, 2)  # 30 days before end


def _license(fee: int = 500_000) -> License:
    return License(
        id="lic-1",
        ip_asset_id="asset-1",
        brand_id="acme",
        license_type=LicenseType.EXCLUSIVE,
        status=LicenseStatus.ACTIVE,
        start_date=date(2025, 1, 1),
        end_date=date(2026, 1, 1),
        fee_amount=fee,
        rev_share_bps=750,
        scope=LicenseScope(),
    )


def _price(strategy=PricingStrategy.AUTOMATIC, fee=500_000, renewals=0, as_of=LATE, **kwargs):
    history = RenewalHistory(prior_renewal_count=renewals, relationship_start=date(2023, 1, 1))
    return price(_license(fee), history, strategy, CONFIG, as_of, **kwargs)


class TestHelpers:
    def test_round_half_up(self):
        assert round_half_up(Decimal("473812.5")) == 473813
        assert round_half_up(Decimal("0.49")) == 0
        assert round_half_up(Decimal("-2.5")) == -3

    def test_apply_percent(self):
        assert apply_percent(500_000, Decimal("5")) == 525_000
        assert apply_percent(498_750, Decimal("-5")) == 473_813

    @pytest.mark.parametrize(
        "renewals,expected", [(0, "0"), (1, "0"), (2, "5"), (3, "10"), (4, "10"), (5, "15"), (9, "15")]
    )
    def test_loyalty_tiers(self, renewals, expected):
        assert loyalty_percent(renewals, CONFIG) == Decimal(expected)

    def test_months_between(self):
        assert months_between(date(2023, 1, 1), EARLY) == 33
        assert months_between(date(2025, 1, 31), date(2025, 2, 28)) == 0


class TestPrice:
    """Test the full pricing pipeline."""

    def test_loyal_early_renewal(self):
        """Test the reference scenario: two prior renewals, 75 days early."""
        breakdown = _price(renewals=2, as_of=EARLY)

        assert breakdown.base_renewal_fee == 525_000
        assert [a.kind for a in breakdown.adjustments] == ["loyalty", "early_renewal"]
        assert [a.amount for a in breakdown.adjustments] == [-26_250, -24_937]
        assert breakdown.subtotal == 473_813
        assert breakdown.final_fee == 473_813
        assert not breakdown.clamp_applied
        assert breakdown.confidence_score == 70
        assert breakdown.expected_creator_revenue == 426_432
        assert breakdown.percent_change == Decimal("-5.24")
        assert breakdown.absolute_change == -26_187
        assert breakdown.final_rev_share_bps == 750
        assert breakdown.historical_renewal_count == 2
        assert breakdown.relationship_months == 33
        assert breakdown.projected_annual_value == 473_813
        assert len(breakdown.reasoning) == 3

    def test_flat_renewal_keeps_fee(self):
        breakdown = _price(PricingStrategy.FLAT_RENEWAL)

        assert breakdown.base_renewal_fee == 500_000
        assert breakdown.adjustments == []
        assert breakdown.final_fee == 500_000

    def test_flat_renewal_still_gets_loyalty(self):
        breakdown = _price(PricingStrategy.FLAT_RENEWAL, renewals=3)
        assert breakdown.final_fee == 450_000

    def test_negotiated_is_capped(self):
        breakdown = _price(PricingStrategy.NEGOTIATED, custom_adjustment_percent=Decimal("40"))

        assert breakdown.subtotal == 735_000
        assert breakdown.final_fee == 625_000
        assert breakdown.cap_applied
        assert breakdown.clamp_applied
        assert breakdown.confidence_score == 40

    def test_decrease_is_floored(self):
        breakdown = _price(PricingStrategy.NEGOTIATED, custom_adjustment_percent=Decimal("-50"))

        assert breakdown.final_fee == 400_000
        assert breakdown.clamp_applied
        assert not breakdown.minimum_enforced

    def test_minimum_fee_beats_ceiling(self):
        breakdown = _price(fee=5_000)

        assert breakdown.final_fee == 10_000
        assert breakdown.minimum_enforced

    def test_negotiated_requires_percent(self):
        with pytest.raises(ValidationError):
            _price(PricingStrategy.NEGOTIATED)

    def test_negotiated_bounds(self):
        with pytest.raises(ValidationError):
            _price(PricingStrategy.NEGOTIATED, custom_adjustment_percent=Decimal("150"))

    def test_custom_percent_only_for_negotiated(self):
        with pytest.raises(ValidationError):
            _price(PricingStrategy.AUTOMATIC, custom_adjustment_percent=Decimal("5"))

    def test_high_performance_bonus(self):
        metrics = PerformanceMetrics(
            engagement_rate=Decimal("0.06"), benchmark_rate=Decimal("0.04")
        )
        breakdown = _price(PricingStrategy.PERFORMANCE_BASED, metrics=metrics)

        assert [a.kind for a in breakdown.adjustments] == ["performance"]
        assert breakdown.final_fee == 603_750
        assert breakdown.confidence_score == 60

    def test_low_performance_penalty(self):
        metrics = PerformanceMetrics(
            engagement_rate=Decimal("0.02"), benchmark_rate=Decimal("0.04")
        )
        breakdown = _price(PricingStrategy.PERFORMANCE_BASED, metrics=metrics)
        assert breakdown.final_fee == 498_750

    def test_flat_renewal_ignores_performance(self):
        metrics = PerformanceMetrics(
            engagement_rate=Decimal("0.06"), benchmark_rate=Decimal("0.04")
        )
        breakdown = _price(PricingStrategy.FLAT_RENEWAL, metrics=metrics)
        assert breakdown.adjustments == []

    def test_market_adjustment_is_capped(self):
        breakdown = _price(PricingStrategy.MARKET_RATE, market_benchmark_fee=700_000)

        market = breakdown.adjustments[0]
        assert market.kind == "market_rate"
        assert market.percent == Decimal("15")
        assert breakdown.final_fee == 603_750

    def test_small_market_gap_ignored(self):
        breakdown = _price(PricingStrategy.MARKET_RATE, market_benchmark_fee=550_000)
        assert breakdown.adjustments == []
        assert breakdown.final_fee == 525_000

    def test_deterministic(self):
        assert _price(renewals=2, as_of=EARLY) == _price(renewals=2, as_of=EARLY)
