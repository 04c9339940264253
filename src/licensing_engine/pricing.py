"""Renewal pricing engine.

price() is a pure function of its arguments: no clock, no storage, no
global configuration. Each adjustment is a percentage of the running
subtotal, and the subtotal is rounded half-up to a whole minor unit after
every step, so

    500000 -> +5% -> 525000 -> -5% -> 498750 -> -5% -> 473813
"""

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from licensing_engine.config import PricingConfig
from licensing_engine.errors import ValidationError
from licensing_engine.models import (
    License,
    PerformanceMetrics,
    PricingAdjustment,
    PricingBreakdown,
    PricingStrategy,
    RenewalHistory,
)

logger = logging.getLogger(__name__)

HUNDRED = Decimal(100)
CENT = Decimal("0.01")

_NO_PERFORMANCE = frozenset({PricingStrategy.FLAT_RENEWAL, PricingStrategy.NEGOTIATED})
_MARKET = frozenset({PricingStrategy.MARKET_RATE, PricingStrategy.AUTOMATIC})


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def apply_percent(amount: int, percent: Decimal) -> int:
    """Scale an integer amount by (100 + percent)%, rounded half-up."""
    return round_half_up(Decimal(amount) * (HUNDRED + percent) / HUNDRED)


def loyalty_percent(prior_renewals: int, config: PricingConfig) -> Decimal:
    percent = Decimal(0)
    for minimum, tier_percent in sorted(config.loyalty_tiers):
        if prior_renewals >= minimum:
            percent = tier_percent
    return min(percent, config.loyalty_cap_percent)


def early_renewal_percent(days_before_end: int, config: PricingConfig) -> Decimal:
    for min_days, percent in sorted(config.early_renewal_tiers, reverse=True):
        if days_before_end > min_days:
            return percent
    return Decimal(0)


def months_between(start: date, end: date) -> int:
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if end.day < start.day:
        months -= 1
    return max(months, 0)


def _fmt(percent: Decimal) -> str:
    return f"{percent.normalize():f}%"


class _Builder:
    """Accumulates adjustments against a running subtotal."""

    def __init__(self, subtotal: int) -> None:
        self.subtotal = subtotal
        self.adjustments: list[PricingAdjustment] = []

    def add(self, kind: str, label: str, percent: Decimal, reason: str) -> None:
        if percent == 0:
            return
        new_subtotal = apply_percent(self.subtotal, percent)
        self.adjustments.append(
            PricingAdjustment(
                kind=kind,
                label=label,
                percent=percent,
                amount=new_subtotal - self.subtotal,
                reason=reason,
            )
        )
        logger.debug("%s %s: %d -> %d", kind, _fmt(percent), self.subtotal, new_subtotal)
        self.subtotal = new_subtotal


def price(
    license: License,
    history: RenewalHistory,
    strategy: PricingStrategy,
    config: PricingConfig,
    as_of: date,
    custom_adjustment_percent: Optional[Decimal] = None,
    metrics: Optional[PerformanceMetrics] = None,
    market_benchmark_fee: Optional[int] = None,
) -> PricingBreakdown:
    """Compute renewal terms for a license.

    Args:
        license: License being renewed.
        history: Prior renewals and relationship start for this brand/asset.
        strategy: Pricing strategy.
        config: Pricing knobs.
        as_of: Date the offer is priced at (drives the early-renewal discount).
        custom_adjustment_percent: Required for NEGOTIATED, rejected otherwise.
        metrics: Engagement against benchmark, for the performance step.
        market_benchmark_fee: External comparable fee, for the market step.

    Returns:
        A complete breakdown. Identical inputs give identical output.

    Raises:
        ValidationError: On a missing or out-of-range negotiated adjustment.
    """
    if strategy == PricingStrategy.NEGOTIATED:
        if custom_adjustment_percent is None:
            raise ValidationError("NEGOTIATED pricing requires custom_adjustment_percent")
        custom = Decimal(str(custom_adjustment_percent))
        if not config.negotiated_min_percent <= custom <= config.negotiated_max_percent:
            raise ValidationError(
                f"custom_adjustment_percent must be between "
                f"{config.negotiated_min_percent} and {config.negotiated_max_percent}"
            )
    elif custom_adjustment_percent is not None:
        raise ValidationError("custom_adjustment_percent only applies to NEGOTIATED pricing")

    original = license.fee_amount
    reasoning = []

    if strategy == PricingStrategy.FLAT_RENEWAL:
        base = original
        reasoning.append(f"Flat renewal starts from the original fee of {original}")
    else:
        base = apply_percent(original, config.standard_rate_percent)
        reasoning.append(
            f"Base renewal fee {base} applies the standard "
            f"{_fmt(config.standard_rate_percent)} rate to {original}"
        )

    steps = _Builder(base)

    renewals = history.prior_renewal_count
    loyalty = loyalty_percent(renewals, config)
    steps.add(
        "loyalty",
        "Loyalty discount",
        -loyalty,
        f"{_fmt(loyalty)} loyalty discount for {renewals} prior renewal(s)",
    )

    days_before_end = license.days_until_end(as_of)
    early = early_renewal_percent(days_before_end, config)
    steps.add(
        "early_renewal",
        "Early renewal discount",
        -early,
        f"{_fmt(early)} early renewal discount, {days_before_end} days before expiration",
    )

    if (
        strategy not in _NO_PERFORMANCE
        and metrics is not None
        and metrics.benchmark_rate > 0
    ):
        ratio = Decimal(str(metrics.engagement_rate)) / Decimal(str(metrics.benchmark_rate))
        if ratio >= config.performance_high_ratio:
            steps.add(
                "performance",
                "Performance bonus",
                config.performance_bonus_percent,
                f"Engagement at {ratio.quantize(CENT)}x benchmark earns a "
                f"{_fmt(config.performance_bonus_percent)} bonus",
            )
        elif ratio <= config.performance_low_ratio:
            steps.add(
                "performance",
                "Performance adjustment",
                -config.performance_penalty_percent,
                f"Engagement at {ratio.quantize(CENT)}x benchmark reduces the fee by "
                f"{_fmt(config.performance_penalty_percent)}",
            )

    if strategy in _MARKET and market_benchmark_fee and steps.subtotal > 0:
        gap = (Decimal(market_benchmark_fee) - steps.subtotal) * HUNDRED / steps.subtotal
        gap = gap.quantize(CENT, rounding=ROUND_HALF_UP)
        if abs(gap) >= config.market_threshold_percent:
            cap = config.market_cap_percent
            percent = max(-cap, min(cap, gap))
            steps.add(
                "market_rate",
                "Market rate adjustment",
                percent,
                f"Market benchmark {market_benchmark_fee} is {_fmt(gap)} from the "
                f"current price; moving {_fmt(percent)} toward it",
            )

    if strategy == PricingStrategy.NEGOTIATED:
        steps.add(
            "negotiated",
            "Negotiated adjustment",
            custom,
            f"Negotiated adjustment of {_fmt(custom)}",
        )

    for adjustment in steps.adjustments:
        reasoning.append(adjustment.reason)

    floor = max(
        config.minimum_fee,
        apply_percent(original, -config.max_decrease_percent),
    )
    ceiling = apply_percent(original, config.max_increase_percent)
    final = steps.subtotal
    cap_applied = minimum_enforced = False
    if final > ceiling:
        final = ceiling
        cap_applied = True
        reasoning.append(
            f"Capped at {ceiling}, {_fmt(config.max_increase_percent)} above the original fee"
        )
    if final < floor:
        final = floor
        minimum_enforced = floor == config.minimum_fee
        reasoning.append(
            f"Raised to the floor of {floor}"
            + (" (minimum fee)" if minimum_enforced else "")
        )
    clamp_applied = final != steps.subtotal

    confidence = 50 + min(renewals * 10, 30)
    if metrics is not None:
        confidence += 10
    if market_benchmark_fee:
        confidence += 10
    if clamp_applied:
        confidence -= 10
    confidence = max(0, min(100, confidence))

    percent_change = (
        ((Decimal(final) - original) * HUNDRED / original).quantize(CENT, rounding=ROUND_HALF_UP)
        if original
        else Decimal(0)
    )
    duration = max(license.duration_days, 1)

    breakdown = PricingBreakdown(
        original_fee=original,
        base_renewal_fee=base,
        adjustments=steps.adjustments,
        subtotal=steps.subtotal,
        final_fee=final,
        final_rev_share_bps=license.rev_share_bps,
        strategy=strategy,
        confidence_score=confidence,
        reasoning=reasoning,
        clamp_applied=clamp_applied,
        cap_applied=cap_applied,
        minimum_enforced=minimum_enforced,
        historical_renewal_count=renewals,
        relationship_months=(
            months_between(history.relationship_start, as_of)
            if history.relationship_start
            else 0
        ),
        expected_creator_revenue=apply_percent(final, -config.platform_fee_percent),
        percent_change=percent_change,
        absolute_change=final - original,
        projected_annual_value=round_half_up(Decimal(final) * 365 / duration),
    )
    logger.debug(
        "Priced renewal of %s under %s: %d -> %d",
        license.id,
        strategy.value,
        original,
        final,
    )
    return breakdown
