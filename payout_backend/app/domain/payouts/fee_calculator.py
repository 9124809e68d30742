"""
Payout Fee Calculator.

Pure, deterministic mapping of (eligible amount, tier) to a capped fee.
Expedited tiers pay a percentage of the payout, never more than the cap.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

from payout_backend.app.models.wallet_enums import PayoutTier
from payout_backend.app.schemas.payout import FeeQuote


@dataclass(frozen=True)
class TierPricing:
    tier: PayoutTier
    label: str
    fee_percent: Decimal
    fee_cap_minor: int
    timeline_days: int


TIER_PRICING: Dict[PayoutTier, TierPricing] = {
    PayoutTier.WEEKLY: TierPricing(PayoutTier.WEEKLY, "Standard", Decimal("0"), 0, 7),
    PayoutTier.FIVE_DAYS: TierPricing(PayoutTier.FIVE_DAYS, "Early", Decimal("1"), 250000, 5),
    PayoutTier.THREE_DAYS: TierPricing(PayoutTier.THREE_DAYS, "Priority", Decimal("2.5"), 400000, 3),
    PayoutTier.TWO_DAYS: TierPricing(PayoutTier.TWO_DAYS, "Fast", Decimal("4"), 500000, 2),
    PayoutTier.ONE_DAY: TierPricing(PayoutTier.ONE_DAY, "Instant", Decimal("8"), 500000, 1),
}


def pricing_for(tier: PayoutTier) -> TierPricing:
    return TIER_PRICING[PayoutTier(tier)]


def calculate_fee(amount_minor: int, tier: PayoutTier) -> int:
    """
    Fee for paying out ``amount_minor`` under ``tier``.

    fee = min(round(amount * percent / 100), cap), rounding half up to the
    nearest minor unit.
    """
    if amount_minor < 0:
        raise ValueError("amount_minor must not be negative")
    pricing = pricing_for(tier)
    percentage_fee = (Decimal(amount_minor) * pricing.fee_percent / Decimal(100)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return min(int(percentage_fee), pricing.fee_cap_minor)


def quote_payout(amount_minor: int, tier: PayoutTier) -> FeeQuote:
    """Gross, fee and net for an eligible amount."""
    pricing = pricing_for(tier)
    fee = calculate_fee(amount_minor, tier)
    return FeeQuote(
        tier=pricing.tier,
        gross_amount_minor=amount_minor,
        fee_minor=fee,
        net_amount_minor=amount_minor - fee,
        fee_percent=pricing.fee_percent,
        fee_cap_minor=pricing.fee_cap_minor,
    )
