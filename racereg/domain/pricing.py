from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence

from ..config import get_settings
from ..models import GroupDiscountRule, PricingTier


def round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def active_tier(tiers: Iterable[PricingTier], now: datetime) -> Optional[PricingTier]:
    """First tier by sort order whose window contains `now`; open ends are unbounded."""
    live = [
        t
        for t in tiers
        if t.deleted_at is None
        and (t.starts_at is None or t.starts_at <= now)
        and (t.ends_at is None or now <= t.ends_at)
    ]
    live.sort(key=lambda t: t.sort_order)
    return live[0] if live else None


def platform_fee_cents(base_cents: int) -> int:
    bps = get_settings().PLATFORM_FEE_BPS
    return round_cents(Decimal(base_cents) * bps / Decimal(10_000))


def applicable_discount_rule(
    rules: Iterable[GroupDiscountRule], participant_count: int
) -> Optional[GroupDiscountRule]:
    """Highest qualifying threshold wins; rules never stack."""
    active = sorted((r for r in rules if r.is_active), key=lambda r: r.min_participants, reverse=True)
    for rule in active:
        if participant_count >= rule.min_participants:
            return rule
    return None


@dataclass(frozen=True)
class PriceBreakdown:
    original_cents: int
    discount_cents: int
    base_price_cents: int
    fees_cents: int
    add_ons_cents: int
    tax_cents: int = 0

    @property
    def total_cents(self) -> int:
        return self.base_price_cents + self.fees_cents + self.add_ons_cents + self.tax_cents


def price_registration(
    tier_price_cents: Optional[int],
    *,
    percent_off: Optional[int] = None,
    add_on_line_totals: Sequence[int] = (),
) -> PriceBreakdown:
    original = tier_price_cents or 0
    discount = round_cents(Decimal(original) * percent_off / 100) if percent_off else 0
    base = max(original - discount, 0)
    return PriceBreakdown(
        original_cents=original,
        discount_cents=discount,
        base_price_cents=base,
        fees_cents=platform_fee_cents(base),
        add_ons_cents=sum(add_on_line_totals),
    )
