from datetime import datetime, timedelta, timezone

from racereg.domain.pricing import active_tier, applicable_discount_rule, platform_fee_cents, price_registration
from racereg.models import GroupDiscountRule, PricingTier

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _rule(min_participants, percent_off, active=True):
    return GroupDiscountRule(min_participants=min_participants, percent_off=percent_off, is_active=active)


def _tier(price, *, starts=None, ends=None, order=0, deleted=False):
    return PricingTier(
        price_cents=price,
        starts_at=starts,
        ends_at=ends,
        sort_order=order,
        deleted_at=NOW if deleted else None,
    )


def test_fee_is_five_percent_half_up():
    assert platform_fee_cents(10_000) == 500
    assert platform_fee_cents(10_010) == 501  # 500.5
    assert platform_fee_cents(10_001) == 500  # 500.05
    assert platform_fee_cents(0) == 0


def test_price_without_discount():
    p = price_registration(10_000)
    assert (p.base_price_cents, p.fees_cents, p.tax_cents) == (10_000, 500, 0)
    assert p.total_cents == 10_500


def test_fee_applies_to_discounted_base():
    p = price_registration(10_000, percent_off=10, add_on_line_totals=[2_500, 1_000])
    assert p.original_cents == 10_000
    assert p.discount_cents == 1_000
    assert p.base_price_cents == 9_000
    assert p.fees_cents == 450
    assert p.add_ons_cents == 3_500
    assert p.total_cents == 9_000 + 450 + 3_500


def test_missing_tier_prices_at_zero():
    p = price_registration(None, percent_off=50)
    assert p.total_cents == 0


def test_highest_qualifying_threshold_wins():
    rules = [_rule(5, 5), _rule(7, 10), _rule(10, 20), _rule(6, 50, active=False)]
    assert applicable_discount_rule(rules, 7).percent_off == 10
    assert applicable_discount_rule(rules, 6).percent_off == 5
    assert applicable_discount_rule(rules, 12).percent_off == 20
    assert applicable_discount_rule(rules, 4) is None


def test_active_tier_respects_windows_and_order():
    early = _tier(8_000, starts=NOW - timedelta(days=30), ends=NOW - timedelta(days=1), order=0)
    regular = _tier(10_000, starts=NOW - timedelta(days=1), ends=None, order=1)
    late = _tier(12_000, starts=NOW + timedelta(days=5), order=2)
    retired = _tier(1, order=-1, deleted=True)
    assert active_tier([late, regular, early, retired], NOW).price_cents == 10_000
    assert active_tier([late], NOW) is None


def test_seven_participants_take_ten_not_twenty_or_stacked():
    rules = [_rule(5, 10), _rule(10, 20)]
    rule = applicable_discount_rule(rules, 7)
    p = price_registration(10_000, percent_off=rule.percent_off)
    assert rule.percent_off == 10
    assert p.base_price_cents == 9_000
