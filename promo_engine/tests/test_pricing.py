"""Discount pricing."""
from datetime import datetime, timezone

from promo_engine.features.coupons.pricing import price_discount, final_amount
from promo_engine.models.coupon import Coupon, DiscountKind


def _coupon(kind: DiscountKind, value: int) -> Coupon:
    return Coupon(
        coupon_id="c1",
        code="X",
        name="X",
        discount_kind=kind,
        discount_value=value,
        valid_from=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def test_fifty_percent_of_1999_rounds_down():
    discount = price_discount(_coupon(DiscountKind.PERCENTAGE, 50), 1999)

    assert discount == 999
    assert final_amount(1999, discount) == 1000


def test_percentage_always_rounds_down():
    # 33% of 100 -> 33, of 101 -> 33.33 -> 33
    assert price_discount(_coupon(DiscountKind.PERCENTAGE, 33), 101) == 33
    assert price_discount(_coupon(DiscountKind.PERCENTAGE, 25), 4799) == 1199


def test_fixed_discount_larger_than_price_is_capped():
    discount = price_discount(_coupon(DiscountKind.FIXED_AMOUNT, 1000), 500)

    assert discount == 500
    assert final_amount(500, discount) == 0


def test_fixed_discount_below_price():
    assert price_discount(_coupon(DiscountKind.FIXED_AMOUNT, 1000), 9999) == 1000


def test_full_percentage_discount():
    assert price_discount(_coupon(DiscountKind.PERCENTAGE, 100), 499) == 499


def test_free_plan_has_no_discount():
    assert price_discount(_coupon(DiscountKind.FIXED_AMOUNT, 1000), 0) == 0
    assert final_amount(0, 0) == 0


def test_final_amount_never_negative():
    assert final_amount(500, 700) == 0
