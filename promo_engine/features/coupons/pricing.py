"""Discount pricing for validated coupons (integer minor units throughout)."""
from promo_engine.models.coupon import Coupon, DiscountKind


def price_discount(coupon: Coupon, plan_price: int) -> int:
    """
    Discount granted by a coupon on a plan price.

    Percentage discounts round down so rounding never favors the customer;
    fixed discounts are capped at the plan price so the charge never goes
    negative. Result is always within [0, plan_price].
    """
    if plan_price <= 0:
        return 0
    if coupon.discount_kind == DiscountKind.PERCENTAGE:
        discount = (plan_price * coupon.discount_value) // 100
    else:
        discount = coupon.discount_value
    return max(0, min(discount, plan_price))


def final_amount(plan_price: int, discount_amount: int) -> int:
    return max(0, plan_price - discount_amount)
