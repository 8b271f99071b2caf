"""
Coupon validator.

One rule set shared by the validate-only endpoint and the purchase path, so a
code that validates also prices the same way at purchase time. The only
legitimate late rejection is losing the last use to a concurrent purchase,
which is caught by the atomic claim at commit.
"""
from datetime import datetime
from typing import Optional, Union
from sqlalchemy.orm import Session

from promo_engine.core.database import utc_now, as_utc
from promo_engine.features.coupons.ledger import get_coupon_by_code
from promo_engine.models.coupon import Coupon, Rejected, RejectionReason


def check_coupon(coupon: Optional[Coupon], plan_id: str, at_time: datetime) -> Optional[RejectionReason]:
    """Apply the validation rules in order; return the first failing reason, or None."""
    if coupon is None:
        return RejectionReason.NOT_FOUND
    if not coupon.is_active:
        return RejectionReason.INACTIVE
    if at_time < coupon.valid_from:
        return RejectionReason.NOT_YET_VALID
    if coupon.valid_until is not None and at_time > coupon.valid_until:
        return RejectionReason.EXPIRED
    if coupon.max_uses is not None and coupon.redemption_count >= coupon.max_uses:
        return RejectionReason.EXHAUSTED
    if not coupon.applies_to(plan_id):
        return RejectionReason.PLAN_MISMATCH
    return None


def validate_coupon(
    code: str,
    plan_id: str,
    at_time: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Union[Coupon, Rejected]:
    """
    Validate a code for a plan at a moment in time.

    Read-only: never touches redemption counters.

    Returns:
        The Coupon unchanged when every check passes, otherwise Rejected(reason)
    """
    ts = as_utc(at_time) or utc_now()
    coupon = get_coupon_by_code(code, session=session)
    reason = check_coupon(coupon, plan_id, ts)
    if reason is not None:
        return Rejected(reason)
    return coupon
