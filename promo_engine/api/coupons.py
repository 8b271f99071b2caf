"""
Coupon API routes.

- POST /coupons/validate: Validate a code for a plan (read-only)
- GET  /coupons: Currently redeemable coupons
- POST /coupons: Create a coupon
"""
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter
from pydantic import Field

from promo_engine.api.schemas import CamelModel
from promo_engine.core.logging import log_event
from promo_engine.core.metrics import coupon_rejections_total
from promo_engine.features.coupons.ledger import create_coupon, list_active_coupons
from promo_engine.features.coupons.validator import validate_coupon
from promo_engine.models.coupon import Coupon, DiscountKind, Rejected


router = APIRouter(prefix="/coupons", tags=["coupons"])


class ValidateRequest(CamelModel):
    code: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)


class ValidateResponse(CamelModel):
    valid: bool
    reason: Optional[str] = None
    id: Optional[str] = None
    code: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    discount_kind: Optional[DiscountKind] = None
    discount_value: Optional[int] = None
    min_amount: Optional[int] = None


class CreateCouponRequest(CamelModel):
    code: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    discount_kind: DiscountKind
    discount_value: int = Field(ge=0)
    min_amount: int = Field(default=0, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    applicable_plans: List[str] = Field(default_factory=list)


class CouponView(CamelModel):
    id: str
    code: str
    name: str
    description: Optional[str] = None
    discount_kind: DiscountKind
    discount_value: int
    min_amount: int
    max_uses: Optional[int] = None
    redemption_count: int
    valid_from: datetime
    valid_until: Optional[datetime] = None
    is_active: bool
    applicable_plans: List[str]


def _to_view(coupon: Coupon) -> CouponView:
    return CouponView(
        id=coupon.coupon_id,
        code=coupon.code,
        name=coupon.name,
        description=coupon.description,
        discount_kind=coupon.discount_kind,
        discount_value=coupon.discount_value,
        min_amount=coupon.min_amount,
        max_uses=coupon.max_uses,
        redemption_count=coupon.redemption_count,
        valid_from=coupon.valid_from,
        valid_until=coupon.valid_until,
        is_active=coupon.is_active,
        applicable_plans=sorted(coupon.applicable_plans),
    )


@router.post("/validate", response_model=ValidateResponse, response_model_exclude_none=True)
def validate(request: ValidateRequest):
    """Same rules as purchase time; never consumes a use."""
    outcome = validate_coupon(request.code, request.plan_id)
    if isinstance(outcome, Rejected):
        coupon_rejections_total.inc(labels={"reason": outcome.reason.value})
        log_event(
            "info",
            "coupon.validate_rejected",
            plan_id=request.plan_id,
            event_type="coupon.validate",
            error_code=outcome.reason.value,
        )
        return ValidateResponse(valid=False, reason=outcome.reason.value)

    return ValidateResponse(
        valid=True,
        id=outcome.coupon_id,
        code=outcome.code,
        name=outcome.name,
        description=outcome.description,
        discount_kind=outcome.discount_kind,
        discount_value=outcome.discount_value,
        min_amount=outcome.min_amount,
    )


@router.get("", response_model=List[CouponView])
def get_coupons():
    return [_to_view(c) for c in list_active_coupons()]


@router.post("", response_model=CouponView, status_code=201)
def post_coupon(request: CreateCouponRequest):
    coupon = create_coupon(
        request.code,
        request.name,
        request.discount_kind.value,
        request.discount_value,
        description=request.description,
        min_amount=request.min_amount,
        max_uses=request.max_uses,
        valid_from=request.valid_from,
        valid_until=request.valid_until,
        is_active=request.is_active,
        applicable_plans=request.applicable_plans,
    )
    log_event("info", "coupon.created", coupon_id=coupon.coupon_id, event_type="coupon.create")
    return _to_view(coupon)
