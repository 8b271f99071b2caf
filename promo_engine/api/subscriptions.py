"""
Subscription API routes.

- POST /subscriptions: Purchase a plan (optional coupon and trial)
- GET  /subscriptions/plans: Catalog, sold-out offers reported inactive
- GET  /subscriptions/trial-status/{user_id}: Trial position for a user
"""
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Header
from pydantic import Field
from starlette.concurrency import run_in_threadpool

from promo_engine.api.deps import get_lifecycle_engine
from promo_engine.api.schemas import CamelModel
from promo_engine.core.errors import ValidationError
from promo_engine.features.accounts.service import get_account, trial_status
from promo_engine.features.catalog.service import list_plans
from promo_engine.features.subscriptions.engine import LifecycleEngine


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class PurchaseRequest(CamelModel):
    """Request to buy a plan."""
    user_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)
    coupon_code: Optional[str] = None
    start_trial: bool = False
    attempt_id: Optional[str] = None
    email: Optional[str] = None


class PurchaseResponse(CamelModel):
    subscription_id: str
    trial_days: int
    discount_amount: int
    final_amount: int
    client_secret: Optional[str] = None


class PlanView(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    price: int
    interval: str
    trial_days: int
    max_users: Optional[int] = None
    current_users: int
    is_active: bool
    features: List[str]


class TrialStatusResponse(CamelModel):
    user_id: str
    status: str
    trial_used: bool
    trial_active: bool
    trial_ends_at: Optional[datetime] = None
    days_remaining: int


@router.post("", response_model=PurchaseResponse)
async def create_subscription(
    request: PurchaseRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    engine: LifecycleEngine = Depends(get_lifecycle_engine),
):
    """
    Purchase a plan.

    A retry after a timeout must send the same attemptId (or Idempotency-Key
    header) so it resolves to the same gateway subscription.

    Errors:
        400: Coupon rejected or plan unavailable (body carries `reason`)
        409: Payment taken but bookkeeping failed (queued for reconciliation)
        503: Gateway unavailable or another purchase in progress (Retry-After)
    """
    if request.attempt_id and idempotency_key and request.attempt_id != idempotency_key:
        raise ValidationError("attemptId and Idempotency-Key header disagree")

    # Worker thread: a dropped client connection never interrupts the commit point
    result = await run_in_threadpool(
        engine.purchase,
        request.user_id,
        request.plan_id,
        coupon_code=request.coupon_code or None,
        requested_trial=request.start_trial,
        attempt_id=request.attempt_id or idempotency_key,
        email=request.email,
    )
    return PurchaseResponse(
        subscription_id=result.gateway_subscription_id,
        trial_days=result.trial_days,
        discount_amount=result.discount_amount,
        final_amount=result.final_amount,
        client_secret=result.client_secret,
    )


@router.get("/plans", response_model=List[PlanView])
def get_plans():
    """List the catalog; a sold-out lifetime offer is reported inactive."""
    return [
        PlanView(
            id=plan.plan_id,
            name=plan.name,
            description=plan.description,
            price=plan.price,
            interval=plan.interval.value,
            trial_days=plan.trial_days,
            max_users=plan.max_users,
            current_users=plan.current_users,
            is_active=plan.is_available,
            features=plan.features,
        )
        for plan in list_plans()
    ]


@router.get("/trial-status/{user_id}", response_model=TrialStatusResponse)
def get_trial_status(user_id: str):
    info = trial_status(get_account(user_id))
    return TrialStatusResponse(
        user_id=user_id,
        status=info.status.value,
        trial_used=info.trial_used,
        trial_active=info.trial_active,
        trial_ends_at=info.trial_expires_at,
        days_remaining=info.days_remaining,
    )
