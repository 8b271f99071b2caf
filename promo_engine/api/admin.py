"""
Operator routes. Requires X-Admin-Key header for all endpoints.

- GET  /admin/reconciliation: Open reconciliation items
- POST /admin/reconciliation/{item_id}/resolve: Close an item after manual repair
- GET  /admin/coupons/{code}/redemptions: Redemption history for a coupon
"""
import logging
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query

from promo_engine.api.schemas import CamelModel
from promo_engine.core.config import settings
from promo_engine.core.logging import log_event
from promo_engine.features.coupons.ledger import get_coupon_by_code
from promo_engine.features.redemptions.service import list_redemptions_for_coupon
from promo_engine.features.subscriptions.reconcile import list_open_items, resolve_item

logger = logging.getLogger("promo_engine")


def require_admin_key(x_admin_key: Optional[str] = Header(None)) -> str:
    admin_key = settings.ADMIN_KEY
    if not admin_key or not x_admin_key or x_admin_key != admin_key:
        logger.warning("admin.auth_failed", extra={"error_code": "admin_auth_failed"})
        raise HTTPException(status_code=403, detail="Invalid or missing X-Admin-Key header")
    return x_admin_key


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


class ReconciliationItemView(CamelModel):
    id: int
    user_id: str
    plan_id: str
    coupon_id: Optional[str] = None
    gateway_subscription_id: str
    idempotency_key: str
    discount_amount: int
    trial_days: int
    error: Optional[str] = None
    status: str
    created_at: datetime


class ResolveResponse(CamelModel):
    id: int
    resolved: bool


class RedemptionView(CamelModel):
    id: str
    user_id: str
    discount_amount: int
    gateway_subscription_id: Optional[str] = None
    redeemed_at: datetime


@router.get("/reconciliation", response_model=List[ReconciliationItemView])
def get_reconciliation_items(limit: int = Query(default=100, ge=1, le=500)):
    return [ReconciliationItemView(**item) for item in list_open_items(limit=limit)]


@router.post("/reconciliation/{item_id}/resolve", response_model=ResolveResponse)
def post_resolve(item_id: int):
    if not resolve_item(item_id):
        raise HTTPException(status_code=404, detail=f"No open reconciliation item {item_id}")
    log_event("info", "reconcile.resolved", event_type="purchase.reconcile", extra={"item_id": item_id})
    return ResolveResponse(id=item_id, resolved=True)


@router.get("/coupons/{code}/redemptions", response_model=List[RedemptionView])
def get_coupon_redemptions(code: str):
    coupon = get_coupon_by_code(code)
    if coupon is None:
        raise HTTPException(status_code=404, detail=f"Unknown coupon: {code}")
    return [
        RedemptionView(
            id=r.redemption_id,
            user_id=r.user_id,
            discount_amount=r.discount_amount,
            gateway_subscription_id=r.gateway_subscription_id,
            redeemed_at=r.redeemed_at,
        )
        for r in list_redemptions_for_coupon(coupon.coupon_id)
    ]
