"""
Reconciliation queue for purchases whose gateway side succeeded but whose
local commit could not be completed.

Items are written outside the failed transaction and stay open until someone
resolves them by hand.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from sqlalchemy import select, insert, update

from promo_engine.core.database import get_db_session, utc_now, reconciliation_items
from promo_engine.core.logging import log_event


def record_inconsistency(
    *,
    user_id: str,
    plan_id: str,
    coupon_id: Optional[str],
    gateway_subscription_id: str,
    idempotency_key: str,
    discount_amount: int,
    trial_days: int,
    error: str,
    now: Optional[datetime] = None,
) -> Optional[int]:
    """
    Store an open reconciliation item and log it at ERROR.

    Returns:
        The item id, or None if even the reconciliation write failed (the
        ERROR log is then the only record)
    """
    log_event(
        "error",
        "purchase.bookkeeping_failed",
        user_id=user_id,
        plan_id=plan_id,
        coupon_id=coupon_id,
        event_type="purchase.reconcile",
        error_code="bookkeeping_failed",
        extra={
            "gateway_subscription_id": gateway_subscription_id,
            "idempotency_key": idempotency_key,
            "discount_amount": discount_amount,
            "error": error,
        },
    )
    try:
        with get_db_session() as session:
            result = session.execute(
                insert(reconciliation_items).values(
                    user_id=user_id,
                    plan_id=plan_id,
                    coupon_id=coupon_id,
                    gateway_subscription_id=gateway_subscription_id,
                    idempotency_key=idempotency_key,
                    discount_amount=discount_amount,
                    trial_days=trial_days,
                    error=error[:2000],
                    status="open",
                    created_at=now or utc_now(),
                )
            )
            return result.inserted_primary_key[0]
    except Exception:
        log_event(
            "error",
            "purchase.reconcile_write_failed",
            user_id=user_id,
            coupon_id=coupon_id,
            event_type="purchase.reconcile",
            error_code="reconcile_write_failed",
            extra={"gateway_subscription_id": gateway_subscription_id},
        )
        return None


def list_open_items(limit: int = 100) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(reconciliation_items)
            .where(reconciliation_items.c.status == "open")
            .order_by(reconciliation_items.c.created_at.asc())
            .limit(limit)
        ).fetchall()
        return [dict(row._mapping) for row in rows]


def resolve_item(item_id: int) -> bool:
    """Mark an item resolved. Returns False if it was not open."""
    with get_db_session() as session:
        result = session.execute(
            update(reconciliation_items)
            .where(reconciliation_items.c.id == item_id)
            .where(reconciliation_items.c.status == "open")
            .values(status="resolved")
        )
        return result.rowcount == 1
