"""
Redemption recorder.

Append-only log of successful coupon applications. Rows are written only by
the lifecycle engine, inside the same transaction that consumes the coupon
and updates the account.
"""
from datetime import datetime
from typing import Optional, List
from uuid import uuid4
from sqlalchemy import select, insert
from sqlalchemy.orm import Session

from promo_engine.core.database import session_scope, utc_now, as_utc, coupon_redemptions
from promo_engine.models.redemption import Redemption


def _row_to_redemption(row) -> Redemption:
    return Redemption(
        redemption_id=row.redemption_id,
        user_id=row.user_id,
        coupon_id=row.coupon_id,
        discount_amount=row.discount_amount,
        idempotency_key=row.idempotency_key,
        gateway_subscription_id=row.gateway_subscription_id,
        redeemed_at=as_utc(row.redeemed_at),
    )


def append_redemption(
    session: Session,
    *,
    user_id: str,
    coupon_id: str,
    discount_amount: int,
    idempotency_key: str,
    gateway_subscription_id: Optional[str] = None,
    redeemed_at: Optional[datetime] = None,
) -> Redemption:
    """
    Append one redemption inside the caller's transaction.

    idempotency_key is unique, so replaying the same purchase cannot append a
    second row.
    """
    redemption = Redemption(
        redemption_id=str(uuid4()),
        user_id=user_id,
        coupon_id=coupon_id,
        discount_amount=discount_amount,
        idempotency_key=idempotency_key,
        gateway_subscription_id=gateway_subscription_id,
        redeemed_at=redeemed_at or utc_now(),
    )
    session.execute(
        insert(coupon_redemptions).values(
            redemption_id=redemption.redemption_id,
            user_id=redemption.user_id,
            coupon_id=redemption.coupon_id,
            discount_amount=redemption.discount_amount,
            idempotency_key=redemption.idempotency_key,
            gateway_subscription_id=redemption.gateway_subscription_id,
            redeemed_at=redemption.redeemed_at,
        )
    )
    return redemption


def list_redemptions_for_user(user_id: str, session: Optional[Session] = None) -> List[Redemption]:
    with session_scope(session) as s:
        rows = s.execute(
            select(coupon_redemptions)
            .where(coupon_redemptions.c.user_id == user_id)
            .order_by(coupon_redemptions.c.redeemed_at.asc())
        ).fetchall()
        return [_row_to_redemption(row) for row in rows]


def list_redemptions_for_coupon(coupon_id: str, session: Optional[Session] = None) -> List[Redemption]:
    with session_scope(session) as s:
        rows = s.execute(
            select(coupon_redemptions)
            .where(coupon_redemptions.c.coupon_id == coupon_id)
            .order_by(coupon_redemptions.c.redeemed_at.asc())
        ).fetchall()
        return [_row_to_redemption(row) for row in rows]
