"""
promo_engine/core/idempotency.py
Idempotency keys for purchase attempts.

One key per (user, plan, attempt). The same key is sent to the payment
gateway on every retry, and the completed outcome is stored under it so a
replayed request returns the original result instead of buying twice.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from sqlalchemy import select, insert
from sqlalchemy.orm import Session

from promo_engine.core.database import session_scope, utc_now, as_utc, purchase_attempts


def derive_idempotency_key(user_id: str, plan_id: str, attempt_id: str) -> str:
    """Stable key for one purchase attempt (sha256 hex)."""
    raw = f"{user_id}:{plan_id}:{attempt_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def scoped_key(idempotency_key: str, scope: str) -> str:
    """Derived key for a secondary gateway call made on behalf of the same attempt."""
    return f"{idempotency_key}:{scope}"


@dataclass(frozen=True)
class CompletedAttempt:
    idempotency_key: str
    attempt_id: str
    user_id: str
    plan_id: str
    coupon_id: Optional[str]
    gateway_subscription_id: str
    client_secret: Optional[str]
    trial_days: int
    discount_amount: int
    final_amount: int
    completed_at: datetime


def get_completed_attempt(idempotency_key: str, session: Optional[Session] = None) -> Optional[CompletedAttempt]:
    """Return the stored outcome for a key, or None if it never committed."""
    with session_scope(session) as s:
        row = s.execute(
            select(purchase_attempts).where(purchase_attempts.c.idempotency_key == idempotency_key)
        ).first()
        if not row:
            return None
        return CompletedAttempt(
            idempotency_key=row.idempotency_key,
            attempt_id=row.attempt_id,
            user_id=row.user_id,
            plan_id=row.plan_id,
            coupon_id=row.coupon_id,
            gateway_subscription_id=row.gateway_subscription_id,
            client_secret=row.client_secret,
            trial_days=row.trial_days,
            discount_amount=row.discount_amount,
            final_amount=row.final_amount,
            completed_at=as_utc(row.completed_at),
        )


def record_completed_attempt(
    session: Session,
    *,
    idempotency_key: str,
    attempt_id: str,
    user_id: str,
    plan_id: str,
    coupon_id: Optional[str],
    gateway_subscription_id: str,
    client_secret: Optional[str],
    trial_days: int,
    discount_amount: int,
    final_amount: int,
    completed_at: Optional[datetime] = None,
) -> None:
    """Store the outcome inside the commit transaction (primary key = idempotency key)."""
    session.execute(
        insert(purchase_attempts).values(
            idempotency_key=idempotency_key,
            attempt_id=attempt_id,
            user_id=user_id,
            plan_id=plan_id,
            coupon_id=coupon_id,
            gateway_subscription_id=gateway_subscription_id,
            client_secret=client_secret,
            trial_days=trial_days,
            discount_amount=discount_amount,
            final_amount=final_amount,
            completed_at=completed_at or utc_now(),
        )
    )
