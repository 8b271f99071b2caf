"""
Coupon ledger.

Stores promotional codes and their usage counters. Reads are plain lookups;
the only counter write is claim_redemption(), which the lifecycle engine runs
inside its commit transaction.
"""
from datetime import datetime, timedelta
from typing import Optional, List, Iterable
from uuid import uuid4
from sqlalchemy import select, insert, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from promo_engine.core.database import session_scope, utc_now, as_utc, coupons
from promo_engine.core.errors import ConflictError, ValidationError
from promo_engine.models.coupon import Coupon, DiscountKind


# Launch promotions; applicable plans reference catalog plan ids
DEFAULT_COUPONS = [
    {
        "code": "LAUNCH50",
        "name": "Launch Special - 50% Off",
        "description": "Limited time: 50% off your first month of Premium",
        "discount_kind": "percentage",
        "discount_value": 50,
        "max_uses": 1000,
        "valid_for_days": 30,
        "applicable_plans": ["premium-monthly", "premium-yearly"],
    },
    {
        "code": "EARLYBIRD",
        "name": "Early Bird Discount",
        "description": "Get $10 off the Lifetime Pass (first 100 users only)",
        "discount_kind": "fixed_amount",
        "discount_value": 1000,
        "min_amount": 5000,
        "max_uses": 100,
        "valid_for_days": 7,
        "applicable_plans": ["lifetime-pass"],
    },
    {
        "code": "FIRSTUSER",
        "name": "First User Bonus",
        "description": "First billing period free for early adopters",
        "discount_kind": "percentage",
        "discount_value": 100,
        "max_uses": 200,
        "valid_for_days": 30,
        "applicable_plans": ["premium-monthly", "premium-yearly"],
    },
    {
        "code": "ANNUAL25",
        "name": "Annual Plan Bonus",
        "description": "Extra 25% off yearly subscriptions",
        "discount_kind": "percentage",
        "discount_value": 25,
        "min_amount": 2000,
        "max_uses": 500,
        "valid_for_days": 60,
        "applicable_plans": ["premium-yearly"],
    },
    {
        "code": "APPSTORE25",
        "name": "App Store Launch - 25% Off",
        "description": "App Store exclusive: 25% off for new iOS users",
        "discount_kind": "percentage",
        "discount_value": 25,
        "max_uses": 2000,
        "valid_for_days": 90,
        "applicable_plans": ["premium-monthly", "premium-yearly"],
    },
]


def _row_to_coupon(row) -> Coupon:
    return Coupon(
        coupon_id=row.coupon_id,
        code=row.code,
        name=row.name,
        description=row.description,
        discount_kind=DiscountKind(row.discount_kind),
        discount_value=row.discount_value,
        min_amount=row.min_amount or 0,
        max_uses=row.max_uses,
        redemption_count=row.redemption_count or 0,
        valid_from=as_utc(row.valid_from),
        valid_until=as_utc(row.valid_until),
        is_active=bool(row.is_active),
        applicable_plans=frozenset(row.applicable_plans or []),
        created_at=as_utc(row.created_at),
    )


def get_coupon_by_code(code: str, session: Optional[Session] = None) -> Optional[Coupon]:
    """Exact, case-sensitive lookup by human-entered code."""
    with session_scope(session) as s:
        row = s.execute(
            select(coupons).where(coupons.c.code == code)
        ).first()
        return _row_to_coupon(row) if row else None


def get_coupon(coupon_id: str, session: Optional[Session] = None) -> Optional[Coupon]:
    with session_scope(session) as s:
        row = s.execute(
            select(coupons).where(coupons.c.coupon_id == coupon_id)
        ).first()
        return _row_to_coupon(row) if row else None


def create_coupon(
    code: str,
    name: str,
    discount_kind: str,
    discount_value: int,
    *,
    description: Optional[str] = None,
    min_amount: int = 0,
    max_uses: Optional[int] = None,
    valid_from: Optional[datetime] = None,
    valid_until: Optional[datetime] = None,
    is_active: bool = True,
    applicable_plans: Optional[Iterable[str]] = None,
    session: Optional[Session] = None,
) -> Coupon:
    """
    Add a coupon to the ledger.

    Raises:
        ValidationError: If the discount rule or window is invalid
        ConflictError: If the code is already taken
    """
    now = utc_now()
    try:
        coupon = Coupon(
            coupon_id=str(uuid4()),
            code=code,
            name=name,
            description=description,
            discount_kind=DiscountKind(discount_kind),
            discount_value=discount_value,
            min_amount=min_amount,
            max_uses=max_uses,
            redemption_count=0,
            valid_from=as_utc(valid_from) or now,
            valid_until=as_utc(valid_until),
            is_active=is_active,
            applicable_plans=frozenset(applicable_plans or []),
            created_at=now,
        )
    except ValueError as e:
        raise ValidationError(f"Invalid coupon: {e}")

    if coupon.valid_until is not None and coupon.valid_until < coupon.valid_from:
        raise ValidationError("Invalid coupon: valid_until precedes valid_from")

    try:
        with session_scope(session) as s:
            s.execute(
                insert(coupons).values(
                    coupon_id=coupon.coupon_id,
                    code=coupon.code,
                    name=coupon.name,
                    description=coupon.description,
                    discount_kind=coupon.discount_kind.value,
                    discount_value=coupon.discount_value,
                    min_amount=coupon.min_amount,
                    max_uses=coupon.max_uses,
                    redemption_count=0,
                    valid_from=coupon.valid_from,
                    valid_until=coupon.valid_until,
                    is_active=coupon.is_active,
                    applicable_plans=sorted(coupon.applicable_plans),
                    created_at=coupon.created_at,
                )
            )
            s.flush()
    except IntegrityError:
        raise ConflictError(f"Coupon code already exists: {code}")

    return coupon


def list_active_coupons(now: Optional[datetime] = None) -> List[Coupon]:
    """Coupons that are enabled, inside their window and not used up."""
    ts = now or utc_now()
    with session_scope() as session:
        rows = session.execute(
            select(coupons)
            .where(coupons.c.is_active == True)
            .where(coupons.c.valid_from <= ts)
            .where(or_(coupons.c.valid_until.is_(None), coupons.c.valid_until >= ts))
            .where(or_(coupons.c.max_uses.is_(None), coupons.c.redemption_count < coupons.c.max_uses))
            .order_by(coupons.c.code.asc())
        ).fetchall()
        return [_row_to_coupon(row) for row in rows]


def claim_redemption(session: Session, coupon_id: str) -> bool:
    """
    Atomically consume one use of a coupon inside the caller's transaction.

    The cap is re-checked in the UPDATE itself so two transactions racing for
    the last use cannot both succeed. Returns False when the coupon is used up
    (or was disabled since validation).
    """
    result = session.execute(
        update(coupons)
        .where(coupons.c.coupon_id == coupon_id)
        .where(coupons.c.is_active == True)
        .where(or_(coupons.c.max_uses.is_(None), coupons.c.redemption_count < coupons.c.max_uses))
        .values(redemption_count=coupons.c.redemption_count + 1)
    )
    return result.rowcount == 1


def seed_coupons(now: Optional[datetime] = None) -> int:
    """
    Seed launch coupons (idempotent by code).

    Returns:
        Number of coupons inserted
    """
    ts = now or utc_now()
    inserted = 0
    with session_scope() as session:
        for config in DEFAULT_COUPONS:
            if get_coupon_by_code(config["code"], session=session):
                continue
            params = dict(config)
            valid_for_days = params.pop("valid_for_days")
            create_coupon(
                valid_from=ts,
                valid_until=ts + timedelta(days=valid_for_days),
                session=session,
                **params,
            )
            inserted += 1
    return inserted
