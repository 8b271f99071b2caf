"""
promo_engine/features/catalog/service.py

Plan catalog service.

Handles:
- Plan seeding (free, premium, pro, premium yearly, lifetime pass)
- Plan lookup and listing
- Seat accounting for capped lifetime offers
"""

from typing import Optional, List, Dict, Any
from sqlalchemy import select, insert, update, and_, or_, case
from sqlalchemy.orm import Session
from sqlalchemy.sql import false

from promo_engine.core.database import session_scope, utc_now, as_utc, plans
from promo_engine.core.errors import ValidationError
from promo_engine.models.plan import Plan, BillingInterval


# Launch catalog (prices in cents)
DEFAULT_PLANS: Dict[str, Dict[str, Any]] = {
    "free": {
        "name": "Free",
        "description": "Basic AI cooking assistant with limited features",
        "gateway_price_id": "price_free",
        "price": 0,
        "interval": "month",
        "trial_days": 0,
        "features": [
            "Basic recipe suggestions",
            "Simple meal planning",
            "Limited voice commands",
            "Basic grocery lists",
        ],
    },
    "premium-monthly": {
        "name": "Premium",
        "description": "Enhanced AI cooking with advanced features and unlimited access",
        "gateway_price_id": "price_premium_monthly",
        "price": 499,
        "interval": "month",
        "trial_days": 7,
        "features": [
            "Unlimited AI recipe generation",
            "Advanced meal planning with nutrition tracking",
            "Smart grocery lists with price comparison",
            "Export meal plans and shopping lists",
        ],
    },
    "pro-monthly": {
        "name": "Pro",
        "description": "Professional chef-level features for restaurants and power users",
        "gateway_price_id": "price_pro_monthly",
        "price": 999,
        "interval": "month",
        "trial_days": 14,
        "features": [
            "Everything in Premium",
            "Inventory management with expiration tracking",
            "Meal prep optimization",
            "Bulk meal planning for families",
        ],
    },
    "premium-yearly": {
        "name": "Premium Yearly",
        "description": "Enhanced AI cooking with advanced features - yearly billing",
        "gateway_price_id": "price_premium_yearly",
        "price": 4799,
        "interval": "year",
        "trial_days": 7,
        "features": [
            "Everything in Premium Plan",
            "Save 20% compared to monthly billing",
        ],
    },
    "lifetime-pass": {
        "name": "Lifetime Pass",
        "description": "One-time payment for lifetime access - limited launch offer",
        "gateway_price_id": "price_lifetime_pass",
        "price": 9999,
        "interval": "lifetime",
        "trial_days": 0,
        "max_users": 1000,
        "features": [
            "Everything in Pro Plan - Forever",
            "No recurring payments ever",
            "Founding member status and badge",
        ],
    },
}


def _row_to_plan(row) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        name=row.name,
        description=row.description,
        gateway_price_id=row.gateway_price_id,
        price=row.price,
        interval=BillingInterval(row.interval),
        trial_days=row.trial_days or 0,
        max_users=row.max_users,
        current_users=row.current_users or 0,
        is_active=bool(row.is_active),
        features=list(row.features or []),
        created_at=as_utc(row.created_at),
    )


def create_plan(
    plan_id: str,
    name: str,
    price: int,
    interval: str,
    *,
    description: Optional[str] = None,
    gateway_price_id: Optional[str] = None,
    trial_days: int = 0,
    max_users: Optional[int] = None,
    current_users: int = 0,
    is_active: bool = True,
    features: Optional[List[str]] = None,
    session: Optional[Session] = None,
) -> Plan:
    """
    Add a plan to the catalog.

    Raises:
        ValidationError: If the plan attributes are out of range
    """
    try:
        plan = Plan(
            plan_id=plan_id,
            name=name,
            description=description,
            gateway_price_id=gateway_price_id,
            price=price,
            interval=BillingInterval(interval),
            trial_days=trial_days,
            max_users=max_users,
            current_users=current_users,
            is_active=is_active,
            features=features or [],
            created_at=utc_now(),
        )
    except ValueError as e:
        raise ValidationError(f"Invalid plan: {e}")

    with session_scope(session) as s:
        s.execute(
            insert(plans).values(
                plan_id=plan.plan_id,
                name=plan.name,
                description=plan.description,
                gateway_price_id=plan.gateway_price_id,
                price=plan.price,
                interval=plan.interval.value,
                trial_days=plan.trial_days,
                max_users=plan.max_users,
                current_users=plan.current_users,
                is_active=plan.is_active,
                features=plan.features,
                created_at=plan.created_at,
            )
        )
    return plan


def seed_plans() -> int:
    """
    Seed the launch catalog (idempotent).

    Returns:
        Number of plans inserted
    """
    inserted = 0
    with session_scope() as session:
        for plan_id, config in DEFAULT_PLANS.items():
            existing = session.execute(
                select(plans.c.plan_id).where(plans.c.plan_id == plan_id)
            ).first()
            if existing:
                continue
            create_plan(plan_id, session=session, **config)
            inserted += 1
    return inserted


def get_plan(plan_id: str, session: Optional[Session] = None) -> Optional[Plan]:
    """Get plan by ID."""
    with session_scope(session) as s:
        row = s.execute(
            select(plans).where(plans.c.plan_id == plan_id)
        ).first()

        if not row:
            return None

        return _row_to_plan(row)


def list_plans(include_inactive: bool = True) -> List[Plan]:
    """List catalog plans, cheapest first."""
    with session_scope() as session:
        query = select(plans).order_by(plans.c.price.asc(), plans.c.plan_id.asc())
        if not include_inactive:
            query = query.where(plans.c.is_active == True)
        rows = session.execute(query).fetchall()
        return [_row_to_plan(row) for row in rows]


def claim_seat(session: Session, plan_id: str) -> bool:
    """
    Atomically take one seat on a plan inside the caller's transaction.

    The plan deactivates itself in the same statement once the cap is reached.
    Returns False when the plan is inactive or already sold out.
    """
    reaches_cap = and_(
        plans.c.max_users.isnot(None),
        plans.c.current_users + 1 >= plans.c.max_users,
    )
    result = session.execute(
        update(plans)
        .where(plans.c.plan_id == plan_id)
        .where(plans.c.is_active == True)
        .where(or_(plans.c.max_users.is_(None), plans.c.current_users < plans.c.max_users))
        .values(
            current_users=plans.c.current_users + 1,
            is_active=case((reaches_cap, false()), else_=plans.c.is_active),
        )
    )
    return result.rowcount == 1
