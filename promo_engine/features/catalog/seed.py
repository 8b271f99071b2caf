"""Launch catalog seeding (plans first, coupons reference them)."""
from datetime import datetime
from typing import Dict, Optional

from promo_engine.core.logging import log_event
from promo_engine.features.catalog.service import seed_plans
from promo_engine.features.coupons.ledger import seed_coupons


def seed_catalog(now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Idempotently insert the launch plans and coupons.

    Returns:
        {"plans": inserted, "coupons": inserted}
    """
    counts = {"plans": seed_plans(), "coupons": seed_coupons(now=now)}
    log_event("info", "catalog.seeded", event_type="catalog.seed", extra=counts)
    return counts
