"""Plan catalog: seeding, listing, seat accounting."""
import pytest

from promo_engine.core.database import get_db_session
from promo_engine.core.errors import ValidationError
from promo_engine.features.catalog.seed import seed_catalog
from promo_engine.features.catalog.service import (
    DEFAULT_PLANS,
    claim_seat,
    create_plan,
    get_plan,
    list_plans,
    seed_plans,
)
from promo_engine.features.coupons.ledger import get_coupon_by_code
from promo_engine.models.plan import BillingInterval


def test_seed_plans_is_idempotent():
    assert seed_plans() == len(DEFAULT_PLANS)
    assert seed_plans() == 0
    assert len(list_plans()) == len(DEFAULT_PLANS)


def test_list_plans_cheapest_first(catalog):
    prices = [plan.price for plan in list_plans()]
    assert prices == sorted(prices)


def test_lifetime_pass_is_seat_capped(catalog):
    plan = get_plan("lifetime-pass")

    assert plan.interval == BillingInterval.LIFETIME
    assert plan.is_recurring is False
    assert plan.max_users == 1000
    assert plan.is_available is True


def test_get_plan_missing_returns_none():
    assert get_plan("does-not-exist") is None


def test_create_plan_rejects_negative_price():
    with pytest.raises(ValidationError):
        create_plan("broken", "Broken", -1, "month")


def test_create_plan_rejects_unknown_interval():
    with pytest.raises(ValidationError):
        create_plan("broken", "Broken", 100, "weekly")


def test_claim_seat_deactivates_plan_at_cap():
    create_plan("founders", "Founders", 5000, "lifetime", max_users=2)

    with get_db_session() as session:
        assert claim_seat(session, "founders") is True
    assert get_plan("founders").is_active is True

    with get_db_session() as session:
        assert claim_seat(session, "founders") is True
    plan = get_plan("founders")
    assert plan.current_users == 2
    assert plan.is_active is False

    with get_db_session() as session:
        assert claim_seat(session, "founders") is False
    assert get_plan("founders").current_users == 2


def test_claim_seat_uncapped_plan_stays_active():
    create_plan("open", "Open", 100, "lifetime")

    with get_db_session() as session:
        for _ in range(3):
            assert claim_seat(session, "open") is True

    plan = get_plan("open")
    assert plan.current_users == 3
    assert plan.is_active is True


def test_seed_catalog_inserts_plans_and_coupons():
    counts = seed_catalog()

    assert counts == {"plans": 5, "coupons": 5}
    assert get_coupon_by_code("EARLYBIRD").applicable_plans == frozenset({"lifetime-pass"})
    assert seed_catalog() == {"plans": 0, "coupons": 0}
