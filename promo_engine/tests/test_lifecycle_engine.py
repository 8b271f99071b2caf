"""
Subscription lifecycle engine scenarios (fake gateway, real database).
"""
import pytest
from datetime import timedelta
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from promo_engine.core.database import get_db_session, utc_now, coupons, plans
from promo_engine.core.errors import (
    BookkeepingError,
    CouponRejectedError,
    GatewayUnavailableError,
    PlanUnavailableError,
)
from promo_engine.core.idempotency import derive_idempotency_key, get_completed_attempt
from promo_engine.features.accounts.service import get_account
from promo_engine.features.catalog.service import create_plan, get_plan
from promo_engine.features.coupons.ledger import get_coupon
from promo_engine.features.redemptions.service import list_redemptions_for_user, list_redemptions_for_coupon
from promo_engine.features.subscriptions import engine as engine_module
from promo_engine.features.subscriptions.engine import LifecycleEngine
from promo_engine.features.subscriptions.gateway import GatewayError
from promo_engine.features.subscriptions.reconcile import list_open_items
from promo_engine.tests.mocks import FakeGateway


@pytest.fixture
def engine(fake_gateway):
    return LifecycleEngine(fake_gateway, gateway_timeout=2.0, lease_wait_seconds=2.0)


def test_trial_purchase_stamps_account(catalog, engine, fake_gateway):
    before = utc_now()

    result = engine.purchase("user-1", "premium-monthly", requested_trial=True, attempt_id="a1")

    assert result.trial_days == 7
    assert result.discount_amount == 0
    assert result.final_amount == 499
    assert result.client_secret is None
    account = get_account("user-1")
    assert account.trial_used is True
    assert before + timedelta(days=7) <= account.trial_expires_at <= utc_now() + timedelta(days=7)
    assert account.gateway_subscription_id == result.gateway_subscription_id
    assert account.plan_id == "premium-monthly"
    assert account.version == 1


def test_second_trial_on_other_plan_is_refused_but_purchase_proceeds(catalog, engine, fake_gateway):
    engine.purchase("user-1", "premium-monthly", requested_trial=True, attempt_id="a1")

    result = engine.purchase("user-1", "pro-monthly", requested_trial=True, attempt_id="a2")

    assert result.trial_days == 0
    assert result.final_amount == 999
    assert result.client_secret is not None
    key = derive_idempotency_key("user-1", "pro-monthly", "a2")
    assert fake_gateway.trial_days[key] == 0


def test_coupon_purchase_records_redemption(catalog, engine, fake_gateway, make_coupon):
    coupon = make_coupon("HALF", discount_value=50, max_uses=10)

    result = engine.purchase("user-1", "pro-monthly", coupon_code="HALF", attempt_id="a1")

    assert result.discount_amount == 499
    assert result.final_amount == 500
    assert get_coupon(coupon.coupon_id).redemption_count == 1
    redemptions = list_redemptions_for_user("user-1")
    assert len(redemptions) == 1
    assert redemptions[0].discount_amount == 499
    assert redemptions[0].gateway_subscription_id == result.gateway_subscription_id
    spec = fake_gateway.price_specs[derive_idempotency_key("user-1", "pro-monthly", "a1")]
    assert spec.final_amount == 500
    assert spec.discount_amount == 499


def test_trial_with_coupon_defers_charge_and_records_redemption(catalog, engine, fake_gateway, make_coupon):
    make_coupon("HALF", discount_value=50)

    result = engine.purchase("user-1", "premium-monthly", coupon_code="HALF", requested_trial=True, attempt_id="a1")

    assert result.trial_days == 7
    assert result.discount_amount == 249
    assert len(list_redemptions_for_user("user-1")) == 1


@pytest.mark.parametrize(
    "setup, code, reason",
    [
        ({}, "NOPE", "not_found"),
        ({"is_active": False}, "X", "inactive"),
        ({"applicable_plans": ["lifetime-pass"]}, "X", "plan_mismatch"),
    ],
)
def test_rejected_coupon_aborts_without_writes(catalog, engine, fake_gateway, make_coupon, setup, code, reason):
    make_coupon("X", **setup)

    with pytest.raises(CouponRejectedError) as exc_info:
        engine.purchase("user-1", "premium-monthly", coupon_code=code, requested_trial=True)

    assert exc_info.value.reason == reason
    assert fake_gateway.create_calls == 0
    account = get_account("user-1")
    assert account.trial_used is False
    assert account.version == 0


def test_expired_coupon_rejected(catalog, engine, make_coupon):
    now = utc_now()
    make_coupon("OLD", valid_from=now - timedelta(days=30), valid_until=now - timedelta(days=1), max_uses=100)

    with pytest.raises(CouponRejectedError) as exc_info:
        engine.purchase("user-1", "premium-monthly", coupon_code="OLD")

    assert exc_info.value.reason == "expired"


def test_missing_plan_is_unavailable(catalog, engine):
    with pytest.raises(PlanUnavailableError):
        engine.purchase("user-1", "enterprise")


def test_inactive_plan_is_unavailable(engine):
    create_plan("retired", "Retired", 100, "month", is_active=False)

    with pytest.raises(PlanUnavailableError):
        engine.purchase("user-1", "retired")


def test_sold_out_plan_is_unavailable(engine):
    create_plan("founders", "Founders", 5000, "lifetime", max_users=1, current_users=1)

    with pytest.raises(PlanUnavailableError):
        engine.purchase("user-1", "founders")


def test_lifetime_purchase_takes_last_seat_and_deactivates(engine, fake_gateway):
    create_plan("founders", "Founders", 5000, "lifetime", max_users=1)

    result = engine.purchase("user-1", "founders", attempt_id="a1")

    assert result.final_amount == 5000
    plan = get_plan("founders")
    assert plan.current_users == 1
    assert plan.is_active is False
    with pytest.raises(PlanUnavailableError):
        engine.purchase("user-2", "founders")


def test_recurring_purchase_does_not_take_seat(catalog, engine):
    engine.purchase("user-1", "premium-monthly")

    assert get_plan("premium-monthly").current_users == 0


def test_existing_gateway_customer_is_reused(catalog, engine, fake_gateway):
    engine.purchase("user-1", "premium-monthly", attempt_id="a1")
    engine.purchase("user-1", "pro-monthly", attempt_id="a2")

    assert len(fake_gateway.customers) == 1


def test_replay_returns_original_result(catalog, engine, fake_gateway, make_coupon):
    coupon = make_coupon("HALF", max_uses=5)

    first = engine.purchase("user-1", "pro-monthly", coupon_code="HALF", attempt_id="same")
    second = engine.purchase("user-1", "pro-monthly", coupon_code="HALF", attempt_id="same")

    assert second.replayed is True
    assert second.gateway_subscription_id == first.gateway_subscription_id
    assert second.discount_amount == first.discount_amount
    assert len(fake_gateway.subscriptions) == 1
    assert get_coupon(coupon.coupon_id).redemption_count == 1
    assert get_account("user-1").version == 1


def test_retry_after_gateway_timeout_creates_one_subscription(catalog, make_coupon):
    coupon = make_coupon("HALF", max_uses=5)
    gateway = FakeGateway(delay=0.5)
    engine = LifecycleEngine(gateway, gateway_timeout=0.05, lease_wait_seconds=2.0)

    with pytest.raises(GatewayUnavailableError):
        engine.purchase("user-1", "pro-monthly", coupon_code="HALF", attempt_id="retry-me")

    # Nothing committed by the timed-out attempt
    assert get_coupon(coupon.coupon_id).redemption_count == 0
    assert get_account("user-1").version == 0

    gateway.delay = 0.0
    result = engine.purchase("user-1", "pro-monthly", coupon_code="HALF", attempt_id="retry-me")

    assert len(gateway.subscriptions) == 1
    assert result.gateway_subscription_id == "sub_1"
    assert len(list_redemptions_for_coupon(coupon.coupon_id)) == 1
    assert get_coupon(coupon.coupon_id).redemption_count == 1


def test_gateway_error_is_unavailable_and_writes_nothing(catalog):
    gateway = FakeGateway(fail_with=GatewayError("card network down"))
    engine = LifecycleEngine(gateway, gateway_timeout=1.0)

    with pytest.raises(GatewayUnavailableError) as exc_info:
        engine.purchase("user-1", "premium-monthly", requested_trial=True)

    assert exc_info.value.status_code == 503
    assert get_account("user-1").trial_used is False


def test_lost_coupon_race_compensates_and_rejects(catalog, make_coupon):
    coupon = make_coupon("LAST", max_uses=1)

    def someone_else_redeems(price_spec):
        with get_db_session() as session:
            session.execute(
                update(coupons)
                .where(coupons.c.coupon_id == coupon.coupon_id)
                .values(redemption_count=1)
            )

    gateway = FakeGateway(on_create=someone_else_redeems)
    engine = LifecycleEngine(gateway, gateway_timeout=2.0)

    with pytest.raises(CouponRejectedError) as exc_info:
        engine.purchase("user-1", "premium-monthly", coupon_code="LAST", requested_trial=True)

    assert exc_info.value.reason == "exhausted"
    assert gateway.cancelled == ["sub_1"]
    assert list_redemptions_for_user("user-1") == []
    account = get_account("user-1")
    assert account.trial_used is False
    assert account.gateway_subscription_id is None


def test_lost_seat_race_compensates():
    create_plan("founders", "Founders", 5000, "lifetime", max_users=1)

    def someone_else_buys(price_spec):
        with get_db_session() as session:
            session.execute(update(plans).where(plans.c.plan_id == "founders").values(current_users=1))

    gateway = FakeGateway(on_create=someone_else_buys)
    engine = LifecycleEngine(gateway, gateway_timeout=2.0)

    with pytest.raises(PlanUnavailableError):
        engine.purchase("user-1", "founders")

    assert gateway.cancelled == ["sub_1"]
    assert get_account("user-1").plan_id is None


def test_commit_failure_is_reconciled_not_rejected(catalog, make_coupon, monkeypatch):
    coupon = make_coupon("HALF", max_uses=5)
    gateway = FakeGateway()
    engine = LifecycleEngine(gateway, gateway_timeout=2.0, commit_attempts=2)

    def broken_append(session, **kwargs):
        raise OperationalError("INSERT INTO coupon_redemptions", {}, Exception("disk I/O error"))

    monkeypatch.setattr(engine_module, "append_redemption", broken_append)

    with pytest.raises(BookkeepingError) as exc_info:
        engine.purchase("user-1", "pro-monthly", coupon_code="HALF", attempt_id="a1")

    assert exc_info.value.status_code == 409
    assert exc_info.value.code != "coupon_rejected"
    # Gateway subscription kept for manual reconciliation
    assert gateway.cancelled == []
    items = list_open_items()
    assert len(items) == 1
    assert items[0]["gateway_subscription_id"] == "sub_1"
    assert items[0]["coupon_id"] == coupon.coupon_id
    assert items[0]["user_id"] == "user-1"
    # Commit point rolled back as a whole
    assert get_coupon(coupon.coupon_id).redemption_count == 0
    assert get_account("user-1").version == 0


def test_commit_retry_recovers_from_transient_failure(catalog, make_coupon, monkeypatch):
    make_coupon("HALF", max_uses=5)
    gateway = FakeGateway()
    engine = LifecycleEngine(gateway, gateway_timeout=2.0, commit_attempts=3)
    real_append = engine_module.append_redemption
    calls = {"n": 0}

    def flaky_append(session, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OperationalError("INSERT INTO coupon_redemptions", {}, Exception("database is locked"))
        return real_append(session, **kwargs)

    monkeypatch.setattr(engine_module, "append_redemption", flaky_append)

    result = engine.purchase("user-1", "pro-monthly", coupon_code="HALF", attempt_id="a1")

    assert result.discount_amount == 499
    assert len(list_redemptions_for_user("user-1")) == 1
    assert list_open_items() == []


def test_cancellation_before_commit_compensates(catalog, make_coupon, monkeypatch):
    coupon = make_coupon("HALF", max_uses=5)
    gateway = FakeGateway()
    engine = LifecycleEngine(gateway, gateway_timeout=2.0)

    def interrupted(session, **kwargs):
        raise KeyboardInterrupt()

    monkeypatch.setattr(engine_module, "record_completed_attempt", interrupted)

    with pytest.raises(KeyboardInterrupt):
        engine.purchase("user-1", "premium-monthly", coupon_code="HALF", requested_trial=True, attempt_id="a1")

    assert gateway.cancelled == ["sub_1"]
    assert get_coupon(coupon.coupon_id).redemption_count == 0
    assert get_account("user-1").trial_used is False
    assert get_completed_attempt(derive_idempotency_key("user-1", "premium-monthly", "a1")) is None


def test_failed_compensation_is_queued_for_reconciliation(catalog, make_coupon):
    coupon = make_coupon("LAST", max_uses=1)

    def someone_else_redeems(price_spec):
        with get_db_session() as session:
            session.execute(update(coupons).where(coupons.c.coupon_id == coupon.coupon_id).values(redemption_count=1))

    gateway = FakeGateway(on_create=someone_else_redeems, cancel_fails=True)
    engine = LifecycleEngine(gateway, gateway_timeout=2.0)

    with pytest.raises(CouponRejectedError):
        engine.purchase("user-1", "premium-monthly", coupon_code="LAST")

    items = list_open_items()
    assert len(items) == 1
    assert "compensation failed" in items[0]["error"]
