"""User account state: trial eligibility, trial status, purchase lease."""
import pytest
from datetime import datetime, timedelta, timezone

from promo_engine.core.database import get_db_session, utc_now
from promo_engine.core.errors import PurchaseInProgressError
from promo_engine.features.accounts import lease
from promo_engine.features.accounts.service import (
    StaleAccountError,
    get_account,
    get_or_create_account,
    record_purchase,
    resolve_trial_days,
    trial_status,
)
from promo_engine.models.plan import Plan, BillingInterval
from promo_engine.models.user_account import UserAccount, TrialStatus


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _plan(trial_days: int = 7) -> Plan:
    return Plan(plan_id="premium-monthly", name="Premium", price=499, interval=BillingInterval.MONTH, trial_days=trial_days)


def test_trial_granted_when_requested_and_unused():
    assert resolve_trial_days(UserAccount(user_id="u1"), _plan(7), True) == 7


def test_trial_not_granted_unless_requested():
    assert resolve_trial_days(UserAccount(user_id="u1"), _plan(7), False) == 0


def test_trial_not_granted_twice():
    account = UserAccount(user_id="u1", trial_used=True, trial_expires_at=NOW)
    assert resolve_trial_days(account, _plan(14), True) == 0


def test_trial_not_granted_for_plan_without_trial():
    assert resolve_trial_days(UserAccount(user_id="u1"), _plan(0), True) == 0


def test_trial_never_granted_on_lifetime_plan():
    plan = Plan(plan_id="founders", name="Founders", price=5000, interval=BillingInterval.LIFETIME, trial_days=7)

    assert resolve_trial_days(UserAccount(user_id="u1"), plan, True) == 0


def test_trial_used_requires_expiry():
    with pytest.raises(ValueError):
        UserAccount(user_id="u1", trial_used=True)


def test_trial_status_never_trialed():
    info = trial_status(None, NOW)
    assert info.status == TrialStatus.NEVER_TRIALED
    assert info.days_remaining == 0
    assert info.trial_active is False


def test_trial_status_trialing_rounds_days_up():
    account = UserAccount(user_id="u1", trial_used=True, trial_expires_at=NOW + timedelta(days=6, hours=1))

    info = trial_status(account, NOW)

    assert info.status == TrialStatus.TRIALING
    assert info.trial_active is True
    assert info.days_remaining == 7


def test_trial_status_lapsed():
    account = UserAccount(user_id="u1", trial_used=True, trial_expires_at=NOW - timedelta(seconds=1))

    info = trial_status(account, NOW)

    assert info.status == TrialStatus.ACTIVE_OR_LAPSED
    assert info.trial_used is True
    assert info.days_remaining == 0


def test_get_or_create_account_is_idempotent():
    first = get_or_create_account("u1", "u1@example.com")
    second = get_or_create_account("u1", "other@example.com")

    assert first == second
    assert second.email == "u1@example.com"
    assert second.trial_used is False
    assert second.version == 0


def test_record_purchase_bumps_version_and_stamps_trial(catalog):
    account = get_or_create_account("u1")
    assert lease.try_acquire("u1", "owner-1")
    expires = utc_now() + timedelta(days=7)

    with get_db_session() as session:
        new_version = record_purchase(
            session,
            account,
            lease_owner="owner-1",
            plan_id="premium-monthly",
            gateway_customer_id="cus_1",
            gateway_subscription_id="sub_1",
            trial_expires_at=expires,
        )

    stored = get_account("u1")
    assert new_version == 1
    assert stored.version == 1
    assert stored.trial_used is True
    assert stored.gateway_subscription_id == "sub_1"
    assert stored.plan_id == "premium-monthly"


def test_record_purchase_rejects_stale_version(catalog):
    account = get_or_create_account("u1")
    assert lease.try_acquire("u1", "owner-1")

    with get_db_session() as session:
        record_purchase(
            session, account, lease_owner="owner-1", plan_id="free",
            gateway_customer_id="cus_1", gateway_subscription_id="sub_1",
        )

    with pytest.raises(StaleAccountError):
        with get_db_session() as session:
            record_purchase(
                session, account, lease_owner="owner-1", plan_id="free",
                gateway_customer_id="cus_1", gateway_subscription_id="sub_2",
            )

    assert get_account("u1").gateway_subscription_id == "sub_1"


def test_record_purchase_requires_lease(catalog):
    account = get_or_create_account("u1")

    with pytest.raises(StaleAccountError):
        with get_db_session() as session:
            record_purchase(
                session, account, lease_owner="nobody", plan_id="free",
                gateway_customer_id="cus_1", gateway_subscription_id="sub_1",
            )


def test_lease_is_exclusive_until_released():
    get_or_create_account("u1")

    assert lease.try_acquire("u1", "a") is True
    assert lease.try_acquire("u1", "b") is False

    lease.release("u1", "b")  # not the owner, no effect
    assert lease.try_acquire("u1", "b") is False

    lease.release("u1", "a")
    assert lease.try_acquire("u1", "b") is True


def test_stale_lease_can_be_taken_over():
    get_or_create_account("u1")
    now = utc_now()

    assert lease.try_acquire("u1", "a", now=now - timedelta(seconds=120), ttl_seconds=60)
    assert lease.try_acquire("u1", "b", now=now, ttl_seconds=60) is True


def test_purchase_lease_times_out_with_in_progress_error():
    get_or_create_account("u1")
    assert lease.try_acquire("u1", "someone-else")

    with pytest.raises(PurchaseInProgressError):
        with lease.purchase_lease("u1", wait_seconds=0.05, sleep=lambda s: None):
            pass


def test_purchase_lease_releases_on_error():
    get_or_create_account("u1")

    with pytest.raises(RuntimeError):
        with lease.purchase_lease("u1", wait_seconds=0):
            raise RuntimeError("boom")

    assert lease.try_acquire("u1", "next") is True
