"""Idempotency keys for purchase attempts."""
from promo_engine.core.database import get_db_session
from promo_engine.core.idempotency import (
    derive_idempotency_key,
    get_completed_attempt,
    record_completed_attempt,
    scoped_key,
)
from promo_engine.features.accounts.service import get_or_create_account


def test_key_is_stable_for_same_attempt():
    assert derive_idempotency_key("u1", "p1", "a1") == derive_idempotency_key("u1", "p1", "a1")


def test_key_differs_per_component():
    base = derive_idempotency_key("u1", "p1", "a1")

    assert base != derive_idempotency_key("u2", "p1", "a1")
    assert base != derive_idempotency_key("u1", "p2", "a1")
    assert base != derive_idempotency_key("u1", "p1", "a2")


def test_key_is_sha256_hex():
    key = derive_idempotency_key("u1", "p1", "a1")

    assert len(key) == 64
    int(key, 16)


def test_scoped_key_is_distinct_but_derived():
    key = derive_idempotency_key("u1", "p1", "a1")

    assert scoped_key(key, "customer") == f"{key}:customer"
    assert scoped_key(key, "customer") != scoped_key(key, "coupon")


def test_completed_attempt_round_trip(catalog):
    get_or_create_account("u1")
    key = derive_idempotency_key("u1", "premium-monthly", "a1")
    assert get_completed_attempt(key) is None

    with get_db_session() as session:
        record_completed_attempt(
            session,
            idempotency_key=key,
            attempt_id="a1",
            user_id="u1",
            plan_id="premium-monthly",
            coupon_id=None,
            gateway_subscription_id="sub_1",
            client_secret=None,
            trial_days=7,
            discount_amount=0,
            final_amount=499,
        )

    stored = get_completed_attempt(key)
    assert stored.gateway_subscription_id == "sub_1"
    assert stored.trial_days == 7
    assert stored.completed_at.tzinfo is not None
