"""
User account state.

Per-user trial and payment-gateway bookkeeping, plus the pure trial
eligibility rules. Only the lifecycle engine writes trial and gateway fields,
through record_purchase() inside its commit transaction.
"""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from promo_engine.core.database import session_scope, utc_now, as_utc, user_accounts
from promo_engine.models.plan import Plan
from promo_engine.models.user_account import UserAccount, TrialStatus


class StaleAccountError(Exception):
    """The account changed (or the purchase lease was lost) since it was read."""


@dataclass(frozen=True)
class TrialStatusInfo:
    status: TrialStatus
    trial_used: bool
    trial_active: bool
    trial_expires_at: Optional[datetime]
    days_remaining: int


def _row_to_account(row) -> UserAccount:
    return UserAccount(
        user_id=row.user_id,
        email=row.email,
        trial_used=bool(row.trial_used),
        trial_expires_at=as_utc(row.trial_expires_at),
        gateway_customer_id=row.gateway_customer_id,
        gateway_subscription_id=row.gateway_subscription_id,
        plan_id=row.plan_id,
        version=row.version or 0,
    )


def get_account(user_id: str, session: Optional[Session] = None) -> Optional[UserAccount]:
    with session_scope(session) as s:
        row = s.execute(
            select(user_accounts).where(user_accounts.c.user_id == user_id)
        ).first()
        return _row_to_account(row) if row else None


def get_or_create_account(user_id: str, email: Optional[str] = None) -> UserAccount:
    """
    Load the account, creating a zero-value one on the first purchase attempt.

    A zero-value account carries no trial or gateway state, so creating it is
    not a business mutation.
    """
    existing = get_account(user_id)
    if existing:
        return existing

    now = utc_now()
    try:
        with session_scope() as session:
            session.execute(
                insert(user_accounts).values(
                    user_id=user_id,
                    email=email,
                    trial_used=False,
                    version=0,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # Race condition: a concurrent request created it first
        pass

    account = get_account(user_id)
    if account is None:
        raise RuntimeError(f"Account {user_id} vanished after creation")
    return account


def resolve_trial_days(account: UserAccount, plan: Plan, requested_trial: bool) -> int:
    """
    Trial length to grant for this purchase.

    Granted only when requested, never used before, and the plan offers one.
    Lifetime plans are charged once up front, so they never carry a trial.
    Pure: the caller stamps the account after the purchase succeeds.
    """
    if not requested_trial:
        return 0
    if account.trial_used:
        return 0
    if not plan.is_recurring:
        return 0
    if plan.trial_days <= 0:
        return 0
    return plan.trial_days


def trial_status(account: Optional[UserAccount], now: Optional[datetime] = None) -> TrialStatusInfo:
    """Where the account sits on never_trialed -> trialing -> active_or_lapsed."""
    ts = as_utc(now) or utc_now()
    if account is None or not account.trial_used:
        return TrialStatusInfo(
            status=TrialStatus.NEVER_TRIALED,
            trial_used=False,
            trial_active=False,
            trial_expires_at=None,
            days_remaining=0,
        )

    expires_at = account.trial_expires_at
    active = expires_at is not None and expires_at > ts
    days_remaining = 0
    if active:
        days_remaining = max(0, math.ceil((expires_at - ts).total_seconds() / 86400))

    return TrialStatusInfo(
        status=TrialStatus.TRIALING if active else TrialStatus.ACTIVE_OR_LAPSED,
        trial_used=True,
        trial_active=active,
        trial_expires_at=expires_at,
        days_remaining=days_remaining,
    )


def record_purchase(
    session: Session,
    account: UserAccount,
    *,
    lease_owner: str,
    plan_id: str,
    gateway_customer_id: str,
    gateway_subscription_id: str,
    trial_expires_at: Optional[datetime] = None,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Write the outcome of a purchase onto the account (compare-and-swap).

    The update only applies if the row still has the version that was read and
    this request still holds the purchase lease. trial_used is only ever set,
    never cleared.

    Returns:
        The new account version

    Raises:
        StaleAccountError: If the version or lease no longer match
    """
    values = {
        "plan_id": plan_id,
        "gateway_customer_id": gateway_customer_id,
        "gateway_subscription_id": gateway_subscription_id,
        "version": account.version + 1,
        "updated_at": now or utc_now(),
    }
    if trial_expires_at is not None:
        values["trial_used"] = True
        values["trial_expires_at"] = trial_expires_at
    if email and not account.email:
        values["email"] = email

    result = session.execute(
        update(user_accounts)
        .where(user_accounts.c.user_id == account.user_id)
        .where(user_accounts.c.version == account.version)
        .where(user_accounts.c.lock_owner == lease_owner)
        .values(**values)
    )
    if result.rowcount != 1:
        raise StaleAccountError(f"Account {account.user_id} changed during purchase")
    return account.version + 1
