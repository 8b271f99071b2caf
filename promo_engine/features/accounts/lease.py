"""
Per-user purchase lease.

Serializes purchases for one user across workers and processes. The lease is
a claim on the account row (lock_owner, locked_at) taken with a conditional
UPDATE, so the database decides the winner. A lease older than the TTL is
considered abandoned and may be taken over.
"""
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4
from sqlalchemy import update, or_, and_

from promo_engine.core.config import settings
from promo_engine.core.database import session_scope, utc_now, user_accounts
from promo_engine.core.errors import PurchaseInProgressError
from promo_engine.core.logging import log_event


def _compute_backoff(attempt: int) -> float:
    """Exponential backoff with floor 20ms and cap 500ms."""
    return min(0.02 * (2 ** attempt), 0.5)


def try_acquire(user_id: str, owner: str, now: Optional[datetime] = None, ttl_seconds: Optional[int] = None) -> bool:
    """Claim the lease if it is free or stale. Returns True if claimed."""
    ts = now or utc_now()
    ttl = ttl_seconds if ttl_seconds is not None else settings.USER_LOCK_TTL_SECONDS
    stale_before = ts - timedelta(seconds=ttl)
    with session_scope() as session:
        result = session.execute(
            update(user_accounts)
            .where(user_accounts.c.user_id == user_id)
            .where(
                or_(
                    user_accounts.c.lock_owner.is_(None),
                    and_(user_accounts.c.locked_at.isnot(None), user_accounts.c.locked_at < stale_before),
                )
            )
            .values(lock_owner=owner, locked_at=ts)
        )
        return result.rowcount == 1


def release(user_id: str, owner: str) -> None:
    """Drop the lease if this owner still holds it."""
    with session_scope() as session:
        session.execute(
            update(user_accounts)
            .where(user_accounts.c.user_id == user_id)
            .where(user_accounts.c.lock_owner == owner)
            .values(lock_owner=None, locked_at=None)
        )


@contextmanager
def purchase_lease(
    user_id: str,
    *,
    wait_seconds: Optional[float] = None,
    ttl_seconds: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Hold the user's purchase lease for the duration of the block.

    Yields the owner token. Waits with backoff while another request holds
    it; raises PurchaseInProgressError when the wait budget runs out.
    """
    owner = uuid4().hex
    budget = wait_seconds if wait_seconds is not None else settings.USER_LOCK_WAIT_SECONDS
    deadline = time.monotonic() + budget
    attempt = 0
    while not try_acquire(user_id, owner, ttl_seconds=ttl_seconds):
        if time.monotonic() >= deadline:
            log_event(
                "warning",
                "purchase.lease_contention",
                user_id=user_id,
                event_type="purchase.lease",
                error_code="purchase_in_progress",
            )
            raise PurchaseInProgressError("Another purchase for this account is in progress")
        sleep(_compute_backoff(attempt))
        attempt += 1

    try:
        yield owner
    finally:
        release(user_id, owner)
