"""
promo_engine/features/subscriptions/engine.py

Subscription lifecycle engine.

The only writer of cross-entity state. A purchase is read-only decision
making (plan, coupon, trial, price), then one gateway call, then a single
commit point that updates the account, consumes the coupon, records the
redemption, takes a lifetime seat and stores the attempt outcome together.

Concurrency:
- Purchases for one user are serialized by the account lease.
- Coupon caps and lifetime seats are enforced by conditional UPDATEs at commit.
- The gateway call is bounded by a timeout and keyed by an idempotency key
  derived from (user_id, plan_id, attempt_id), so retries converge on one
  gateway subscription.
"""
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from promo_engine.core.config import settings
from promo_engine.core.database import get_db_session, utc_now
from promo_engine.core.errors import (
    BookkeepingError,
    CouponRejectedError,
    GatewayUnavailableError,
    PlanUnavailableError,
)
from promo_engine.core.idempotency import (
    CompletedAttempt,
    derive_idempotency_key,
    get_completed_attempt,
    record_completed_attempt,
    scoped_key,
)
from promo_engine.core.logging import log_event
from promo_engine.core.metrics import purchases_total, coupon_rejections_total, gateway_compensations_total
from promo_engine.features.accounts.lease import purchase_lease
from promo_engine.features.accounts.service import (
    StaleAccountError,
    get_account,
    get_or_create_account,
    record_purchase,
    resolve_trial_days,
)
from promo_engine.features.catalog.service import get_plan, claim_seat
from promo_engine.features.coupons.ledger import claim_redemption, get_coupon
from promo_engine.features.coupons.pricing import price_discount, final_amount
from promo_engine.features.coupons.validator import validate_coupon, check_coupon
from promo_engine.features.redemptions.service import append_redemption
from promo_engine.features.subscriptions.gateway import (
    GatewayError,
    GatewaySubscription,
    PaymentGateway,
    PriceSpec,
)
from promo_engine.features.subscriptions.reconcile import record_inconsistency
from promo_engine.models.coupon import Coupon, Rejected, RejectionReason
from promo_engine.models.plan import Plan, BillingInterval
from promo_engine.models.user_account import UserAccount


@dataclass(frozen=True)
class PurchaseResult:
    gateway_subscription_id: str
    trial_days: int
    discount_amount: int
    final_amount: int
    client_secret: Optional[str] = None
    replayed: bool = False

    @classmethod
    def from_attempt(cls, attempt: CompletedAttempt) -> "PurchaseResult":
        return cls(
            gateway_subscription_id=attempt.gateway_subscription_id,
            trial_days=attempt.trial_days,
            discount_amount=attempt.discount_amount,
            final_amount=attempt.final_amount,
            client_secret=attempt.client_secret,
            replayed=True,
        )


@dataclass(frozen=True)
class PendingPurchase:
    """Everything decided before the commit point, plus the gateway's answer."""
    idempotency_key: str
    attempt_id: str
    lease_owner: str
    account: UserAccount
    plan: Plan
    coupon: Optional[Coupon]
    trial_days: int
    discount_amount: int
    final_amount: int
    customer_id: str
    subscription: GatewaySubscription
    email: Optional[str]
    decided_at: datetime

    def result(self) -> PurchaseResult:
        return PurchaseResult(
            gateway_subscription_id=self.subscription.subscription_id,
            trial_days=self.trial_days,
            discount_amount=self.discount_amount,
            final_amount=self.final_amount,
            client_secret=self.subscription.client_secret,
        )


class _LostRace(Exception):
    """A conditional claim at commit found nothing left to claim."""

    def __init__(self, error: Exception, cause: str):
        super().__init__(str(error))
        self.error = error
        self.cause = cause


def call_with_timeout(fn: Callable, *args, timeout: float):
    """Run a blocking gateway call, giving up after `timeout` seconds."""
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gateway")
    future = executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    finally:
        # A timed-out call keeps running; the idempotency key makes the retry converge
        executor.shutdown(wait=False)


class LifecycleEngine:
    """
    Orchestrates purchases against a payment gateway.

    Args:
        gateway: PaymentGateway implementation (Stripe in production, fakes in tests)
        clock: Returns the current aware UTC time
        gateway_timeout: Seconds before a gateway call counts as unavailable
        commit_attempts: Commit tries before handing over to reconciliation
        lease_wait_seconds: How long to wait for another purchase by the same user
        lease_ttl_seconds: Age after which an abandoned lease may be taken over
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        *,
        clock: Callable[[], datetime] = utc_now,
        gateway_timeout: Optional[float] = None,
        commit_attempts: Optional[int] = None,
        lease_wait_seconds: Optional[float] = None,
        lease_ttl_seconds: Optional[int] = None,
    ):
        self.gateway = gateway
        self.clock = clock
        self.gateway_timeout = gateway_timeout if gateway_timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS
        self.commit_attempts = max(1, commit_attempts if commit_attempts is not None else settings.COMMIT_RETRY_ATTEMPTS)
        self.lease_wait_seconds = lease_wait_seconds
        self.lease_ttl_seconds = lease_ttl_seconds

    def purchase(
        self,
        user_id: str,
        plan_id: str,
        coupon_code: Optional[str] = None,
        requested_trial: bool = False,
        attempt_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> PurchaseResult:
        """
        Buy a plan for a user.

        Returns:
            PurchaseResult (replayed=True when the attempt had already committed)

        Raises:
            PlanUnavailableError: Plan missing, inactive or sold out
            CouponRejectedError: Coupon refused (reason carries the stable code)
            GatewayUnavailableError: Gateway timed out or failed; retry with the same attempt_id
            PurchaseInProgressError: Another purchase for this user holds the lease
            BookkeepingError: Gateway succeeded but the commit could not be completed
        """
        attempt_id = attempt_id or uuid4().hex
        key = derive_idempotency_key(user_id, plan_id, attempt_id)

        completed = get_completed_attempt(key)
        if completed:
            return self._replay(completed)

        plan = self._load_available_plan(plan_id, user_id)
        get_or_create_account(user_id, email)

        with purchase_lease(
            user_id,
            wait_seconds=self.lease_wait_seconds,
            ttl_seconds=self.lease_ttl_seconds,
        ) as lease_owner:
            # A concurrent request with the same attempt may have finished while we waited
            completed = get_completed_attempt(key)
            if completed:
                return self._replay(completed)

            account = get_account(user_id)
            now = self.clock()

            coupon = None
            if coupon_code:
                coupon = self._validate_coupon(coupon_code, plan, user_id, now)

            trial_days = resolve_trial_days(account, plan, requested_trial)
            discount = price_discount(coupon, plan.price) if coupon else 0
            amount = final_amount(plan.price, discount)

            price_spec = PriceSpec(
                plan_id=plan.plan_id,
                gateway_price_id=plan.gateway_price_id,
                interval=plan.interval.value,
                list_price=plan.price,
                final_amount=amount,
                discount_amount=discount,
            )

            customer_id = account.gateway_customer_id or self._call_gateway(
                self.gateway.create_or_retrieve_customer,
                email or account.email,
                user_id,
                scoped_key(key, "customer"),
                user_id=user_id,
                plan_id=plan_id,
            )
            subscription = self._call_gateway(
                self.gateway.create_subscription,
                customer_id,
                price_spec,
                trial_days,
                key,
                user_id=user_id,
                plan_id=plan_id,
            )

            pending = PendingPurchase(
                idempotency_key=key,
                attempt_id=attempt_id,
                lease_owner=lease_owner,
                account=account,
                plan=plan,
                coupon=coupon,
                trial_days=trial_days,
                discount_amount=discount,
                final_amount=amount,
                customer_id=customer_id,
                subscription=subscription,
                email=email,
                decided_at=now,
            )

            try:
                return self._commit(pending)
            except (BookkeepingError, CouponRejectedError, PlanUnavailableError):
                raise
            except BaseException:
                # Cancelled between the gateway call and the commit point
                if not self._already_committed(key):
                    self._compensate(pending, cause="cancelled")
                raise

    def _replay(self, completed: CompletedAttempt) -> PurchaseResult:
        purchases_total.inc(labels={"outcome": "replayed"})
        log_event(
            "info",
            "purchase.replayed",
            user_id=completed.user_id,
            plan_id=completed.plan_id,
            coupon_id=completed.coupon_id,
            event_type="purchase.replay",
        )
        return PurchaseResult.from_attempt(completed)

    def _load_available_plan(self, plan_id: str, user_id: str) -> Plan:
        plan = get_plan(plan_id)
        if plan is None or not plan.is_available:
            purchases_total.inc(labels={"outcome": "plan_unavailable"})
            log_event(
                "warning",
                "purchase.plan_unavailable",
                user_id=user_id,
                plan_id=plan_id,
                event_type="purchase.reject",
                error_code="plan_unavailable",
            )
            raise PlanUnavailableError(f"Plan is not available: {plan_id}")
        return plan

    def _validate_coupon(self, code: str, plan: Plan, user_id: str, now: datetime) -> Coupon:
        outcome = validate_coupon(code, plan.plan_id, at_time=now)
        if isinstance(outcome, Rejected):
            reason = outcome.reason.value
            coupon_rejections_total.inc(labels={"reason": reason})
            purchases_total.inc(labels={"outcome": "coupon_rejected"})
            log_event(
                "info",
                "purchase.coupon_rejected",
                user_id=user_id,
                plan_id=plan.plan_id,
                event_type="purchase.reject",
                error_code=reason,
                extra={"code": code},
            )
            raise CouponRejectedError(reason)
        return outcome

    def _call_gateway(self, fn: Callable, *args, user_id: str, plan_id: str):
        try:
            return call_with_timeout(fn, *args, timeout=self.gateway_timeout)
        except (FutureTimeout, GatewayError) as e:
            purchases_total.inc(labels={"outcome": "gateway_unavailable"})
            log_event(
                "warning",
                "purchase.gateway_unavailable",
                user_id=user_id,
                plan_id=plan_id,
                event_type="purchase.gateway",
                error_code="gateway_unavailable",
                extra={"error": str(e) or type(e).__name__},
            )
            raise GatewayUnavailableError("Payment gateway unavailable, retry with the same attempt id")

    def _commit(self, pending: PendingPurchase) -> PurchaseResult:
        """
        The single commit point. Retries transient store failures; a lost
        claim race compensates at the gateway and surfaces as a rejection.
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.commit_attempts + 1):
            try:
                with get_db_session() as session:
                    self._apply(session, pending)
            except _LostRace as race:
                self._compensate(pending, cause=race.cause)
                raise race.error
            except StaleAccountError as e:
                last_error = e
                break
            except SQLAlchemyError as e:
                last_error = e
                if self._already_committed(pending.idempotency_key):
                    break
                log_event(
                    "warning",
                    "purchase.commit_retry",
                    user_id=pending.account.user_id,
                    plan_id=pending.plan.plan_id,
                    coupon_id=pending.coupon.coupon_id if pending.coupon else None,
                    event_type="purchase.commit",
                    extra={"attempt": attempt, "error": str(e)},
                )
                continue

            purchases_total.inc(labels={"outcome": "committed"})
            log_event(
                "info",
                "purchase.committed",
                user_id=pending.account.user_id,
                plan_id=pending.plan.plan_id,
                coupon_id=pending.coupon.coupon_id if pending.coupon else None,
                event_type="purchase.commit",
                extra={
                    "gateway_subscription_id": pending.subscription.subscription_id,
                    "trial_days": pending.trial_days,
                    "discount_amount": pending.discount_amount,
                },
            )
            return pending.result()

        if self._already_committed(pending.idempotency_key):
            # The write landed even though the driver reported an error
            purchases_total.inc(labels={"outcome": "committed"})
            return pending.result()

        purchases_total.inc(labels={"outcome": "bookkeeping_failed"})
        record_inconsistency(
            user_id=pending.account.user_id,
            plan_id=pending.plan.plan_id,
            coupon_id=pending.coupon.coupon_id if pending.coupon else None,
            gateway_subscription_id=pending.subscription.subscription_id,
            idempotency_key=pending.idempotency_key,
            discount_amount=pending.discount_amount,
            trial_days=pending.trial_days,
            error=str(last_error),
        )
        raise BookkeepingError(
            "Payment succeeded but the purchase could not be recorded; it has been queued for reconciliation"
        )

    def _apply(self, session: Session, pending: PendingPurchase) -> None:
        now = pending.decided_at
        plan = pending.plan
        coupon = pending.coupon
        user_id = pending.account.user_id

        trial_expires_at = now + timedelta(days=pending.trial_days) if pending.trial_days > 0 else None
        record_purchase(
            session,
            pending.account,
            lease_owner=pending.lease_owner,
            plan_id=plan.plan_id,
            gateway_customer_id=pending.customer_id,
            gateway_subscription_id=pending.subscription.subscription_id,
            trial_expires_at=trial_expires_at,
            email=pending.email,
            now=now,
        )

        if coupon is not None:
            if not claim_redemption(session, coupon.coupon_id):
                fresh = get_coupon(coupon.coupon_id, session=session)
                reason = check_coupon(fresh, plan.plan_id, now) or RejectionReason.EXHAUSTED
                coupon_rejections_total.inc(labels={"reason": reason.value})
                raise _LostRace(CouponRejectedError(reason.value), cause=f"coupon_{reason.value}")
            append_redemption(
                session,
                user_id=user_id,
                coupon_id=coupon.coupon_id,
                discount_amount=pending.discount_amount,
                idempotency_key=pending.idempotency_key,
                gateway_subscription_id=pending.subscription.subscription_id,
                redeemed_at=now,
            )

        if plan.interval == BillingInterval.LIFETIME:
            if not claim_seat(session, plan.plan_id):
                raise _LostRace(PlanUnavailableError(f"Plan sold out: {plan.plan_id}"), cause="plan_sold_out")

        record_completed_attempt(
            session,
            idempotency_key=pending.idempotency_key,
            attempt_id=pending.attempt_id,
            user_id=user_id,
            plan_id=plan.plan_id,
            coupon_id=coupon.coupon_id if coupon else None,
            gateway_subscription_id=pending.subscription.subscription_id,
            client_secret=pending.subscription.client_secret,
            trial_days=pending.trial_days,
            discount_amount=pending.discount_amount,
            final_amount=pending.final_amount,
            completed_at=now,
        )

    def _already_committed(self, idempotency_key: str) -> bool:
        try:
            return get_completed_attempt(idempotency_key) is not None
        except SQLAlchemyError:
            return False

    def _compensate(self, pending: PendingPurchase, cause: str) -> None:
        """Cancel the gateway subscription created for an abandoned purchase."""
        subscription_id = pending.subscription.subscription_id
        gateway_compensations_total.inc(labels={"cause": cause})
        purchases_total.inc(labels={"outcome": "compensated"})
        try:
            call_with_timeout(self.gateway.cancel_subscription, subscription_id, timeout=self.gateway_timeout)
        except (FutureTimeout, GatewayError) as e:
            record_inconsistency(
                user_id=pending.account.user_id,
                plan_id=pending.plan.plan_id,
                coupon_id=pending.coupon.coupon_id if pending.coupon else None,
                gateway_subscription_id=subscription_id,
                idempotency_key=pending.idempotency_key,
                discount_amount=pending.discount_amount,
                trial_days=pending.trial_days,
                error=f"compensation failed ({cause}): {e or type(e).__name__}",
            )
            return

        log_event(
            "warning",
            "purchase.compensated",
            user_id=pending.account.user_id,
            plan_id=pending.plan.plan_id,
            coupon_id=pending.coupon.coupon_id if pending.coupon else None,
            event_type="purchase.compensate",
            extra={"gateway_subscription_id": subscription_id, "cause": cause},
        )
