"""
Stripe payment gateway.

Implements PaymentGateway with the Stripe API. Recurring plans become Stripe
subscriptions; a first-period discount is attached as a single-use coupon.
Lifetime plans are one-time PaymentIntents for the final amount.
"""
from typing import Dict, Any, Optional
import stripe

from promo_engine.core.config import settings
from promo_engine.core.idempotency import scoped_key
from promo_engine.features.subscriptions.gateway import (
    GatewayError,
    GatewayTimeout,
    GatewaySubscription,
    PriceSpec,
)

# Prefix for lifetime purchases fully covered by a discount (nothing to charge)
ZERO_CHARGE_PREFIX = "zero_"


class StripeGateway:
    """Stripe implementation of PaymentGateway protocol."""

    def __init__(self, secret_key: Optional[str] = None, currency: Optional[str] = None):
        """
        Initialize Stripe gateway.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            currency: ISO currency for one-off coupons and charges
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.currency = (currency or settings.STRIPE_CURRENCY).lower()

        if not self.secret_key:
            raise GatewayError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        # Retries are driven by the caller with the same idempotency key
        stripe.max_network_retries = 0

    def create_or_retrieve_customer(self, email: Optional[str], user_id: str, idempotency_key: str) -> str:
        """Create or retrieve Stripe customer for user."""
        try:
            existing = self._find_customer(email, user_id)
            if existing:
                return existing

            customer_data: Dict[str, Any] = {"metadata": {"user_id": user_id}}
            if email:
                customer_data["email"] = email

            customer = stripe.Customer.create(idempotency_key=idempotency_key, **customer_data)
            return customer.id
        except stripe.APIConnectionError as e:
            raise GatewayTimeout(f"Stripe unreachable: {e}")
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe customer creation failed: {e}")

    def _find_customer(self, email: Optional[str], user_id: str) -> Optional[str]:
        if email:
            customers = stripe.Customer.list(limit=1, email=email)
            if customers.data:
                return customers.data[0].id

        # Search for existing customer by metadata
        escaped = user_id.replace("'", "\\'")
        found = stripe.Customer.search(query=f"metadata['user_id']:'{escaped}'", limit=1)
        if found.data:
            return found.data[0].id
        return None

    def create_subscription(
        self,
        customer_id: str,
        price_spec: PriceSpec,
        trial_days: int,
        idempotency_key: str,
    ) -> GatewaySubscription:
        try:
            if price_spec.is_recurring:
                return self._create_recurring(customer_id, price_spec, trial_days, idempotency_key)
            return self._create_one_time(customer_id, price_spec, idempotency_key)
        except stripe.APIConnectionError as e:
            raise GatewayTimeout(f"Stripe unreachable: {e}")
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe subscription creation failed: {e}")

    def _create_recurring(
        self,
        customer_id: str,
        price_spec: PriceSpec,
        trial_days: int,
        idempotency_key: str,
    ) -> GatewaySubscription:
        if not price_spec.gateway_price_id:
            raise GatewayError(f"Plan {price_spec.plan_id} has no gateway price")

        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_spec.gateway_price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.confirmation_secret"],
            "metadata": {"plan_id": price_spec.plan_id},
        }

        if trial_days > 0:
            # Trial absorbs the first period; no discount on top of it
            params["trial_period_days"] = trial_days
        elif price_spec.discount_amount > 0:
            coupon = stripe.Coupon.create(
                amount_off=price_spec.discount_amount,
                currency=self.currency,
                duration="once",
                name=f"{price_spec.plan_id} first period",
                idempotency_key=scoped_key(idempotency_key, "coupon"),
            )
            params["discounts"] = [{"coupon": coupon.id}]

        subscription = stripe.Subscription.create(idempotency_key=idempotency_key, **params)

        client_secret = None
        if subscription.status != "trialing":
            invoice = subscription.get("latest_invoice")
            confirmation = invoice.get("confirmation_secret") if invoice else None
            if confirmation:
                client_secret = confirmation.get("client_secret")

        return GatewaySubscription(
            subscription_id=subscription.id,
            client_secret=client_secret,
            status=subscription.status,
        )

    def _create_one_time(self, customer_id: str, price_spec: PriceSpec, idempotency_key: str) -> GatewaySubscription:
        if price_spec.final_amount <= 0:
            return GatewaySubscription(
                subscription_id=f"{ZERO_CHARGE_PREFIX}{idempotency_key[:32]}",
                client_secret=None,
                status="succeeded",
            )

        intent = stripe.PaymentIntent.create(
            amount=price_spec.final_amount,
            currency=self.currency,
            customer=customer_id,
            automatic_payment_methods={"enabled": True},
            metadata={"plan_id": price_spec.plan_id, "discount_amount": str(price_spec.discount_amount)},
            idempotency_key=idempotency_key,
        )
        return GatewaySubscription(
            subscription_id=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
        )

    def cancel_subscription(self, subscription_id: str) -> None:
        if subscription_id.startswith(ZERO_CHARGE_PREFIX):
            return
        try:
            if subscription_id.startswith("pi_"):
                stripe.PaymentIntent.cancel(subscription_id)
            else:
                stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe cancellation failed for {subscription_id}: {e}")
