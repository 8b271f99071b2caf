"""
Payment gateway protocol.

Defines the interface the lifecycle engine uses to create customers and
subscriptions. The engine only hands over the final amount and trial length;
currency, tax and gateway pricing objects are the gateway's concern.
"""
from typing import Protocol, Optional
from dataclasses import dataclass


@dataclass(frozen=True)
class PriceSpec:
    """What is being bought and what should be charged for it."""
    plan_id: str
    gateway_price_id: Optional[str]
    interval: str  # month, year, lifetime
    list_price: int
    final_amount: int
    discount_amount: int = 0

    @property
    def is_recurring(self) -> bool:
        return self.interval != "lifetime"


@dataclass(frozen=True)
class GatewaySubscription:
    """Result of creating a subscription (or one-time charge) at the gateway."""
    subscription_id: str
    client_secret: Optional[str] = None
    status: Optional[str] = None


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Every mutating call takes an idempotency key; repeating a call with the
    same key must return the original result instead of creating a second
    object.
    """

    def create_or_retrieve_customer(self, email: Optional[str], user_id: str, idempotency_key: str) -> str:
        """
        Ensure a gateway customer exists for the user.

        Returns:
            Gateway customer ID

        Raises:
            GatewayError: If the gateway rejects the call
            GatewayTimeout: If the gateway does not answer in time
        """
        ...

    def create_subscription(
        self,
        customer_id: str,
        price_spec: PriceSpec,
        trial_days: int,
        idempotency_key: str,
    ) -> GatewaySubscription:
        """
        Create the subscription (recurring plans) or one-time charge (lifetime).

        When trial_days > 0 the first charge is deferred for the trial length
        and no discount is applied to it.
        """
        ...

    def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel a just-created subscription whose local bookkeeping was abandoned."""
        ...


class GatewayError(Exception):
    """Base exception for payment gateway errors."""
    pass


class GatewayTimeout(GatewayError):
    """The gateway did not answer within the configured timeout."""
    pass
