"""Shared FastAPI dependencies (overridden in tests)."""
from functools import lru_cache

from fastapi import Depends

from promo_engine.features.subscriptions.engine import LifecycleEngine
from promo_engine.features.subscriptions.gateway import PaymentGateway
from promo_engine.features.subscriptions.stripe_gateway import StripeGateway


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    return StripeGateway()


def get_lifecycle_engine(gateway: PaymentGateway = Depends(get_payment_gateway)) -> LifecycleEngine:
    return LifecycleEngine(gateway)
