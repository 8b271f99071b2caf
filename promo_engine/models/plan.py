"""
promo_engine/models/plan.py

Plan model for the subscription catalog.

Plans are priced subscription tiers. Prices are integers in minor currency
units (cents); the gateway owns currency and tax.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"
    LIFETIME = "lifetime"  # one-time charge, never recurring


class Plan(BaseModel):
    """
    Plan represents a purchasable subscription tier.

    Examples:
    - free (month, price 0)
    - premium-monthly (month, 7-day trial)
    - lifetime-pass (lifetime, seat-capped launch offer)
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    description: Optional[str] = None
    gateway_price_id: Optional[str] = None
    price: int = Field(ge=0)
    interval: BillingInterval
    trial_days: int = Field(default=0, ge=0)
    max_users: Optional[int] = Field(default=None, ge=0)
    current_users: int = Field(default=0, ge=0)
    is_active: bool = True
    features: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    @property
    def is_recurring(self) -> bool:
        return self.interval != BillingInterval.LIFETIME

    @property
    def seats_exhausted(self) -> bool:
        return self.max_users is not None and self.current_users >= self.max_users

    @property
    def is_available(self) -> bool:
        """Active and not sold out."""
        return self.is_active and not self.seats_exhausted
