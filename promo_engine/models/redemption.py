"""
promo_engine/models/redemption.py

Redemption: immutable record of one successful coupon application.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class Redemption(BaseModel):
    model_config = ConfigDict(frozen=True)

    redemption_id: str
    user_id: str
    coupon_id: str
    discount_amount: int = Field(ge=0)
    idempotency_key: str
    gateway_subscription_id: Optional[str] = None
    redeemed_at: datetime
