"""
promo_engine/models/user_account.py

UserAccount model: per-user trial and payment-gateway state.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, model_validator


class TrialStatus(str, Enum):
    NEVER_TRIALED = "never_trialed"
    TRIALING = "trialing"
    ACTIVE_OR_LAPSED = "active_or_lapsed"


class UserAccount(BaseModel):
    """
    UserAccount holds what the engine needs to decide and record a purchase.

    Constraints:
    - trial_used is monotonic (never reset once true)
    - trial_expires_at is set if and only if trial_used is true
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    trial_used: bool = False
    trial_expires_at: Optional[datetime] = None
    gateway_customer_id: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    plan_id: Optional[str] = None
    version: int = 0

    @model_validator(mode="after")
    def _check_trial_expiry(self):
        if self.trial_used != (self.trial_expires_at is not None):
            raise ValueError("trial_expires_at must be set exactly when trial_used is true")
        return self
