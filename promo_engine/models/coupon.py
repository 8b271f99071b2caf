"""
promo_engine/models/coupon.py

Coupon and validation-outcome models for the coupon ledger.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


class DiscountKind(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class RejectionReason(str, Enum):
    """Stable, machine-readable reasons a coupon or plan is refused."""
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    PLAN_MISMATCH = "plan_mismatch"
    PLAN_UNAVAILABLE = "plan_unavailable"


class Coupon(BaseModel):
    """
    A promotional code carrying a discount rule and usage constraints.

    Constraint: redemption_count never exceeds max_uses.
    """
    model_config = ConfigDict(frozen=True)

    coupon_id: str
    code: str
    name: str
    description: Optional[str] = None
    discount_kind: DiscountKind
    discount_value: int = Field(ge=0)
    min_amount: int = Field(default=0, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=0)
    redemption_count: int = Field(default=0, ge=0)
    valid_from: datetime
    valid_until: Optional[datetime] = None
    is_active: bool = True
    applicable_plans: FrozenSet[str] = frozenset()
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_discount_rule(self):
        if self.discount_kind == DiscountKind.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discount must be within 0-100")
        if self.max_uses is not None and self.redemption_count > self.max_uses:
            raise ValueError("redemption_count exceeds max_uses")
        return self

    def applies_to(self, plan_id: str) -> bool:
        return not self.applicable_plans or plan_id in self.applicable_plans


@dataclass(frozen=True)
class Rejected:
    """Outcome of a failed coupon validation."""
    reason: RejectionReason
