"""
Plan catalog models.

Plans are immutable reference data: a price change is expressed by creating a
new plan that supersedes the old one.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from dateutil.relativedelta import relativedelta
from pydantic import Field, field_validator

from cadence.platform.billing.money_utils import normalize_currency
from cadence.platform.core.pydantic import AppBaseModel


class BillingCycle(str, Enum):
    """Recurring period length."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def months(self) -> int:
        """Calendar months per cycle."""
        return _CYCLE_MONTHS[self]

    @property
    def proration_days(self) -> int:
        """Day divisor for cycle-normalized daily rates; not calendar-accurate."""
        return _CYCLE_PRORATION_DAYS[self]


_CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}

_CYCLE_PRORATION_DAYS = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.QUARTERLY: 90,
    BillingCycle.YEARLY: 365,
}


def add_billing_cycle(start: datetime, cycle: BillingCycle) -> datetime:
    """Advance a timestamp by one cycle using calendar months.

    Month ends clamp: Jan 31 + 1 month is Feb 28/29.
    """
    return start + relativedelta(months=cycle.months)


class Plan(AppBaseModel):
    """Subscription plan as seen by the billing engine."""

    plan_id: str
    name: str
    description: str | None = None
    price: Decimal
    currency: str
    billing_cycle: BillingCycle
    trial_days: int = 0
    is_active: bool = True
    supersedes_plan_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def has_trial(self) -> bool:
        return self.trial_days > 0


class PlanCreateRequest(AppBaseModel):
    """Request to create a plan."""

    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    price: Decimal = Field(ge=0, max_digits=15, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    billing_cycle: BillingCycle
    trial_days: int = Field(default=0, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate ISO 4217 currency code."""
        return normalize_currency(v)


__all__ = [
    "BillingCycle",
    "add_billing_cycle",
    "Plan",
    "PlanCreateRequest",
]
