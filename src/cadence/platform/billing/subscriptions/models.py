"""
Subscription domain models.

Status and history enums, the subscription aggregate and the result objects
returned by lifecycle operations and proration previews.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import Field

from cadence.platform.billing.invoicing.models import Invoice
from cadence.platform.core.pydantic import AppBaseModel


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# States that count toward the one-live-subscription-per-user rule
LIVE_STATUSES = (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


class HistoryAction(str, Enum):
    """Actions recorded in subscription history."""

    CREATED = "created"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    CANCELED = "canceled"
    RENEWED = "renewed"
    TRIAL_CONVERTED = "trial_converted"
    PAST_DUE = "past_due"
    REACTIVATED = "reactivated"


class PendingDowngrade(AppBaseModel):
    """Plan change staged until the next renewal."""

    plan_id: str
    price: Decimal
    effective_at: datetime


class Subscription(AppBaseModel):
    """Subscription aggregate."""

    subscription_id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus

    current_period_start: datetime
    current_period_end: datetime
    trial_end: datetime | None = None

    price: Decimal
    currency: str

    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None

    version: int = 0
    pending_downgrade: PendingDowngrade | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def is_in_trial(self, now: datetime) -> bool:
        """Check if the trial window is still open at ``now``."""
        return (
            self.status == SubscriptionStatus.TRIAL
            and self.trial_end is not None
            and now < self.trial_end
        )


class SubscriptionHistoryEntry(AppBaseModel):
    """One audit row."""

    history_id: str
    subscription_id: str
    user_id: str
    subscription_version: int
    action: HistoryAction
    from_plan_id: str | None = None
    to_plan_id: str | None = None
    old_price: Decimal | None = None
    new_price: Decimal | None = None
    proration_amount: Decimal = Decimal("0")
    notes: str | None = None
    created_at: datetime


class ProrationResult(AppBaseModel):
    """Breakdown of a prorated plan change."""

    old_price: Decimal
    new_price: Decimal
    charge_amount: Decimal = Field(description="Amount to invoice now (never negative)")
    credit_amount: Decimal = Field(description="Unused value of the old plan")
    net_amount: Decimal = Field(description="Signed difference; negative means a credit")
    days_total: int
    days_remaining: int
    grace_applied: bool = False


class ProrationPreview(AppBaseModel):
    """Non-mutating estimate of a plan change."""

    subscription_id: str
    current_plan_id: str
    new_plan_id: str
    is_upgrade: bool
    effective_at: datetime
    proration: ProrationResult


class PlanChangeResult(AppBaseModel):
    """Result of an upgrade or downgrade."""

    subscription: Subscription
    proration_amount: Decimal = Decimal("0")
    invoice: Invoice | None = None


class CancellationResult(AppBaseModel):
    """Result of a cancel request; the refund is an estimate and is never issued."""

    subscription: Subscription
    refund_estimate: Decimal = Decimal("0")


class RenewalOutcome(str, Enum):
    """What a renewal attempt did."""

    RENEWED = "renewed"
    CANCELED = "canceled"
    NOT_DUE = "not_due"
    ALREADY_CANCELED = "already_canceled"


class RenewalResult(AppBaseModel):
    """Result of a renewal attempt."""

    subscription: Subscription
    outcome: RenewalOutcome
    invoice: Invoice | None = None
    downgrade_applied: bool = False

    @property
    def changed(self) -> bool:
        return self.outcome in (RenewalOutcome.RENEWED, RenewalOutcome.CANCELED)


class TrialConversionResult(AppBaseModel):
    """Result of converting an ended trial."""

    subscription: Subscription
    converted: bool
    invoice: Invoice | None = None
    amount: Decimal = Decimal("0")


__all__ = [
    "SubscriptionStatus",
    "LIVE_STATUSES",
    "HistoryAction",
    "PendingDowngrade",
    "Subscription",
    "SubscriptionHistoryEntry",
    "ProrationResult",
    "ProrationPreview",
    "PlanChangeResult",
    "CancellationResult",
    "RenewalOutcome",
    "RenewalResult",
    "TrialConversionResult",
]
