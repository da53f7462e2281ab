"""Plan catalog: immutable plans and billing cycle arithmetic."""

from cadence.platform.billing.catalog.models import (
    BillingCycle,
    Plan,
    PlanCreateRequest,
    add_billing_cycle,
)

__all__ = [
    "BillingCycle",
    "Plan",
    "PlanCreateRequest",
    "add_billing_cycle",
]
