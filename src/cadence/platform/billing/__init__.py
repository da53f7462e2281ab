"""
Billing engine.

Plan catalog, subscription lifecycle, proration, invoicing, payment settlement
and the background renewal passes that drive them.
"""

from cadence.platform.billing.exceptions import (
    BillingError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

__all__ = [
    "BillingError",
    "ConflictError",
    "NotFoundError",
    "ValidationError",
]
