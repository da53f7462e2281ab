"""
Payment domain models.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from cadence.platform.core.pydantic import AppBaseModel


class PaymentStatus(str, Enum):
    """Payment attempt status."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # Retired without a charge: the invoice no longer needs collecting
    CANCELED = "canceled"


class Payment(AppBaseModel):
    """Payment attempt against an invoice."""

    payment_id: str
    invoice_id: str
    subscription_id: str | None = None
    user_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: datetime | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    gateway_transaction_id: str | None = None
    processed_at: datetime | None = None
    failed_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def retries_left(self) -> int:
        return max(0, self.max_retries - self.retry_count)


__all__ = ["PaymentStatus", "Payment"]
