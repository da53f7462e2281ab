"""
Invoice domain models.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import Field

from cadence.platform.core.pydantic import AppBaseModel


class InvoiceStatus(str, Enum):
    """Invoice status."""

    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"

    @property
    def is_modifiable(self) -> bool:
        """Draft and open invoices still accept coupons and payments."""
        return self in (InvoiceStatus.DRAFT, InvoiceStatus.OPEN)


class InvoiceItem(AppBaseModel):
    """Invoice line item."""

    item_id: str
    invoice_id: str
    description: str
    quantity: int = 1
    unit_price: Decimal
    amount: Decimal
    is_proration: bool = False
    proration_period_start: datetime | None = None
    proration_period_end: datetime | None = None
    tax_rate: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")


class Invoice(AppBaseModel):
    """Invoice with its line items."""

    invoice_id: str
    invoice_number: str
    user_id: str
    subscription_id: str | None = None
    status: InvoiceStatus

    subtotal: Decimal
    tax_rate: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    total: Decimal
    amount_paid: Decimal = Decimal("0")
    amount_due: Decimal
    currency: str

    invoice_date: datetime
    due_date: datetime
    paid_at: datetime | None = None
    voided_at: datetime | None = None
    notes: str | None = None

    items: list[InvoiceItem] = Field(default_factory=list)

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID


class InvoiceTotals(AppBaseModel):
    """Result of a totals calculation."""

    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total: Decimal


class CouponApplication(AppBaseModel):
    """Outcome of applying a coupon to an invoice."""

    invoice: Invoice
    coupon_code: str
    discount_amount: Decimal
    already_applied: bool = False


__all__ = [
    "InvoiceStatus",
    "InvoiceItem",
    "Invoice",
    "InvoiceTotals",
    "CouponApplication",
]
