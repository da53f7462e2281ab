"""
Billing database tables.

Plans, subscriptions (with the optimistic-locking version column), the
append-only subscription history, invoices, invoice items, coupons and payments.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cadence.platform.db import Base, TimestampMixin, UTCDateTime

MONEY = Numeric(15, 2)
RATE = Numeric(7, 4)


class BillingPlanTable(TimestampMixin, Base):
    """SQLAlchemy table for subscription plans (immutable once referenced)."""

    __tablename__ = "billing_plans"

    plan_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Billing configuration
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)  # monthly, quarterly, yearly
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    supersedes_plan_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_billing_plans_price_non_negative"),
        CheckConstraint("trial_days >= 0", name="ck_billing_plans_trial_days_non_negative"),
        Index("ix_billing_plans_active_cycle", "is_active", "billing_cycle"),
    )


class BillingSubscriptionTable(TimestampMixin, Base):
    """SQLAlchemy table for user subscriptions."""

    __tablename__ = "billing_subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(50), primary_key=True)

    # Owner and plan
    user_id: Mapped[str] = mapped_column(String(50), nullable=False)
    plan_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("billing_plans.plan_id"), nullable=False
    )

    # Status: trial, active, past_due, canceled
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Current billing period
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Price snapshot taken when the plan was assigned
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Cancellation
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Optimistic locking
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Staged downgrade, applied at the next renewal
    pending_plan_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pending_price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    pending_effective_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_billing_subscriptions_period_order",
        ),
        CheckConstraint("version >= 0", name="ck_billing_subscriptions_version"),
        # One live subscription per user
        Index(
            "uq_billing_subscriptions_live_user",
            "user_id",
            unique=True,
            sqlite_where=text("status != 'canceled'"),
            postgresql_where=text("status != 'canceled'"),
        ),
        Index("ix_billing_subscriptions_status_period_end", "status", "current_period_end"),
    )


class BillingSubscriptionHistoryTable(Base):
    """Append-only audit trail of lifecycle actions."""

    __tablename__ = "billing_subscription_history"

    history_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("billing_subscriptions.subscription_id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(50), nullable=False)
    # Subscription version written by the change; orders rows within a transaction
    subscription_version: Mapped[int] = mapped_column(Integer, nullable=False)

    # created, upgraded, downgraded, canceled, renewed, trial_converted, past_due, reactivated
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    from_plan_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    to_plan_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    old_price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    new_price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    proration_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("ix_billing_history_subscription_created", "subscription_id", "created_at"),
        UniqueConstraint(
            "subscription_id", "subscription_version", name="uq_billing_history_subscription_version"
        ),
    )


class BillingInvoiceTable(TimestampMixin, Base):
    """SQLAlchemy table for invoices."""

    __tablename__ = "billing_invoices"

    invoice_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    user_id: Mapped[str] = mapped_column(String(50), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(
        String(50), ForeignKey("billing_subscriptions.subscription_id"), nullable=True
    )

    # draft, open, paid, void, uncollectible
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Amounts
    subtotal: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    amount_due: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Dates
    invoice_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    due_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    items: Mapped[list["BillingInvoiceItemTable"]] = relationship(
        back_populates="invoice",
        lazy="selectin",
        order_by="BillingInvoiceItemTable.created_at",
    )

    __table_args__ = (
        Index("ix_billing_invoices_user_date", "user_id", "invoice_date"),
        Index("ix_billing_invoices_status_due", "status", "due_date"),
        Index("ix_billing_invoices_subscription", "subscription_id"),
    )


class BillingInvoiceItemTable(Base):
    """SQLAlchemy table for invoice line items."""

    __tablename__ = "billing_invoice_items"

    item_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("billing_invoices.invoice_id"), nullable=False
    )

    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    # Proration window (proration lines only)
    is_proration: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    proration_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    proration_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    tax_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=lambda: datetime.now(UTC)
    )

    invoice: Mapped[BillingInvoiceTable] = relationship(back_populates="items")


class BillingCouponTable(TimestampMixin, Base):
    """Coupon redemption counters; validation rules live with the coupon collaborator."""

    __tablename__ = "billing_coupons"

    coupon_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    times_redeemed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_redemptions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_redemptions_per_user: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class BillingCouponRedemptionTable(Base):
    """One row per coupon applied to an invoice."""

    __tablename__ = "billing_coupon_redemptions"

    redemption_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    coupon_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("billing_coupons.coupon_id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(50), nullable=False)
    invoice_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("billing_invoices.invoice_id"), nullable=False
    )
    subscription_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    discount_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    redeemed_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("coupon_id", "invoice_id", name="uq_billing_coupon_redemption_invoice"),
        Index("ix_billing_coupon_redemptions_coupon_user", "coupon_id", "user_id"),
    )


class BillingPaymentTable(TimestampMixin, Base):
    """Payment attempts against invoices."""

    __tablename__ = "billing_payments"

    payment_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("billing_invoices.invoice_id"), nullable=False
    )
    subscription_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    user_id: Mapped[str] = mapped_column(String(50), nullable=False)

    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # pending, succeeded, failed
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Retry bookkeeping
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    failure_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_billing_payments_status_retry", "status", "next_retry_at"),
        Index("ix_billing_payments_invoice", "invoice_id"),
    )


__all__ = [
    "BillingPlanTable",
    "BillingSubscriptionTable",
    "BillingSubscriptionHistoryTable",
    "BillingInvoiceTable",
    "BillingInvoiceItemTable",
    "BillingCouponTable",
    "BillingCouponRedemptionTable",
    "BillingPaymentTable",
]
