"""create_billing_tables

Revision ID: c4d1e2f3a5b6
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "c4d1e2f3a5b6"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(15, 2)
RATE = sa.Numeric(7, 4)
LIVE_SUBSCRIPTION = sa.text("status != 'canceled'")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create plan, subscription, history, invoice, coupon and payment tables."""

    op.create_table(
        "billing_plans",
        sa.Column("plan_id", sa.String(50), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("billing_cycle", sa.String(20), nullable=False),
        sa.Column("trial_days", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("supersedes_plan_id", sa.String(50), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("price >= 0", name="ck_billing_plans_price_non_negative"),
        sa.CheckConstraint("trial_days >= 0", name="ck_billing_plans_trial_days_non_negative"),
    )
    op.create_index("ix_billing_plans_active_cycle", "billing_plans", ["is_active", "billing_cycle"])

    op.create_table(
        "billing_subscriptions",
        sa.Column("subscription_id", sa.String(50), primary_key=True),
        sa.Column("user_id", sa.String(50), nullable=False),
        sa.Column(
            "plan_id", sa.String(50), sa.ForeignKey("billing_plans.plan_id"), nullable=False
        ),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("price", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("pending_plan_id", sa.String(50), nullable=True),
        sa.Column("pending_price", MONEY, nullable=True),
        sa.Column("pending_effective_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_billing_subscriptions_period_order",
        ),
        sa.CheckConstraint("version >= 0", name="ck_billing_subscriptions_version"),
    )
    op.create_index(
        "uq_billing_subscriptions_live_user",
        "billing_subscriptions",
        ["user_id"],
        unique=True,
        sqlite_where=LIVE_SUBSCRIPTION,
        postgresql_where=LIVE_SUBSCRIPTION,
    )
    op.create_index(
        "ix_billing_subscriptions_status_period_end",
        "billing_subscriptions",
        ["status", "current_period_end"],
    )

    op.create_table(
        "billing_subscription_history",
        sa.Column("history_id", sa.String(50), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.String(50),
            sa.ForeignKey("billing_subscriptions.subscription_id"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(50), nullable=False),
        sa.Column("subscription_version", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("from_plan_id", sa.String(50), nullable=True),
        sa.Column("to_plan_id", sa.String(50), nullable=True),
        sa.Column("old_price", MONEY, nullable=True),
        sa.Column("new_price", MONEY, nullable=True),
        sa.Column("proration_amount", MONEY, nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "subscription_id",
            "subscription_version",
            name="uq_billing_history_subscription_version",
        ),
    )
    op.create_index(
        "ix_billing_history_subscription_created",
        "billing_subscription_history",
        ["subscription_id", "created_at"],
    )

    op.create_table(
        "billing_invoices",
        sa.Column("invoice_id", sa.String(50), primary_key=True),
        sa.Column("invoice_number", sa.String(50), nullable=False, unique=True),
        sa.Column("user_id", sa.String(50), nullable=False),
        sa.Column(
            "subscription_id",
            sa.String(50),
            sa.ForeignKey("billing_subscriptions.subscription_id"),
            nullable=True,
        ),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("subtotal", MONEY, nullable=False),
        sa.Column("tax_rate", RATE, nullable=False),
        sa.Column("tax_amount", MONEY, nullable=False),
        sa.Column("discount_amount", MONEY, nullable=False),
        sa.Column("total", MONEY, nullable=False),
        sa.Column("amount_paid", MONEY, nullable=False),
        sa.Column("amount_due", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("invoice_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_billing_invoices_user_date", "billing_invoices", ["user_id", "invoice_date"])
    op.create_index("ix_billing_invoices_status_due", "billing_invoices", ["status", "due_date"])
    op.create_index("ix_billing_invoices_subscription", "billing_invoices", ["subscription_id"])

    op.create_table(
        "billing_invoice_items",
        sa.Column("item_id", sa.String(50), primary_key=True),
        sa.Column(
            "invoice_id",
            sa.String(50),
            sa.ForeignKey("billing_invoices.invoice_id"),
            nullable=False,
        ),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", MONEY, nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("is_proration", sa.Boolean(), nullable=False),
        sa.Column("proration_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("proration_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tax_rate", RATE, nullable=False),
        sa.Column("tax_amount", MONEY, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "billing_coupons",
        sa.Column("coupon_id", sa.String(50), primary_key=True),
        sa.Column("code", sa.String(50), nullable=False, unique=True),
        sa.Column("times_redeemed", sa.Integer(), nullable=False),
        sa.Column("max_redemptions", sa.Integer(), nullable=True),
        sa.Column("max_redemptions_per_user", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "billing_coupon_redemptions",
        sa.Column("redemption_id", sa.String(50), primary_key=True),
        sa.Column(
            "coupon_id", sa.String(50), sa.ForeignKey("billing_coupons.coupon_id"), nullable=False
        ),
        sa.Column("user_id", sa.String(50), nullable=False),
        sa.Column(
            "invoice_id",
            sa.String(50),
            sa.ForeignKey("billing_invoices.invoice_id"),
            nullable=False,
        ),
        sa.Column("subscription_id", sa.String(50), nullable=True),
        sa.Column("discount_amount", MONEY, nullable=False),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "coupon_id", "invoice_id", name="uq_billing_coupon_redemption_invoice"
        ),
    )
    op.create_index(
        "ix_billing_coupon_redemptions_coupon_user",
        "billing_coupon_redemptions",
        ["coupon_id", "user_id"],
    )

    op.create_table(
        "billing_payments",
        sa.Column("payment_id", sa.String(50), primary_key=True),
        sa.Column(
            "invoice_id",
            sa.String(50),
            sa.ForeignKey("billing_invoices.invoice_id"),
            nullable=False,
        ),
        sa.Column("subscription_id", sa.String(50), nullable=True),
        sa.Column("user_id", sa.String(50), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_code", sa.String(100), nullable=True),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_billing_payments_status_retry", "billing_payments", ["status", "next_retry_at"]
    )
    op.create_index("ix_billing_payments_invoice", "billing_payments", ["invoice_id"])


def downgrade() -> None:
    """Drop billing tables."""
    op.drop_table("billing_payments")
    op.drop_table("billing_coupon_redemptions")
    op.drop_table("billing_coupons")
    op.drop_table("billing_invoice_items")
    op.drop_table("billing_invoices")
    op.drop_table("billing_subscription_history")
    op.drop_table("billing_subscriptions")
    op.drop_table("billing_plans")
