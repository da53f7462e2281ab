"""
Data mappers for billing domain.

Transforms database rows into the pydantic models returned by services.
"""

from cadence.platform.billing.catalog.models import BillingCycle, Plan
from cadence.platform.billing.invoicing.models import Invoice, InvoiceItem, InvoiceStatus
from cadence.platform.billing.models import (
    BillingInvoiceItemTable,
    BillingInvoiceTable,
    BillingPaymentTable,
    BillingPlanTable,
    BillingSubscriptionHistoryTable,
    BillingSubscriptionTable,
)
from cadence.platform.billing.payments.models import Payment, PaymentStatus
from cadence.platform.billing.subscriptions.models import (
    HistoryAction,
    PendingDowngrade,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
)


def plan_from_row(row: BillingPlanTable) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        name=row.name,
        description=row.description,
        price=row.price,
        currency=row.currency,
        billing_cycle=BillingCycle(row.billing_cycle),
        trial_days=row.trial_days,
        is_active=row.is_active,
        supersedes_plan_id=row.supersedes_plan_id,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
    )


def subscription_from_row(row: BillingSubscriptionTable) -> Subscription:
    """Map a subscription row, folding the pending columns into one typed value."""
    pending = None
    if row.pending_plan_id is not None:
        assert row.pending_price is not None and row.pending_effective_at is not None
        pending = PendingDowngrade(
            plan_id=row.pending_plan_id,
            price=row.pending_price,
            effective_at=row.pending_effective_at,
        )

    return Subscription(
        subscription_id=row.subscription_id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        trial_end=row.trial_end,
        price=row.price,
        currency=row.currency,
        cancel_at_period_end=row.cancel_at_period_end,
        canceled_at=row.canceled_at,
        version=row.version,
        pending_downgrade=pending,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def history_from_row(row: BillingSubscriptionHistoryTable) -> SubscriptionHistoryEntry:
    return SubscriptionHistoryEntry(
        history_id=row.history_id,
        subscription_id=row.subscription_id,
        user_id=row.user_id,
        subscription_version=row.subscription_version,
        action=HistoryAction(row.action),
        from_plan_id=row.from_plan_id,
        to_plan_id=row.to_plan_id,
        old_price=row.old_price,
        new_price=row.new_price,
        proration_amount=row.proration_amount,
        notes=row.notes,
        created_at=row.created_at,
    )


def invoice_item_from_row(row: BillingInvoiceItemTable) -> InvoiceItem:
    return InvoiceItem(
        item_id=row.item_id,
        invoice_id=row.invoice_id,
        description=row.description,
        quantity=row.quantity,
        unit_price=row.unit_price,
        amount=row.amount,
        is_proration=row.is_proration,
        proration_period_start=row.proration_period_start,
        proration_period_end=row.proration_period_end,
        tax_rate=row.tax_rate,
        tax_amount=row.tax_amount,
    )


def invoice_from_row(row: BillingInvoiceTable) -> Invoice:
    """Map an invoice row; items must already be loaded."""
    return Invoice(
        invoice_id=row.invoice_id,
        invoice_number=row.invoice_number,
        user_id=row.user_id,
        subscription_id=row.subscription_id,
        status=InvoiceStatus(row.status),
        subtotal=row.subtotal,
        tax_rate=row.tax_rate,
        tax_amount=row.tax_amount,
        discount_amount=row.discount_amount,
        total=row.total,
        amount_paid=row.amount_paid,
        amount_due=row.amount_due,
        currency=row.currency,
        invoice_date=row.invoice_date,
        due_date=row.due_date,
        paid_at=row.paid_at,
        voided_at=row.voided_at,
        notes=row.notes,
        items=[invoice_item_from_row(item) for item in row.items],
    )


def payment_from_row(row: BillingPaymentTable) -> Payment:
    return Payment(
        payment_id=row.payment_id,
        invoice_id=row.invoice_id,
        subscription_id=row.subscription_id,
        user_id=row.user_id,
        amount=row.amount,
        currency=row.currency,
        status=PaymentStatus(row.status),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        next_retry_at=row.next_retry_at,
        failure_code=row.failure_code,
        failure_message=row.failure_message,
        gateway_transaction_id=row.gateway_transaction_id,
        processed_at=row.processed_at,
        failed_at=row.failed_at,
        created_at=row.created_at,
    )


__all__ = [
    "plan_from_row",
    "subscription_from_row",
    "history_from_row",
    "invoice_item_from_row",
    "invoice_from_row",
    "payment_from_row",
]
