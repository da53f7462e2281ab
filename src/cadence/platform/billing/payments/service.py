"""
Payment settlement and retry scheduling.

A failed charge is committed with its next retry time before the failure is
raised to the caller. After the last scheduled retry fails the subscription is
marked past due; a later successful payment reactivates it.
"""

from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.platform.billing.collaborators import (
    ClockCollaborator,
    OfflinePaymentGateway,
    PaymentGateway,
    PaymentOutcome,
    SystemClock,
    call_with_deadline,
)
from cadence.platform.billing.exceptions import (
    InvoiceNotFoundError,
    InvoiceStateError,
    PaymentFailedError,
    PaymentNotFoundError,
    ValidationError,
)
from cadence.platform.billing.invoicing.models import InvoiceStatus
from cadence.platform.billing.invoicing.service import InvoiceService
from cadence.platform.billing.mappers import payment_from_row
from cadence.platform.billing.models import BillingInvoiceTable, BillingPaymentTable
from cadence.platform.billing.payments.models import Payment, PaymentStatus
from cadence.platform.billing.subscriptions.models import SubscriptionStatus
from cadence.platform.billing.subscriptions.service import SubscriptionService
from cadence.platform.core.ids import generate_id
from cadence.platform.db import atomic
from cadence.platform.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


class PaymentService:
    """Charges invoices through the payment gateway and schedules retries."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway | None = None,
        config: Settings.BillingSettings | None = None,
        clock: ClockCollaborator | None = None,
        invoices: InvoiceService | None = None,
        subscriptions: SubscriptionService | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway or OfflinePaymentGateway()
        self.config = config or get_settings().billing
        self.clock = clock or SystemClock()
        self.invoices = invoices or InvoiceService(db, config=self.config, clock=self.clock)
        self.subscriptions = subscriptions or SubscriptionService(
            db, config=self.config, clock=self.clock, invoices=self.invoices
        )

    async def process_payment(self, invoice_id: str, user_id: str) -> Payment:
        """Charge the amount due on an invoice.

        Raises:
            InvoiceNotFoundError: Invoice missing or owned by another user
            InvoiceStateError: Invoice already paid, voided or written off
            PaymentFailedError: Gateway declined; the failed attempt is saved with a retry time
        """
        async with atomic(self.db):
            invoice = await self._lock_invoice(invoice_id)
            if invoice is None or invoice.user_id != user_id:
                raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
            if invoice.status == InvoiceStatus.PAID.value:
                raise InvoiceStateError(
                    "Invoice already paid", invoice_id=invoice_id, status=invoice.status
                )
            if not InvoiceStatus(invoice.status).is_modifiable or invoice.amount_due <= 0:
                raise InvoiceStateError(
                    f"Nothing to collect on a {invoice.status} invoice",
                    invoice_id=invoice_id,
                    status=invoice.status,
                )

            row = BillingPaymentTable(
                payment_id=generate_id("pay"),
                invoice_id=invoice_id,
                subscription_id=invoice.subscription_id,
                user_id=user_id,
                amount=invoice.amount_due,
                currency=invoice.currency,
                status=PaymentStatus.PENDING.value,
                retry_count=0,
                max_retries=self.config.payment_max_retries,
            )
            self.db.add(row)
            await self.db.flush()

            outcome = await self._charge(row)
            now = self.clock.now()
            if outcome.success:
                await self._settle(row, outcome, now)
            else:
                self._record_failure(row, outcome, now, self._next_retry_at(0, now))
            await self.db.flush()
            payment = payment_from_row(row)

        self._raise_if_failed(payment)
        logger.info(
            "Payment processed successfully",
            payment_id=payment.payment_id,
            invoice_id=invoice_id,
            amount=str(payment.amount),
        )
        return payment

    async def retry_payment(self, payment_id: str) -> Payment:
        """Retry a failed payment; the last failed retry marks the subscription past due.

        The invoice is re-read first. When it was paid, voided or written off
        since the failure, the payment is retired as canceled and the gateway
        is not called. Otherwise the current amount due is charged.
        """
        async with atomic(self.db):
            row = await self.db.scalar(
                select(BillingPaymentTable)
                .where(BillingPaymentTable.payment_id == payment_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if row is None:
                raise PaymentNotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
            if row.status != PaymentStatus.FAILED.value:
                raise ValidationError(
                    "Payment is not in failed status",
                    context={"payment_id": payment_id, "status": row.status},
                )
            if row.retry_count >= row.max_retries:
                raise ValidationError(
                    "Maximum retry attempts exceeded",
                    context={"payment_id": payment_id, "retry_count": row.retry_count},
                )

            invoice = await self._lock_invoice(row.invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(
                    f"Invoice {row.invoice_id} not found", invoice_id=row.invoice_id
                )
            if not InvoiceStatus(invoice.status).is_modifiable or invoice.amount_due <= 0:
                self._retire(row, invoice)
                await self.db.flush()
                return payment_from_row(row)

            row.amount = invoice.amount_due
            attempt = row.retry_count + 1
            outcome = await self._charge(row)
            now = self.clock.now()
            row.retry_count = attempt

            if outcome.success:
                await self._settle(row, outcome, now)
            else:
                exhausted = attempt >= row.max_retries
                next_retry = None if exhausted else self._next_retry_at(attempt, now)
                self._record_failure(row, outcome, now, next_retry)
                if exhausted and row.subscription_id:
                    await self._mark_subscription_past_due(row.subscription_id, payment_id)
            await self.db.flush()
            payment = payment_from_row(row)

        self._raise_if_failed(payment)
        logger.info("Payment retry successful", payment_id=payment_id, retry_count=attempt)
        return payment

    async def list_payments_due_for_retry(
        self, now: datetime | None = None, limit: int | None = None
    ) -> list[Payment]:
        now = now or self.clock.now()
        stmt = (
            select(BillingPaymentTable)
            .where(
                BillingPaymentTable.status == PaymentStatus.FAILED.value,
                BillingPaymentTable.retry_count < BillingPaymentTable.max_retries,
                BillingPaymentTable.next_retry_at <= now,
            )
            .order_by(BillingPaymentTable.next_retry_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return [payment_from_row(row) for row in result.scalars().all()]

    async def get_payment(self, payment_id: str) -> Payment:
        row = await self.db.get(BillingPaymentTable, payment_id)
        if row is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
        return payment_from_row(row)

    # ==================== Helpers ====================

    async def _lock_invoice(self, invoice_id: str) -> BillingInvoiceTable | None:
        return await self.db.scalar(
            select(BillingInvoiceTable)
            .where(BillingInvoiceTable.invoice_id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    async def _charge(self, row: BillingPaymentTable) -> PaymentOutcome:
        return await call_with_deadline(
            self.gateway.charge(payment_from_row(row)),
            "payment_gateway",
            self.config.collaborator_timeout_seconds,
        )

    async def _settle(self, row: BillingPaymentTable, outcome: PaymentOutcome, now: datetime) -> None:
        row.status = PaymentStatus.SUCCEEDED.value
        row.gateway_transaction_id = outcome.transaction_id
        row.processed_at = now
        row.next_retry_at = None
        await self.invoices.mark_paid(row.invoice_id, row.amount)

        if row.subscription_id:
            subscription = await self.subscriptions.get_subscription(row.subscription_id)
            if subscription.status == SubscriptionStatus.PAST_DUE:
                await self.subscriptions.reactivate(
                    row.subscription_id, reason=f"Payment {row.payment_id} succeeded"
                )

    def _retire(self, row: BillingPaymentTable, invoice: BillingInvoiceTable) -> None:
        row.status = PaymentStatus.CANCELED.value
        row.next_retry_at = None
        logger.info(
            "Payment retired without charge",
            payment_id=row.payment_id,
            invoice_id=invoice.invoice_id,
            invoice_status=invoice.status,
            amount_due=str(invoice.amount_due),
        )

    def _record_failure(
        self,
        row: BillingPaymentTable,
        outcome: PaymentOutcome,
        now: datetime,
        next_retry_at: datetime | None,
    ) -> None:
        row.status = PaymentStatus.FAILED.value
        row.failure_code = outcome.failure_code or "unknown_error"
        row.failure_message = outcome.failure_message or "Payment failed"
        row.failed_at = now
        row.next_retry_at = next_retry_at

        logger.warning(
            "Payment failed",
            payment_id=row.payment_id,
            retry_count=row.retry_count,
            failure_code=row.failure_code,
            next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
        )

    async def _mark_subscription_past_due(self, subscription_id: str, payment_id: str) -> None:
        subscription = await self.subscriptions.get_subscription(subscription_id)
        if subscription.status in (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE):
            await self.subscriptions.mark_past_due(
                subscription_id, reason=f"Payment {payment_id} retries exhausted"
            )

    def _next_retry_at(self, attempt: int, now: datetime) -> datetime | None:
        """Retry time after ``attempt`` retries, following the configured schedule."""
        schedule = self.config.payment_retry_schedule_days
        if not schedule:
            return None
        return now + timedelta(days=schedule[min(attempt, len(schedule) - 1)])

    @staticmethod
    def _raise_if_failed(payment: Payment) -> None:
        if payment.status == PaymentStatus.FAILED:
            raise PaymentFailedError(
                payment.failure_message or "Payment failed",
                payment_id=payment.payment_id,
                failure_code=payment.failure_code,
                next_retry_at=payment.next_retry_at.isoformat() if payment.next_retry_at else None,
            )


__all__ = ["PaymentService"]
