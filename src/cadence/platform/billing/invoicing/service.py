"""
Invoice assembly and settlement.

Subscription and proration invoices are created inside the caller's
transaction (flush only, no commit), so a failed tax lookup or a number
collision rolls back the lifecycle change that asked for the invoice.
Coupon application, payment recording and voiding run as their own units of
work.
"""

import secrets
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.platform.billing.collaborators import (
    AddressResolver,
    BillingAddress,
    ClockCollaborator,
    CouponCollaborator,
    FlatRateTaxCollaborator,
    StaticCouponCollaborator,
    SystemClock,
    TaxCollaborator,
    call_with_deadline,
    no_address,
)
from cadence.platform.billing.exceptions import (
    ConflictError,
    CouponRejectedError,
    InvoiceNotFoundError,
    InvoiceNumberCollisionError,
    InvoiceStateError,
    ValidationError,
)
from cadence.platform.billing.invoicing.models import (
    CouponApplication,
    Invoice,
    InvoiceStatus,
    InvoiceTotals,
)
from cadence.platform.billing.mappers import invoice_from_row
from cadence.platform.billing.models import (
    BillingCouponRedemptionTable,
    BillingCouponTable,
    BillingInvoiceItemTable,
    BillingInvoiceTable,
)
from cadence.platform.billing.money_utils import ZERO, format_amount, round2, to_decimal
from cadence.platform.billing.subscriptions.models import Subscription
from cadence.platform.core.ids import generate_id
from cadence.platform.db import atomic
from cadence.platform.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

PERIOD_DATE_FORMAT = "%b %d, %Y"

InvoiceNumberFactory = Callable[[datetime], str]


def calculate_totals(
    subtotal: Decimal, tax_rate: Decimal, discount_amount: Decimal = ZERO
) -> InvoiceTotals:
    """Tax on the subtotal, then ``total = subtotal + tax - discount``.

    The discount is capped at the subtotal.
    """
    subtotal = round2(subtotal)
    tax_amount = round2(subtotal * to_decimal(tax_rate) / 100)
    discount = min(round2(discount_amount), subtotal)
    return InvoiceTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        discount_amount=discount,
        total=subtotal + tax_amount - discount,
    )


def describe_period(period_start: datetime, period_end: datetime) -> str:
    return (
        f"Subscription for period {period_start.strftime(PERIOD_DATE_FORMAT)} - "
        f"{period_end.strftime(PERIOD_DATE_FORMAT)}"
    )


class InvoiceService:
    """Creates invoices and applies coupons and payments to them."""

    def __init__(
        self,
        db: AsyncSession,
        config: Settings.BillingSettings | None = None,
        clock: ClockCollaborator | None = None,
        tax: TaxCollaborator | None = None,
        coupons: CouponCollaborator | None = None,
        address_resolver: AddressResolver | None = None,
        number_factory: InvoiceNumberFactory | None = None,
    ) -> None:
        self.db = db
        self.config = config or get_settings().billing
        self.clock = clock or SystemClock()
        self.tax = tax or FlatRateTaxCollaborator(self.config.tax_rates)
        self.coupons = coupons or StaticCouponCollaborator(clock=self.clock)
        self.address_resolver = address_resolver or no_address
        self.number_factory = number_factory or self._random_invoice_number

    # ==================== Creation (caller's transaction) ====================

    async def create_subscription_invoice(
        self,
        subscription: Subscription,
        period_start: datetime,
        period_end: datetime,
        address: BillingAddress | None = None,
        timeout_seconds: float | None = None,
    ) -> Invoice:
        """Invoice a full period of a subscription at its price snapshot."""
        return await self._assemble(
            subscription=subscription,
            amount=subscription.price,
            description=describe_period(period_start, period_end),
            is_proration=False,
            period_start=period_start,
            period_end=period_end,
            address=address,
            timeout_seconds=timeout_seconds,
        )

    async def create_proration_invoice(
        self,
        subscription: Subscription,
        amount: Decimal,
        description: str,
        period_start: datetime,
        period_end: datetime,
        address: BillingAddress | None = None,
        timeout_seconds: float | None = None,
    ) -> Invoice:
        """Invoice a prorated amount for part of the current period."""
        if amount <= 0:
            raise ValidationError(
                "Proration invoices require a positive amount",
                context={"subscription_id": subscription.subscription_id, "amount": str(amount)},
            )
        return await self._assemble(
            subscription=subscription,
            amount=amount,
            description=description,
            is_proration=True,
            period_start=period_start,
            period_end=period_end,
            address=address,
            timeout_seconds=timeout_seconds,
        )

    async def _assemble(
        self,
        subscription: Subscription,
        amount: Decimal,
        description: str,
        is_proration: bool,
        period_start: datetime,
        period_end: datetime,
        address: BillingAddress | None,
        timeout_seconds: float | None,
    ) -> Invoice:
        timeout = timeout_seconds or self.config.collaborator_timeout_seconds
        amount = round2(amount)

        if address is None:
            address = await call_with_deadline(
                self.address_resolver(subscription.user_id), "address_resolver", timeout
            )
        country_code, state_code = self._jurisdiction(address)
        quote = await call_with_deadline(
            self.tax.compute_tax(amount, country_code, state_code), "tax", timeout
        )

        now = self.clock.now()
        invoice_number = await self._allocate_number(now)
        tax_amount = round2(quote.amount)
        total = amount + tax_amount

        item = BillingInvoiceItemTable(
            item_id=generate_id("item"),
            description=description,
            quantity=1,
            unit_price=amount,
            amount=amount,
            is_proration=is_proration,
            proration_period_start=period_start if is_proration else None,
            proration_period_end=period_end if is_proration else None,
            tax_rate=quote.rate,
            tax_amount=tax_amount,
            created_at=now,
        )
        row = BillingInvoiceTable(
            invoice_id=generate_id("inv"),
            invoice_number=invoice_number,
            user_id=subscription.user_id,
            subscription_id=subscription.subscription_id,
            status=InvoiceStatus.OPEN.value,
            subtotal=amount,
            tax_rate=quote.rate,
            tax_amount=tax_amount,
            discount_amount=ZERO,
            total=total,
            amount_paid=ZERO,
            amount_due=total,
            currency=subscription.currency,
            invoice_date=now,
            due_date=now + timedelta(days=self.config.invoice_due_days),
            items=[item],
        )
        self.db.add(row)

        try:
            await self.db.flush()
        except IntegrityError as e:
            raise InvoiceNumberCollisionError(
                f"Invoice number {invoice_number} already exists", invoice_number=invoice_number
            ) from e

        logger.info(
            "Invoice created",
            invoice_id=row.invoice_id,
            invoice_number=invoice_number,
            subscription_id=subscription.subscription_id,
            is_proration=is_proration,
            subtotal=str(amount),
            tax_amount=str(tax_amount),
            total=str(total),
        )
        return invoice_from_row(row)

    def _jurisdiction(self, address: BillingAddress | None) -> tuple[str, str | None]:
        if address is None:
            return self.config.fallback_country_code, self.config.fallback_state_code
        return address.country_code, address.state_code

    def _random_invoice_number(self, now: datetime) -> str:
        return f"{self.config.invoice_number_prefix}-{now:%Y%m}-{secrets.randbelow(10000):04d}"

    async def _allocate_number(self, now: datetime) -> str:
        invoice_number = self.number_factory(now)
        taken = await self.db.scalar(
            select(exists().where(BillingInvoiceTable.invoice_number == invoice_number))
        )
        if taken:
            logger.warning("Invoice number collision", invoice_number=invoice_number)
            raise InvoiceNumberCollisionError(
                f"Invoice number {invoice_number} already exists", invoice_number=invoice_number
            )
        return invoice_number

    # ==================== Coupons ====================

    async def apply_coupon(
        self,
        invoice_id: str,
        code: str,
        user_id: str,
        timeout_seconds: float | None = None,
    ) -> CouponApplication:
        """Apply a coupon to an open invoice, redeeming it at most once.

        Re-applying the same code to the same invoice returns the recorded
        discount without a second redemption.
        """
        timeout = timeout_seconds or self.config.collaborator_timeout_seconds
        code = code.strip().upper()

        async with atomic(self.db):
            invoice = await self._get_row(invoice_id, for_update=True)
            if invoice.user_id != user_id:
                raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
            if not InvoiceStatus(invoice.status).is_modifiable:
                raise InvoiceStateError(
                    f"Cannot apply a coupon to a {invoice.status} invoice",
                    invoice_id=invoice_id,
                    status=invoice.status,
                )

            coupon = await self.db.scalar(
                select(BillingCouponTable).where(BillingCouponTable.code == code).with_for_update()
            )
            if coupon is not None:
                existing = await self.db.scalar(
                    select(BillingCouponRedemptionTable).where(
                        BillingCouponRedemptionTable.coupon_id == coupon.coupon_id,
                        BillingCouponRedemptionTable.invoice_id == invoice_id,
                    )
                )
                if existing is not None:
                    return CouponApplication(
                        invoice=invoice_from_row(invoice),
                        coupon_code=code,
                        discount_amount=existing.discount_amount,
                        already_applied=True,
                    )

            if invoice.discount_amount > 0:
                raise CouponRejectedError(
                    "Invoice already has a discount", code=code, reason="invoice_discounted"
                )

            reservation = await call_with_deadline(
                self.coupons.validate_and_reserve(code, user_id, invoice.subtotal),
                "coupon",
                timeout,
            )

            if coupon is None:
                coupon = BillingCouponTable(
                    coupon_id=generate_id("cpn"), code=code, times_redeemed=0, is_active=True
                )
                self.db.add(coupon)
            coupon.max_redemptions = reservation.max_redemptions
            coupon.max_redemptions_per_user = reservation.max_redemptions_per_user
            await self._check_redeemable(coupon, user_id)

            # Tax stays as assessed at creation; money already collected is never discounted
            outstanding = max(ZERO, invoice.subtotal + invoice.tax_amount - invoice.amount_paid)
            discount = min(round2(reservation.discount_amount), invoice.subtotal, outstanding)
            total = invoice.subtotal + invoice.tax_amount - discount

            coupon.times_redeemed += 1
            invoice.discount_amount = discount
            invoice.total = total
            invoice.amount_due = max(ZERO, total - invoice.amount_paid)
            if invoice.amount_due == 0:
                invoice.status = InvoiceStatus.PAID.value
                invoice.paid_at = self.clock.now()
            self.db.add(
                BillingCouponRedemptionTable(
                    redemption_id=generate_id("red"),
                    coupon_id=coupon.coupon_id,
                    user_id=user_id,
                    invoice_id=invoice_id,
                    subscription_id=invoice.subscription_id,
                    discount_amount=discount,
                    redeemed_at=self.clock.now(),
                )
            )

            try:
                await self.db.flush()
            except IntegrityError as e:
                raise ConflictError(
                    f"Coupon {code} was applied to invoice {invoice_id} concurrently",
                    entity_id=invoice_id,
                ) from e

            result = CouponApplication(
                invoice=invoice_from_row(invoice),
                coupon_code=code,
                discount_amount=discount,
            )

        logger.info(
            "Coupon applied",
            invoice_id=invoice_id,
            coupon_code=code,
            discount_amount=str(result.discount_amount),
            new_total=str(result.invoice.total),
        )
        return result

    async def _check_redeemable(self, coupon: BillingCouponTable, user_id: str) -> None:
        """Enforce the coupon's total and per-user redemption limits.

        Runs with the coupon row locked, so concurrent redemptions are counted
        one at a time.
        """
        if not coupon.is_active:
            raise CouponRejectedError(
                f"Coupon {coupon.code} is no longer active", code=coupon.code, reason="inactive"
            )
        if coupon.max_redemptions is not None and coupon.times_redeemed >= coupon.max_redemptions:
            raise CouponRejectedError(
                f"Coupon {coupon.code} has reached its maximum number of redemptions",
                code=coupon.code,
                reason="max_redemptions",
            )
        if coupon.max_redemptions_per_user is not None:
            used = await self.db.scalar(
                select(func.count())
                .select_from(BillingCouponRedemptionTable)
                .where(
                    BillingCouponRedemptionTable.coupon_id == coupon.coupon_id,
                    BillingCouponRedemptionTable.user_id == user_id,
                )
            )
            if (used or 0) >= coupon.max_redemptions_per_user:
                raise CouponRejectedError(
                    f"Coupon {coupon.code} has already been used the maximum number of times",
                    code=coupon.code,
                    reason="max_redemptions_per_user",
                )

    # ==================== Settlement ====================

    async def mark_paid(self, invoice_id: str, amount: Decimal) -> Invoice:
        """Record a payment; the invoice becomes paid once nothing is due."""
        amount = round2(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive", context={"amount": str(amount)})

        async with atomic(self.db):
            row = await self._get_row(invoice_id, for_update=True)
            if not InvoiceStatus(row.status).is_modifiable:
                raise InvoiceStateError(
                    f"Cannot record a payment on a {row.status} invoice",
                    invoice_id=invoice_id,
                    status=row.status,
                )

            row.amount_paid = row.amount_paid + amount
            row.amount_due = max(ZERO, row.total - row.amount_paid)
            if row.amount_due == 0:
                row.status = InvoiceStatus.PAID.value
                row.paid_at = self.clock.now()
            await self.db.flush()
            invoice = invoice_from_row(row)

        logger.info(
            "Invoice payment recorded",
            invoice_id=invoice_id,
            amount=format_amount(amount, invoice.currency),
            status=invoice.status.value,
        )
        return invoice

    async def void_invoice(self, invoice_id: str, reason: str) -> Invoice:
        async with atomic(self.db):
            row = await self._get_row(invoice_id, for_update=True)
            if row.status in (InvoiceStatus.PAID.value, InvoiceStatus.VOID.value):
                raise InvoiceStateError(
                    f"Cannot void a {row.status} invoice", invoice_id=invoice_id, status=row.status
                )
            row.status = InvoiceStatus.VOID.value
            row.voided_at = self.clock.now()
            row.notes = f"{row.notes}\n{reason}" if row.notes else reason
            await self.db.flush()
            invoice = invoice_from_row(row)

        logger.info("Invoice voided", invoice_id=invoice_id, reason=reason)
        return invoice

    async def mark_uncollectible_overdue(
        self, older_than_days: int | None = None, now: datetime | None = None
    ) -> int:
        """Mark open invoices overdue for longer than ``older_than_days`` uncollectible."""
        days = older_than_days if older_than_days is not None else self.config.uncollectible_after_days
        cutoff = (now or self.clock.now()) - timedelta(days=days)

        async with atomic(self.db):
            result = await self.db.execute(
                select(BillingInvoiceTable)
                .where(
                    BillingInvoiceTable.status == InvoiceStatus.OPEN.value,
                    BillingInvoiceTable.due_date < cutoff,
                )
                .with_for_update()
            )
            rows = list(result.scalars().all())
            for row in rows:
                row.status = InvoiceStatus.UNCOLLECTIBLE.value
            await self.db.flush()

        if rows:
            logger.info("Marked invoices uncollectible", count=len(rows), cutoff=cutoff.isoformat())
        return len(rows)

    # ==================== Queries ====================

    async def get_invoice(self, invoice_id: str) -> Invoice:
        return invoice_from_row(await self._get_row(invoice_id))

    async def list_user_invoices(self, user_id: str, limit: int = 50, offset: int = 0) -> list[Invoice]:
        result = await self.db.execute(
            select(BillingInvoiceTable)
            .where(BillingInvoiceTable.user_id == user_id)
            .order_by(BillingInvoiceTable.invoice_date.desc())
            .limit(limit)
            .offset(offset)
        )
        return [invoice_from_row(row) for row in result.scalars().all()]

    async def list_overdue(self, now: datetime | None = None) -> list[Invoice]:
        now = now or self.clock.now()
        result = await self.db.execute(
            select(BillingInvoiceTable)
            .where(
                BillingInvoiceTable.status == InvoiceStatus.OPEN.value,
                BillingInvoiceTable.due_date < now,
            )
            .order_by(BillingInvoiceTable.due_date)
        )
        return [invoice_from_row(row) for row in result.scalars().all()]

    async def _get_row(self, invoice_id: str, for_update: bool = False) -> BillingInvoiceTable:
        stmt = select(BillingInvoiceTable).where(BillingInvoiceTable.invoice_id == invoice_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        row = result.scalar_one_or_none()
        if row is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return row


__all__ = ["InvoiceService", "calculate_totals", "describe_period"]
