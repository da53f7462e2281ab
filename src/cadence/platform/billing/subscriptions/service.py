"""
Subscription lifecycle management.

Every mutation runs as one unit of work: the version-checked state change,
its history row and any invoice commit or roll back together. Concurrent
writers against the same subscription are detected by the version column and
surface as ConflictError; retrying is the caller's decision.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.platform.billing.catalog.models import Plan, add_billing_cycle
from cadence.platform.billing.catalog.service import PlanCatalog
from cadence.platform.billing.collaborators import ClockCollaborator, SystemClock
from cadence.platform.billing.concurrency import OptimisticConcurrencyController
from cadence.platform.billing.exceptions import (
    BillingCycleMismatchError,
    DuplicateSubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    ValidationError,
)
from cadence.platform.billing.invoicing.service import InvoiceService
from cadence.platform.billing.mappers import history_from_row, subscription_from_row
from cadence.platform.billing.models import (
    BillingSubscriptionHistoryTable,
    BillingSubscriptionTable,
)
from cadence.platform.billing.money_utils import ZERO
from cadence.platform.billing.subscriptions.models import (
    LIVE_STATUSES,
    CancellationResult,
    HistoryAction,
    PlanChangeResult,
    ProrationPreview,
    RenewalOutcome,
    RenewalResult,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
    TrialConversionResult,
)
from cadence.platform.billing.subscriptions.proration import (
    calculate_plan_change,
    cancellation_refund,
    downgrade_credit,
    grace_period_proration,
    trial_conversion_proration,
)
from cadence.platform.core.ids import generate_id
from cadence.platform.db import atomic
from cadence.platform.logging import log_audit_event
from cadence.platform.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

CHANGEABLE_STATUSES = frozenset({SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE})
RENEWABLE_STATUSES = frozenset(LIVE_STATUSES)


def _not_found(subscription_id: str) -> SubscriptionNotFoundError:
    return SubscriptionNotFoundError(
        f"Subscription {subscription_id} not found", subscription_id=subscription_id
    )


class SubscriptionService:
    """
    Subscription lifecycle manager.

    Handles:
    - Creation with optional trial
    - Immediate, prorated upgrades
    - Downgrades deferred to the next renewal
    - Immediate and period-end cancellation
    - Renewal, trial conversion and payment-driven status changes
    """

    def __init__(
        self,
        db: AsyncSession,
        config: Settings.BillingSettings | None = None,
        clock: ClockCollaborator | None = None,
        invoices: InvoiceService | None = None,
        catalog: PlanCatalog | None = None,
    ) -> None:
        self.db = db
        self.config = config or get_settings().billing
        self.clock = clock or SystemClock()
        self.invoices = invoices or InvoiceService(db, config=self.config, clock=self.clock)
        self.catalog = catalog or PlanCatalog(db)
        self.versions: OptimisticConcurrencyController[BillingSubscriptionTable] = (
            OptimisticConcurrencyController(db, BillingSubscriptionTable, _not_found)
        )

    # ==================== Creation ====================

    async def create(
        self, user_id: str, plan_id: str, metadata: dict[str, Any] | None = None
    ) -> Subscription:
        """Subscribe a user to a plan.

        Raises:
            PlanNotFoundError: Plan missing or inactive
            DuplicateSubscriptionError: User already has a non-canceled subscription
        """
        async with atomic(self.db):
            plan = await self.catalog.get_plan(plan_id, active_only=True)

            existing = await self._live_row_for_user(user_id)
            if existing is not None:
                raise DuplicateSubscriptionError(
                    f"User {user_id} already has an active subscription",
                    user_id=user_id,
                    subscription_id=existing.subscription_id,
                )

            start = self.clock.now()
            if plan.has_trial:
                trial_end: datetime | None = start + timedelta(days=plan.trial_days)
                status = SubscriptionStatus.TRIAL
                period_end = add_billing_cycle(trial_end, plan.billing_cycle)
            else:
                trial_end = None
                status = SubscriptionStatus.ACTIVE
                period_end = add_billing_cycle(start, plan.billing_cycle)

            row = BillingSubscriptionTable(
                subscription_id=generate_id("sub"),
                user_id=user_id,
                plan_id=plan.plan_id,
                status=status.value,
                current_period_start=start,
                current_period_end=period_end,
                trial_end=trial_end,
                price=plan.price,
                currency=plan.currency,
                cancel_at_period_end=False,
                version=0,
                metadata_json=dict(metadata or {}),
            )
            self.db.add(row)
            try:
                await self.db.flush()
            except IntegrityError as e:
                raise DuplicateSubscriptionError(
                    f"User {user_id} already has an active subscription", user_id=user_id
                ) from e

            self._record(row, HistoryAction.CREATED, to_plan_id=plan.plan_id, new_price=plan.price)
            await self.db.flush()
            subscription = subscription_from_row(row)

        logger.info(
            "Subscription created",
            subscription_id=subscription.subscription_id,
            user_id=user_id,
            plan_id=plan_id,
            status=subscription.status.value,
            trial_end=subscription.trial_end.isoformat() if subscription.trial_end else None,
        )
        log_audit_event(
            "subscription.created",
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            plan_id=plan_id,
        )
        return subscription

    # ==================== Plan changes ====================

    async def upgrade(
        self, subscription_id: str, new_plan_id: str, expected_version: int | None = None
    ) -> PlanChangeResult:
        """Switch plans now and invoice the prorated difference.

        Changes inside the configured grace window after period start are not
        prorated. Any staged downgrade is discarded.
        """
        async with atomic(self.db):
            current = await self.versions.load(subscription_id)
            self._require_status(current, CHANGEABLE_STATUSES, "upgrade")
            new_plan = await self._validate_plan_change(current, new_plan_id)

            now = self.clock.now()
            proration = grace_period_proration(
                current.price,
                new_plan.price,
                current.current_period_start,
                current.current_period_end,
                now,
                grace_hours=self.config.proration_grace_hours,
            )

            old_plan_id, old_price = current.plan_id, current.price
            row = await self.versions.mutate(
                subscription_id,
                self._expected(current, expected_version),
                lambda _: {
                    "plan_id": new_plan.plan_id,
                    "price": new_plan.price,
                    "pending_plan_id": None,
                    "pending_price": None,
                    "pending_effective_at": None,
                },
            )
            subscription = subscription_from_row(row)

            invoice = None
            if proration > 0:
                invoice = await self.invoices.create_proration_invoice(
                    subscription,
                    proration,
                    f"Upgrade from {old_plan_id} to {new_plan.plan_id}",
                    now,
                    row.current_period_end,
                )

            self._record(
                row,
                HistoryAction.UPGRADED,
                from_plan_id=old_plan_id,
                to_plan_id=new_plan.plan_id,
                old_price=old_price,
                new_price=new_plan.price,
                proration_amount=proration,
            )
            await self.db.flush()

        logger.info(
            "Subscription upgraded",
            subscription_id=subscription_id,
            from_plan_id=old_plan_id,
            to_plan_id=new_plan.plan_id,
            proration=str(proration),
            invoice_id=invoice.invoice_id if invoice else None,
        )
        log_audit_event(
            "subscription.upgraded",
            user_id=subscription.user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            from_plan_id=old_plan_id,
            to_plan_id=new_plan.plan_id,
        )
        return PlanChangeResult(subscription=subscription, proration_amount=proration, invoice=invoice)

    async def downgrade(
        self, subscription_id: str, new_plan_id: str, expected_version: int | None = None
    ) -> PlanChangeResult:
        """Stage a plan change for the next renewal; nothing is charged or credited."""
        async with atomic(self.db):
            current = await self.versions.load(subscription_id)
            self._require_status(current, CHANGEABLE_STATUSES, "downgrade")
            new_plan = await self._validate_plan_change(current, new_plan_id)

            credit = downgrade_credit(
                current.price,
                new_plan.price,
                current.current_period_start,
                current.current_period_end,
                self.clock.now(),
            )
            effective_at = current.current_period_end

            row = await self.versions.mutate(
                subscription_id,
                self._expected(current, expected_version),
                lambda _: {
                    "pending_plan_id": new_plan.plan_id,
                    "pending_price": new_plan.price,
                    "pending_effective_at": effective_at,
                },
            )
            self._record(
                row,
                HistoryAction.DOWNGRADED,
                from_plan_id=row.plan_id,
                to_plan_id=new_plan.plan_id,
                old_price=row.price,
                new_price=new_plan.price,
                notes=f"Effective {effective_at.isoformat()}; estimated credit {credit} not issued",
            )
            await self.db.flush()
            subscription = subscription_from_row(row)

        logger.info(
            "Subscription downgrade scheduled",
            subscription_id=subscription_id,
            to_plan_id=new_plan.plan_id,
            effective_at=effective_at.isoformat(),
        )
        log_audit_event(
            "subscription.downgraded",
            user_id=subscription.user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            to_plan_id=new_plan.plan_id,
        )
        return PlanChangeResult(subscription=subscription)

    async def preview_plan_change(
        self, subscription_id: str, new_plan_id: str, at: datetime | None = None
    ) -> ProrationPreview:
        """Estimate a plan change without writing anything."""
        current = await self.versions.load(subscription_id)
        new_plan = await self._validate_plan_change(current, new_plan_id)
        at = at or self.clock.now()
        is_upgrade = new_plan.price > current.price

        proration = calculate_plan_change(
            current.price,
            new_plan.price,
            current.current_period_start,
            current.current_period_end,
            at,
            grace_hours=self.config.proration_grace_hours if is_upgrade else 0,
        )
        return ProrationPreview(
            subscription_id=subscription_id,
            current_plan_id=current.plan_id,
            new_plan_id=new_plan.plan_id,
            is_upgrade=is_upgrade,
            effective_at=at if is_upgrade else current.current_period_end,
            proration=proration,
        )

    # ==================== Cancellation ====================

    async def cancel(
        self,
        subscription_id: str,
        immediate: bool = False,
        expected_version: int | None = None,
    ) -> CancellationResult:
        """Cancel now or at period end.

        Canceling an already canceled subscription, or requesting period-end
        cancellation twice, succeeds without writing anything. The refund
        estimate is reported, never issued.
        """
        async with atomic(self.db):
            current = await self.versions.load(subscription_id)
            status = SubscriptionStatus(current.status)
            if status == SubscriptionStatus.CANCELED:
                return CancellationResult(subscription=subscription_from_row(current))

            now = self.clock.now()
            if immediate:
                refund = cancellation_refund(
                    current.price, current.current_period_start, current.current_period_end, now
                )
                row = await self.versions.mutate(
                    subscription_id,
                    self._expected(current, expected_version),
                    lambda _: {
                        "status": SubscriptionStatus.CANCELED.value,
                        "canceled_at": now,
                        "cancel_at_period_end": False,
                        "pending_plan_id": None,
                        "pending_price": None,
                        "pending_effective_at": None,
                    },
                )
                self._record(
                    row,
                    HistoryAction.CANCELED,
                    from_plan_id=row.plan_id,
                    old_price=row.price,
                    notes=f"Canceled immediately; estimated refund {refund}",
                )
            else:
                self._require_status(current, CHANGEABLE_STATUSES, "cancel at period end")
                if current.cancel_at_period_end:
                    return CancellationResult(subscription=subscription_from_row(current))
                refund = ZERO
                row = await self.versions.mutate(
                    subscription_id,
                    self._expected(current, expected_version),
                    lambda _: {"cancel_at_period_end": True, "canceled_at": now},
                )

            await self.db.flush()
            subscription = subscription_from_row(row)

        logger.info(
            "Subscription canceled",
            subscription_id=subscription_id,
            immediate=immediate,
            refund_estimate=str(refund),
        )
        log_audit_event(
            "subscription.canceled",
            user_id=subscription.user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            immediate=immediate,
        )
        return CancellationResult(subscription=subscription, refund_estimate=refund)

    # ==================== Renewal & trials ====================

    async def renew(
        self,
        subscription_id: str,
        now: datetime | None = None,
        lookahead: timedelta | None = None,
    ) -> RenewalResult:
        """Advance a due subscription by one cycle.

        In order: a staged downgrade is applied, then a period-end cancellation
        ends the subscription without an invoice; otherwise the period shifts
        forward and a full-price invoice is issued. A subscription that is not
        due yet is left alone, so repeating the call is harmless.
        """
        now = now or self.clock.now()
        if lookahead is None:
            lookahead = timedelta(hours=self.config.renewal_lookahead_hours)

        async with atomic(self.db):
            current = await self.versions.load(subscription_id)
            status = SubscriptionStatus(current.status)
            if status == SubscriptionStatus.CANCELED:
                return RenewalResult(
                    subscription=subscription_from_row(current),
                    outcome=RenewalOutcome.ALREADY_CANCELED,
                )
            if current.current_period_end > now + lookahead:
                return RenewalResult(
                    subscription=subscription_from_row(current), outcome=RenewalOutcome.NOT_DUE
                )

            # Read plan-dependent values before the write replaces them
            downgrade_applied = current.pending_plan_id is not None
            old_plan_id, old_price = current.plan_id, current.price
            plan_id = current.pending_plan_id or current.plan_id
            plan = await self.catalog.get_plan(plan_id)

            changes: dict[str, Any] = {}
            if downgrade_applied:
                changes.update(
                    plan_id=current.pending_plan_id,
                    price=current.pending_price,
                    pending_plan_id=None,
                    pending_price=None,
                    pending_effective_at=None,
                )

            if current.cancel_at_period_end:
                changes.update(status=SubscriptionStatus.CANCELED.value)
                row = await self.versions.mutate(
                    subscription_id, current.version, lambda _: changes
                )
                self._record(
                    row,
                    HistoryAction.CANCELED,
                    from_plan_id=row.plan_id,
                    old_price=row.price,
                    notes="Canceled at period end",
                )
                await self.db.flush()
                result = RenewalResult(
                    subscription=subscription_from_row(row),
                    outcome=RenewalOutcome.CANCELED,
                    downgrade_applied=downgrade_applied,
                )
            else:
                new_start = current.current_period_end
                new_end = add_billing_cycle(new_start, plan.billing_cycle)
                changes.update(
                    status=SubscriptionStatus.ACTIVE.value,
                    current_period_start=new_start,
                    current_period_end=new_end,
                    trial_end=None,
                )
                row = await self.versions.mutate(
                    subscription_id, current.version, lambda _: changes
                )
                subscription = subscription_from_row(row)
                invoice = await self.invoices.create_subscription_invoice(
                    subscription, new_start, new_end
                )
                self._record(
                    row,
                    HistoryAction.RENEWED,
                    from_plan_id=old_plan_id,
                    to_plan_id=row.plan_id,
                    old_price=old_price,
                    new_price=row.price,
                    notes="Pending downgrade applied" if downgrade_applied else None,
                )
                await self.db.flush()
                result = RenewalResult(
                    subscription=subscription,
                    outcome=RenewalOutcome.RENEWED,
                    invoice=invoice,
                    downgrade_applied=downgrade_applied,
                )

        logger.info(
            "Subscription renewal processed",
            subscription_id=subscription_id,
            outcome=result.outcome.value,
            downgrade_applied=downgrade_applied,
            period_end=result.subscription.current_period_end.isoformat(),
            invoice_id=result.invoice.invoice_id if result.invoice else None,
        )
        return result

    async def convert_trial(
        self, subscription_id: str, now: datetime | None = None
    ) -> TrialConversionResult:
        """Turn an ended trial into a paid subscription and invoice the rest of the period."""
        now = now or self.clock.now()

        async with atomic(self.db):
            current = await self.versions.load(subscription_id)
            if (
                current.status != SubscriptionStatus.TRIAL.value
                or current.trial_end is None
                or current.trial_end > now
            ):
                return TrialConversionResult(
                    subscription=subscription_from_row(current), converted=False
                )

            plan = await self.catalog.get_plan(current.plan_id)
            amount = trial_conversion_proration(
                current.price, current.trial_end, current.current_period_end, plan.billing_cycle
            )
            trial_end = current.trial_end
            row = await self.versions.mutate(
                subscription_id,
                current.version,
                lambda _: {"status": SubscriptionStatus.ACTIVE.value},
            )
            subscription = subscription_from_row(row)

            invoice = None
            if amount > 0:
                invoice = await self.invoices.create_proration_invoice(
                    subscription,
                    amount,
                    f"Trial conversion for {plan.name}",
                    trial_end,
                    row.current_period_end,
                )
            self._record(
                row,
                HistoryAction.TRIAL_CONVERTED,
                to_plan_id=row.plan_id,
                new_price=row.price,
                proration_amount=amount,
            )
            await self.db.flush()

        logger.info(
            "Trial converted",
            subscription_id=subscription_id,
            amount=str(amount),
            invoice_id=invoice.invoice_id if invoice else None,
        )
        return TrialConversionResult(
            subscription=subscription, converted=True, invoice=invoice, amount=amount
        )

    # ==================== Payment-driven status ====================

    async def mark_past_due(self, subscription_id: str, reason: str | None = None) -> Subscription:
        """Flag a subscription whose payment retries are exhausted."""
        return await self._transition(
            subscription_id,
            target=SubscriptionStatus.PAST_DUE,
            allowed=CHANGEABLE_STATUSES,
            action=HistoryAction.PAST_DUE,
            notes=reason,
        )

    async def reactivate(self, subscription_id: str, reason: str | None = None) -> Subscription:
        """Return a past-due subscription to active once its invoice is paid."""
        return await self._transition(
            subscription_id,
            target=SubscriptionStatus.ACTIVE,
            allowed=frozenset({SubscriptionStatus.PAST_DUE}),
            action=HistoryAction.REACTIVATED,
            notes=reason,
        )

    async def _transition(
        self,
        subscription_id: str,
        target: SubscriptionStatus,
        allowed: frozenset[SubscriptionStatus],
        action: HistoryAction,
        notes: str | None,
    ) -> Subscription:
        async with atomic(self.db):
            current = await self.versions.load(subscription_id)
            if current.status == target.value:
                return subscription_from_row(current)
            self._require_status(current, allowed, action.value)

            row = await self.versions.mutate(
                subscription_id, current.version, lambda _: {"status": target.value}
            )
            self._record(row, action, notes=notes)
            await self.db.flush()
            subscription = subscription_from_row(row)

        logger.info(
            "Subscription status changed",
            subscription_id=subscription_id,
            status=target.value,
            action=action.value,
        )
        return subscription

    # ==================== Queries ====================

    async def get_subscription(self, subscription_id: str) -> Subscription:
        return subscription_from_row(await self.versions.load(subscription_id))

    async def get_user_subscription(self, user_id: str) -> Subscription | None:
        """The user's non-canceled subscription, if any."""
        row = await self._live_row_for_user(user_id)
        return subscription_from_row(row) if row is not None else None

    async def list_history(self, subscription_id: str) -> list[SubscriptionHistoryEntry]:
        result = await self.db.execute(
            select(BillingSubscriptionHistoryTable)
            .where(BillingSubscriptionHistoryTable.subscription_id == subscription_id)
            .order_by(BillingSubscriptionHistoryTable.subscription_version)
        )
        return [history_from_row(row) for row in result.scalars().all()]

    async def list_due_for_renewal(self, before: datetime, limit: int | None = None) -> list[str]:
        """Ids of renewable subscriptions whose period ends at or before ``before``."""
        stmt = (
            select(BillingSubscriptionTable.subscription_id)
            .where(
                BillingSubscriptionTable.status.in_([s.value for s in RENEWABLE_STATUSES]),
                BillingSubscriptionTable.current_period_end <= before,
            )
            .order_by(BillingSubscriptionTable.current_period_end)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_trials_ending(self, before: datetime) -> list[str]:
        result = await self.db.execute(
            select(BillingSubscriptionTable.subscription_id)
            .where(
                BillingSubscriptionTable.status == SubscriptionStatus.TRIAL.value,
                BillingSubscriptionTable.trial_end <= before,
            )
            .order_by(BillingSubscriptionTable.trial_end)
        )
        return list(result.scalars().all())

    # ==================== Helpers ====================

    async def _live_row_for_user(self, user_id: str) -> BillingSubscriptionTable | None:
        result = await self.db.execute(
            select(BillingSubscriptionTable).where(
                BillingSubscriptionTable.user_id == user_id,
                BillingSubscriptionTable.status != SubscriptionStatus.CANCELED.value,
            )
        )
        return result.scalars().first()

    async def _validate_plan_change(
        self, current: BillingSubscriptionTable, new_plan_id: str
    ) -> Plan:
        if new_plan_id == current.plan_id:
            raise ValidationError(
                "Subscription is already on this plan",
                context={"subscription_id": current.subscription_id, "plan_id": new_plan_id},
            )
        current_plan = await self.catalog.get_plan(current.plan_id)
        new_plan = await self.catalog.get_plan(new_plan_id, active_only=True)
        if new_plan.billing_cycle != current_plan.billing_cycle:
            raise BillingCycleMismatchError(
                "Cannot change billing cycle with a plan change",
                current_cycle=current_plan.billing_cycle.value,
                requested_cycle=new_plan.billing_cycle.value,
            )
        return new_plan

    @staticmethod
    def _require_status(
        row: BillingSubscriptionTable,
        allowed: frozenset[SubscriptionStatus],
        action: str,
    ) -> None:
        if SubscriptionStatus(row.status) not in allowed:
            raise SubscriptionStateError(
                f"Cannot {action} subscription in {row.status} status",
                current_state=row.status,
                requested_action=action,
            )

    @staticmethod
    def _expected(row: BillingSubscriptionTable, expected_version: int | None) -> int:
        return row.version if expected_version is None else expected_version

    def _record(
        self,
        row: BillingSubscriptionTable,
        action: HistoryAction,
        from_plan_id: str | None = None,
        to_plan_id: str | None = None,
        old_price: Decimal | None = None,
        new_price: Decimal | None = None,
        proration_amount: Decimal = ZERO,
        notes: str | None = None,
    ) -> None:
        self.db.add(
            BillingSubscriptionHistoryTable(
                history_id=generate_id("hist"),
                subscription_id=row.subscription_id,
                user_id=row.user_id,
                subscription_version=row.version,
                action=action.value,
                from_plan_id=from_plan_id,
                to_plan_id=to_plan_id,
                old_price=old_price,
                new_price=new_price,
                proration_amount=proration_amount,
                notes=notes,
                created_at=self.clock.now(),
            )
        )


__all__ = ["SubscriptionService"]
