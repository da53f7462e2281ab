"""
Renewal and retry orchestration.

Background passes that find due work and process each item independently:
every attempt gets a fresh session, a version conflict is retried a bounded
number of times, and a failing item never stops the rest of the batch.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TypeVar

import structlog
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cadence.platform.billing.collaborators import (
    ClockCollaborator,
    PaymentGateway,
    SystemClock,
)
from cadence.platform.billing.exceptions import BillingError, ConflictError
from cadence.platform.billing.invoicing.service import InvoiceService
from cadence.platform.billing.payments.models import PaymentStatus
from cadence.platform.billing.payments.service import PaymentService
from cadence.platform.billing.subscriptions.service import SubscriptionService
from cadence.platform.core.pydantic import AppBaseModel
from cadence.platform.db import get_session_maker
from cadence.platform.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SubscriptionServiceFactory = Callable[[AsyncSession], SubscriptionService]
PaymentServiceFactory = Callable[[AsyncSession], PaymentService]


class BatchResult(AppBaseModel):
    """Tally of one background pass."""

    pass_name: str
    total: int = 0
    succeeded: int = 0
    unchanged: int = 0
    conflicts: int = 0
    failed: int = 0
    failures: dict[str, str] = Field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return self.model_dump()


class RenewalOrchestrator:
    """Runs the periodic billing passes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: Settings.BillingSettings | None = None,
        clock: ClockCollaborator | None = None,
        subscription_service_factory: SubscriptionServiceFactory | None = None,
        payment_service_factory: PaymentServiceFactory | None = None,
        gateway: PaymentGateway | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory or get_session_maker()
        self.config = config or get_settings().billing
        self.clock = clock or SystemClock()
        self.subscription_service_factory = subscription_service_factory or (
            lambda session: SubscriptionService(session, config=self.config, clock=self.clock)
        )
        self.payment_service_factory = payment_service_factory or (
            lambda session: PaymentService(
                session, gateway=gateway, config=self.config, clock=self.clock
            )
        )
        self.sleep = sleep

    # ==================== Passes ====================

    async def run_renewals(
        self,
        now: datetime | None = None,
        lookahead: timedelta | None = None,
        limit: int | None = None,
    ) -> BatchResult:
        """Renew every subscription whose period ends within the lookahead window."""
        now = now or self.clock.now()
        lookahead = lookahead if lookahead is not None else timedelta(
            hours=self.config.renewal_lookahead_hours
        )
        limit = limit or self.config.renewal_batch_size

        async with self.session_factory() as session:
            ids = await self.subscription_service_factory(session).list_due_for_renewal(
                now + lookahead, limit=limit
            )

        result = BatchResult(pass_name="renewals", total=len(ids))
        for subscription_id in ids:

            async def renew(service: SubscriptionService, sid: str = subscription_id) -> bool:
                outcome = await service.renew(sid, now=now, lookahead=lookahead)
                return outcome.changed

            await self._process(result, subscription_id, self.subscription_service_factory, renew)

        self._log_result(result)
        return result

    async def run_trial_conversions(self, now: datetime | None = None) -> BatchResult:
        """Convert trials whose trial period has ended."""
        now = now or self.clock.now()

        async with self.session_factory() as session:
            ids = await self.subscription_service_factory(session).list_trials_ending(now)

        result = BatchResult(pass_name="trial_conversions", total=len(ids))
        for subscription_id in ids:

            async def convert(service: SubscriptionService, sid: str = subscription_id) -> bool:
                outcome = await service.convert_trial(sid, now=now)
                return outcome.converted

            await self._process(result, subscription_id, self.subscription_service_factory, convert)

        self._log_result(result)
        return result

    async def run_payment_retries(self, now: datetime | None = None) -> BatchResult:
        """Retry failed payments whose next retry time has passed."""
        now = now or self.clock.now()

        async with self.session_factory() as session:
            payments = await self.payment_service_factory(session).list_payments_due_for_retry(
                now, limit=self.config.renewal_batch_size
            )

        result = BatchResult(pass_name="payment_retries", total=len(payments))
        for payment in payments:

            async def retry(service: PaymentService, pid: str = payment.payment_id) -> bool:
                retried = await service.retry_payment(pid)
                return retried.status == PaymentStatus.SUCCEEDED

            await self._process(result, payment.payment_id, self.payment_service_factory, retry)

        self._log_result(result)
        return result

    async def run_invoice_cleanup(self, now: datetime | None = None) -> BatchResult:
        """Write off invoices left unpaid past the configured limit."""
        now = now or self.clock.now()
        result = BatchResult(pass_name="invoice_cleanup", total=1)

        async with self.session_factory() as session:
            invoices = InvoiceService(session, config=self.config, clock=self.clock)
            count = await invoices.mark_uncollectible_overdue(now=now)

        if count:
            result.succeeded = 1
        else:
            result.unchanged = 1
        logger.info("Invoice cleanup completed", marked_uncollectible=count)
        return result

    # ==================== Item processing ====================

    async def _process(
        self,
        result: BatchResult,
        item_id: str,
        factory: Callable[[AsyncSession], T],
        operation: Callable[[T], Awaitable[bool]],
    ) -> None:
        """Run one item with conflict retries and record how it ended."""
        try:
            changed = await self._with_conflict_retries(item_id, factory, operation)
        except ConflictError as e:
            result.conflicts += 1
            result.failures[item_id] = e.message
            logger.warning(
                "Skipping item after repeated version conflicts",
                pass_name=result.pass_name,
                item_id=item_id,
                attempts=self.config.renewal_max_attempts,
            )
        except BillingError as e:
            result.failed += 1
            result.failures[item_id] = e.message
            logger.warning(
                "Item failed",
                pass_name=result.pass_name,
                item_id=item_id,
                error_code=e.error_code,
                error=e.message,
            )
        except Exception as e:
            result.failed += 1
            result.failures[item_id] = str(e)
            logger.error(
                "Unexpected error processing item",
                pass_name=result.pass_name,
                item_id=item_id,
                error=str(e),
                exc_info=True,
            )
        else:
            if changed:
                result.succeeded += 1
            else:
                result.unchanged += 1

    async def _with_conflict_retries(
        self,
        item_id: str,
        factory: Callable[[AsyncSession], T],
        operation: Callable[[T], Awaitable[bool]],
    ) -> bool:
        max_attempts = max(1, self.config.renewal_max_attempts)
        for attempt in range(1, max_attempts + 1):
            try:
                async with self.session_factory() as session:
                    return await operation(factory(session))
            except ConflictError:
                if attempt >= max_attempts:
                    raise
                logger.info("Version conflict, retrying", item_id=item_id, attempt=attempt)
                if self.config.renewal_retry_delay_seconds > 0:
                    await self.sleep(self.config.renewal_retry_delay_seconds)
        raise AssertionError("unreachable")

    def _log_result(self, result: BatchResult) -> None:
        logger.info(
            "Billing pass completed",
            pass_name=result.pass_name,
            total=result.total,
            succeeded=result.succeeded,
            unchanged=result.unchanged,
            conflicts=result.conflicts,
            failed=result.failed,
        )


__all__ = ["BatchResult", "RenewalOrchestrator"]
