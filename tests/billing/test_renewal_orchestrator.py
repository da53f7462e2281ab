"""
Tests for the background billing passes.

Real services run against the in-memory database; conflict handling and
error isolation are driven through mocked services.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from cadence.platform.billing.collaborators import OfflinePaymentGateway
from cadence.platform.billing.exceptions import ConflictError, PaymentFailedError, ValidationError
from cadence.platform.billing.invoicing.models import InvoiceStatus
from cadence.platform.billing.payments.models import PaymentStatus
from cadence.platform.billing.payments.service import PaymentService
from cadence.platform.billing.renewals.orchestrator import BatchResult, RenewalOrchestrator
from cadence.platform.billing.subscriptions.models import SubscriptionStatus
from cadence.platform.db import atomic
from cadence.platform.settings import Settings

pytestmark = pytest.mark.integration

MAY_1 = datetime(2025, 5, 1, tzinfo=UTC)


@pytest.fixture
def orchestrator(session_maker, billing_config, clock, make_subscription_service):
    return RenewalOrchestrator(
        session_factory=session_maker,
        config=billing_config,
        clock=clock,
        subscription_service_factory=make_subscription_service,
    )


def _mocked_orchestrator(session_maker, service, config=None, sleep=None):
    return RenewalOrchestrator(
        session_factory=session_maker,
        config=config or Settings.BillingSettings(),
        subscription_service_factory=lambda session: service,
        sleep=sleep or AsyncMock(),
    )


def _mock_service(ids):
    service = MagicMock()
    service.list_due_for_renewal = AsyncMock(return_value=ids)
    service.renew = AsyncMock()
    return service


class TestRenewalPass:
    @pytest.mark.asyncio
    async def test_renews_due_subscriptions(
        self, orchestrator, session_maker, subscription_service, basic_plan, make_subscription_service
    ):
        renewing = await subscription_service.create("user-1", basic_plan.plan_id)
        ending = await subscription_service.create("user-2", basic_plan.plan_id)
        await subscription_service.cancel(ending.subscription_id)

        result = await orchestrator.run_renewals(now=MAY_1)

        assert result.pass_name == "renewals"
        assert result.total == 2
        assert result.succeeded == 2
        assert result.failed == 0

        async with session_maker() as session:
            service = make_subscription_service(session)
            renewed = await service.get_subscription(renewing.subscription_id)
            ended = await service.get_subscription(ending.subscription_id)
            invoices = await service.invoices.list_user_invoices("user-1")

        assert renewed.current_period_end == datetime(2025, 6, 1, tzinfo=UTC)
        assert ended.status == SubscriptionStatus.CANCELED
        assert len(invoices) == 1

    @pytest.mark.asyncio
    async def test_second_pass_finds_nothing(self, orchestrator, subscription_service, basic_plan):
        await subscription_service.create("user-1", basic_plan.plan_id)

        await orchestrator.run_renewals(now=MAY_1)
        again = await orchestrator.run_renewals(now=MAY_1)

        assert again.total == 0

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, session_maker):
        service = _mock_service(["sub_1"])
        service.renew.side_effect = [
            ConflictError("stale"),
            ConflictError("stale"),
            MagicMock(changed=True),
        ]
        sleep = AsyncMock()
        orchestrator = _mocked_orchestrator(
            session_maker,
            service,
            config=Settings.BillingSettings(renewal_retry_delay_seconds=0.5),
            sleep=sleep,
        )

        result = await orchestrator.run_renewals(now=MAY_1)

        assert result.succeeded == 1
        assert result.conflicts == 0
        assert service.renew.await_count == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.5)

    @pytest.mark.asyncio
    async def test_repeated_conflicts_skip_item(self, session_maker):
        service = _mock_service(["sub_1", "sub_2"])

        async def renew(subscription_id, now, lookahead):
            if subscription_id == "sub_1":
                raise ConflictError("stale", entity_id=subscription_id)
            return MagicMock(changed=True)

        service.renew.side_effect = renew
        orchestrator = _mocked_orchestrator(session_maker, service)

        result = await orchestrator.run_renewals(now=MAY_1)

        assert result.conflicts == 1
        assert result.succeeded == 1
        assert "sub_1" in result.failures
        # Three attempts for the conflicting item, one for the other
        assert service.renew.await_count == 4

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, session_maker):
        service = _mock_service(["sub_1", "sub_2", "sub_3"])

        async def renew(subscription_id, now, lookahead):
            if subscription_id == "sub_1":
                raise RuntimeError("database went away")
            if subscription_id == "sub_2":
                raise ValidationError("bad data")
            return MagicMock(changed=False)

        service.renew.side_effect = renew
        orchestrator = _mocked_orchestrator(session_maker, service)

        result = await orchestrator.run_renewals(now=MAY_1)

        assert result.total == 3
        assert result.failed == 2
        assert result.unchanged == 1
        assert result.failures["sub_1"] == "database went away"
        assert result.failures["sub_2"] == "bad data"
        # Unexpected errors are not retried
        assert service.renew.await_count == 3

    @pytest.mark.asyncio
    async def test_lookahead_and_limit_are_forwarded(self, session_maker):
        service = _mock_service([])
        orchestrator = _mocked_orchestrator(session_maker, service)

        await orchestrator.run_renewals(now=MAY_1, lookahead=timedelta(hours=2), limit=10)

        service.list_due_for_renewal.assert_awaited_once_with(MAY_1 + timedelta(hours=2), limit=10)


class TestOtherPasses:
    @pytest.mark.asyncio
    async def test_trial_conversions(self, orchestrator, subscription_service, trial_plan):
        subscription = await subscription_service.create("user-1", trial_plan.plan_id)

        early = await orchestrator.run_trial_conversions(now=subscription.trial_end - timedelta(days=1))
        result = await orchestrator.run_trial_conversions(now=subscription.trial_end)

        assert early.total == 0
        assert result.total == 1
        assert result.succeeded == 1

    @pytest.mark.asyncio
    async def test_payment_retries(
        self,
        async_session,
        session_maker,
        billing_config,
        clock,
        subscription_service,
        make_subscription_service,
        basic_plan,
    ):
        gateway = OfflinePaymentGateway(declines={"user-1"})

        def payments(session):
            subscriptions = make_subscription_service(session)
            return PaymentService(
                session,
                gateway=gateway,
                config=billing_config,
                clock=clock,
                invoices=subscriptions.invoices,
                subscriptions=subscriptions,
            )

        subscription = await subscription_service.create("user-1", basic_plan.plan_id)
        async with atomic(async_session):
            invoice = await subscription_service.invoices.create_subscription_invoice(
                subscription, subscription.current_period_start, subscription.current_period_end
            )
        with pytest.raises(PaymentFailedError):
            await payments(async_session).process_payment(invoice.invoice_id, "user-1")

        orchestrator = RenewalOrchestrator(
            session_factory=session_maker,
            config=billing_config,
            clock=clock,
            subscription_service_factory=make_subscription_service,
            payment_service_factory=payments,
        )

        declined = await orchestrator.run_payment_retries(now=clock.now() + timedelta(days=2))
        assert declined.total == 1
        assert declined.failed == 1

        gateway.declines.clear()
        paid = await orchestrator.run_payment_retries(now=clock.now() + timedelta(days=10))
        assert paid.succeeded == 1

        async with session_maker() as session:
            settled = await make_subscription_service(session).invoices.get_invoice(invoice.invoice_id)
        assert settled.status == InvoiceStatus.PAID
        assert settled.amount_paid == Decimal("10.00")


    @pytest.mark.asyncio
    async def test_payment_retry_skips_voided_invoice(
        self,
        async_session,
        session_maker,
        billing_config,
        clock,
        subscription_service,
        make_subscription_service,
        basic_plan,
    ):
        gateway = OfflinePaymentGateway(declines={"user-1"})

        def payments(session):
            subscriptions = make_subscription_service(session)
            return PaymentService(
                session,
                gateway=gateway,
                config=billing_config,
                clock=clock,
                invoices=subscriptions.invoices,
                subscriptions=subscriptions,
            )

        subscription = await subscription_service.create("user-1", basic_plan.plan_id)
        async with atomic(async_session):
            invoice = await subscription_service.invoices.create_subscription_invoice(
                subscription, subscription.current_period_start, subscription.current_period_end
            )
        with pytest.raises(PaymentFailedError) as exc_info:
            await payments(async_session).process_payment(invoice.invoice_id, "user-1")
        await subscription_service.invoices.void_invoice(invoice.invoice_id, "Plan change")

        gateway.declines.clear()
        gateway.charge = AsyncMock(side_effect=gateway.charge)
        orchestrator = RenewalOrchestrator(
            session_factory=session_maker,
            config=billing_config,
            clock=clock,
            subscription_service_factory=make_subscription_service,
            payment_service_factory=payments,
        )

        result = await orchestrator.run_payment_retries(now=clock.now() + timedelta(days=2))
        assert result.total == 1
        assert result.unchanged == 1
        assert result.succeeded == 0
        gateway.charge.assert_not_awaited()

        again = await orchestrator.run_payment_retries(now=clock.now() + timedelta(days=10))
        assert again.total == 0

        async with session_maker() as session:
            payment = await payments(session).get_payment(exc_info.value.context["payment_id"])
        assert payment.status == PaymentStatus.CANCELED

    @pytest.mark.asyncio
    async def test_invoice_cleanup(self, async_session, orchestrator, subscription_service, basic_plan):
        subscription = await subscription_service.create("user-1", basic_plan.plan_id)
        async with atomic(async_session):
            invoice = await subscription_service.invoices.create_subscription_invoice(
                subscription, subscription.current_period_start, subscription.current_period_end
            )

        later = invoice.due_date + timedelta(days=200)
        first = await orchestrator.run_invoice_cleanup(now=later)
        second = await orchestrator.run_invoice_cleanup(now=later)

        assert first.succeeded == 1
        assert second.unchanged == 1


@pytest.mark.unit
def test_batch_result_as_dict():
    result = BatchResult(pass_name="renewals", total=2, succeeded=1, failed=1, failures={"a": "x"})

    assert result.as_dict() == {
        "pass_name": "renewals",
        "total": 2,
        "succeeded": 1,
        "unchanged": 0,
        "conflicts": 0,
        "failed": 1,
        "failures": {"a": "x"},
    }
