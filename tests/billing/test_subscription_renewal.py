"""Tests for renewal and trial conversion."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from cadence.platform.billing.subscriptions.models import (
    HistoryAction,
    RenewalOutcome,
    SubscriptionStatus,
)

pytestmark = pytest.mark.integration

MAY_1 = datetime(2025, 5, 1, tzinfo=UTC)
JUNE_1 = datetime(2025, 6, 1, tzinfo=UTC)


@pytest.mark.asyncio
async def test_renew_shifts_period_and_invoices(
    subscription_service, invoice_service, clock, basic_plan
):
    subscription = await subscription_service.create("user-1", basic_plan.plan_id)
    clock.set(MAY_1)

    result = await subscription_service.renew(subscription.subscription_id)

    assert result.outcome == RenewalOutcome.RENEWED
    assert result.changed
    assert result.subscription.current_period_start == MAY_1
    assert result.subscription.current_period_end == JUNE_1
    assert result.subscription.status == SubscriptionStatus.ACTIVE
    assert result.invoice is not None
    assert result.invoice.subtotal == Decimal("10.00")
    assert result.invoice.items[0].description == (
        "Subscription for period May 01, 2025 - Jun 01, 2025"
    )
    assert result.invoice.items[0].is_proration is False


@pytest.mark.asyncio
async def test_renew_twice_is_idempotent(subscription_service, invoice_service, clock, basic_plan):
    subscription = await subscription_service.create("user-1", basic_plan.plan_id)
    clock.set(MAY_1)

    first = await subscription_service.renew(subscription.subscription_id)
    second = await subscription_service.renew(subscription.subscription_id)

    assert first.outcome == RenewalOutcome.RENEWED
    assert second.outcome == RenewalOutcome.NOT_DUE
    assert not second.changed
    assert second.subscription.version == first.subscription.version

    invoices = await invoice_service.list_user_invoices("user-1")
    assert len(invoices) == 1

    history = await subscription_service.list_history(subscription.subscription_id)
    assert [entry.action for entry in history].count(HistoryAction.RENEWED) == 1


@pytest.mark.asyncio
async def test_renew_not_due(subscription_service, clock, basic_plan):
    subscription = await subscription_service.create("user-1", basic_plan.plan_id)
    clock.advance(days=2)

    result = await subscription_service.renew(subscription.subscription_id)

    assert result.outcome == RenewalOutcome.NOT_DUE
    assert result.invoice is None


@pytest.mark.asyncio
async def test_renew_inside_lookahead(subscription_service, clock, basic_plan):
    subscription = await subscription_service.create("user-1", basic_plan.plan_id)
    clock.set(MAY_1 - timedelta(hours=6))

    result = await subscription_service.renew(subscription.subscription_id)
    assert result.outcome == RenewalOutcome.RENEWED

    narrow = await subscription_service.renew(
        subscription.subscription_id, now=JUNE_1 - timedelta(hours=6), lookahead=timedelta(0)
    )
    assert narrow.outcome == RenewalOutcome.NOT_DUE


@pytest.mark.asyncio
async def test_renew_applies_pending_downgrade(subscription_service, clock, basic_plan, pro_plan):
    subscription = await subscription_service.create("user-1", pro_plan.plan_id)
    clock.advance(days=10)
    await subscription_service.downgrade(subscription.subscription_id, basic_plan.plan_id)
    clock.set(MAY_1)

    result = await subscription_service.renew(subscription.subscription_id)

    assert result.outcome == RenewalOutcome.RENEWED
    assert result.downgrade_applied is True
    assert result.subscription.plan_id == basic_plan.plan_id
    assert result.subscription.price == Decimal("10.00")
    assert result.subscription.pending_downgrade is None
    assert result.invoice.subtotal == Decimal("10.00")

    history = await subscription_service.list_history(subscription.subscription_id)
    renewed = history[-1]
    assert renewed.action == HistoryAction.RENEWED
    assert renewed.from_plan_id == pro_plan.plan_id
    assert renewed.to_plan_id == basic_plan.plan_id


@pytest.mark.asyncio
async def test_period_end_cancel_ends_without_invoice(
    subscription_service, invoice_service, clock, basic_plan
):
    subscription = await subscription_service.create("user-1", basic_plan.plan_id)
    await subscription_service.cancel(subscription.subscription_id)
    clock.set(MAY_1)

    result = await subscription_service.renew(subscription.subscription_id)

    assert result.outcome == RenewalOutcome.CANCELED
    assert result.invoice is None
    assert result.subscription.status == SubscriptionStatus.CANCELED
    assert await invoice_service.list_user_invoices("user-1") == []

    again = await subscription_service.renew(subscription.subscription_id)
    assert again.outcome == RenewalOutcome.ALREADY_CANCELED


@pytest.mark.asyncio
async def test_past_due_subscription_renews(subscription_service, clock, basic_plan):
    subscription = await subscription_service.create("user-1", basic_plan.plan_id)
    await subscription_service.mark_past_due(subscription.subscription_id)
    clock.set(MAY_1)

    result = await subscription_service.renew(subscription.subscription_id)

    assert result.outcome == RenewalOutcome.RENEWED
    assert result.subscription.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_list_due_for_renewal(subscription_service, clock, basic_plan):
    due = await subscription_service.create("user-1", basic_plan.plan_id)
    clock.advance(days=5)
    later = await subscription_service.create("user-2", basic_plan.plan_id)
    canceled = await subscription_service.create("user-3", basic_plan.plan_id)
    await subscription_service.cancel(canceled.subscription_id, immediate=True)

    ids = await subscription_service.list_due_for_renewal(MAY_1)

    assert ids == [due.subscription_id]
    assert later.subscription_id not in ids


class TestTrialConversion:
    @pytest.mark.asyncio
    async def test_convert_ended_trial(self, subscription_service, clock, trial_plan):
        subscription = await subscription_service.create("user-1", trial_plan.plan_id)
        clock.set(subscription.trial_end)

        result = await subscription_service.convert_trial(subscription.subscription_id)

        assert result.converted is True
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.amount == Decimal("9.99")
        assert result.invoice is not None
        assert result.invoice.subtotal == Decimal("9.99")
        assert result.invoice.items[0].description == "Trial conversion for Starter"

    @pytest.mark.asyncio
    async def test_trial_still_running(self, subscription_service, clock, trial_plan):
        subscription = await subscription_service.create("user-1", trial_plan.plan_id)
        clock.advance(days=3)

        result = await subscription_service.convert_trial(subscription.subscription_id)

        assert result.converted is False
        assert result.subscription.status == SubscriptionStatus.TRIAL
        assert result.invoice is None

    @pytest.mark.asyncio
    async def test_convert_is_idempotent(self, subscription_service, clock, trial_plan):
        subscription = await subscription_service.create("user-1", trial_plan.plan_id)
        clock.set(subscription.trial_end + timedelta(hours=1))

        await subscription_service.convert_trial(subscription.subscription_id)
        repeat = await subscription_service.convert_trial(subscription.subscription_id)

        assert repeat.converted is False

    @pytest.mark.asyncio
    async def test_list_trials_ending(self, subscription_service, clock, trial_plan, basic_plan):
        trial = await subscription_service.create("user-1", trial_plan.plan_id)
        await subscription_service.create("user-2", basic_plan.plan_id)

        assert await subscription_service.list_trials_ending(clock.now()) == []
        assert await subscription_service.list_trials_ending(trial.trial_end) == [
            trial.subscription_id
        ]

    @pytest.mark.asyncio
    async def test_renewal_clears_trial_end(self, subscription_service, clock, trial_plan):
        subscription = await subscription_service.create("user-1", trial_plan.plan_id)
        clock.set(subscription.current_period_end)

        result = await subscription_service.renew(subscription.subscription_id)

        assert result.outcome == RenewalOutcome.RENEWED
        assert result.subscription.trial_end is None
        assert result.subscription.status == SubscriptionStatus.ACTIVE
