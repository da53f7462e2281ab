"""Tests for the plan catalog."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from cadence.platform.billing.catalog.models import (
    BillingCycle,
    PlanCreateRequest,
    add_billing_cycle,
)
from cadence.platform.billing.exceptions import PlanNotFoundError


@pytest.mark.unit
class TestBillingCycle:
    def test_cycle_lengths(self):
        assert BillingCycle.MONTHLY.months == 1
        assert BillingCycle.QUARTERLY.months == 3
        assert BillingCycle.YEARLY.proration_days == 365

    def test_month_end_clamps(self):
        start = datetime(2025, 1, 31, tzinfo=UTC)
        assert add_billing_cycle(start, BillingCycle.MONTHLY) == datetime(2025, 2, 28, tzinfo=UTC)

    def test_quarterly_and_yearly(self):
        start = datetime(2024, 2, 29, tzinfo=UTC)
        assert add_billing_cycle(start, BillingCycle.QUARTERLY) == datetime(2024, 5, 29, tzinfo=UTC)
        assert add_billing_cycle(start, BillingCycle.YEARLY) == datetime(2025, 2, 28, tzinfo=UTC)


@pytest.mark.unit
class TestPlanCreateRequest:
    def test_currency_is_normalized(self):
        request = PlanCreateRequest(name="Basic", price=Decimal("10"), currency="eur", billing_cycle="monthly")
        assert request.currency == "EUR"

    def test_negative_price_rejected(self):
        with pytest.raises(PydanticValidationError):
            PlanCreateRequest(name="Basic", price=Decimal("-1"), billing_cycle="monthly")

    def test_unknown_currency_rejected(self):
        with pytest.raises(PydanticValidationError):
            PlanCreateRequest(name="Basic", price=Decimal("10"), currency="ZZZ", billing_cycle="monthly")


@pytest.mark.integration
class TestPlanCatalog:
    @pytest.mark.asyncio
    async def test_create_and_get(self, catalog, trial_plan):
        plan = await catalog.get_plan(trial_plan.plan_id)

        assert plan.name == "Starter"
        assert plan.price == Decimal("9.99")
        assert plan.trial_days == 14
        assert plan.has_trial
        assert plan.is_active

    @pytest.mark.asyncio
    async def test_get_unknown_plan(self, catalog):
        with pytest.raises(PlanNotFoundError):
            await catalog.get_plan("plan_missing")

    @pytest.mark.asyncio
    async def test_supersede(self, catalog, basic_plan):
        replacement = await catalog.supersede_plan(
            basic_plan.plan_id,
            PlanCreateRequest(name="Basic", price=Decimal("12.00"), billing_cycle=BillingCycle.MONTHLY),
        )

        assert replacement.supersedes_plan_id == basic_plan.plan_id
        old = await catalog.get_plan(basic_plan.plan_id)
        assert old.is_active is False
        with pytest.raises(PlanNotFoundError):
            await catalog.get_plan(basic_plan.plan_id, active_only=True)

    @pytest.mark.asyncio
    async def test_supersede_unknown_plan(self, catalog):
        with pytest.raises(PlanNotFoundError):
            await catalog.supersede_plan(
                "plan_missing",
                PlanCreateRequest(name="X", price=Decimal("1"), billing_cycle=BillingCycle.MONTHLY),
            )

    @pytest.mark.asyncio
    async def test_list_plans(self, catalog, basic_plan, pro_plan, yearly_plan):
        await catalog.supersede_plan(
            pro_plan.plan_id,
            PlanCreateRequest(name="Pro", price=Decimal("35.00"), billing_cycle=BillingCycle.MONTHLY),
        )

        active = await catalog.list_plans()
        monthly = await catalog.list_plans(billing_cycle=BillingCycle.MONTHLY)
        everything = await catalog.list_plans(active_only=False)

        assert [p.price for p in active] == [Decimal("10.00"), Decimal("35.00"), Decimal("100.00")]
        assert all(p.billing_cycle == BillingCycle.MONTHLY for p in monthly)
        assert len(monthly) == 2
        assert len(everything) == 4
