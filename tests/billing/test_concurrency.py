"""Tests for version-checked subscription writes."""

from datetime import timedelta

import pytest

from cadence.platform.billing.exceptions import ConflictError, SubscriptionNotFoundError
from cadence.platform.db import atomic

pytestmark = pytest.mark.integration


@pytest.mark.asyncio
async def test_stale_expected_version_is_rejected(
    subscription_service, clock, basic_plan, pro_plan, enterprise_plan
):
    """Two writers that read version 0: the second write conflicts."""
    subscription = await subscription_service.create("user-1", basic_plan.plan_id)
    assert subscription.version == 0
    clock.advance(days=15)

    first = await subscription_service.upgrade(
        subscription.subscription_id, pro_plan.plan_id, expected_version=0
    )
    assert first.subscription.version == 1

    with pytest.raises(ConflictError) as exc_info:
        await subscription_service.upgrade(
            subscription.subscription_id, enterprise_plan.plan_id, expected_version=0
        )

    assert exc_info.value.retryable is True
    assert exc_info.value.context["expected_version"] == 0
    assert exc_info.value.context["actual_version"] == 1

    current = await subscription_service.get_subscription(subscription.subscription_id)
    assert current.plan_id == pro_plan.plan_id
    assert current.version == 1


@pytest.mark.asyncio
async def test_every_mutation_bumps_version_by_one(subscription_service, clock, basic_plan, pro_plan):
    subscription = await subscription_service.create("user-1", basic_plan.plan_id)
    clock.advance(days=5)

    upgraded = await subscription_service.upgrade(subscription.subscription_id, pro_plan.plan_id)
    downgraded = await subscription_service.downgrade(
        subscription.subscription_id, basic_plan.plan_id
    )
    canceled = await subscription_service.cancel(subscription.subscription_id)

    assert upgraded.subscription.version == 1
    assert downgraded.subscription.version == 2
    assert canceled.subscription.version == 3


@pytest.mark.asyncio
async def test_mutate_without_changes_leaves_version(async_session, subscription_service, basic_plan):
    subscription = await subscription_service.create("user-1", basic_plan.plan_id)

    async with atomic(async_session):
        row = await subscription_service.versions.mutate(
            subscription.subscription_id, 0, lambda _: {}
        )
    assert row.version == 0


@pytest.mark.asyncio
async def test_touch_bumps_version_without_changes(async_session, subscription_service, basic_plan):
    subscription = await subscription_service.create("user-1", basic_plan.plan_id)

    async with atomic(async_session):
        row = await subscription_service.versions.mutate(
            subscription.subscription_id, 0, lambda _: None, touch=True
        )
    assert row.version == 1


@pytest.mark.asyncio
async def test_mutate_receives_current_row(async_session, subscription_service, clock, basic_plan):
    subscription = await subscription_service.create("user-1", basic_plan.plan_id)
    seen = []

    def extend(row):
        seen.append(row.current_period_end)
        return {"current_period_end": row.current_period_end + timedelta(days=1)}

    async with atomic(async_session):
        row = await subscription_service.versions.mutate(subscription.subscription_id, 0, extend)

    assert seen == [subscription.current_period_end]
    assert row.current_period_end == subscription.current_period_end + timedelta(days=1)
    assert row.version == 1


@pytest.mark.asyncio
async def test_conflict_rolls_back_the_unit_of_work(async_session, subscription_service, basic_plan):
    subscription = await subscription_service.create("user-1", basic_plan.plan_id)

    with pytest.raises(ConflictError):
        async with atomic(async_session):
            await subscription_service.versions.mutate(
                subscription.subscription_id, 0, lambda _: {"cancel_at_period_end": True}
            )
            await subscription_service.versions.mutate(
                subscription.subscription_id, 0, lambda _: {"cancel_at_period_end": False}
            )

    current = await subscription_service.get_subscription(subscription.subscription_id)
    assert current.version == 0
    assert current.cancel_at_period_end is False


@pytest.mark.asyncio
async def test_missing_row_raises_not_found(subscription_service):
    with pytest.raises(SubscriptionNotFoundError):
        await subscription_service.versions.mutate("sub_missing", 0, lambda _: {})
