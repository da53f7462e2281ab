"""
Plan catalog service.

Plans are created once and never edited. A price change is made by
superseding: a new plan is created and the old one is deactivated, while
existing subscriptions keep the price they snapshotted.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.platform.billing.catalog.models import BillingCycle, Plan, PlanCreateRequest
from cadence.platform.billing.exceptions import PlanNotFoundError
from cadence.platform.billing.mappers import plan_from_row
from cadence.platform.billing.models import BillingPlanTable
from cadence.platform.core.ids import generate_id
from cadence.platform.db import atomic

logger = structlog.get_logger(__name__)


class PlanCatalog:
    """Read and publish subscription plans."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create_plan(self, request: PlanCreateRequest) -> Plan:
        """Create a new plan."""
        async with atomic(self.db):
            row = self._add_plan(request)
            await self.db.flush()

        logger.info(
            "Plan created",
            plan_id=row.plan_id,
            price=str(row.price),
            billing_cycle=row.billing_cycle,
        )
        return plan_from_row(row)

    async def get_plan(self, plan_id: str, active_only: bool = False) -> Plan:
        """Get a plan by id.

        Raises:
            PlanNotFoundError: Plan does not exist, or is inactive when ``active_only``
        """
        row = await self._get_row(plan_id)
        if row is None or (active_only and not row.is_active):
            raise PlanNotFoundError(
                f"Plan {plan_id} not found" + (" or inactive" if row is not None else ""),
                plan_id=plan_id,
            )
        return plan_from_row(row)

    async def list_plans(
        self, active_only: bool = True, billing_cycle: BillingCycle | None = None
    ) -> list[Plan]:
        stmt = select(BillingPlanTable)
        if active_only:
            stmt = stmt.where(BillingPlanTable.is_active.is_(True))
        if billing_cycle is not None:
            stmt = stmt.where(BillingPlanTable.billing_cycle == billing_cycle.value)
        stmt = stmt.order_by(BillingPlanTable.price, BillingPlanTable.name)

        result = await self.db.execute(stmt)
        return [plan_from_row(row) for row in result.scalars().all()]

    async def supersede_plan(self, plan_id: str, request: PlanCreateRequest) -> Plan:
        """Publish a replacement plan and retire the old one in one transaction."""
        async with atomic(self.db):
            old = await self._get_row(plan_id, for_update=True)
            if old is None:
                raise PlanNotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)

            row = self._add_plan(request, supersedes=old.plan_id)
            old.is_active = False
            await self.db.flush()

        logger.info(
            "Plan superseded",
            old_plan_id=plan_id,
            new_plan_id=row.plan_id,
            old_price=str(old.price),
            new_price=str(row.price),
        )
        return plan_from_row(row)

    def _add_plan(self, request: PlanCreateRequest, supersedes: str | None = None) -> BillingPlanTable:
        row = BillingPlanTable(
            plan_id=generate_id("plan"),
            name=request.name,
            description=request.description,
            price=request.price,
            currency=request.currency,
            billing_cycle=request.billing_cycle.value,
            trial_days=request.trial_days,
            is_active=True,
            supersedes_plan_id=supersedes,
            metadata_json=dict(request.metadata),
        )
        self.db.add(row)
        return row

    async def _get_row(self, plan_id: str, for_update: bool = False) -> BillingPlanTable | None:
        stmt = select(BillingPlanTable).where(BillingPlanTable.plan_id == plan_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()


__all__ = ["PlanCatalog"]
