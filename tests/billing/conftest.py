"""
Shared fixtures for billing tests.

Every test gets its own in-memory SQLite database (StaticPool keeps the single
connection alive across sessions), a pinned clock and sequential invoice
numbers.
"""

import itertools
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cadence.platform.billing.catalog.models import BillingCycle, Plan, PlanCreateRequest
from cadence.platform.billing.catalog.service import PlanCatalog
from cadence.platform.billing.collaborators import FixedClock, FlatRateTaxCollaborator
from cadence.platform.billing.invoicing.service import InvoiceService
from cadence.platform.billing.subscriptions.service import SubscriptionService
from cadence.platform.db import Base
from cadence.platform.settings import Settings

# 30-day period: Apr 1 -> May 1
START = datetime(2025, 4, 1, tzinfo=UTC)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_session(session_maker):
    """Create an async database session for testing."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def billing_config() -> Settings.BillingSettings:
    return Settings.BillingSettings(renewal_retry_delay_seconds=0.0)


@pytest.fixture
def number_factory() -> Callable[[datetime], str]:
    """Sequential invoice numbers so tests never collide by chance."""
    counter = itertools.count(1)
    return lambda now: f"INV-{now:%Y%m}-{next(counter):04d}"


@pytest.fixture
def make_invoice_service(billing_config, clock, number_factory):
    def factory(session: AsyncSession, **overrides) -> InvoiceService:
        options = {
            "config": billing_config,
            "clock": clock,
            "tax": FlatRateTaxCollaborator(billing_config.tax_rates),
            "number_factory": number_factory,
        }
        options.update(overrides)
        return InvoiceService(session, **options)

    return factory


@pytest.fixture
def make_subscription_service(billing_config, clock, make_invoice_service):
    def factory(session: AsyncSession, **invoice_overrides) -> SubscriptionService:
        return SubscriptionService(
            session,
            config=billing_config,
            clock=clock,
            invoices=make_invoice_service(session, **invoice_overrides),
        )

    return factory


@pytest.fixture
def invoice_service(async_session, make_invoice_service) -> InvoiceService:
    return make_invoice_service(async_session)


@pytest.fixture
def subscription_service(async_session, make_subscription_service) -> SubscriptionService:
    return make_subscription_service(async_session)


@pytest.fixture
def catalog(async_session) -> PlanCatalog:
    return PlanCatalog(async_session)


async def _plan(catalog: PlanCatalog, name: str, price: str, cycle=BillingCycle.MONTHLY, trial_days=0) -> Plan:
    return await catalog.create_plan(
        PlanCreateRequest(
            name=name,
            price=Decimal(price),
            currency="USD",
            billing_cycle=cycle,
            trial_days=trial_days,
        )
    )


@pytest_asyncio.fixture
async def basic_plan(catalog) -> Plan:
    return await _plan(catalog, "Basic", "10.00")


@pytest_asyncio.fixture
async def pro_plan(catalog) -> Plan:
    return await _plan(catalog, "Pro", "30.00")


@pytest_asyncio.fixture
async def enterprise_plan(catalog) -> Plan:
    return await _plan(catalog, "Enterprise", "50.00")


@pytest_asyncio.fixture
async def yearly_plan(catalog) -> Plan:
    return await _plan(catalog, "Basic Yearly", "100.00", cycle=BillingCycle.YEARLY)


@pytest_asyncio.fixture
async def trial_plan(catalog) -> Plan:
    return await _plan(catalog, "Starter", "9.99", trial_days=14)
