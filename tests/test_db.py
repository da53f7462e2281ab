"""Tests for the transaction helper and timezone-safe columns."""

from datetime import UTC, datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import String, select
from sqlalchemy.exc import StatementError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from cadence.platform.db import UTCDateTime, atomic

pytestmark = pytest.mark.integration


class _Base(DeclarativeBase):
    pass


class Event(_Base):
    __tablename__ = "events"

    event_id: Mapped[str] = mapped_column(String(20), primary_key=True)
    happened_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


@pytest_asyncio.fixture
async def session():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(_Base.metadata.create_all)

    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with maker() as session:
        yield session

    await engine.dispose()


async def _count(session: AsyncSession) -> int:
    result = await session.execute(select(Event))
    return len(result.scalars().all())


@pytest.mark.asyncio
async def test_atomic_commits(session):
    async with atomic(session):
        session.add(Event(event_id="a", happened_at=datetime(2025, 4, 1, tzinfo=UTC)))

    await session.rollback()
    assert await _count(session) == 1


@pytest.mark.asyncio
async def test_nested_atomic_rolls_back_as_one(session):
    with pytest.raises(RuntimeError):
        async with atomic(session):
            session.add(Event(event_id="outer", happened_at=datetime(2025, 4, 1, tzinfo=UTC)))
            async with atomic(session):
                session.add(Event(event_id="inner", happened_at=datetime(2025, 4, 1, tzinfo=UTC)))
                await session.flush()
            raise RuntimeError("boom")

    assert await _count(session) == 0
    assert session.info["cadence_atomic_depth"] == 0


@pytest.mark.asyncio
async def test_inner_block_does_not_commit(session):
    async with atomic(session):
        async with atomic(session):
            session.add(Event(event_id="inner", happened_at=datetime(2025, 4, 1, tzinfo=UTC)))
        assert session.in_transaction()
        await session.rollback()

    assert await _count(session) == 0


@pytest.mark.asyncio
async def test_datetimes_round_trip_as_utc(session):
    local = datetime(2025, 4, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
    async with atomic(session):
        session.add(Event(event_id="a", happened_at=local))

    loaded = await session.scalar(
        select(Event).where(Event.event_id == "a").execution_options(populate_existing=True)
    )
    assert loaded.happened_at == datetime(2025, 4, 1, 0, 0, tzinfo=UTC)
    assert loaded.happened_at.tzinfo is not None


@pytest.mark.asyncio
async def test_naive_datetimes_are_rejected(session):
    with pytest.raises(StatementError) as exc_info:
        async with atomic(session):
            session.add(Event(event_id="a", happened_at=datetime(2025, 4, 1)))
    assert "timezone-aware" in str(exc_info.value)


@pytest.mark.asyncio
async def test_session_maker_override():
    from cadence.platform.db import get_session_maker, set_session_maker

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    set_session_maker(maker)
    try:
        assert get_session_maker() is maker
        async with engine.begin() as conn:
            await conn.run_sync(_Base.metadata.create_all)

        async with get_session_maker()() as db:
            async with atomic(db):
                db.add(Event(event_id="a", happened_at=datetime(2025, 4, 1, tzinfo=UTC)))
            assert await _count(db) == 1
    finally:
        set_session_maker(None)
        await engine.dispose()


def test_database_url_prefers_explicit_setting(monkeypatch):
    from cadence.platform import db

    monkeypatch.setattr(db.settings.database, "url", "sqlite+aiosqlite:///./billing.sqlite")
    assert db.get_database_url() == "sqlite+aiosqlite:///./billing.sqlite"


def test_version():
    from cadence.platform import __version__, get_version

    assert get_version() == __version__
