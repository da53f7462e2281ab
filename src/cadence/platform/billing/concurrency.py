"""
Optimistic concurrency control for versioned rows.

Every write is a compare-and-swap: the ``UPDATE`` carries
``WHERE pk = :id AND version = :expected`` and bumps the version by one. A
write that matches no row raises ConflictError. The controller never retries;
callers decide whether to reload and try again.
"""

from collections.abc import Callable, Mapping
from typing import Any, Generic, Protocol, TypeVar

import structlog
from sqlalchemy import inspect, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped

from cadence.platform.billing.exceptions import BillingError, ConflictError

logger = structlog.get_logger(__name__)


class Versioned(Protocol):
    version: Mapped[int]


RowT = TypeVar("RowT", bound=Versioned)

UpdateFn = Callable[[RowT], Mapping[str, Any] | None]


class OptimisticConcurrencyController(Generic[RowT]):
    """Version-checked writes for one mapped table.

    Args:
        db: Session whose transaction the writes join
        table: Mapped class with a ``version`` column
        not_found: Builds the error raised when the row does not exist
    """

    def __init__(
        self,
        db: AsyncSession,
        table: type[RowT],
        not_found: Callable[[str], BillingError],
    ) -> None:
        self.db = db
        self.table = table
        self.not_found = not_found
        self._pk = inspect(table).primary_key[0]

    async def load(self, entity_id: str, for_update: bool = False) -> RowT:
        """Read the current row, bypassing stale identity-map state."""
        stmt = select(self.table).where(self._pk == entity_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        row = result.scalar_one_or_none()
        if row is None:
            raise self.not_found(entity_id)
        return row

    async def mutate(
        self,
        entity_id: str,
        expected_version: int,
        update_fn: UpdateFn[RowT],
        touch: bool = False,
    ) -> RowT:
        """Apply ``update_fn`` under a version check.

        ``update_fn`` receives the current row and returns the column changes
        (attribute name to value); it must not modify the row itself. Returning
        no changes leaves the row untouched unless ``touch`` is set, in which
        case only the version is bumped.

        Raises:
            ConflictError: Stored version differs from ``expected_version``
        """
        row = await self.load(entity_id, for_update=True)
        if row.version != expected_version:
            raise self._conflict(entity_id, expected_version, row.version)

        changes = dict(update_fn(row) or {})
        if not changes and not touch:
            return row

        changes["version"] = expected_version + 1
        stmt = (
            update(self.table)
            .where(self._pk == entity_id, self.table.version == expected_version)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            raise self._conflict(entity_id, expected_version, None)

        await self.db.refresh(row)
        return row

    def _conflict(
        self, entity_id: str, expected_version: int, actual_version: int | None
    ) -> ConflictError:
        logger.info(
            "Version conflict",
            table=self.table.__tablename__,
            entity_id=entity_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )
        return ConflictError(
            f"{entity_id} was modified by another transaction",
            entity_id=entity_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )


__all__ = ["OptimisticConcurrencyController"]
