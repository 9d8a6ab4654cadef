"""
Usage Accumulator - Monthly per-workspace counters keyed by event type.

Each (workspace, YYYYMM, event type) is one versioned row incremented with a
single INSERT ... ON CONFLICT DO UPDATE. A new month is simply a new key.
"""

from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from metering.db.models import UsageCounter
from metering.db.statements import upsert_insert
from metering.models.domain import UsageCounterData

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def year_month_key(moment: datetime) -> str:
    """Format the monthly counter key (YYYYMM, UTC)."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC)
    return f"{moment.year:04d}{moment.month:02d}"


class UsageAccumulator:
    """Monthly usage counters. Writes join the caller's transaction."""

    def __init__(self, session: AsyncSession, clock: Clock | None = None) -> None:
        self.session = session
        self.clock = clock or _utc_now

    def current_year_month(self) -> str:
        return year_month_key(self.clock())

    async def increment(self, workspace_id: str, event_type: str, amount: int = 1) -> int:
        """
        Atomically add `amount` to the current month's counter.

        Does not commit; the caller owns the transaction.

        Returns:
            Counter total after the increment
        """
        if amount <= 0:
            raise ValueError(f"Usage increment must be positive: {amount}")

        now = self.clock()
        insert_stmt = upsert_insert(self.session, UsageCounter).values(
            workspace_id=workspace_id,
            year_month=year_month_key(now),
            event_type=event_type,
            total=amount,
            version=1,
            updated_at=now,
        )
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=["workspace_id", "year_month", "event_type"],
            set_={
                "total": UsageCounter.total + insert_stmt.excluded.total,
                "version": UsageCounter.version + 1,
                "updated_at": insert_stmt.excluded.updated_at,
            },
        ).returning(UsageCounter.total)

        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def get_total(
        self, workspace_id: str, event_type: str, year_month: str | None = None
    ) -> int:
        """Get a counter total (0 when the month has no row yet)."""
        stmt = select(UsageCounter.total).where(
            UsageCounter.workspace_id == workspace_id,
            UsageCounter.year_month == (year_month or self.current_year_month()),
            UsageCounter.event_type == event_type,
        )
        result = await self.session.execute(stmt)
        total = result.scalar_one_or_none()
        return int(total) if total is not None else 0

    async def list_counters(
        self, workspace_id: str, year_month: str | None = None
    ) -> tuple[UsageCounterData, ...]:
        """List every counter for one workspace month, ordered by event type."""
        stmt = (
            select(
                UsageCounter.workspace_id,
                UsageCounter.year_month,
                UsageCounter.event_type,
                UsageCounter.total,
                UsageCounter.updated_at,
            )
            .where(
                UsageCounter.workspace_id == workspace_id,
                UsageCounter.year_month == (year_month or self.current_year_month()),
            )
            .order_by(UsageCounter.event_type)
        )
        result = await self.session.execute(stmt)
        return tuple(
            UsageCounterData(
                workspace_id=row.workspace_id,
                year_month=row.year_month,
                event_type=row.event_type,
                total=int(row.total),
                updated_at=row.updated_at,
            )
            for row in result
        )
