"""
Tests for monthly usage counters.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from metering.db.models import UsageCounter
from metering.services.usage import UsageAccumulator, year_month_key

from .conftest import WORKSPACE_ID


class TestYearMonthKey:
    """YYYYMM formatting."""

    def test_formats_with_zero_padded_month(self) -> None:
        assert year_month_key(datetime(2026, 3, 1, tzinfo=UTC)) == "202603"

    def test_converts_to_utc_first(self) -> None:
        # 2026-04-01 02:00 at UTC+5 is still March in UTC
        moment = datetime(2026, 4, 1, 2, 0, tzinfo=timezone(timedelta(hours=5)))
        assert year_month_key(moment) == "202603"


class TestUsageAccumulator:
    """Atomic per-month increments."""

    async def test_increment_returns_running_total(self, db_session, clock) -> None:
        usage = UsageAccumulator(db_session, clock=clock)

        assert await usage.increment(WORKSPACE_ID, "tokens", 10) == 10
        assert await usage.increment(WORKSPACE_ID, "tokens", 5) == 15
        await db_session.commit()

        assert await usage.get_total(WORKSPACE_ID, "tokens") == 15

    async def test_increment_bumps_version(self, db_session, clock) -> None:
        usage = UsageAccumulator(db_session, clock=clock)
        for _ in range(3):
            await usage.increment(WORKSPACE_ID, "helper_chat")
        await db_session.commit()

        stmt = select(UsageCounter.version).where(UsageCounter.event_type == "helper_chat")
        assert (await db_session.execute(stmt)).scalar_one() == 3

    async def test_new_month_starts_from_zero(self, db_session, clock) -> None:
        clock.now = datetime(2026, 3, 31, 23, 59, tzinfo=UTC)
        usage = UsageAccumulator(db_session, clock=clock)
        await usage.increment(WORKSPACE_ID, "tokens", 100)

        clock.advance(minutes=2)
        total = await usage.increment(WORKSPACE_ID, "tokens", 7)
        await db_session.commit()

        assert total == 7
        assert await usage.get_total(WORKSPACE_ID, "tokens") == 7
        assert await usage.get_total(WORKSPACE_ID, "tokens", year_month="202603") == 100

    async def test_missing_counter_reads_zero(self, db_session, clock) -> None:
        usage = UsageAccumulator(db_session, clock=clock)

        assert await usage.get_total(WORKSPACE_ID, "tokens") == 0

    async def test_workspaces_are_isolated(self, db_session, clock) -> None:
        usage = UsageAccumulator(db_session, clock=clock)
        await usage.increment(WORKSPACE_ID, "tokens", 10)
        await usage.increment("ws_other", "tokens", 99)
        await db_session.commit()

        assert await usage.get_total(WORKSPACE_ID, "tokens") == 10

    async def test_list_counters_ordered_by_event_type(self, db_session, clock) -> None:
        usage = UsageAccumulator(db_session, clock=clock)
        await usage.increment(WORKSPACE_ID, "tokens", 15)
        await usage.increment(WORKSPACE_ID, "helper_chat")
        await db_session.commit()

        counters = await usage.list_counters(WORKSPACE_ID)

        assert [(c.event_type, c.total) for c in counters] == [("helper_chat", 1), ("tokens", 15)]
        assert all(c.year_month == "202603" for c in counters)

    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_increment_rejected(self, db_session, clock, amount: int) -> None:
        usage = UsageAccumulator(db_session, clock=clock)

        with pytest.raises(ValueError):
            await usage.increment(WORKSPACE_ID, "tokens", amount)
