"""
Tests for budget pre-checks, cap normalization and usage status bands.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given
from hypothesis import strategies as st
from sqlalchemy.exc import OperationalError

from metering.config import settings
from metering.exceptions import StorageFailureError
from metering.models.api import RejectReason, UsageStatus
from metering.services.budget import BudgetGuard, usage_status
from metering.services.entitlements import StaticEntitlements, TokenSettingsEntitlements
from metering.services.token_settings import (
    TokenSettingsStore,
    normalize_alert_threshold,
    normalize_cap,
)
from metering.services.usage import UsageAccumulator

from .conftest import WORKSPACE_ID, fund_wallet


async def record_usage(session, clock, tokens: int) -> None:  # type: ignore[no-untyped-def]
    await UsageAccumulator(session, clock=clock).increment(
        WORKSPACE_ID, settings.budget_counter_event, tokens
    )
    await session.commit()


class TestUsageStatus:
    """Percent-of-cap bands."""

    def test_uncapped_is_always_normal(self) -> None:
        assert usage_status(10_000, None, 80) == (0.0, UsageStatus.NORMAL)

    def test_below_threshold_is_normal(self) -> None:
        assert usage_status(500, 1000, 80) == (50.0, UsageStatus.NORMAL)

    def test_at_threshold_is_warning(self) -> None:
        assert usage_status(800, 1000, 80) == (80.0, UsageStatus.WARNING)

    def test_at_cap_is_critical(self) -> None:
        assert usage_status(1000, 1000, 80) == (100.0, UsageStatus.CRITICAL)

    def test_percent_rounded_to_one_decimal(self) -> None:
        percent, _ = usage_status(1, 3, 80)
        assert percent == 33.3

    @given(
        used=st.integers(min_value=0, max_value=10**9),
        cap=st.integers(min_value=1, max_value=10**9),
        threshold=st.integers(min_value=1, max_value=100),
    )
    def test_critical_exactly_when_cap_reached(self, used: int, cap: int, threshold: int) -> None:
        _, status = usage_status(used, cap, threshold)
        assert (status is UsageStatus.CRITICAL) == (used >= cap)


class TestNormalization:
    """Cap and threshold normalization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            (None, None),
            (0, None),
            (-10, None),
            (float("nan"), None),
            (float("inf"), None),
            (True, None),
            (1000, 1000),
            (1000.7, 1000),
        ],
    )
    def test_normalize_cap(self, raw, expected) -> None:  # type: ignore[no-untyped-def]
        assert normalize_cap(raw) == expected

    @pytest.mark.parametrize("raw,expected", [(0, 1), (50, 50), (150, 100)])
    def test_normalize_alert_threshold_clamps(self, raw: int, expected: int) -> None:
        assert normalize_alert_threshold(raw) == expected

    def test_missing_threshold_uses_default(self) -> None:
        assert normalize_alert_threshold(None) == settings.default_alert_threshold


class TestAssertBudget:
    """Cap and balance pre-checks."""

    async def test_cost_past_cap_is_rejected(self, db_session, clock) -> None:
        await fund_wallet(db_session, 10_000)
        await record_usage(db_session, clock, 950)
        guard = BudgetGuard(
            db_session,
            entitlements=StaticEntitlements(caps={settings.budget_cap_key: 1000}),
            clock=clock,
        )

        decision = await guard.assert_budget(WORKSPACE_ID, 100)

        assert decision.allowed is False
        assert decision.reason is RejectReason.CAP_EXCEEDED
        assert decision.cap == 1000
        assert decision.used == 950

    async def test_cost_reaching_cap_exactly_is_allowed(self, db_session, clock) -> None:
        await fund_wallet(db_session, 10_000)
        await record_usage(db_session, clock, 950)
        guard = BudgetGuard(
            db_session,
            entitlements=StaticEntitlements(caps={settings.budget_cap_key: 1000}),
            clock=clock,
        )

        decision = await guard.assert_budget(WORKSPACE_ID, 50)

        assert decision.allowed is True
        assert decision.reason is None

    async def test_balance_below_cost_is_rejected(self, db_session, clock) -> None:
        await fund_wallet(db_session, 10)
        guard = BudgetGuard(db_session, entitlements=StaticEntitlements(), clock=clock)

        decision = await guard.assert_budget(WORKSPACE_ID, 15)

        assert decision.allowed is False
        assert decision.reason is RejectReason.INSUFFICIENT_BALANCE
        assert decision.balance == 10
        assert decision.cap is None

    async def test_non_positive_cap_means_uncapped(self, db_session, clock) -> None:
        await fund_wallet(db_session, 10_000)
        await record_usage(db_session, clock, 5_000)
        guard = BudgetGuard(
            db_session,
            entitlements=StaticEntitlements(caps={settings.budget_cap_key: 0}),
            clock=clock,
        )

        decision = await guard.assert_budget(WORKSPACE_ID, 100)

        assert decision.allowed is True
        assert decision.cap is None

    async def test_cap_from_token_settings(self, db_session, clock) -> None:
        await fund_wallet(db_session, 10_000)
        await TokenSettingsStore(db_session, clock=clock).upsert(WORKSPACE_ID, monthly_cap=100)
        guard = BudgetGuard(
            db_session, entitlements=TokenSettingsEntitlements(db_session), clock=clock
        )

        decision = await guard.assert_budget(WORKSPACE_ID, 101)

        assert decision.reason is RejectReason.CAP_EXCEEDED

    async def test_cap_checked_before_balance(self, db_session, clock) -> None:
        await record_usage(db_session, clock, 990)
        guard = BudgetGuard(
            db_session,
            entitlements=StaticEntitlements(caps={settings.budget_cap_key: 1000}),
            clock=clock,
        )

        decision = await guard.assert_budget(WORKSPACE_ID, 50)

        assert decision.reason is RejectReason.CAP_EXCEEDED

    async def test_storage_error_raises_storage_failure(self, clock) -> None:
        session = AsyncMock()
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        guard = BudgetGuard(session, entitlements=StaticEntitlements(), clock=clock)

        with pytest.raises(StorageFailureError):
            await guard.assert_budget(WORKSPACE_ID, 10)


class TestUsageOverview:
    """Month-to-date display data."""

    async def test_overview_reports_warning_band(self, db_session, clock) -> None:
        await fund_wallet(db_session, 500)
        await TokenSettingsStore(db_session, clock=clock).upsert(
            WORKSPACE_ID, monthly_cap=1000, alert_threshold=75
        )
        await record_usage(db_session, clock, 800)

        overview = await BudgetGuard(db_session, clock=clock).usage_overview(WORKSPACE_ID)

        assert overview.balance == 500
        assert overview.used == 800
        assert overview.cap == 1000
        assert overview.percent_used == 80.0
        assert overview.status is UsageStatus.WARNING
        assert overview.year_month == "202603"
        assert [c.event_type for c in overview.counters] == [settings.budget_counter_event]

    async def test_overview_without_settings(self, db_session, clock) -> None:
        overview = await BudgetGuard(db_session, clock=clock).usage_overview(WORKSPACE_ID)

        assert overview.balance == 0
        assert overview.cap is None
        assert overview.status is UsageStatus.NORMAL
        assert overview.alert_threshold == settings.default_alert_threshold


class TestTokenSettingsStore:
    """Budget settings persistence."""

    async def test_upsert_replaces_existing_row(self, db_session, clock) -> None:
        store = TokenSettingsStore(db_session, clock=clock)
        await store.upsert(WORKSPACE_ID, monthly_cap=1000, alert_threshold=90)
        await store.upsert(WORKSPACE_ID, monthly_cap=None)

        current = await store.get(WORKSPACE_ID)

        assert current.monthly_cap is None
        assert current.alert_threshold == settings.default_alert_threshold

    async def test_negative_cap_stored_as_uncapped(self, db_session, clock) -> None:
        store = TokenSettingsStore(db_session, clock=clock)

        data = await store.upsert(WORKSPACE_ID, monthly_cap=-1)

        assert data.monthly_cap is None
        assert (await store.get(WORKSPACE_ID)).monthly_cap is None

    async def test_get_storage_error(self, clock) -> None:
        session = AsyncMock()
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("db down"))

        with pytest.raises(StorageFailureError):
            await TokenSettingsStore(session, clock=clock).get(WORKSPACE_ID)

        session.rollback.assert_awaited()

    async def test_upsert_storage_error_rolls_back(self, clock) -> None:
        session = AsyncMock()
        session.get_bind = MagicMock()
        session.get_bind.return_value.dialect.name = "postgresql"
        session.execute.side_effect = OperationalError("INSERT", {}, Exception("db down"))

        with pytest.raises(StorageFailureError):
            await TokenSettingsStore(session, clock=clock).upsert(WORKSPACE_ID, monthly_cap=500)

        session.rollback.assert_awaited()
        session.commit.assert_not_awaited()
