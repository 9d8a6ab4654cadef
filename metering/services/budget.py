"""
Budget Guard - Advisory pre-checks before a debit.

Compares an attempted cost against the workspace's monthly cap and its wallet
balance. The debit re-validates the balance atomically, so a decision here is
never the last word.
"""

from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.config import settings
from metering.exceptions import BudgetExceededError, InsufficientBalanceError, StorageFailureError
from metering.models.api import RejectReason, UsageStatus
from metering.models.domain import BudgetDecision, UsageOverview
from metering.observability.metrics import metrics
from metering.services.entitlements import EntitlementProvider, TokenSettingsEntitlements
from metering.services.token_settings import TokenSettingsStore
from metering.services.usage import UsageAccumulator
from metering.services.wallet import WalletLedger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def usage_status(used: int, cap: int | None, alert_threshold: int) -> tuple[float, UsageStatus]:
    """Percent of cap consumed and the matching status band."""
    if cap is None:
        return 0.0, UsageStatus.NORMAL
    percent = round(used * 100 / cap, 1)
    if used >= cap:
        return percent, UsageStatus.CRITICAL
    if percent >= alert_threshold:
        return percent, UsageStatus.WARNING
    return percent, UsageStatus.NORMAL


class BudgetGuard:
    """Monthly cap and balance pre-checks for one workspace session."""

    def __init__(
        self,
        session: AsyncSession,
        entitlements: EntitlementProvider | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.session = session
        self.clock = clock or _utc_now
        self.entitlements = entitlements or TokenSettingsEntitlements(session)
        self.usage = UsageAccumulator(session, clock=self.clock)
        self.ledger = WalletLedger(session, clock=self.clock)

    async def assert_budget(self, workspace_id: str, attempted_cost: int) -> BudgetDecision:
        """
        Decide whether `attempted_cost` fits the cap and the balance.

        Rejections come back as a decision with a reason; only
        StorageFailureError is raised.
        """
        try:
            cap, used, balance = await self._snapshot(workspace_id)
        except SQLAlchemyError as exc:
            metrics.record_error(type(exc).__name__, "assert_budget")
            logger.error(
                "budget_storage_failure",
                workspace_id=workspace_id,
                error=str(exc),
                exc_info=True,
            )
            raise StorageFailureError(f"budget check failed for {workspace_id}") from exc

        try:
            self._check(cap=cap, used=used, balance=balance, attempted_cost=attempted_cost)
        except BudgetExceededError:
            decision = BudgetDecision(
                allowed=False,
                attempted_cost=attempted_cost,
                balance=balance,
                used=used,
                cap=cap,
                reason=RejectReason.CAP_EXCEEDED,
            )
        except InsufficientBalanceError:
            decision = BudgetDecision(
                allowed=False,
                attempted_cost=attempted_cost,
                balance=balance,
                used=used,
                cap=cap,
                reason=RejectReason.INSUFFICIENT_BALANCE,
            )
        else:
            decision = BudgetDecision(
                allowed=True,
                attempted_cost=attempted_cost,
                balance=balance,
                used=used,
                cap=cap,
            )

        metrics.record_budget_decision(
            decision.allowed, decision.reason.value if decision.reason else None
        )
        if not decision.allowed:
            logger.info(
                "budget_check_rejected",
                workspace_id=workspace_id,
                reason=decision.reason.value if decision.reason else None,
                cap=cap,
                used=used,
                balance=balance,
                attempted_cost=attempted_cost,
            )
        return decision

    async def usage_overview(self, workspace_id: str) -> UsageOverview:
        """Balance, month-to-date usage and cap status for display."""
        try:
            token_settings = await TokenSettingsStore(self.session).get(workspace_id)
            cap, used, balance = await self._snapshot(workspace_id)
            counters = await self.usage.list_counters(workspace_id)
        except SQLAlchemyError as exc:
            metrics.record_error(type(exc).__name__, "usage_overview")
            logger.error(
                "usage_overview_storage_failure",
                workspace_id=workspace_id,
                error=str(exc),
                exc_info=True,
            )
            raise StorageFailureError(f"usage overview failed for {workspace_id}") from exc

        percent_used, status = usage_status(used, cap, token_settings.alert_threshold)

        return UsageOverview(
            workspace_id=workspace_id,
            year_month=self.usage.current_year_month(),
            balance=balance,
            used=used,
            cap=cap,
            percent_used=percent_used,
            alert_threshold=token_settings.alert_threshold,
            status=status,
            counters=counters,
        )

    async def _snapshot(self, workspace_id: str) -> tuple[int | None, int, int]:
        """Read (cap, used this month, balance)."""
        raw_cap = await self.entitlements.get_budget_cap(workspace_id, settings.budget_cap_key)
        cap = raw_cap if raw_cap is not None and raw_cap > 0 else None
        used = await self.usage.get_total(workspace_id, settings.budget_counter_event)
        balance = await self.ledger.get_balance(workspace_id)
        return cap, used, balance

    @staticmethod
    def _check(cap: int | None, used: int, balance: int, attempted_cost: int) -> None:
        """
        Raise on the first failed pre-condition.

        Raises:
            BudgetExceededError: used + attempted_cost would pass the cap
            InsufficientBalanceError: balance cannot cover attempted_cost
        """
        if cap is not None and used + attempted_cost > cap:
            raise BudgetExceededError(cap=cap, used=used, attempted=attempted_cost)
        if balance < attempted_cost:
            raise InsufficientBalanceError(balance=balance, required=attempted_cost)
