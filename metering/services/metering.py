"""
Metering Service - Charges a metered action against the workspace wallet.

Flow: rate table -> rate limiter -> feature entitlement -> budget guard ->
atomic debit + usage counters (one transaction).
"""

from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.config import settings
from metering.exceptions import (
    FeatureLockedError,
    InsufficientBalanceError,
    StorageFailureError,
    UnknownActionError,
)
from metering.models.api import RejectReason
from metering.models.domain import DebitIntent, MeteredActionRequest, MeteredActionResult
from metering.observability.metrics import metrics
from metering.observability.tracing import trace_operation
from metering.services.budget import BudgetGuard
from metering.services.entitlements import EntitlementProvider, TokenSettingsEntitlements
from metering.services.rate_limiter import RateLimiter, rate_limit_key, rate_limiter
from metering.services.rate_table import get_rate
from metering.services.usage import UsageAccumulator
from metering.services.wallet import WalletLedger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class MeteringService:
    """
    Metered action entry point.

    Every rejection comes back as a MeteredActionResult carrying the reason
    and the numbers a client needs to render guidance (cap/used for budget,
    balance for top-up, reset time for rate limits). Only StorageFailureError
    is raised.
    """

    def __init__(
        self,
        session: AsyncSession,
        limiter: RateLimiter | None = None,
        entitlements: EntitlementProvider | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize metering service with database session."""
        self.session = session
        self.clock = clock or _utc_now
        self.limiter = limiter or rate_limiter
        self.entitlements = entitlements or TokenSettingsEntitlements(session)
        self.budget = BudgetGuard(session, entitlements=self.entitlements, clock=self.clock)
        self.ledger = WalletLedger(session, clock=self.clock)
        self.usage = UsageAccumulator(session, clock=self.clock)

    async def consume(self, request: MeteredActionRequest) -> MeteredActionResult:
        """Charge one metered action."""
        try:
            rate = get_rate(request.action)
        except UnknownActionError:
            logger.warning(
                "metered_action_unknown",
                workspace_id=request.workspace_id,
                action=request.action,
            )
            return self._finish(
                MeteredActionResult(
                    allowed=False, action=request.action, reason=RejectReason.UNKNOWN_ACTION
                )
            )

        decision = await self.limiter.allow(
            rate_limit_key(request.workspace_id, request.user_id, request.action)
        )
        if not decision.ok:
            return self._finish(
                MeteredActionResult(
                    allowed=False,
                    action=request.action,
                    cost=rate.tokens,
                    reason=RejectReason.RATE_LIMITED,
                    reset_at=decision.reset_at,
                )
            )

        with trace_operation(
            "metered_action",
            workspace_id=request.workspace_id,
            action=request.action,
            cost=rate.tokens,
        ):
            try:
                await self._require_feature(request.workspace_id, rate.feature_key)

                budget = await self.budget.assert_budget(request.workspace_id, rate.tokens)
                if not budget.allowed:
                    return self._finish(
                        MeteredActionResult(
                            allowed=False,
                            action=request.action,
                            cost=rate.tokens,
                            balance=budget.balance,
                            reason=budget.reason,
                            cap=budget.cap,
                            used=budget.used,
                        )
                    )

                change = await self.ledger.debit(
                    DebitIntent(
                        workspace_id=request.workspace_id,
                        amount=rate.tokens,
                        reason=request.action,
                        created_by=request.user_id,
                        feature_key=rate.feature_key,
                        ref_type=request.ref_type,
                        ref_id=request.ref_id,
                        note=request.note,
                        meta=request.metadata,
                    ),
                    commit=False,
                )
                used = await self.usage.increment(
                    request.workspace_id, settings.budget_counter_event, rate.tokens
                )
                await self.usage.increment(request.workspace_id, request.action, 1)
                await self.session.commit()
            except FeatureLockedError as exc:
                logger.info(
                    "metered_action_feature_locked",
                    workspace_id=request.workspace_id,
                    action=request.action,
                    feature_key=exc.feature_key,
                )
                return self._finish(
                    MeteredActionResult(
                        allowed=False,
                        action=request.action,
                        cost=rate.tokens,
                        reason=RejectReason.FEATURE_LOCKED,
                    )
                )
            except InsufficientBalanceError as exc:
                # Lost the race between the budget pre-check and the atomic debit
                await self.session.rollback()
                return self._finish(
                    MeteredActionResult(
                        allowed=False,
                        action=request.action,
                        cost=rate.tokens,
                        balance=exc.balance,
                        reason=RejectReason.INSUFFICIENT_BALANCE,
                    )
                )
            except SQLAlchemyError as exc:
                await self.session.rollback()
                metrics.record_error(type(exc).__name__, "consume")
                logger.error(
                    "metered_action_storage_failure",
                    workspace_id=request.workspace_id,
                    action=request.action,
                    error=str(exc),
                    exc_info=True,
                )
                raise StorageFailureError(
                    f"metered action {request.action} failed for {request.workspace_id}"
                ) from exc

        return self._finish(
            MeteredActionResult(
                allowed=True,
                action=request.action,
                cost=rate.tokens,
                balance=change.new_balance,
                cap=budget.cap,
                used=used,
                ledger_entry_id=change.entry.id,
            )
        )

    async def _require_feature(self, workspace_id: str, feature_key: str) -> None:
        """
        Raises:
            FeatureLockedError: If the entitlement denies the feature
        """
        if not await self.entitlements.get_feature_allowed(workspace_id, feature_key):
            raise FeatureLockedError(workspace_id, feature_key)

    def _finish(self, result: MeteredActionResult) -> MeteredActionResult:
        """Record the outcome metric and pass the result through."""
        metrics.record_consumption(
            result.action,
            result.allowed,
            result.reason.value if result.reason else None,
        )
        return result
