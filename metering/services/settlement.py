"""
Settlement Engine - Applies verified payment notifications exactly once.

Two independent guards make settlement idempotent:
1. payment_events has a unique (provider, provider_event_id); the event row is
   inserted first with ON CONFLICT DO NOTHING, so a replayed notification
   finds its row already present and stops.
2. The intent moves out of 'pending' through a conditional UPDATE, so two
   different event ids for the same intent cannot both win.

The event row, the intent transition and the wallet credit share ONE
transaction. Any storage error rolls all of it back and leaves the intent
pending, which makes a retry of the same notification safe.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import NoReturn
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.db.models import PaymentEvent
from metering.db.statements import upsert_insert
from metering.exceptions import SettlementConflictError, StorageFailureError
from metering.models.api import (
    LedgerEntryType,
    NotificationStatus,
    PaymentIntentKind,
    PaymentIntentStatus,
    SettlementOutcome,
)
from metering.models.domain import (
    SYSTEM_ACTOR,
    CreditIntent,
    PaymentIntentData,
    PaymentNotification,
    SettlementResult,
)
from metering.observability.metrics import metrics
from metering.observability.tracing import trace_operation
from metering.services.payment_intents import PaymentIntentService
from metering.services.wallet import WalletLedger

logger = get_logger(__name__)

Clock = Callable[[], datetime]

_TERMINAL_FOR_NOTIFICATION: dict[NotificationStatus, PaymentIntentStatus] = {
    NotificationStatus.PAID: PaymentIntentStatus.PAID,
    NotificationStatus.FAILED: PaymentIntentStatus.FAILED,
    NotificationStatus.EXPIRED: PaymentIntentStatus.EXPIRED,
}

_OUTCOME_FOR_STATUS: dict[PaymentIntentStatus, SettlementOutcome] = {
    PaymentIntentStatus.FAILED: SettlementOutcome.FAILED,
    PaymentIntentStatus.EXPIRED: SettlementOutcome.EXPIRED,
}


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def tokens_from_meta(meta: dict[str, object]) -> int | None:
    """Token quantity recorded on an intent, or None when missing or invalid."""
    tokens = meta.get("tokens")
    if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens <= 0:
        return None
    return tokens


class SettlementEngine:
    """Settles payment notifications against intents and the wallet ledger."""

    def __init__(self, session: AsyncSession, clock: Clock | None = None) -> None:
        """Initialize settlement engine with database session."""
        self.session = session
        self.clock = clock or _utc_now
        self.intents = PaymentIntentService(session, clock=self.clock)
        self.ledger = WalletLedger(session, clock=self.clock)

    async def settle(self, notification: PaymentNotification) -> SettlementResult:
        """
        Apply a verified provider notification.

        Duplicates, conflicts and unknown intents come back as outcomes; only
        StorageFailureError is raised, with the transaction rolled back.
        """
        with trace_operation(
            "settlement",
            provider=notification.provider,
            provider_event_id=notification.provider_event_id,
            payment_intent_id=notification.payment_intent_id,
            status=notification.status.value,
        ) as span:
            try:
                result = await self._settle(notification)
            except SQLAlchemyError as exc:
                await self._storage_failure(notification, exc)
            except StorageFailureError:
                await self.session.rollback()
                metrics.record_settlement(notification.provider, "storage_failure")
                raise

            span.set_attribute("outcome", result.status.value)
            span.set_attribute("tokens_credited", result.tokens_credited)

        metrics.record_settlement(notification.provider, result.status.value)
        return result

    async def _settle(self, notification: PaymentNotification) -> SettlementResult:
        event_id = await self._record_event(notification)
        if event_id is None:
            return await self._duplicate(notification)

        intent = await self.intents.find_intent(
            intent_id=notification.payment_intent_id,
            provider=notification.provider,
            provider_ref=notification.provider_ref,
        )
        if intent is None:
            # Drop the event row so a redelivery after the intent exists still applies
            await self.session.rollback()
            logger.warning(
                "settlement_unknown_intent",
                provider=notification.provider,
                provider_event_id=notification.provider_event_id,
                payment_intent_id=str(notification.payment_intent_id),
                provider_ref=notification.provider_ref,
            )
            return SettlementResult(
                status=SettlementOutcome.UNKNOWN_INTENT,
                payment_intent_id=notification.payment_intent_id,
            )

        target = _TERMINAL_FOR_NOTIFICATION[notification.status]
        try:
            if target is PaymentIntentStatus.PAID:
                result = await self._apply_paid(intent, notification)
            else:
                result = await self._apply_terminal(intent, target)
        except SettlementConflictError as exc:
            logger.warning(
                "settlement_conflict",
                provider=notification.provider,
                provider_event_id=notification.provider_event_id,
                payment_intent_id=str(exc.payment_intent_id),
                intent_status=exc.status,
                notification_status=notification.status.value,
            )
            result = SettlementResult(
                status=SettlementOutcome.CONFLICT,
                payment_intent_id=intent.id,
                intent_status=PaymentIntentStatus(exc.status),
            )

        if result.status is SettlementOutcome.REJECTED:
            await self.session.rollback()
            return result

        await self._finish_event(event_id, intent.id, result.status)
        await self.session.commit()

        logger.info(
            "settlement_processed",
            provider=notification.provider,
            provider_event_id=notification.provider_event_id,
            payment_intent_id=str(intent.id),
            workspace_id=intent.workspace_id,
            outcome=result.status.value,
            tokens_credited=result.tokens_credited,
        )
        return result

    async def _apply_paid(
        self, intent: PaymentIntentData, notification: PaymentNotification
    ) -> SettlementResult:
        """Transition pending -> paid and credit the wallet in the open transaction."""
        if intent.status is PaymentIntentStatus.PAID:
            return SettlementResult(
                status=SettlementOutcome.ALREADY_PAID,
                payment_intent_id=intent.id,
                intent_status=PaymentIntentStatus.PAID,
            )
        if intent.status.is_terminal:
            raise SettlementConflictError(intent.id, intent.status.value)

        tokens = tokens_from_meta(intent.meta)
        if tokens is None and intent.kind is PaymentIntentKind.TOPUP:
            logger.error(
                "settlement_missing_token_quantity",
                payment_intent_id=str(intent.id),
                workspace_id=intent.workspace_id,
                provider_event_id=notification.provider_event_id,
                meta_tokens=repr(intent.meta.get("tokens")),
            )
            return SettlementResult(
                status=SettlementOutcome.REJECTED,
                payment_intent_id=intent.id,
                intent_status=PaymentIntentStatus.PENDING,
            )

        if not await self.intents.transition_from_pending(intent.id, PaymentIntentStatus.PAID):
            return await self._lost_race(intent.id, PaymentIntentStatus.PAID)

        new_balance = None
        if tokens is not None:
            entry_type = (
                LedgerEntryType.TOPUP
                if intent.kind is PaymentIntentKind.TOPUP
                else LedgerEntryType.SUBSCRIPTION
            )
            change = await self.ledger.credit(
                CreditIntent(
                    workspace_id=intent.workspace_id,
                    amount=tokens,
                    reason=f"payment_intent:{intent.id}",
                    created_by=SYSTEM_ACTOR,
                    entry_type=entry_type,
                    ref_type="payment_intent",
                    ref_id=str(intent.id),
                    note=f"{notification.provider}:{notification.provider_event_id}",
                ),
                commit=False,
            )
            new_balance = change.new_balance

        return SettlementResult(
            status=SettlementOutcome.SETTLED,
            tokens_credited=tokens or 0,
            payment_intent_id=intent.id,
            intent_status=PaymentIntentStatus.PAID,
            new_balance=new_balance,
        )

    async def _apply_terminal(
        self, intent: PaymentIntentData, target: PaymentIntentStatus
    ) -> SettlementResult:
        """Transition pending -> failed/expired; no wallet effect."""
        outcome = _OUTCOME_FOR_STATUS[target]

        if intent.status is target:
            return SettlementResult(status=outcome, payment_intent_id=intent.id, intent_status=target)
        if intent.status.is_terminal:
            raise SettlementConflictError(intent.id, intent.status.value)

        if not await self.intents.transition_from_pending(intent.id, target):
            return await self._lost_race(intent.id, target)

        return SettlementResult(status=outcome, payment_intent_id=intent.id, intent_status=target)

    async def _lost_race(self, intent_id: UUID, target: PaymentIntentStatus) -> SettlementResult:
        """Another request moved the intent first; report what it became."""
        current = await self.intents.get_intent(intent_id)
        if current.status is target:
            outcome = (
                SettlementOutcome.ALREADY_PAID
                if target is PaymentIntentStatus.PAID
                else _OUTCOME_FOR_STATUS[target]
            )
            return SettlementResult(
                status=outcome, payment_intent_id=intent_id, intent_status=current.status
            )
        raise SettlementConflictError(intent_id, current.status.value)

    async def _record_event(self, notification: PaymentNotification) -> UUID | None:
        """Insert the event row; None when (provider, provider_event_id) was already seen."""
        stmt = (
            upsert_insert(self.session, PaymentEvent)
            .values(
                id=uuid4(),
                provider=notification.provider,
                provider_event_id=notification.provider_event_id,
                payment_intent_id=notification.payment_intent_id,
                status=notification.status.value,
                payload=dict(notification.payload),
                received_at=self.clock(),
            )
            .on_conflict_do_nothing(index_elements=["provider", "provider_event_id"])
            .returning(PaymentEvent.id)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _duplicate(self, notification: PaymentNotification) -> SettlementResult:
        """Report a replayed notification without touching the wallet."""
        await self.session.rollback()
        stmt = select(PaymentEvent.payment_intent_id, PaymentEvent.outcome).where(
            PaymentEvent.provider == notification.provider,
            PaymentEvent.provider_event_id == notification.provider_event_id,
        )
        previous = (await self.session.execute(stmt)).one_or_none()

        logger.info(
            "settlement_duplicate_event",
            provider=notification.provider,
            provider_event_id=notification.provider_event_id,
            previous_outcome=previous.outcome if previous else None,
        )
        return SettlementResult(
            status=SettlementOutcome.DUPLICATE,
            payment_intent_id=previous.payment_intent_id if previous else None,
        )

    async def _finish_event(
        self, event_id: UUID, intent_id: UUID, outcome: SettlementOutcome
    ) -> None:
        """Stamp the event row with its resolved intent and outcome."""
        stmt = (
            update(PaymentEvent)
            .where(PaymentEvent.id == event_id)
            .values(payment_intent_id=intent_id, outcome=outcome.value)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def _storage_failure(
        self, notification: PaymentNotification, exc: SQLAlchemyError
    ) -> NoReturn:
        """Roll back (intent stays pending), log and raise StorageFailureError."""
        await self.session.rollback()
        metrics.record_error(type(exc).__name__, "settle")
        metrics.record_settlement(notification.provider, "storage_failure")
        logger.error(
            "settlement_storage_failure",
            provider=notification.provider,
            provider_event_id=notification.provider_event_id,
            payment_intent_id=str(notification.payment_intent_id),
            error=str(exc),
            exc_info=True,
        )
        raise StorageFailureError(
            f"settlement of {notification.provider}:{notification.provider_event_id} failed"
        ) from exc
