"""
Payment Intent Store - Creation, lookup and one-way status transitions.

State machine: pending -> paid | failed | expired. Transitions are conditional
UPDATEs guarded by status = 'pending', so a terminal intent can never move.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.config import settings
from metering.db.models import PaymentIntent
from metering.exceptions import (
    PaymentIntentNotFoundError,
    ProviderRefConflictError,
    SettlementConflictError,
    StorageFailureError,
)
from metering.models.api import PaymentIntentKind, PaymentIntentStatus
from metering.models.domain import PaymentIntentData
from metering.services.rate_table import get_topup_package

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class PaymentIntentService:
    """Payment intent persistence bound to one database session."""

    def __init__(self, session: AsyncSession, clock: Clock | None = None) -> None:
        self.session = session
        self.clock = clock or _utc_now

    async def create_intent(
        self,
        workspace_id: str,
        kind: PaymentIntentKind,
        amount: int,
        provider: str,
        provider_ref: str | None = None,
        meta: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> PaymentIntentData:
        """
        Create a pending payment intent and commit.

        Raises:
            ProviderRefConflictError: If (provider, provider_ref) is already taken
            StorageFailureError: Database error (transaction rolled back)
        """
        if not workspace_id:
            raise ValueError("workspace_id cannot be empty")
        if amount <= 0:
            raise ValueError(f"Amount must be positive: {amount}")
        if not provider:
            raise ValueError("provider cannot be empty")

        now = self.clock()
        intent = PaymentIntent(
            id=uuid4(),
            workspace_id=workspace_id,
            kind=kind.value,
            amount=amount,
            status=PaymentIntentStatus.PENDING.value,
            provider=provider,
            provider_ref=provider_ref,
            meta=dict(meta or {}),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self.session.add(intent)

        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            if provider_ref is None:
                raise StorageFailureError(f"could not create payment intent: {exc}") from exc
            logger.warning(
                "payment_intent_provider_ref_conflict",
                workspace_id=workspace_id,
                provider=provider,
                provider_ref=provider_ref,
            )
            raise ProviderRefConflictError(provider, provider_ref) from exc
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error(
                "payment_intent_create_failed",
                workspace_id=workspace_id,
                provider=provider,
                error=str(exc),
            )
            raise StorageFailureError(f"could not create payment intent: {exc}") from exc

        logger.info(
            "payment_intent_created",
            payment_intent_id=str(intent.id),
            workspace_id=workspace_id,
            kind=kind.value,
            amount=amount,
            provider=provider,
        )
        return self._to_domain(intent)

    async def create_topup(
        self,
        workspace_id: str,
        package_key: str,
        provider: str,
        provider_ref: str | None = None,
        created_by: str | None = None,
    ) -> PaymentIntentData:
        """
        Create a pending top-up intent for a catalog package.

        Raises:
            UnknownTopupPackageError: If the package key is not in the catalog
        """
        package = get_topup_package(package_key)
        return await self.create_intent(
            workspace_id=workspace_id,
            kind=PaymentIntentKind.TOPUP,
            amount=package.amount_minor,
            provider=provider,
            provider_ref=provider_ref,
            meta={"package_key": package.key, "tokens": package.tokens},
            created_by=created_by,
        )

    async def get_intent(self, intent_id: UUID) -> PaymentIntentData:
        """
        Get an intent by id.

        Raises:
            PaymentIntentNotFoundError: If the intent doesn't exist
        """
        intent = await self.find_intent(intent_id=intent_id)
        if intent is None:
            raise PaymentIntentNotFoundError(intent_id)
        return intent

    async def find_intent(
        self,
        intent_id: UUID | None = None,
        provider: str | None = None,
        provider_ref: str | None = None,
    ) -> PaymentIntentData | None:
        """Look up an intent by id, or by (provider, provider_ref) when no id is given."""
        if intent_id is not None:
            stmt = select(PaymentIntent).where(PaymentIntent.id == intent_id)
        elif provider and provider_ref:
            stmt = select(PaymentIntent).where(
                PaymentIntent.provider == provider,
                PaymentIntent.provider_ref == provider_ref,
            )
        else:
            return None

        try:
            result = await self.session.execute(stmt.execution_options(populate_existing=True))
            intent = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("payment_intent_lookup_failed", error=str(exc), exc_info=True)
            raise StorageFailureError(f"could not look up payment intent: {exc}") from exc
        return self._to_domain(intent) if intent else None

    async def attach_provider_ref(self, intent_id: UUID, provider_ref: str) -> PaymentIntentData:
        """
        Record the provider's reference once checkout has been created there.

        Raises:
            PaymentIntentNotFoundError: If the intent doesn't exist
            SettlementConflictError: If the intent already left 'pending'
        """
        stmt = (
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent_id,
                PaymentIntent.status == PaymentIntentStatus.PENDING.value,
            )
            .values(provider_ref=provider_ref, updated_at=self.clock())
            .returning(PaymentIntent.id)
            .execution_options(synchronize_session=False)
        )
        try:
            updated = (await self.session.execute(stmt)).scalar_one_or_none()
            if updated is None:
                await self.session.rollback()
                existing = await self.get_intent(intent_id)
                raise SettlementConflictError(intent_id, existing.status.value)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise StorageFailureError(f"could not attach provider ref: {exc}") from exc

        logger.info(
            "payment_intent_provider_ref_attached",
            payment_intent_id=str(intent_id),
            provider_ref=provider_ref,
        )
        return await self.get_intent(intent_id)

    async def transition_from_pending(self, intent_id: UUID, status: PaymentIntentStatus) -> bool:
        """
        Move a pending intent to a terminal status.

        Does not commit; the caller owns the transaction. Returns False when
        the intent was no longer pending at the moment of the update.
        """
        if not status.is_terminal:
            raise ValueError("Intents can only transition to a terminal status")

        stmt = (
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent_id,
                PaymentIntent.status == PaymentIntentStatus.PENDING.value,
            )
            .values(status=status.value, updated_at=self.clock())
            .returning(PaymentIntent.id)
            .execution_options(synchronize_session=False)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none() is not None

    async def count_stale(self, older_than: timedelta | None = None) -> int:
        """Count pending intents an expiry sweep would expire right now."""
        ttl = older_than or timedelta(hours=settings.payment_intent_ttl_hours)
        stmt = (
            select(func.count())
            .select_from(PaymentIntent)
            .where(
                PaymentIntent.status == PaymentIntentStatus.PENDING.value,
                PaymentIntent.created_at < self.clock() - ttl,
            )
        )
        return int((await self.session.execute(stmt)).scalar_one())

    async def expire_stale(self, older_than: timedelta | None = None) -> int:
        """
        Expire pending intents created before now - older_than (default TTL).

        Returns:
            Number of intents expired
        """
        ttl = older_than or timedelta(hours=settings.payment_intent_ttl_hours)
        now = self.clock()
        cutoff = now - ttl

        stmt = (
            update(PaymentIntent)
            .where(
                PaymentIntent.status == PaymentIntentStatus.PENDING.value,
                PaymentIntent.created_at < cutoff,
            )
            .values(status=PaymentIntentStatus.EXPIRED.value, updated_at=now)
            .returning(PaymentIntent.id)
            .execution_options(synchronize_session=False)
        )
        try:
            expired_ids = list((await self.session.execute(stmt)).scalars())
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("payment_intent_expiry_failed", error=str(exc))
            raise StorageFailureError(f"could not expire payment intents: {exc}") from exc

        logger.info(
            "payment_intents_expired",
            expired_count=len(expired_ids),
            cutoff=cutoff.isoformat(),
        )
        return len(expired_ids)

    def _to_domain(self, intent: PaymentIntent) -> PaymentIntentData:
        """Convert ORM payment intent to domain model."""
        return PaymentIntentData(
            id=intent.id,
            workspace_id=intent.workspace_id,
            kind=PaymentIntentKind(intent.kind),
            amount=intent.amount,
            status=PaymentIntentStatus(intent.status),
            provider=intent.provider,
            provider_ref=intent.provider_ref,
            meta=dict(intent.meta or {}),
            created_at=intent.created_at,
            updated_at=intent.updated_at,
        )
