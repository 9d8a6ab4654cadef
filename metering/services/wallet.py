"""
Wallet Ledger - Per-workspace token balance with an append-only journal.

NO DICTIONARIES - All operations use strongly typed domain models.

Every balance mutation is ONE conditional UPDATE ... RETURNING statement:
- debit:  SET balance = balance - :amt WHERE workspace_id = :id AND balance >= :amt
- credit: SET balance = balance + :amt WHERE workspace_id = :id
No row back from a debit means the balance could not cover the amount at the
moment of the update. The ledger entry is written in the same transaction, so
sum(delta) always equals the wallet balance.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, NoReturn

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.config import settings
from metering.db.models import LedgerEntry, Wallet
from metering.db.statements import upsert_insert
from metering.exceptions import InsufficientBalanceError, StorageFailureError
from metering.models.api import LedgerEntryType
from metering.models.domain import (
    BalanceChange,
    CreditIntent,
    DebitIntent,
    LedgerEntryData,
    LedgerPage,
    WalletData,
)
from metering.observability.metrics import metrics
from metering.observability.tracing import trace_operation

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def clamp_page_size(page_size: int | None) -> int:
    """Clamp a requested page size to [1, LEDGER_MAX_PAGE_SIZE]."""
    if page_size is None:
        return settings.ledger_page_size
    return max(1, min(settings.ledger_max_page_size, page_size))


class WalletLedger:
    """
    Wallet ledger bound to one database session.

    Mutations commit by default. Pass commit=False to join a larger
    transaction (metered consumption, settlement); the caller then owns the
    commit or rollback.
    """

    def __init__(self, session: AsyncSession, clock: Clock | None = None) -> None:
        """Initialize wallet ledger with database session."""
        self.session = session
        self.clock = clock or _utc_now

    async def debit(self, intent: DebitIntent, *, commit: bool = True) -> BalanceChange:
        """
        Debit tokens from a workspace wallet.

        Raises:
            InsufficientBalanceError: Balance below amount at the atomic update
            StorageFailureError: Database error (transaction rolled back)
        """
        with trace_operation(
            "wallet_debit", workspace_id=intent.workspace_id, amount=intent.amount
        ) as span:
            try:
                await self._ensure_wallet(intent.workspace_id)
                now = self.clock()

                stmt = (
                    update(Wallet)
                    .where(
                        Wallet.workspace_id == intent.workspace_id,
                        Wallet.balance >= intent.amount,
                    )
                    .values(
                        balance=Wallet.balance - intent.amount,
                        lifetime_debits=Wallet.lifetime_debits + intent.amount,
                        updated_at=now,
                    )
                    .returning(Wallet.balance)
                    .execution_options(synchronize_session=False)
                )
                new_balance = (await self.session.execute(stmt)).scalar_one_or_none()

                if new_balance is None:
                    balance = await self.get_balance(intent.workspace_id)
                    if commit:
                        await self.session.rollback()
                    metrics.record_debit(False, intent.amount, "insufficient_balance")
                    logger.info(
                        "wallet_debit_rejected",
                        workspace_id=intent.workspace_id,
                        amount=intent.amount,
                        balance=balance,
                        reason=intent.reason,
                    )
                    raise InsufficientBalanceError(balance=balance, required=intent.amount)

                entry = await self._append_entry(
                    workspace_id=intent.workspace_id,
                    delta=-intent.amount,
                    balance_after=new_balance,
                    entry_type=LedgerEntryType.SPEND,
                    reason=intent.reason,
                    created_by=intent.created_by,
                    created_at=now,
                    feature_key=intent.feature_key,
                    ref_type=intent.ref_type,
                    ref_id=intent.ref_id,
                    note=intent.note,
                    meta=intent.meta,
                )

                if commit:
                    await self.session.commit()
            except SQLAlchemyError as exc:
                await self._storage_failure("debit", intent.workspace_id, exc)

            span.set_attribute("new_balance", new_balance)

        metrics.record_debit(True, intent.amount)
        logger.info(
            "wallet_debited",
            workspace_id=intent.workspace_id,
            amount=intent.amount,
            new_balance=new_balance,
            ledger_entry_id=entry.id,
            feature_key=intent.feature_key,
        )
        return BalanceChange(workspace_id=intent.workspace_id, new_balance=new_balance, entry=entry)

    async def credit(self, intent: CreditIntent, *, commit: bool = True) -> BalanceChange:
        """
        Credit tokens to a workspace wallet.

        Raises:
            StorageFailureError: Database error (transaction rolled back)
        """
        with trace_operation(
            "wallet_credit", workspace_id=intent.workspace_id, amount=intent.amount
        ) as span:
            try:
                await self._ensure_wallet(intent.workspace_id)
                now = self.clock()

                stmt = (
                    update(Wallet)
                    .where(Wallet.workspace_id == intent.workspace_id)
                    .values(
                        balance=Wallet.balance + intent.amount,
                        lifetime_credits=Wallet.lifetime_credits + intent.amount,
                        updated_at=now,
                    )
                    .returning(Wallet.balance)
                    .execution_options(synchronize_session=False)
                )
                new_balance = (await self.session.execute(stmt)).scalar_one()

                entry = await self._append_entry(
                    workspace_id=intent.workspace_id,
                    delta=intent.amount,
                    balance_after=new_balance,
                    entry_type=intent.entry_type,
                    reason=intent.reason,
                    created_by=intent.created_by,
                    created_at=now,
                    ref_type=intent.ref_type,
                    ref_id=intent.ref_id,
                    note=intent.note,
                )

                if commit:
                    await self.session.commit()
            except SQLAlchemyError as exc:
                await self._storage_failure("credit", intent.workspace_id, exc)

            span.set_attribute("new_balance", new_balance)

        metrics.record_credit(intent.entry_type.value, intent.amount)
        logger.info(
            "wallet_credited",
            workspace_id=intent.workspace_id,
            amount=intent.amount,
            new_balance=new_balance,
            entry_type=intent.entry_type.value,
            ledger_entry_id=entry.id,
        )
        return BalanceChange(workspace_id=intent.workspace_id, new_balance=new_balance, entry=entry)

    async def get_balance(self, workspace_id: str) -> int:
        """Get current balance (0 for a workspace without a wallet yet)."""
        stmt = select(Wallet.balance).where(Wallet.workspace_id == workspace_id)
        balance = (await self.session.execute(stmt)).scalar_one_or_none()
        return int(balance) if balance is not None else 0

    async def get_wallet(self, workspace_id: str) -> WalletData:
        """Get the wallet, creating it with a zero balance on first access."""
        stmt = select(
            Wallet.workspace_id,
            Wallet.balance,
            Wallet.lifetime_credits,
            Wallet.lifetime_debits,
            Wallet.created_at,
            Wallet.updated_at,
        ).where(Wallet.workspace_id == workspace_id)
        try:
            await self._ensure_wallet(workspace_id)
            await self.session.commit()
            row = (await self.session.execute(stmt)).one()
        except SQLAlchemyError as exc:
            await self._storage_failure("get_wallet", workspace_id, exc)

        return WalletData(
            workspace_id=row.workspace_id,
            balance=int(row.balance),
            lifetime_credits=int(row.lifetime_credits),
            lifetime_debits=int(row.lifetime_debits),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def get_ledger(
        self, workspace_id: str, page: int = 1, page_size: int | None = None
    ) -> LedgerPage:
        """
        Get one page of ledger entries, most recent first.

        Raises:
            StorageFailureError: Database error (transaction rolled back)
        """
        page = max(1, page)
        size = clamp_page_size(page_size)

        count_stmt = (
            select(func.count())
            .select_from(LedgerEntry)
            .where(LedgerEntry.workspace_id == workspace_id)
        )
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.workspace_id == workspace_id)
            .order_by(LedgerEntry.id.desc())
            .offset((page - 1) * size)
            .limit(size)
        )
        try:
            total = (await self.session.execute(count_stmt)).scalar_one()
            result = await self.session.execute(stmt)
            entries = tuple(self._entry_to_domain(entry) for entry in result.scalars())
        except SQLAlchemyError as exc:
            await self._storage_failure("get_ledger", workspace_id, exc)

        return LedgerPage(entries=entries, page=page, page_size=size, total=int(total))

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _ensure_wallet(self, workspace_id: str) -> None:
        """Lazily create a zero-balance wallet (no-op if it exists)."""
        now = self.clock()
        stmt = (
            upsert_insert(self.session, Wallet)
            .values(
                workspace_id=workspace_id,
                balance=0,
                lifetime_credits=0,
                lifetime_debits=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["workspace_id"])
        )
        await self.session.execute(stmt)

    async def _append_entry(
        self,
        *,
        workspace_id: str,
        delta: int,
        balance_after: int,
        entry_type: LedgerEntryType,
        reason: str,
        created_by: str,
        created_at: datetime,
        feature_key: str | None = None,
        ref_type: str | None = None,
        ref_id: str | None = None,
        note: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> LedgerEntryData:
        """Append a ledger entry inside the current transaction."""
        entry = LedgerEntry(
            workspace_id=workspace_id,
            delta=delta,
            balance_after=balance_after,
            entry_type=entry_type.value,
            reason=reason,
            feature_key=feature_key,
            ref_type=ref_type,
            ref_id=ref_id,
            note=note,
            meta=dict(meta or {}),
            created_by=created_by,
            created_at=created_at,
        )
        self.session.add(entry)
        await self.session.flush()
        return self._entry_to_domain(entry)

    async def _storage_failure(
        self, operation: str, workspace_id: str, exc: SQLAlchemyError
    ) -> NoReturn:
        """Roll back, log and raise StorageFailureError."""
        await self.session.rollback()
        metrics.record_error(type(exc).__name__, operation)
        logger.error(
            "wallet_storage_failure",
            operation=operation,
            workspace_id=workspace_id,
            error=str(exc),
            exc_info=True,
        )
        raise StorageFailureError(f"wallet {operation} failed for {workspace_id}") from exc

    def _entry_to_domain(self, entry: LedgerEntry) -> LedgerEntryData:
        """Convert ORM ledger entry to domain model."""
        return LedgerEntryData(
            id=entry.id,
            workspace_id=entry.workspace_id,
            delta=entry.delta,
            balance_after=entry.balance_after,
            entry_type=LedgerEntryType(entry.entry_type),
            reason=entry.reason,
            created_by=entry.created_by,
            created_at=entry.created_at,
            feature_key=entry.feature_key,
            ref_type=entry.ref_type,
            ref_id=entry.ref_id,
            note=entry.note,
            meta=dict(entry.meta or {}),
        )
