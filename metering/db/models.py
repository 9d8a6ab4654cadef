"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations. The JSON columns
hold opaque provider payloads, intent metadata and metered-action metadata.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only auto-increments INTEGER PRIMARY KEY columns
LedgerId = BigInteger().with_variant(Integer, "sqlite")
JsonPayload = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Wallet(Base):
    """
    ORM model for wallets table.

    One balance-bearing row per workspace. Mutated only through single
    conditional UPDATE statements issued by the wallet ledger.
    """

    __tablename__ = "wallets"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_debits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallet_balance_non_negative"),
        CheckConstraint("lifetime_credits >= 0", name="ck_wallet_lifetime_credits_non_negative"),
        CheckConstraint("lifetime_debits >= 0", name="ck_wallet_lifetime_debits_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Wallet(workspace_id={self.workspace_id}, balance={self.balance})>"


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Append-only journal of balance changes. The sum of deltas for a workspace
    equals its wallet balance.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(LedgerId, primary_key=True, autoincrement=True)

    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)

    delta: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    entry_type: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)

    # Debit context
    feature_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ref_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ref_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    note: Mapped[str | None] = mapped_column(String(500), nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonPayload, nullable=False, default=dict)

    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("delta <> 0", name="ck_ledger_delta_non_zero"),
        CheckConstraint("balance_after >= 0", name="ck_ledger_balance_after_non_negative"),
        Index("idx_ledger_entries_workspace_id", "workspace_id", "id"),
        Index("idx_ledger_entries_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LedgerEntry(id={self.id}, workspace_id={self.workspace_id}, "
            f"delta={self.delta}, balance_after={self.balance_after})>"
        )


class PaymentIntent(Base):
    """
    ORM model for payment_intents table.

    One attempted top-up or subscription payment. Status only moves out of
    'pending', never back.
    """

    __tablename__ = "payment_intents"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    meta: Mapped[dict[str, Any]] = mapped_column(JsonPayload, nullable=False, default=dict)

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_intent_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'paid', 'failed', 'expired')",
            name="ck_payment_intent_status",
        ),
        CheckConstraint("kind IN ('topup', 'subscription')", name="ck_payment_intent_kind"),
        UniqueConstraint("provider", "provider_ref", name="uq_payment_intent_provider_ref"),
        Index("idx_payment_intents_workspace_id", "workspace_id"),
        Index("idx_payment_intents_status_created_at", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentIntent(id={self.id}, workspace_id={self.workspace_id}, "
            f"kind={self.kind}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    ORM model for payment_events table.

    Raw inbound provider notifications. The (provider, provider_event_id)
    unique constraint is what makes settlement idempotent.
    """

    __tablename__ = "payment_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False)

    payment_intent_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)

    payload: Mapped[dict[str, Any]] = mapped_column(JsonPayload, nullable=False, default=dict)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_payment_event_provider_event"),
        Index("idx_payment_events_payment_intent_id", "payment_intent_id"),
    )


class UsageCounter(Base):
    """
    ORM model for usage_counters table.

    One row per (workspace, month, event type). A new month starts a new row;
    rows are never deleted.
    """

    __tablename__ = "usage_counters"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    year_month: Mapped[str] = mapped_column(String(6), primary_key=True)  # YYYYMM
    event_type: Mapped[str] = mapped_column(String(100), primary_key=True)

    total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (CheckConstraint("total >= 0", name="ck_usage_counter_total_non_negative"),)


class TokenSettings(Base):
    """
    ORM model for token_settings table.

    Per-workspace monthly budget cap and alert threshold.
    """

    __tablename__ = "token_settings"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    monthly_cap: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    alert_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=80)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "alert_threshold BETWEEN 1 AND 100", name="ck_token_settings_alert_threshold"
        ),
    )
