"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from metering.models.api import (
    LedgerEntryType,
    NotificationStatus,
    PaymentIntentKind,
    PaymentIntentStatus,
    RejectReason,
    SettlementOutcome,
    UsageStatus,
)

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class WorkspaceContext:
    """Authenticated (workspace, user) pair supplied by the upstream gateway."""

    workspace_id: str
    user_id: str

    def __post_init__(self) -> None:
        if not self.workspace_id:
            raise ValueError("workspace_id cannot be empty")
        if not self.user_id:
            raise ValueError("user_id cannot be empty")


@dataclass(frozen=True)
class TokenRate:
    """Token cost of one metered action."""

    action: str
    tokens: int
    description: str
    feature_key: str

    def __post_init__(self) -> None:
        """Validate rate configuration."""
        if not self.action:
            raise ValueError("action cannot be empty")
        if self.tokens <= 0:
            raise ValueError(f"Token cost must be positive: {self.tokens}")
        if not self.feature_key:
            raise ValueError("feature_key cannot be empty")


@dataclass(frozen=True)
class TopupPackage:
    """Purchasable token bundle."""

    key: str
    tokens: int
    amount_minor: int
    label: str

    def __post_init__(self) -> None:
        """Validate package configuration."""
        if not self.key:
            raise ValueError("Package key required")
        if self.tokens <= 0:
            raise ValueError(f"Tokens must be positive: {self.tokens}")
        if self.amount_minor <= 0:
            raise ValueError(f"Amount must be positive: {self.amount_minor}")


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a fixed-window rate limit check."""

    ok: bool
    reset_at: datetime
    count: int
    limit: int


# ============================================================================
# Wallet Ledger
# ============================================================================


@dataclass(frozen=True)
class DebitIntent:
    """Domain model for a debit before persistence - immutable intent."""

    workspace_id: str
    amount: int
    reason: str
    created_by: str
    feature_key: str | None = None
    ref_type: str | None = None
    ref_id: str | None = None
    note: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate debit constraints."""
        if not self.workspace_id:
            raise ValueError("workspace_id cannot be empty")
        if self.amount <= 0:
            raise ValueError(f"Debit amount must be positive: {self.amount}")
        if not self.reason:
            raise ValueError("Reason cannot be empty")


@dataclass(frozen=True)
class CreditIntent:
    """Domain model for a credit before persistence - immutable intent."""

    workspace_id: str
    amount: int
    reason: str
    created_by: str = SYSTEM_ACTOR
    entry_type: LedgerEntryType = LedgerEntryType.TOPUP
    ref_type: str | None = None
    ref_id: str | None = None
    note: str | None = None

    def __post_init__(self) -> None:
        """Validate credit constraints."""
        if not self.workspace_id:
            raise ValueError("workspace_id cannot be empty")
        if self.amount <= 0:
            raise ValueError(f"Credit amount must be positive: {self.amount}")
        if not self.reason:
            raise ValueError("Reason cannot be empty")


@dataclass(frozen=True)
class WalletData:
    """Immutable wallet snapshot."""

    workspace_id: str
    balance: int
    lifetime_credits: int
    lifetime_debits: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger entry after persistence."""

    id: int
    workspace_id: str
    delta: int
    balance_after: int
    entry_type: LedgerEntryType
    reason: str
    created_by: str
    created_at: datetime
    feature_key: str | None = None
    ref_type: str | None = None
    ref_id: str | None = None
    note: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerPage:
    """One page of ledger entries, most recent first."""

    entries: tuple[LedgerEntryData, ...]
    page: int
    page_size: int
    total: int

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


@dataclass(frozen=True)
class BalanceChange:
    """Result of a successful debit or credit."""

    workspace_id: str
    new_balance: int
    entry: LedgerEntryData


# ============================================================================
# Usage & Budget
# ============================================================================


@dataclass(frozen=True)
class UsageCounterData:
    """Monthly usage counter snapshot."""

    workspace_id: str
    year_month: str
    event_type: str
    total: int
    updated_at: datetime


@dataclass(frozen=True)
class BudgetSettingsData:
    """Workspace budget configuration."""

    workspace_id: str
    monthly_cap: int | None
    alert_threshold: int
    updated_at: datetime | None = None


@dataclass(frozen=True)
class BudgetDecision:
    """Outcome of a budget pre-check."""

    allowed: bool
    attempted_cost: int
    balance: int
    used: int
    cap: int | None = None
    reason: RejectReason | None = None


@dataclass(frozen=True)
class UsageOverview:
    """Balance and month-to-date consumption against the cap."""

    workspace_id: str
    year_month: str
    balance: int
    used: int
    cap: int | None
    percent_used: float
    alert_threshold: int
    status: UsageStatus
    counters: tuple[UsageCounterData, ...]


# ============================================================================
# Metered Actions
# ============================================================================


@dataclass(frozen=True)
class MeteredActionRequest:
    """Inbound metered action from an authenticated workspace member."""

    workspace_id: str
    user_id: str
    action: str
    ref_type: str | None = None
    ref_id: str | None = None
    note: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.workspace_id:
            raise ValueError("workspace_id cannot be empty")
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if not self.action:
            raise ValueError("action cannot be empty")


@dataclass(frozen=True)
class MeteredActionResult:
    """Outcome of a metered action; rejections carry display context."""

    allowed: bool
    action: str
    cost: int = 0
    balance: int | None = None
    reason: RejectReason | None = None
    cap: int | None = None
    used: int | None = None
    reset_at: datetime | None = None
    ledger_entry_id: int | None = None


# ============================================================================
# Payments & Settlement
# ============================================================================


@dataclass(frozen=True)
class PaymentIntentData:
    """Immutable payment intent snapshot."""

    id: UUID
    workspace_id: str
    kind: PaymentIntentKind
    amount: int
    status: PaymentIntentStatus
    provider: str
    provider_ref: str | None
    meta: dict[str, Any]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class PaymentNotification:
    """Verified provider notification to settle."""

    provider: str
    provider_event_id: str
    status: NotificationStatus = NotificationStatus.PAID
    payment_intent_id: UUID | None = None
    provider_ref: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.provider:
            raise ValueError("provider cannot be empty")
        if not self.provider_event_id:
            raise ValueError("provider_event_id cannot be empty")
        if self.payment_intent_id is None and not self.provider_ref:
            raise ValueError("payment_intent_id or provider_ref is required")


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of applying a payment notification."""

    status: SettlementOutcome
    tokens_credited: int = 0
    payment_intent_id: UUID | None = None
    intent_status: PaymentIntentStatus | None = None
    new_balance: int | None = None
