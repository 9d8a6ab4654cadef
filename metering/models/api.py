"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed. The only free-form
maps are the opaque provider payloads, intent metadata and metered-action
metadata carried through untouched.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class PaymentIntentStatus(str, Enum):
    """Payment intent state machine. Everything except PENDING is terminal."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentIntentStatus.PENDING


class PaymentIntentKind(str, Enum):
    """What a payment intent buys."""

    TOPUP = "topup"
    SUBSCRIPTION = "subscription"


class NotificationStatus(str, Enum):
    """Status carried by an inbound (already verified) provider notification."""

    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"


class LedgerEntryType(str, Enum):
    """Ledger entry classification."""

    SPEND = "spend"
    TOPUP = "topup"
    SUBSCRIPTION = "subscription"
    ADJUSTMENT = "adjustment"


class RejectReason(str, Enum):
    """Why a metered action was refused."""

    RATE_LIMITED = "rate_limited"
    FEATURE_LOCKED = "feature_locked"
    CAP_EXCEEDED = "cap_exceeded"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    UNKNOWN_ACTION = "unknown_action"


class SettlementOutcome(str, Enum):
    """Result of applying a payment notification."""

    SETTLED = "settled"
    DUPLICATE = "duplicate"
    ALREADY_PAID = "already_paid"
    FAILED = "failed"
    EXPIRED = "expired"
    CONFLICT = "conflict"
    REJECTED = "rejected"
    UNKNOWN_INTENT = "unknown_intent"


class UsageStatus(str, Enum):
    """Monthly consumption relative to the budget cap."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


# ============================================================================
# Metering Models
# ============================================================================


class ConsumeRequest(BaseModel):
    """POST /v1/metering/consume request body."""

    action: str = Field(..., min_length=1, max_length=100)
    ref_type: str | None = Field(None, max_length=100)
    ref_id: str | None = Field(None, max_length=255)
    note: str | None = Field(None, max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConsumeResponse(BaseModel):
    """POST /v1/metering/consume response."""

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
# Wallet Models
# ============================================================================


class WalletResponse(BaseModel):
    """GET /v1/workspaces/{workspace_id}/wallet response."""

    workspace_id: str
    balance: int
    lifetime_credits: int
    lifetime_debits: int
    updated_at: datetime


class LedgerEntryItem(BaseModel):
    """Single ledger entry."""

    id: int
    workspace_id: str
    delta: int
    balance_after: int
    entry_type: LedgerEntryType
    reason: str
    feature_key: str | None = None
    ref_type: str | None = None
    ref_id: str | None = None
    note: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str
    created_at: datetime


class LedgerPageResponse(BaseModel):
    """GET /v1/workspaces/{workspace_id}/ledger response."""

    entries: list[LedgerEntryItem]
    page: int
    page_size: int
    total: int
    has_more: bool


# ============================================================================
# Budget & Usage Models
# ============================================================================


class BudgetSettingsRequest(BaseModel):
    """PUT /v1/workspaces/{workspace_id}/budget request body."""

    monthly_cap: int | None = Field(None, description="Monthly token ceiling; null or <=0 = uncapped")
    alert_threshold: int | None = Field(None, ge=1, le=100)


class BudgetSettingsResponse(BaseModel):
    """Budget settings for a workspace."""

    workspace_id: str
    monthly_cap: int | None
    alert_threshold: int
    updated_at: datetime | None = None


class UsageCounterItem(BaseModel):
    """One usage counter row."""

    event_type: str
    total: int


class UsageOverviewResponse(BaseModel):
    """GET /v1/workspaces/{workspace_id}/usage response."""

    workspace_id: str
    year_month: str
    balance: int
    used: int
    cap: int | None
    percent_used: float
    alert_threshold: int
    status: UsageStatus
    counters: list[UsageCounterItem]


# ============================================================================
# Payment Models
# ============================================================================


class CreateTopupRequest(BaseModel):
    """POST /v1/payments/topups request body."""

    package_key: str = Field(..., min_length=1, max_length=50)
    provider: str = Field(..., min_length=1, max_length=50)
    provider_ref: str | None = Field(None, max_length=255)


class PaymentIntentResponse(BaseModel):
    """Payment intent representation."""

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


class PaymentNotificationRequest(BaseModel):
    """POST /v1/payments/notifications request body (already signature-verified)."""

    provider: str = Field(..., min_length=1, max_length=50)
    provider_event_id: str = Field(..., min_length=1, max_length=255)
    payment_intent_id: UUID | None = None
    provider_ref: str | None = Field(None, max_length=255)
    status: NotificationStatus
    meta: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def require_intent_reference(self) -> "PaymentNotificationRequest":
        """A notification must point at an intent, by id or provider reference."""
        if self.payment_intent_id is None and not self.provider_ref:
            raise ValueError("payment_intent_id or provider_ref is required")
        return self


class SettlementResponse(BaseModel):
    """POST /v1/payments/notifications response."""

    status: SettlementOutcome
    tokens_credited: int
    payment_intent_id: UUID | None = None
    intent_status: PaymentIntentStatus | None = None


class ExpireIntentsRequest(BaseModel):
    """POST /v1/payments/intents/expire request body."""

    older_than_hours: int | None = Field(None, gt=0)


class ExpireIntentsResponse(BaseModel):
    """POST /v1/payments/intents/expire response."""

    expired_count: int


# ============================================================================
# Health Check Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
