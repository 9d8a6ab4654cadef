"""
API Routes - FastAPI endpoints for metering and payment settlement.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import math
from datetime import UTC, datetime, timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from metering.api.dependencies import (
    get_workspace_context,
    require_workspace_access,
    verify_gateway_key,
)
from metering.db.session import get_read_db, get_write_db
from metering.exceptions import (
    PaymentIntentNotFoundError,
    ProviderRefConflictError,
    StorageFailureError,
    UnknownTopupPackageError,
)
from metering.models.api import (
    BudgetSettingsRequest,
    BudgetSettingsResponse,
    ConsumeRequest,
    ConsumeResponse,
    CreateTopupRequest,
    ExpireIntentsRequest,
    ExpireIntentsResponse,
    HealthResponse,
    LedgerEntryItem,
    LedgerPageResponse,
    PaymentIntentResponse,
    PaymentNotificationRequest,
    RejectReason,
    SettlementResponse,
    UsageCounterItem,
    UsageOverviewResponse,
    WalletResponse,
)
from metering.models.domain import (
    BudgetSettingsData,
    MeteredActionRequest,
    PaymentIntentData,
    PaymentNotification,
    WorkspaceContext,
)
from metering.services.budget import BudgetGuard
from metering.services.metering import MeteringService
from metering.services.payment_intents import PaymentIntentService
from metering.services.rate_limiter import RateLimiter, rate_limiter
from metering.services.settlement import SettlementEngine
from metering.services.token_settings import TokenSettingsStore
from metering.services.wallet import WalletLedger

router = APIRouter()

_REJECTION_STATUS: dict[RejectReason, int] = {
    RejectReason.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    RejectReason.FEATURE_LOCKED: status.HTTP_403_FORBIDDEN,
    RejectReason.CAP_EXCEEDED: status.HTTP_402_PAYMENT_REQUIRED,
    RejectReason.INSUFFICIENT_BALANCE: status.HTTP_402_PAYMENT_REQUIRED,
    RejectReason.UNKNOWN_ACTION: status.HTTP_400_BAD_REQUEST,
}


def get_rate_limiter() -> RateLimiter:
    """FastAPI dependency returning the process-wide rate limiter."""
    return rate_limiter


def _storage_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Storage temporarily unavailable, retry later",
    )


def _retry_after_seconds(reset_at: datetime) -> int:
    """Whole seconds until a rate window resets (at least 1)."""
    remaining = (reset_at - datetime.now(UTC)).total_seconds()
    return max(1, math.ceil(remaining))


def _intent_response(intent: PaymentIntentData) -> PaymentIntentResponse:
    return PaymentIntentResponse(
        id=intent.id,
        workspace_id=intent.workspace_id,
        kind=intent.kind,
        amount=intent.amount,
        status=intent.status,
        provider=intent.provider,
        provider_ref=intent.provider_ref,
        meta=intent.meta,
        created_at=intent.created_at,
        updated_at=intent.updated_at,
    )


def _budget_response(data: BudgetSettingsData) -> BudgetSettingsResponse:
    return BudgetSettingsResponse(
        workspace_id=data.workspace_id,
        monthly_cap=data.monthly_cap,
        alert_threshold=data.alert_threshold,
        updated_at=data.updated_at,
    )


# =============================================================================
# Metering
# =============================================================================


@router.post("/v1/metering/consume", response_model=ConsumeResponse)
async def consume(
    request: ConsumeRequest,
    context: WorkspaceContext = Depends(get_workspace_context),
    limiter: RateLimiter = Depends(get_rate_limiter),
    db: AsyncSession = Depends(get_write_db),
) -> ConsumeResponse | JSONResponse:
    """
    Charge one metered action against the caller's workspace wallet.

    200 when charged. Rejections carry the same body with a reason:
    429 rate_limited (Retry-After), 403 feature_locked, 402 cap_exceeded or
    insufficient_balance, 400 unknown_action.
    """
    service = MeteringService(db, limiter=limiter)

    try:
        result = await service.consume(
            MeteredActionRequest(
                workspace_id=context.workspace_id,
                user_id=context.user_id,
                action=request.action,
                ref_type=request.ref_type,
                ref_id=request.ref_id,
                note=request.note,
                metadata=request.metadata,
            )
        )
    except StorageFailureError as exc:
        raise _storage_unavailable() from exc

    response = ConsumeResponse(
        allowed=result.allowed,
        action=result.action,
        cost=result.cost,
        balance=result.balance,
        reason=result.reason,
        cap=result.cap,
        used=result.used,
        reset_at=result.reset_at,
        ledger_entry_id=result.ledger_entry_id,
    )
    if result.allowed or result.reason is None:
        return response

    headers: dict[str, str] = {}
    if result.reason is RejectReason.RATE_LIMITED and result.reset_at is not None:
        headers["Retry-After"] = str(_retry_after_seconds(result.reset_at))

    return JSONResponse(
        status_code=_REJECTION_STATUS[result.reason],
        content=response.model_dump(mode="json"),
        headers=headers,
    )


# =============================================================================
# Wallet & Ledger
# =============================================================================


@router.get("/v1/workspaces/{workspace_id}/wallet", response_model=WalletResponse)
async def get_wallet(
    workspace_id: str,
    _: WorkspaceContext = Depends(require_workspace_access),
    db: AsyncSession = Depends(get_write_db),
) -> WalletResponse:
    """
    Get the workspace wallet.

    Write database: the wallet is created with a zero balance on first access.
    """
    try:
        wallet = await WalletLedger(db).get_wallet(workspace_id)
    except StorageFailureError as exc:
        raise _storage_unavailable() from exc

    return WalletResponse(
        workspace_id=wallet.workspace_id,
        balance=wallet.balance,
        lifetime_credits=wallet.lifetime_credits,
        lifetime_debits=wallet.lifetime_debits,
        updated_at=wallet.updated_at,
    )


@router.get("/v1/workspaces/{workspace_id}/ledger", response_model=LedgerPageResponse)
async def get_ledger(
    workspace_id: str,
    page: int = Query(1, description="1-based page number"),
    page_size: int | None = Query(None, description="Entries per page (clamped)"),
    _: WorkspaceContext = Depends(require_workspace_access),
    db: AsyncSession = Depends(get_read_db),
) -> LedgerPageResponse:
    """Get ledger entries, most recent first."""
    try:
        ledger_page = await WalletLedger(db).get_ledger(
            workspace_id, page=page, page_size=page_size
        )
    except StorageFailureError as exc:
        raise _storage_unavailable() from exc

    return LedgerPageResponse(
        entries=[
            LedgerEntryItem(
                id=entry.id,
                workspace_id=entry.workspace_id,
                delta=entry.delta,
                balance_after=entry.balance_after,
                entry_type=entry.entry_type,
                reason=entry.reason,
                feature_key=entry.feature_key,
                ref_type=entry.ref_type,
                ref_id=entry.ref_id,
                note=entry.note,
                metadata=entry.meta,
                created_by=entry.created_by,
                created_at=entry.created_at,
            )
            for entry in ledger_page.entries
        ],
        page=ledger_page.page,
        page_size=ledger_page.page_size,
        total=ledger_page.total,
        has_more=ledger_page.has_more,
    )


# =============================================================================
# Usage & Budget
# =============================================================================


@router.get("/v1/workspaces/{workspace_id}/usage", response_model=UsageOverviewResponse)
async def get_usage(
    workspace_id: str,
    _: WorkspaceContext = Depends(require_workspace_access),
    db: AsyncSession = Depends(get_read_db),
) -> UsageOverviewResponse:
    """Month-to-date consumption against the budget cap."""
    try:
        overview = await BudgetGuard(db).usage_overview(workspace_id)
    except StorageFailureError as exc:
        raise _storage_unavailable() from exc

    return UsageOverviewResponse(
        workspace_id=overview.workspace_id,
        year_month=overview.year_month,
        balance=overview.balance,
        used=overview.used,
        cap=overview.cap,
        percent_used=overview.percent_used,
        alert_threshold=overview.alert_threshold,
        status=overview.status,
        counters=[
            UsageCounterItem(event_type=counter.event_type, total=counter.total)
            for counter in overview.counters
        ],
    )


@router.get("/v1/workspaces/{workspace_id}/budget", response_model=BudgetSettingsResponse)
async def get_budget(
    workspace_id: str,
    _: WorkspaceContext = Depends(require_workspace_access),
    db: AsyncSession = Depends(get_read_db),
) -> BudgetSettingsResponse:
    """Get the workspace's monthly cap and alert threshold."""
    try:
        data = await TokenSettingsStore(db).get(workspace_id)
    except StorageFailureError as exc:
        raise _storage_unavailable() from exc

    return _budget_response(data)


@router.put("/v1/workspaces/{workspace_id}/budget", response_model=BudgetSettingsResponse)
async def update_budget(
    workspace_id: str,
    request: BudgetSettingsRequest,
    _: WorkspaceContext = Depends(require_workspace_access),
    db: AsyncSession = Depends(get_write_db),
) -> BudgetSettingsResponse:
    """Set the workspace's monthly cap (null or <= 0 removes it)."""
    try:
        data = await TokenSettingsStore(db).upsert(
            workspace_id,
            monthly_cap=request.monthly_cap,
            alert_threshold=request.alert_threshold,
        )
    except StorageFailureError as exc:
        raise _storage_unavailable() from exc

    return _budget_response(data)


# =============================================================================
# Payments
# =============================================================================


@router.post(
    "/v1/payments/topups",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_topup(
    request: CreateTopupRequest,
    context: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_write_db),
) -> PaymentIntentResponse:
    """Create a pending top-up payment intent for a catalog package."""
    try:
        intent = await PaymentIntentService(db).create_topup(
            workspace_id=context.workspace_id,
            package_key=request.package_key,
            provider=request.provider,
            provider_ref=request.provider_ref,
            created_by=context.user_id,
        )
    except UnknownTopupPackageError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown top-up package: {exc.package_key}",
        ) from exc
    except ProviderRefConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Provider reference already in use: {exc.provider_ref}",
        ) from exc
    except StorageFailureError as exc:
        raise _storage_unavailable() from exc

    return _intent_response(intent)


@router.get("/v1/payments/intents/{intent_id}", response_model=PaymentIntentResponse)
async def get_payment_intent(
    intent_id: UUID,
    context: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_read_db),
) -> PaymentIntentResponse:
    """Get a payment intent owned by the caller's workspace."""
    try:
        intent = await PaymentIntentService(db).get_intent(intent_id)
    except PaymentIntentNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment intent not found",
        ) from exc
    except StorageFailureError as exc:
        raise _storage_unavailable() from exc

    if intent.workspace_id != context.workspace_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment intent not found",
        )

    return _intent_response(intent)


@router.post("/v1/payments/notifications", response_model=SettlementResponse)
async def settle_notification(
    request: PaymentNotificationRequest,
    _: None = Depends(verify_gateway_key),
    db: AsyncSession = Depends(get_write_db),
) -> SettlementResponse:
    """
    Settle a provider notification (signature already verified upstream).

    Always 200 unless storage fails: duplicates and conflicts are absorbed and
    reported in `status` so providers stop redelivering.
    """
    notification = PaymentNotification(
        provider=request.provider,
        provider_event_id=request.provider_event_id,
        status=request.status,
        payment_intent_id=request.payment_intent_id,
        provider_ref=request.provider_ref,
        payload=request.meta,
    )

    try:
        result = await SettlementEngine(db).settle(notification)
    except StorageFailureError as exc:
        raise _storage_unavailable() from exc

    return SettlementResponse(
        status=result.status,
        tokens_credited=result.tokens_credited,
        payment_intent_id=result.payment_intent_id,
        intent_status=result.intent_status,
    )


@router.post("/v1/payments/intents/expire", response_model=ExpireIntentsResponse)
async def expire_payment_intents(
    request: ExpireIntentsRequest | None = None,
    _: None = Depends(verify_gateway_key),
    db: AsyncSession = Depends(get_write_db),
) -> ExpireIntentsResponse:
    """Expire pending intents older than the TTL (or `older_than_hours`)."""
    older_than = (
        timedelta(hours=request.older_than_hours)
        if request and request.older_than_hours
        else None
    )
    try:
        expired = await PaymentIntentService(db).expire_stale(older_than)
    except StorageFailureError as exc:
        raise _storage_unavailable() from exc

    return ExpireIntentsResponse(expired_count=expired)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
