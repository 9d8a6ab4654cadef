"""
Token Settings Store - Per-workspace monthly cap and alert threshold.
"""

import math
from collections.abc import Callable
from datetime import UTC, datetime
from typing import NoReturn

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.config import settings
from metering.db.models import TokenSettings
from metering.db.statements import upsert_insert
from metering.exceptions import StorageFailureError
from metering.models.domain import BudgetSettingsData
from metering.observability.metrics import metrics

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def normalize_cap(value: int | float | None) -> int | None:
    """Normalize a configured cap; missing, non-finite or non-positive means uncapped."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value <= 0:
        return None
    return int(value)


def normalize_alert_threshold(value: int | None) -> int:
    """Clamp an alert threshold percentage to 1..100."""
    if value is None:
        return settings.default_alert_threshold
    return max(1, min(100, int(value)))


class TokenSettingsStore:
    """
    Reads and upserts token_settings rows.

    Database errors roll back and surface as StorageFailureError.
    """

    def __init__(self, session: AsyncSession, clock: Clock | None = None) -> None:
        self.session = session
        self.clock = clock or _utc_now

    async def get(self, workspace_id: str) -> BudgetSettingsData:
        """Get budget settings, falling back to defaults when no row exists."""
        stmt = select(
            TokenSettings.monthly_cap,
            TokenSettings.alert_threshold,
            TokenSettings.updated_at,
        ).where(TokenSettings.workspace_id == workspace_id)
        try:
            row = (await self.session.execute(stmt)).one_or_none()
        except SQLAlchemyError as exc:
            await self._storage_failure("get", workspace_id, exc)

        if row is None:
            return BudgetSettingsData(
                workspace_id=workspace_id,
                monthly_cap=None,
                alert_threshold=settings.default_alert_threshold,
            )

        return BudgetSettingsData(
            workspace_id=workspace_id,
            monthly_cap=normalize_cap(row.monthly_cap),
            alert_threshold=normalize_alert_threshold(row.alert_threshold),
            updated_at=row.updated_at,
        )

    async def upsert(
        self,
        workspace_id: str,
        monthly_cap: int | None,
        alert_threshold: int | None = None,
    ) -> BudgetSettingsData:
        """Create or replace a workspace's budget settings and commit."""
        cap = normalize_cap(monthly_cap)
        threshold = normalize_alert_threshold(alert_threshold)
        now = self.clock()

        insert_stmt = upsert_insert(self.session, TokenSettings).values(
            workspace_id=workspace_id,
            monthly_cap=cap,
            alert_threshold=threshold,
            created_at=now,
            updated_at=now,
        )
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=["workspace_id"],
            set_={
                "monthly_cap": insert_stmt.excluded.monthly_cap,
                "alert_threshold": insert_stmt.excluded.alert_threshold,
                "updated_at": insert_stmt.excluded.updated_at,
            },
        )
        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self._storage_failure("upsert", workspace_id, exc)

        logger.info(
            "token_settings_updated",
            workspace_id=workspace_id,
            monthly_cap=cap,
            alert_threshold=threshold,
        )

        return BudgetSettingsData(
            workspace_id=workspace_id,
            monthly_cap=cap,
            alert_threshold=threshold,
            updated_at=now,
        )

    async def _storage_failure(
        self, operation: str, workspace_id: str, exc: SQLAlchemyError
    ) -> NoReturn:
        """Roll back, log and raise StorageFailureError."""
        await self.session.rollback()
        metrics.record_error(type(exc).__name__, f"token_settings_{operation}")
        logger.error(
            "token_settings_storage_failure",
            operation=operation,
            workspace_id=workspace_id,
            error=str(exc),
            exc_info=True,
        )
        raise StorageFailureError(f"token settings {operation} failed for {workspace_id}") from exc
