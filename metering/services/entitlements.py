"""
Entitlement lookup - feature gates and budget caps per workspace.

Entitlements are owned by the plan/membership system; the metering core only
consumes them through the EntitlementProvider protocol.
"""

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from metering.config import settings
from metering.services.token_settings import TokenSettingsStore


class EntitlementProvider(Protocol):
    """Read-only entitlement lookups."""

    async def get_feature_allowed(self, workspace_id: str, feature_key: str) -> bool:
        """Whether the workspace may use a feature."""
        ...

    async def get_budget_cap(self, workspace_id: str, cap_key: str) -> int | None:
        """Configured cap for `cap_key`, or None when absent (uncapped)."""
        ...


class TokenSettingsEntitlements:
    """
    Default entitlement provider.

    Denies features listed in LOCKED_FEATURES and reads the monthly token cap
    from the workspace's token_settings row.
    """

    def __init__(
        self,
        session: AsyncSession,
        locked_features: frozenset[str] | None = None,
    ) -> None:
        self.store = TokenSettingsStore(session)
        self.locked_features = (
            locked_features if locked_features is not None else settings.locked_feature_keys
        )

    async def get_feature_allowed(self, workspace_id: str, feature_key: str) -> bool:
        return feature_key not in self.locked_features

    async def get_budget_cap(self, workspace_id: str, cap_key: str) -> int | None:
        if cap_key != settings.budget_cap_key:
            return None
        token_settings = await self.store.get(workspace_id)
        return token_settings.monthly_cap


class StaticEntitlements:
    """Fixed entitlements, for wiring tests and local tooling."""

    def __init__(
        self,
        caps: dict[str, int] | None = None,
        locked_features: frozenset[str] = frozenset(),
    ) -> None:
        self.caps = caps or {}
        self.locked_features = locked_features

    async def get_feature_allowed(self, workspace_id: str, feature_key: str) -> bool:
        return feature_key not in self.locked_features

    async def get_budget_cap(self, workspace_id: str, cap_key: str) -> int | None:
        cap = self.caps.get(cap_key)
        if cap is None or cap <= 0:
            return None
        return cap
