"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from datetime import datetime
from uuid import UUID


class MeteringError(Exception):
    """Base exception for all metering and settlement errors."""

    pass


class RateLimitedError(MeteringError):
    """Raised when a key exceeded its quota inside the current window."""

    def __init__(self, key: str, reset_at: datetime) -> None:
        self.key = key
        self.reset_at = reset_at
        super().__init__(f"Rate limited: {key} (resets at {reset_at.isoformat()})")


class FeatureLockedError(MeteringError):
    """Raised when the workspace entitlement denies a feature."""

    def __init__(self, workspace_id: str, feature_key: str) -> None:
        self.workspace_id = workspace_id
        self.feature_key = feature_key
        super().__init__(f"Feature {feature_key} is locked for workspace {workspace_id}")


class BudgetExceededError(MeteringError):
    """Raised when a charge would push monthly usage past the cap."""

    def __init__(self, cap: int, used: int, attempted: int) -> None:
        self.cap = cap
        self.used = used
        self.attempted = attempted
        super().__init__(f"Budget exceeded. Cap: {cap}, Used: {used}, Attempted: {attempted}")


class InsufficientBalanceError(MeteringError):
    """Raised when wallet balance is too low for a debit."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient balance. Balance: {balance}, Required: {required}")


class UnknownActionError(MeteringError):
    """Raised when an action is missing from the rate table."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Unknown metered action: {action}")


class UnknownTopupPackageError(MeteringError):
    """Raised when a top-up package key is not in the catalog."""

    def __init__(self, package_key: str) -> None:
        self.package_key = package_key
        super().__init__(f"Unknown top-up package: {package_key}")


class PaymentIntentNotFoundError(MeteringError):
    """Raised when a payment intent doesn't exist."""

    def __init__(self, reference: UUID | str) -> None:
        self.reference = reference
        super().__init__(f"Payment intent not found: {reference}")


class ProviderRefConflictError(MeteringError):
    """Raised when a provider reference is already attached to another intent."""

    def __init__(self, provider: str, provider_ref: str) -> None:
        self.provider = provider
        self.provider_ref = provider_ref
        super().__init__(f"Provider reference already in use: {provider}:{provider_ref}")


class SettlementConflictError(MeteringError):
    """Raised when a notification contradicts an intent's terminal state."""

    def __init__(self, payment_intent_id: UUID, status: str) -> None:
        self.payment_intent_id = payment_intent_id
        self.status = status
        super().__init__(f"Payment intent {payment_intent_id} already {status}")


class StorageFailureError(MeteringError):
    """Raised when the persistence layer fails; safe to retry."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Storage failure: {message}")
