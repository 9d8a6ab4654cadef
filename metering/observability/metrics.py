"""
Metrics Collection with Prometheus.

Exposes metering and settlement metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from metering.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ENTRY_TYPE = "entry_type"
    ERROR_TYPE = "error_type"
    OUTCOME = "outcome"
    REASON = "reason"


class MeteringMetrics:
    """
    Centralized metrics for the metering API.

    Covers:
    - HTTP requests (rate, duration)
    - Debits and credits (rate, amount, failures)
    - Settlements by outcome
    - Budget and rate limit decisions
    - Errors by type
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "metering_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "metering_http_requests_total",
            "Total HTTP requests",
            [
                MetricLabels.ENDPOINT.value,
                MetricLabels.METHOD.value,
                MetricLabels.STATUS_CODE.value,
            ],
        )

        self.http_request_duration_seconds = Histogram(
            "metering_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "metering_http_requests_in_progress",
            "HTTP requests currently being processed",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
        )

        # ====================================================================
        # Wallet Metrics
        # ====================================================================
        self.debits_total = Counter(
            "metering_debits_total",
            "Total wallet debits attempted",
            ["success", MetricLabels.ERROR_TYPE.value],
        )

        self.debit_amount_tokens = Histogram(
            "metering_debit_amount_tokens",
            "Debit amounts in tokens",
            buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500, 1000),
        )

        self.credits_total = Counter(
            "metering_credits_total",
            "Total wallet credits applied",
            [MetricLabels.ENTRY_TYPE.value],
        )

        self.credit_amount_tokens = Histogram(
            "metering_credit_amount_tokens",
            "Credit amounts in tokens",
            buckets=(1_000, 10_000, 50_000, 100_000, 250_000, 500_000, 1_000_000),
        )

        # ====================================================================
        # Settlement Metrics
        # ====================================================================
        self.settlements_total = Counter(
            "metering_settlements_total",
            "Payment notifications processed by outcome",
            ["provider", MetricLabels.OUTCOME.value],
        )

        # ====================================================================
        # Enforcement Metrics
        # ====================================================================
        self.budget_decisions_total = Counter(
            "metering_budget_decisions_total",
            "Budget checks by result",
            ["allowed", MetricLabels.REASON.value],
        )

        self.rate_limit_decisions_total = Counter(
            "metering_rate_limit_decisions_total",
            "Rate limit checks by result",
            ["allowed"],
        )

        self.consumptions_total = Counter(
            "metering_consumptions_total",
            "Metered actions by result",
            ["action", "allowed", MetricLabels.REASON.value],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "metering_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE.value, MetricLabels.OPERATION.value],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_debit(self, success: bool, amount: int, error_type: str | None = None) -> None:
        """Record a debit attempt."""
        self.debits_total.labels(success=str(success), error_type=error_type or "none").inc()
        if success:
            self.debit_amount_tokens.observe(amount)

    def record_credit(self, entry_type: str, amount: int) -> None:
        """Record an applied credit."""
        self.credits_total.labels(entry_type=entry_type).inc()
        self.credit_amount_tokens.observe(amount)

    def record_settlement(self, provider: str, outcome: str) -> None:
        """Record a processed payment notification."""
        self.settlements_total.labels(provider=provider, outcome=outcome).inc()

    def record_budget_decision(self, allowed: bool, reason: str | None) -> None:
        """Record a budget check."""
        self.budget_decisions_total.labels(allowed=str(allowed), reason=reason or "none").inc()

    def record_rate_limit(self, allowed: bool) -> None:
        """Record a rate limit check."""
        self.rate_limit_decisions_total.labels(allowed=str(allowed)).inc()

    def record_consumption(self, action: str, allowed: bool, reason: str | None) -> None:
        """Record a metered action outcome."""
        self.consumptions_total.labels(
            action=action, allowed=str(allowed), reason=reason or "none"
        ).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = MeteringMetrics()
