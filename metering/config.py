"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Workspace Metering API"
    api_version: str = "0.1.0"
    api_description: str = "Token metering and payment settlement for workspaces"

    # Shared secret presented by the upstream gateway (X-API-Key)
    api_key: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "workspace-metering-api"

    # Rate limiting (fixed window, per workspace:user:action)
    rate_limit_window_ms: int = 60_000
    rate_limit_max: int = 30

    # Budget enforcement
    budget_cap_key: str = "tokens_monthly"
    budget_counter_event: str = "tokens"
    default_alert_threshold: int = 80
    locked_features: str = ""  # Comma-separated feature keys denied to every workspace

    # Ledger pagination
    ledger_page_size: int = 20
    ledger_max_page_size: int = 200

    # Payment intents
    payment_intent_ttl_hours: int = 24

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def locked_feature_keys(self) -> frozenset[str]:
        """Get the set of feature keys denied by configuration."""
        return frozenset(key.strip() for key in self.locked_features.split(",") if key.strip())

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.rate_limit_window_ms <= 0:
            errors.append("RATE_LIMIT_WINDOW_MS must be positive")
        if self.rate_limit_max <= 0:
            errors.append("RATE_LIMIT_MAX must be positive")
        if not 1 <= self.ledger_page_size <= self.ledger_max_page_size:
            errors.append("LEDGER_PAGE_SIZE must be between 1 and LEDGER_MAX_PAGE_SIZE")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
