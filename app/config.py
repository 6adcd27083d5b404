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
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Service
    service_name: str = "identity-core"
    service_version: str = "0.1.0"

    # Token lifetimes
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_seconds: int = 60 * 60 * 24 * 30
    email_verification_token_ttl_seconds: int = 60 * 60 * 24
    password_reset_token_ttl_seconds: int = 60 * 60

    # Secret used to key refresh/reset/verification token hashes (HMAC-SHA256)
    token_hash_secret: str = ""

    # Access token signing (RS256 by default)
    jwt_issuer: str = "identity-core"
    jwt_audience: str = "identity-core-clients"
    jwt_algorithm: str = "RS256"
    jwt_private_key_pem: str = ""
    jwt_key_id: str = "identity-core-1"

    # Password policy
    password_min_length: int = 8

    # Account lifecycle
    account_deletion_grace_period_days: int = 30
    blocked_last_admin_retry_hours: int = 24

    # Serializable transaction retries
    tx_max_attempts: int = 3

    # Apply pending Alembic migrations when the worker starts
    run_migrations_on_startup: bool = True

    # Keep identity state in process instead of PostgreSQL (local development)
    use_memory_store: bool = False

    # OIDC - Google
    GOOGLE_CLIENT_ID: str = ""  # Google OAuth client ID (web client)
    GOOGLE_CLIENT_IDS: str = ""  # Comma-separated list of valid client IDs (web + Android + iOS)

    @property
    def valid_google_client_ids(self) -> list[str]:
        """Accepted ID token audiences, primary client first, without duplicates."""
        candidates = [self.GOOGLE_CLIENT_ID, *self.GOOGLE_CLIENT_IDS.split(",")]
        return list(dict.fromkeys(c.strip() for c in candidates if c.strip()))

    # Redis - login rate limiter + job queue
    redis_url: str = "redis://localhost:6379/0"

    # Login rate limiting (failures per email+ip per window)
    login_rate_limit_max_failures: int = 10
    login_rate_limit_window_seconds: int = 15 * 60

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True
    metrics_port: int = 9090

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The service MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if self.use_memory_store:
            pass  # DATABASE_URL unused
        elif not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if len(self.token_hash_secret) < 32:
            errors.append("TOKEN_HASH_SECRET must be at least 32 characters")

        if self.access_token_ttl_seconds <= 0:
            errors.append("ACCESS_TOKEN_TTL_SECONDS must be positive")
        if self.refresh_token_ttl_seconds <= 0:
            errors.append("REFRESH_TOKEN_TTL_SECONDS must be positive")
        if self.tx_max_attempts < 1:
            errors.append("TX_MAX_ATTEMPTS must be at least 1")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - SERVICE CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
