"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from decimal import Decimal

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
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Consensus Audit API"
    api_version: str = "0.1.0"
    api_description: str = "Multi-model council audits metered against prepaid credits"

    # Unexpected failures are reported with this status and an {error} body
    unexpected_error_status: int = 200

    # User Authentication - HS256 JWT issued by the identity provider
    auth_jwt_secret: str = ""
    auth_jwt_audience: str = "authenticated"
    auth_jwt_algorithm: str = "HS256"

    # LLM Gateway (OpenAI-compatible chat completions)
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_api_key: str = ""
    llm_timeout_seconds: float = 120.0
    vision_model: str = "google/gemini-2.5-flash"

    # Default council (used when the request carries no council config)
    default_drafter_models: str = "meta-llama/llama-3.3-70b-instruct,anthropic/claude-3.5-sonnet"
    default_auditor_model: str = "deepseek/deepseek-r1"
    turbo_max_drafters: int = 2

    # Pricing - per-token fallbacks for models missing from the price table
    default_input_price: Decimal = Decimal("0.000003")
    default_output_price: Decimal = Decimal("0.000015")

    # Content Moderation
    moderation_url: str = "https://api.openai.com/v1/moderations"
    moderation_api_key: str = ""
    moderation_model: str = "omni-moderation-latest"
    moderation_timeout_seconds: float = 10.0
    moderation_fail_open: bool = True

    # Transactional Email (Resend HTTP API)
    email_api_url: str = "https://api.resend.com/emails"
    email_api_key: str = ""
    email_from: str = "Consensus AI <notifications@consensus.ai>"

    # Payment Provider - Stripe (auto-recharge checkout sessions)
    stripe_api_key: str = ""
    app_base_url: str = "http://localhost:3000"

    # Background task outbox
    outbox_worker_enabled: bool = True
    outbox_poll_interval_seconds: float = 15.0
    outbox_max_attempts: int = 5
    outbox_batch_size: int = 20
    outbox_backoff_base_seconds: float = 30.0
    outbox_backoff_max_seconds: float = 3600.0
    outbox_processing_lease_seconds: int = 600

    # Training data capture
    training_capture_enabled: bool = True
    training_capture_max_chars: int = 20000

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    log_text_max_chars: int = 200

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    environment: str = "production"
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "consensus-audit-api"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.auth_jwt_secret:
            errors.append("AUTH_JWT_SECRET is required to verify bearer credentials")

        if self.outbox_max_attempts < 1:
            errors.append("OUTBOX_MAX_ATTEMPTS must be at least 1")

        if self.outbox_backoff_max_seconds < self.outbox_backoff_base_seconds:
            errors.append("OUTBOX_BACKOFF_MAX_SECONDS must not be below OUTBOX_BACKOFF_BASE_SECONDS")

        if not 200 <= self.unexpected_error_status <= 599:
            errors.append(
                f"UNEXPECTED_ERROR_STATUS must be an HTTP status, got: {self.unexpected_error_status}"
            )

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
    def drafter_model_ids(self) -> list[str]:
        """Get the default drafter model IDs from the comma-separated setting."""
        ids = []
        for model_id in self.default_drafter_models.split(","):
            model_id = model_id.strip()
            if model_id and model_id not in ids:
                ids.append(model_id)
        return ids


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
