"""
Application Configuration - Pydantic Settings for type-safe config.

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
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Appraisal API"
    api_version: str = "0.1.0"
    api_description: str = "Photo-based collectible valuation service"

    # Identity - bearer JWTs issued by the auth provider (HS256)
    auth_jwt_secret: str = ""
    auth_jwt_audience: str = "authenticated"

    # Operator endpoints (credit grants, expert review, manual sweep)
    admin_api_key: str = ""

    # Analysis provider (Anthropic Messages API)
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    anthropic_max_tokens: int = 4096
    analysis_timeout_seconds: float = 60.0
    analysis_max_retries: int = 2  # Retries on top of the first attempt
    analysis_retry_backoff_seconds: float = 1.0

    # Blob storage (Supabase Storage REST)
    supabase_url: str = ""
    supabase_service_key: str = ""
    storage_bucket: str = "appraisal-images"
    storage_timeout_seconds: float = 30.0

    # Valuation requests
    anonymous_valuations_enabled: bool = False
    max_images_per_request: int = 5
    max_image_bytes: int = 10 * 1024 * 1024
    max_description_length: int = 5000

    # Stale request sweeper
    analyzing_timeout_minutes: int = 15
    sweep_interval_seconds: int = 60
    sweeper_enabled: bool = True
    refund_on_sweep: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "appraisal-api"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if the database, the analysis provider or the
        image storage credentials are missing; requests would otherwise fail
        one at a time.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.anthropic_api_key:
            errors.append("ANTHROPIC_API_KEY is required but empty or missing")

        if not self.supabase_url:
            errors.append("SUPABASE_URL is required but empty or missing")
        if not self.supabase_service_key:
            errors.append("SUPABASE_SERVICE_KEY is required but empty or missing")

        if self.max_images_per_request < 0:
            errors.append("MAX_IMAGES_PER_REQUEST must not be negative")

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


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
