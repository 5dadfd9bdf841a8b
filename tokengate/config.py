"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SettingsError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Local persistent store (device-local key-value table)
    database_url: str = "sqlite+aiosqlite:///./tokengate.db"
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "TokenGate API"
    api_version: str = "0.1.0"
    api_description: str = "AI provider credential management and shared quota gating"

    # Remote token registry (Firebase Realtime Database REST dialect)
    remote_registry_url: str = ""  # Empty = offline mode, remote calls fail softly
    remote_registry_auth: str = ""  # Database secret or ID token appended as ?auth=
    remote_timeout_seconds: float = 5.0

    # Quota ledger
    quota_timezone: str = "UTC"  # Calendar day boundary for daily counters

    # Shared credential administration
    admin_emails: str = ""  # Comma-separated allow-list of administrator e-mails

    @property
    def admin_email_list(self) -> list[str]:
        """Get the administrator allow-list, lower-cased and de-duplicated."""
        emails: list[str] = []
        for email in self.admin_emails.split(","):
            email = email.strip().lower()
            if email and email not in emails:
                emails.append(email)
        return emails

    # Identity - HS256 bearer tokens issued by the identity service
    auth_jwt_secret: str = ""

    # Per-provider quota overrides (None = use built-in policy)
    github_daily_request_limit: int | None = None
    github_daily_token_limit: int | None = None
    openai_daily_request_limit: int | None = None
    openai_daily_token_limit: int | None = None
    gemini_daily_request_limit: int | None = None
    gemini_daily_token_limit: int | None = None

    # Completion providers
    gemini_api_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-1.5-flash"
    openai_api_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-3.5-turbo"
    github_models_api_url: str = "https://models.inference.ai.azure.com"
    github_models_model: str = "gpt-4o-mini"
    provider_timeout_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "tokengate-api"

    model_config = SettingsConfigDict(
        env_prefix="TOKENGATE_",
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
            errors.append("TOKENGATE_DATABASE_URL is required but empty")
        elif not self.database_url.startswith(("sqlite", "postgresql", "postgres")):
            errors.append(
                f"TOKENGATE_DATABASE_URL must be SQLite or PostgreSQL, got: {self.database_url[:20]}..."
            )

        if self.remote_timeout_seconds <= 0:
            errors.append("TOKENGATE_REMOTE_TIMEOUT_SECONDS must be positive")

        if self.quota_timezone.upper() != "UTC":
            try:
                ZoneInfo(self.quota_timezone)
            except (ZoneInfoNotFoundError, ValueError):
                errors.append(f"TOKENGATE_QUOTA_TIMEZONE is not a known zone: {self.quota_timezone}")

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
            raise SettingsError(error_msg)

        return self

    @property
    def is_sqlite(self) -> bool:
        """True when the local store is backed by SQLite."""
        return self.database_url.startswith("sqlite")


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
