"""
Configuration management for the Invoicely billing service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(RuntimeError):
    """Raised at startup when required configuration is missing or unusable."""


def split_csv(value: str) -> list[str]:
    """Split a comma-separated setting, dropping blanks ("*" stays ["*"])."""
    return [item.strip() for item in value.split(",") if item.strip()]


class SupabaseConfig(BaseSettings):
    """Hosted auth backend used to validate end-user bearer tokens."""

    model_config = SettingsConfigDict(
        env_prefix="SUPABASE_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    url: str = Field(default="", description="Base URL of the hosted auth backend")
    service_role_key: str = Field(
        default="",
        description="Service-role credential; also authorizes internal cron endpoints"
    )
    request_timeout_seconds: float = Field(default=10.0, gt=0, le=60)

    @field_validator("url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class DatabaseConfig(BaseSettings):
    """Relational store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    path: str = Field(default="./data/invoicely.db", description="SQLite database file")


class PolarConfig(BaseSettings):
    """
    Polar billing provider configuration.

    Security: the access token and webhook secret are never logged or exposed in errors.
    """

    model_config = SettingsConfigDict(
        env_prefix="POLAR_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    access_token: str = Field(default="", description="Organization access token for the Polar API")
    api_base_url: str = Field(
        default="https://api.polar.sh",
        description="Polar API base URL (use https://sandbox-api.polar.sh for testing)"
    )
    webhook_secret: str = Field(default="", description="Shared secret for webhook signatures")
    request_timeout_seconds: float = Field(default=15.0, gt=0, le=120)

    # Retry configuration (connection-level failures only)
    max_retries: int = Field(default=2, ge=0, le=5)
    retry_backoff_seconds: float = Field(default=0.5, ge=0.0, le=10.0)

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("access_token")
    @classmethod
    def validate_token_security(cls, v: str, info) -> str:
        """Reject obvious placeholders so startup validation reports them as missing."""
        if not v:
            return ""

        placeholder_patterns = [
            "your-token-here",
            "example",
            "changeme",
        ]

        v_lower = v.lower()
        if any(pattern in v_lower for pattern in placeholder_patterns):
            logging.warning(f"{info.field_name} appears to be a placeholder - ignoring it")
            return ""

        return v


class GoogleOAuthConfig(BaseSettings):
    """Google OAuth client used to refresh Gmail access tokens."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    client_id: str = Field(default="")
    client_secret: str = Field(default="")
    token_url: str = Field(default="https://oauth2.googleapis.com/token")
    request_timeout_seconds: float = Field(default=15.0, gt=0, le=120)
    max_retries: int = Field(default=2, ge=0, le=5)
    retry_backoff_seconds: float = Field(default=0.5, ge=0.0, le=10.0)


class GmailWatchConfig(BaseSettings):
    """Gmail push-notification watch registration."""

    model_config = SettingsConfigDict(
        env_prefix="GMAIL_WATCH_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    topic_name: str = Field(
        default="",
        description="Pub/Sub topic receiving notifications, e.g. projects/<id>/topics/<name>"
    )
    label_ids: list[str] = Field(default_factory=lambda: ["INBOX"])
    watch_url: str = Field(default="https://gmail.googleapis.com/gmail/v1/users/me/watch")
    request_timeout_seconds: float = Field(default=15.0, gt=0, le=120)
    token_expiry_margin_seconds: int = Field(
        default=0,
        ge=0,
        le=3600,
        description="Refresh tokens that expire within this window as well"
    )

    @field_validator("topic_name")
    @classmethod
    def validate_topic_name(cls, v: str) -> str:
        if v and not v.startswith("projects/"):
            raise ValueError(f"topic_name must look like projects/<id>/topics/<name>, got {v!r}")
        return v


class UsageConfig(BaseSettings):
    """Monthly document quota configuration."""

    model_config = SettingsConfigDict(env_prefix="USAGE_")

    default_document_limit: int = Field(
        default=10,
        ge=0,
        description="Limit applied when a user's plan cannot be resolved"
    )
    free_plan_product_id: str = Field(
        default="free",
        description="external_product_id of the fallback plan"
    )


class UploadLinkConfig(BaseSettings):
    """Password-protected upload link configuration."""

    model_config = SettingsConfigDict(env_prefix="UPLOAD_LINK_")

    bcrypt_rounds: int = Field(default=12, ge=4, le=16, description="bcrypt cost factor")
    min_password_length: int = Field(default=4, ge=1, le=64)
    link_code_length: int = Field(default=8, ge=6, le=32)
    verify_rate_limit: str = Field(
        default="10/minute",
        description="slowapi limit for the public verification endpoint, per client address"
    )


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)

    frontend_url: str = Field(
        default="http://localhost:5173",
        description="Public web app URL; used for checkout redirects when no Origin header is sent"
    )

    @field_validator("frontend_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class CORSConfig(BaseSettings):
    """CORS configuration for API security."""

    model_config = SettingsConfigDict(env_prefix="CORS_")

    # Allowed origins (comma-separated for multiple origins)
    allowed_origins: str = Field(
        default="*", description="Comma-separated list of allowed origins (* for all, ONLY for dev)"
    )
    allow_credentials: bool = Field(
        default=False, description="Allow credentials (cookies, auth headers)"
    )
    allowed_methods: str = Field(
        default="GET,POST,PUT,DELETE,PATCH,OPTIONS",
        description="Comma-separated list of allowed HTTP methods",
    )
    allowed_headers: str = Field(
        default="authorization,x-client-info,apikey,content-type",
        description="Comma-separated list of allowed headers (* for all)"
    )
    max_age: int = Field(default=600, ge=0, description="Preflight cache duration in seconds")

    @property
    def origins_list(self) -> list[str]:
        return split_csv(self.allowed_origins)

    @property
    def methods_list(self) -> list[str]:
        return split_csv(self.allowed_methods)

    @property
    def headers_list(self) -> list[str]:
        return split_csv(self.allowed_headers)


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )

    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(
        default=False, description="Colorize console output (only for development)"
    )

    # Slow request logging thresholds
    slow_request_warning_ms: float = Field(
        default=500.0, ge=0.0, description="Log warning if request exceeds this latency (ms)"
    )
    slow_request_error_ms: float = Field(
        default=2000.0, ge=0.0, description="Log error if request exceeds this latency (ms)"
    )

    # Service metadata (injected into all logs)
    service_name: str = Field(
        default="invoicely-billing", description="Service name for log aggregation"
    )
    service_version: str = Field(default="0.1.0", description="Service version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )


class Settings(BaseSettings):
    """Root configuration for the Invoicely billing service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    supabase: SupabaseConfig = Field(default_factory=SupabaseConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    polar: PolarConfig = Field(default_factory=PolarConfig)
    google: GoogleOAuthConfig = Field(default_factory=GoogleOAuthConfig)
    gmail_watch: GmailWatchConfig = Field(default_factory=GmailWatchConfig)
    usage: UsageConfig = Field(default_factory=UsageConfig)
    upload_links: UploadLinkConfig = Field(default_factory=UploadLinkConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    cors: CORSConfig = Field(default_factory=CORSConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def missing_required(self) -> list[str]:
        """Environment variables that must be set for the service to start."""
        required = {
            "SUPABASE_URL": self.supabase.url,
            "SUPABASE_SERVICE_ROLE_KEY": self.supabase.service_role_key,
            "POLAR_ACCESS_TOKEN": self.polar.access_token,
            "POLAR_WEBHOOK_SECRET": self.polar.webhook_secret,
            "GOOGLE_CLIENT_ID": self.google.client_id,
            "GOOGLE_CLIENT_SECRET": self.google.client_secret,
            "GMAIL_WATCH_TOPIC_NAME": self.gmail_watch.topic_name,
        }
        return [name for name, value in required.items() if not value]

    def validate_configuration(self) -> None:
        """
        Validate required values and cross-field constraints.
        Called at application startup; raises instead of serving half-configured.
        """
        missing = self.missing_required()
        if missing:
            raise ConfigurationError(
                "Missing required configuration: " + ", ".join(missing)
            )

        if self.cors.origins_list == ["*"] and self.logging.environment == "production":
            logging.warning("CORS allows all origins in production - set CORS_ALLOWED_ORIGINS")

        if len(self.polar.webhook_secret) < 16:
            logging.warning("POLAR_WEBHOOK_SECRET seems too short to be secure")

        if self.logging.slow_request_error_ms <= self.logging.slow_request_warning_ms:
            logging.warning(
                "LOGGING_SLOW_REQUEST_ERROR_MS should be greater than LOGGING_SLOW_REQUEST_WARNING_MS"
            )


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration

    Raises:
        ConfigurationError: If a required value is missing
    """
    global _settings
    if _settings is None:
        settings = Settings()
        settings.validate_configuration()
        _settings = settings
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
