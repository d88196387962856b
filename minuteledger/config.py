"""
Configuration management for the minute ledger service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StripeConfig(BaseSettings):
    """
    Payment provider configuration.

    Security: API key and webhook secret are never logged or exposed in errors.
    """

    model_config = SettingsConfigDict(
        env_prefix="STRIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: str = Field(
        default="",
        description="Provider API key used to look up customers",
    )
    webhook_secret: str = Field(
        default="",
        description="Shared secret used to sign webhook deliveries",
    )
    signature_header: str = Field(
        default="Stripe-Signature",
        description="Request header carrying the webhook signature",
    )
    signature_tolerance_seconds: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Maximum age of a signed webhook timestamp (replay protection)",
    )
    customer_cache_ttl_seconds: int = Field(
        default=300,
        ge=0,
        le=86400,
        description="TTL for cached customer -> user resolutions",
    )
    customer_cache_size: int = Field(default=1024, ge=1)

    @field_validator("api_key", "webhook_secret")
    @classmethod
    def validate_secret_security(cls, v: str, info) -> str:
        """
        Security: Reject obvious placeholders.

        Never expose secrets in logs or errors.
        """
        if not v:
            return ""

        placeholder_patterns = [
            "your-api-key-here",
            "your-webhook-secret",
            "example",
            "dummy",
            "changeme",
        ]

        v_lower = v.lower()
        if any(pattern in v_lower for pattern in placeholder_patterns):
            logging.warning(
                f"{info.field_name} appears to be a placeholder - billing webhooks may be rejected"
            )
            return ""

        return v

    @property
    def is_configured(self) -> bool:
        """Check if webhook verification can run."""
        return bool(self.webhook_secret)

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)


class LedgerConfig(BaseSettings):
    """Usage ledger, plan quota and idempotency configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Monthly transcription quotas (minutes)
    free_monthly_minutes: int = Field(default=30, ge=0)
    pro_monthly_minutes: int = Field(default=60, ge=0)

    # Plan id -> plan type mapping
    pro_plan_ids: list[str] = Field(
        default_factory=list,
        description="Provider price/plan ids that grant the pro plan",
    )
    pro_plan_prefixes: list[str] = Field(
        default_factory=lambda: ["pro"],
        description="Plan id prefixes that grant the pro plan",
    )

    # Per-plan upload size caps
    free_max_file_size_bytes: int = Field(default=100 * 1024 * 1024, ge=1)
    pro_max_file_size_bytes: int = Field(default=500 * 1024 * 1024, ge=1)

    # Conditional write retries (optimistic concurrency)
    max_write_retries: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Attempts for a conditional write before giving up",
    )
    retry_backoff_seconds: float = Field(
        default=0.01,
        ge=0.0,
        le=5.0,
        description="Initial backoff between conflicting writes",
    )

    # Dedup log retention (must exceed provider redelivery window, 3 days for Stripe)
    processed_event_retention_days: int = Field(default=30, ge=3, le=365)

    @field_validator("pro_monthly_minutes")
    @classmethod
    def validate_pro_quota(cls, v: int, info) -> int:
        """Ensure the paid plan is never smaller than the free plan."""
        free = info.data.get("free_monthly_minutes")
        if free is not None and v < free:
            raise ValueError(
                f"pro_monthly_minutes ({v}) must be >= free_monthly_minutes ({free})"
            )
        return v


class MediaConfig(BaseSettings):
    """Upload duration estimation configuration."""

    model_config = SettingsConfigDict(env_prefix="MEDIA_", extra="ignore")

    probe_enabled: bool = Field(default=True, description="Probe media metadata with ffprobe")
    ffprobe_path: str = Field(default="ffprobe")
    probe_timeout_seconds: float = Field(default=5.0, gt=0.0, le=60.0)
    fallback_bitrate_kbps: int = Field(
        default=128,
        ge=8,
        le=10000,
        description="Reference bitrate used to estimate duration from file size",
    )

    # Upload acceptance (a file passes on either its extension or its MIME type)
    supported_extensions: list[str] = Field(
        default=[".mp3", ".mp4", ".wav", ".avi", ".mov", ".flac", ".ogg", ".webm", ".m4a"]
    )
    supported_mime_types: list[str] = Field(
        default=[
            "audio/mpeg",
            "audio/wav",
            "audio/x-wav",
            "audio/mp4",
            "audio/x-m4a",
            "audio/flac",
            "audio/ogg",
            "video/mp4",
            "video/x-msvideo",
            "video/quicktime",
            "video/webm",
            "video/ogg",
        ]
    )
    max_bytes_per_second: int = Field(
        default=10 * 1024 * 1024,
        ge=1,
        description="Probed uploads averaging more than this are rejected as implausible",
    )

    @property
    def fallback_bytes_per_second(self) -> float:
        return self.fallback_bitrate_kbps * 1000 / 8


class StorageConfig(BaseSettings):
    """Ledger store configuration."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_", extra="ignore")

    database_path: str = Field(default="./data/ledger.db")
    busy_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        description="How long a write waits on a locked database before failing",
    )


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_", extra="ignore")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)

    # Request size limits (DoS protection)
    max_request_body_size: int = Field(
        default=1024 * 1024,  # 1MB, webhooks and upload metadata only
        ge=1024,
        description="Maximum request body size in bytes",
    )


class RateLimitConfig(BaseSettings):
    """Rate limits for client-facing upload routes."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_", extra="ignore")

    enabled: bool = Field(default=True)
    uploads_per_minute: str = Field(default="30/minute")


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

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
    slow_request_warning_ms: float = Field(default=250.0, ge=0.0)
    slow_request_error_ms: float = Field(default=1000.0, ge=0.0)

    # Service metadata (injected into all logs)
    service_name: str = Field(default="minute-ledger")
    service_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


class Settings(BaseSettings):
    """Root configuration for the minute ledger service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    stripe: StripeConfig = Field(default_factory=StripeConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.stripe.is_configured:
            logging.warning(
                "Webhook secret not configured - billing webhooks will be rejected"
            )

        if not self.stripe.has_api_key:
            logging.warning(
                "Provider API key not configured - customer lookups limited to local links"
            )

        if self.ledger.free_max_file_size_bytes > self.ledger.pro_max_file_size_bytes:
            logging.warning(
                "Free plan upload cap exceeds pro plan cap: "
                f"{self.ledger.free_max_file_size_bytes} > {self.ledger.pro_max_file_size_bytes}"
            )


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance.

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
