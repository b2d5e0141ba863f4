"""
Notification Delivery Engine - Configuration.

Environment-based configuration for delivery policy, providers, the delivery
log store and observability. Settings are loaded once at process start and
passed explicitly to the components that need them.

Architecture Layer: Infrastructure
Principles: 12-Factor App, Configuration Externalization, Type Safety
"""
from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

logger = structlog.get_logger(__name__)


class Environment(str, Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ServiceSettings(BaseSettings):
    """Core service configuration."""
    name: str = Field(default="notification-engine")
    version: str = Field(default="1.0.0")
    env: Environment = Field(default=Environment.DEVELOPMENT)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8010, ge=1, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATION_ENGINE_",
        env_file=".env",
        extra="ignore",
    )


class DeliverySettings(BaseSettings):
    """Retry policy and delivery log housekeeping."""
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_seconds: float = Field(default=5.0, ge=0.0, le=3600.0)
    claim_ttl_seconds: float = Field(default=300.0, ge=1.0)
    retention_days: int = Field(default=30, ge=1, le=3650)
    sweep_batch_size: int = Field(default=100, ge=1, le=10000)
    store_retry_attempts: int = Field(default=3, ge=1, le=10)
    store_retry_delay_seconds: float = Field(default=0.5, ge=0.0, le=60.0)
    triggers_file: str | None = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="DELIVERY_",
        env_file=".env",
        extra="ignore",
    )


class BrevoSettings(BaseSettings):
    """Primary provider: Brevo transactional e-mail API."""
    enabled: bool = Field(default=True)
    api_key: str = Field(default="")
    api_url: str = Field(default="https://api.brevo.com/v3")
    sender_email: str = Field(default="info@luxestaycations.in")
    sender_name: str = Field(default="Luxe Staycations")
    reply_to: str | None = Field(default=None)
    tags: list[str] = Field(default_factory=lambda: ["notification-engine"])
    sandbox: bool = Field(default=False)
    timeout_seconds: float = Field(default=15.0, ge=1.0, le=300.0)

    model_config = SettingsConfigDict(
        env_prefix="BREVO_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("sender_email", mode="before")
    @classmethod
    def validate_sender_email(cls, v: str) -> str:
        """Validate sender email format."""
        if v and "@" not in v:
            raise ValueError("Invalid email format")
        return v.strip().lower() if v else v


class SMTPSettings(BaseSettings):
    """Secondary provider: plain SMTP."""
    enabled: bool = Field(default=True)
    host: str = Field(default="localhost")
    port: int = Field(default=587, ge=1, le=65535)
    username: str = Field(default="")
    password: str = Field(default="")
    start_tls: bool = Field(default=True)
    use_tls: bool = Field(default=False)
    from_email: str = Field(default="info@luxestaycations.in")
    from_name: str = Field(default="Luxe Staycations")
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)

    model_config = SettingsConfigDict(
        env_prefix="SMTP_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("from_email", mode="before")
    @classmethod
    def validate_from_email(cls, v: str) -> str:
        """Validate from email format."""
        if v and "@" not in v:
            raise ValueError("Invalid email format")
        return v.strip().lower() if v else v

    @model_validator(mode="after")
    def check_tls_modes(self) -> SMTPSettings:
        if self.use_tls and self.start_tls:
            raise ValueError("use_tls and start_tls are mutually exclusive")
        return self


class OrganizationSettings(BaseSettings):
    """Values exposed to templates as system variables."""
    name: str = Field(default="Luxe Staycations")
    email: str = Field(default="info@luxestaycations.in")
    phone: str = Field(default="+91-8828279739")
    website: str = Field(default="www.luxestaycations.in")
    utc_offset_minutes: int = Field(default=330, ge=-720, le=840)

    model_config = SettingsConfigDict(
        env_prefix="ORGANIZATION_",
        env_file=".env",
        extra="ignore",
    )


class StoreSettings(BaseSettings):
    """Delivery log store configuration."""
    backend: Literal["memory", "postgres"] = Field(default="memory")
    dsn: str = Field(default="postgresql://localhost:5432/notifications")
    pool_min_size: int = Field(default=1, ge=1, le=100)
    pool_max_size: int = Field(default=10, ge=1, le=100)
    table_name: str = Field(default="delivery_records")

    model_config = SettingsConfigDict(
        env_prefix="DELIVERY_STORE_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("table_name")
    @classmethod
    def validate_table_name(cls, v: str) -> str:
        """Only plain identifiers are interpolated into SQL."""
        if not v.replace("_", "").replace(".", "").isalnum():
            raise ValueError(f"Invalid table name: {v}")
        return v


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""
    log_format: Literal["json", "console"] = Field(default="json")
    metrics_prefix: str = Field(default="notification_engine")

    model_config = SettingsConfigDict(
        env_prefix="OBSERVABILITY_",
        env_file=".env",
        extra="ignore",
    )


class EngineSettings(BaseSettings):
    """Aggregate notification engine configuration."""
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    brevo: BrevoSettings = Field(default_factory=BrevoSettings)
    smtp: SMTPSettings = Field(default_factory=SMTPSettings)
    organization: OrganizationSettings = Field(default_factory=OrganizationSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def check_claim_ttl(self) -> EngineSettings:
        """A claim must outlive one full repetition through every provider."""
        repetition = self.delivery.backoff_seconds + self.provider_timeout_budget()
        if self.delivery.claim_ttl_seconds <= repetition:
            raise ValueError(
                f"claim_ttl_seconds ({self.delivery.claim_ttl_seconds}) must exceed "
                f"one repetition ({repetition}s)"
            )
        return self

    def provider_timeout_budget(self) -> float:
        """Sum of the timeouts of every enabled provider."""
        total = 0.0
        if self.brevo.enabled:
            total += self.brevo.timeout_seconds
        if self.smtp.enabled:
            total += self.smtp.timeout_seconds
        return total

    def get_enabled_providers(self) -> list[str]:
        """Get enabled providers in chain order."""
        providers = []
        if self.brevo.enabled:
            providers.append("brevo")
        if self.smtp.enabled:
            providers.append("smtp")
        return providers

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.service.env == Environment.PRODUCTION

    @staticmethod
    def load() -> EngineSettings:
        """Load configuration from environment."""
        settings = EngineSettings()
        logger.info(
            "engine_config_loaded",
            service=settings.service.name,
            env=settings.service.env.value,
            providers=settings.get_enabled_providers(),
            store=settings.store.backend,
            max_attempts=settings.delivery.max_attempts,
        )
        return settings
