"""
Notification Engine - Configuration.

Centralized configuration for the delivery engine components.
Every concern reads its own environment prefix; `.env` files are honoured.

Architecture Layer: Infrastructure
Principles: 12-Factor App, Configuration Externalization, Type Safety
"""
from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

logger = structlog.get_logger(__name__)


class Environment(str, Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ServiceConfiguration(BaseSettings):
    """Core service configuration."""
    name: str = Field(default="notification-engine")
    version: str = Field(default="1.0.0")
    env: Environment = Field(default=Environment.DEVELOPMENT)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8003, ge=1, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATION_SERVICE_",
        env_file=".env",
        extra="ignore",
    )


class QueueConfig(BaseSettings):
    """Delivery queue and worker pool configuration."""
    backend: Literal["memory", "redis"] = Field(default="memory")
    queue_name: str = Field(default="notification-delivery", min_length=1)
    concurrency: int = Field(default=5, ge=1, le=100)
    poll_interval_seconds: float = Field(default=1.0, gt=0, le=60.0)
    lease_ttl_seconds: int = Field(default=120, ge=1, le=3600)
    lease_retry_delay_seconds: float = Field(default=5.0, ge=0, le=600.0)
    shutdown_timeout_seconds: float = Field(default=30.0, gt=0, le=600.0)

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATION_QUEUE_",
        env_file=".env",
        extra="ignore",
    )


class RetryConfig(BaseSettings):
    """Retry policy: attempts and exponential backoff base (minutes)."""
    max_retries: int = Field(default=3, ge=1, le=10)
    base_delay_minutes: float = Field(default=5.0, gt=0, le=1440.0)

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATION_RETRY_",
        env_file=".env",
        extra="ignore",
    )


class DeliveryConfig(BaseSettings):
    """Per-channel delivery bounds."""
    channel_timeout_seconds: float = Field(default=30.0, gt=0, le=300.0)

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATION_DELIVERY_",
        env_file=".env",
        extra="ignore",
    )


class WebhookConfig(BaseSettings):
    """Outbound webhook configuration."""
    timeout_seconds: float = Field(default=10.0, ge=1.0, le=60.0)
    user_agent: str = Field(default="notification-engine-webhooks/1.0")

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATION_WEBHOOK_",
        env_file=".env",
        extra="ignore",
    )


class StoreConfig(BaseSettings):
    """Persistence backend selection."""
    backend: Literal["memory", "redis"] = Field(default="memory")

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATION_STORE_",
        env_file=".env",
        extra="ignore",
    )


class RedisConfig(BaseSettings):
    """Redis connection settings."""
    host: str = Field(default="localhost")
    port: int = Field(default=6379, ge=1, le=65535)
    password: SecretStr | None = Field(default=None)
    db: int = Field(default=0, ge=0, le=15)
    ssl: bool = Field(default=False)
    key_prefix: str = Field(default="notifications:")
    max_connections: int = Field(default=50, ge=1, le=1000)
    socket_timeout: float = Field(default=5.0, gt=0)
    socket_connect_timeout: float = Field(default=5.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        env_file=".env",
        extra="ignore",
    )


class EmailChannelConfig(BaseSettings):
    """Email channel configuration."""
    enabled: bool = Field(default=False)
    smtp_host: str = Field(default="localhost")
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str = Field(default="")
    smtp_password: str = Field(default="")
    use_tls: bool = Field(default=True)
    from_email: str = Field(default="noreply@example.com")
    from_name: str = Field(default="Notifications")
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)

    model_config = SettingsConfigDict(
        env_prefix="EMAIL_",
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


class SMSChannelConfig(BaseSettings):
    """SMS channel configuration (Twilio-compatible)."""
    enabled: bool = Field(default=False)
    provider_url: str = Field(default="https://api.twilio.com/2010-04-01")
    account_sid: str = Field(default="")
    auth_token: str = Field(default="")
    from_number: str = Field(default="")
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)
    max_message_length: int = Field(default=1600, ge=160, le=1600)

    model_config = SettingsConfigDict(
        env_prefix="SMS_",
        env_file=".env",
        extra="ignore",
    )


class PushChannelConfig(BaseSettings):
    """Push notification configuration (FCM-compatible)."""
    enabled: bool = Field(default=False)
    endpoint_url: str = Field(default="https://fcm.googleapis.com/fcm/send")
    server_key: str = Field(default="")
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)

    model_config = SettingsConfigDict(
        env_prefix="PUSH_",
        env_file=".env",
        extra="ignore",
    )


class ObservabilityConfig(BaseSettings):
    """Logging output configuration."""
    log_format: Literal["json", "console"] = Field(default="json")

    model_config = SettingsConfigDict(
        env_prefix="OBSERVABILITY_",
        env_file=".env",
        extra="ignore",
    )


class NotificationEngineConfig(BaseSettings):
    """Aggregate notification engine configuration."""
    service: ServiceConfiguration = Field(default_factory=ServiceConfiguration)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    email: EmailChannelConfig = Field(default_factory=EmailChannelConfig)
    sms: SMSChannelConfig = Field(default_factory=SMSChannelConfig)
    push: PushChannelConfig = Field(default_factory=PushChannelConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @staticmethod
    def load() -> NotificationEngineConfig:
        """Load configuration from environment."""
        config = NotificationEngineConfig()
        logger.info(
            "notification_config_loaded",
            service=config.service.name,
            env=config.service.env.value,
            queue_backend=config.queue.backend,
            store_backend=config.store.backend,
            concurrency=config.queue.concurrency,
            email_enabled=config.email.enabled,
            sms_enabled=config.sms.enabled,
            push_enabled=config.push.enabled,
        )
        return config

    @property
    def uses_redis(self) -> bool:
        """Whether any component is backed by Redis."""
        return self.queue.backend == "redis" or self.store.backend == "redis"

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.service.env == Environment.PRODUCTION


_config: NotificationEngineConfig | None = None


def get_config() -> NotificationEngineConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = NotificationEngineConfig.load()
    return _config


def reset_config() -> None:
    """Reset configuration (useful for testing)."""
    global _config
    _config = None
