"""Application configuration."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="null",
    )

    # Application
    app_name: str = Field(default="ChronicCare Scheduling API", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    api_v1_prefix: str = Field(default="/api/v1", alias="API_V1_PREFIX")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    reload: bool = Field(default=False, alias="RELOAD")

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")

    # Redis
    redis_host: str = Field(..., alias="REDIS_HOST")
    redis_port: int = Field(..., alias="REDIS_PORT")
    redis_username: str = Field(default="default", alias="REDIS_USERNAME")
    redis_password: str = Field(default="", alias="REDIS_PASSWORD")
    redis_decode_responses: bool = Field(default=True, alias="REDIS_DECODE_RESPONSES")

    # JWT
    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Firebase (push channel)
    firebase_credentials_path: str | None = Field(
        default=None,
        alias="FIREBASE_CREDENTIALS_PATH",
        description="Path to Firebase service account JSON file",
    )
    firebase_config_json: str | None = Field(
        default=None,
        alias="FIREBASE_CONFIG_JSON",
        description="Raw JSON string of the Firebase service account",
    )

    # AWS (sms and email channels)
    aws_region: str = Field(default="us-east-1", alias="AWS_REGION")
    ses_sender_email: str = Field(default="noreply@chroniccare.health", alias="SES_SENDER_EMAIL")
    sns_sender_id: str | None = Field(default=None, alias="SNS_SENDER_ID")
    channel_timeout_seconds: float = Field(default=10.0, alias="CHANNEL_TIMEOUT_SECONDS")

    # Scheduling
    default_timezone: str = Field(default="UTC", alias="DEFAULT_TIMEZONE")
    slot_cache_ttl_seconds: int = Field(default=60, alias="SLOT_CACHE_TTL_SECONDS")
    max_availability_range_days: int = Field(default=31, alias="MAX_AVAILABILITY_RANGE_DAYS")

    # Notification scheduler
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    scheduler_interval_seconds: int = Field(default=300, alias="SCHEDULER_INTERVAL_SECONDS")
    scheduler_batch_size: int = Field(default=1000, alias="SCHEDULER_BATCH_SIZE")
    retry_sweep_limit: int = Field(default=100, alias="RETRY_SWEEP_LIMIT")
    retry_cooldown_minutes: int = Field(default=30, alias="RETRY_COOLDOWN_MINUTES")
    overdue_alert_threshold: int = Field(default=100, alias="OVERDUE_ALERT_THRESHOLD")

    # Notification dispatcher
    max_notification_attempts: int = Field(default=3, alias="MAX_NOTIFICATION_ATTEMPTS")
    retry_backoff_minutes: int = Field(default=30, alias="RETRY_BACKOFF_MINUTES")
    quiet_hours_deferral_minutes: int = Field(default=120, alias="QUIET_HOURS_DEFERRAL_MINUTES")
    quiet_hours_default_start: int = Field(default=22, alias="QUIET_HOURS_DEFAULT_START")
    quiet_hours_default_end: int = Field(default=8, alias="QUIET_HOURS_DEFAULT_END")
    urgent_priority_threshold: int = Field(default=10, alias="URGENT_PRIORITY_THRESHOLD")

    # Queue
    notification_queue: str = Field(default="notifications", alias="NOTIFICATION_QUEUE")
    dispatch_concurrency: int = Field(default=10, alias="DISPATCH_CONCURRENCY")
    queue_prefetch: int = Field(default=10, alias="QUEUE_PREFETCH")
    queue_max_deliveries: int = Field(default=3, alias="QUEUE_MAX_DELIVERIES")
    queue_poll_interval_seconds: float = Field(default=1.0, alias="QUEUE_POLL_INTERVAL_SECONDS")
    dlq_retention_days: int = Field(default=7, alias="DLQ_RETENTION_DAYS")

    # CORS
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# Global settings instance
settings = get_settings()
