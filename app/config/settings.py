import os
from pathlib import Path

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_database_url() -> str:
    """Get database URL, using absolute path for SQLite to avoid path resolution issues.

    ⚠️ WARNING: SQLite is NOT suitable for production deployments!
    - Raw webhooks are the replay source of truth and must survive rebuilds
    - Use PostgreSQL by setting DATABASE_URL environment variable
    """
    db_url = os.getenv("DATABASE_URL", "")
    if db_url:
        logger.info(f"Using DATABASE_URL from environment: {db_url}")
        is_production = os.getenv("ENVIRONMENT", "").lower() == "production"
        if db_url.startswith("sqlite://") and is_production:
            logger.error(
                "⚠️ CRITICAL: SQLite detected in production environment! "
                "Raw webhooks will be LOST on rebuilds. Use PostgreSQL instead."
            )
        return db_url

    # Use absolute path for SQLite (LOCAL DEVELOPMENT ONLY)
    db_path = Path(__file__).parent.parent.parent / "wearable_ingest.db"
    db_url = f"sqlite:///{db_path.resolve()}"
    logger.warning(
        f"⚠️ Using SQLite database (LOCAL DEV ONLY): {db_url}\n"
        "⚠️ Set DATABASE_URL environment variable to use PostgreSQL in production."
    )
    return db_url


class Settings(BaseSettings):
    database_url: str = Field(
        default_factory=get_database_url,
        validation_alias="DATABASE_URL",
    )
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")

    rook_secret_hash_key: str = Field(
        default="",
        validation_alias="ROOK_SECRET_HASH_KEY",
        description="Shared secret used to verify the X-ROOK-HASH signature",
    )
    webhook_signature_bypass: bool = Field(
        default=False,
        validation_alias="WEBHOOK_SIGNATURE_BYPASS",
        description="Accept unsigned webhooks (never honoured when ENVIRONMENT=production)",
    )
    webhook_base_url: str = Field(default="", validation_alias="WEBHOOK_BASE_URL")
    webhook_providers: str = Field(
        default="rook",
        validation_alias="WEBHOOK_PROVIDERS",
        description="Comma-separated list of providers accepted on /webhooks/{provider}",
    )

    queue_backend: str = Field(default="redis", validation_alias="QUEUE_BACKEND")
    queue_name: str = Field(default="rook-health-webhooks", validation_alias="QUEUE_NAME")
    queue_visibility_timeout_seconds: int = Field(
        default=60,
        validation_alias="QUEUE_VISIBILITY_TIMEOUT_SECONDS",
        description="Must exceed worst-case processing latency of one message",
    )
    queue_max_receive_count: int = Field(default=3, validation_alias="QUEUE_MAX_RECEIVE_COUNT")

    worker_max_messages: int = Field(default=1, validation_alias="WORKER_MAX_MESSAGES")
    worker_wait_seconds: float = Field(default=5.0, validation_alias="WORKER_WAIT_SECONDS")
    worker_poll_interval_seconds: float = Field(default=1.0, validation_alias="WORKER_POLL_INTERVAL_SECONDS")
    worker_error_backoff_seconds: float = Field(default=5.0, validation_alias="WORKER_ERROR_BACKOFF_SECONDS")
    worker_retry_attempts: int = Field(default=3, validation_alias="WORKER_RETRY_ATTEMPTS")
    worker_retry_delay_seconds: float = Field(default=1.0, validation_alias="WORKER_RETRY_DELAY_SECONDS")
    worker_shutdown_grace_seconds: float = Field(default=30.0, validation_alias="WORKER_SHUTDOWN_GRACE_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def provider_names(self) -> set[str]:
        return {p.strip().lower() for p in self.webhook_providers.split(",") if p.strip()}

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that log level is one of the standard logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            logger.warning(f"Invalid LOG_LEVEL '{value}'. Valid levels are: {', '.join(valid_levels)}. Defaulting to INFO.")
            return "INFO"
        return upper_value

    @field_validator("queue_backend")
    @classmethod
    def validate_queue_backend(cls, value: str) -> str:
        """Only redis and memory queues exist; memory is for local runs and tests."""
        lowered = value.lower()
        if lowered not in {"redis", "memory"}:
            logger.warning(f"Invalid QUEUE_BACKEND '{value}'. Defaulting to redis.")
            return "redis"
        return lowered

    @field_validator("rook_secret_hash_key")
    @classmethod
    def validate_secret(cls, value: str) -> str:
        """Warn when the webhook secret is missing.

        Verification fails closed without it, so every signed webhook will be
        rejected with 401 until ROOK_SECRET_HASH_KEY is set.
        """
        if not value:
            logger.warning(
                "⚠️ ROOK_SECRET_HASH_KEY is not set. "
                "All incoming webhooks will fail signature verification."
            )
        return value

    @field_validator("queue_max_receive_count", "worker_max_messages")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            logger.warning(f"Queue/worker count must be >= 1, got {value}. Using 1.")
            return 1
        return value


settings = Settings()
