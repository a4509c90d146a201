"""Application Configuration using Pydantic Settings."""

import os
from pathlib import Path
from typing import Annotated, List

from pydantic import RedisDsn, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def get_env_file() -> str:
    """
    Determine which .env file to load based on APP_ENV.

    Returns:
        Path to the .env file to load
    """
    app_env = os.getenv("APP_ENV", "development")
    base_dir = Path(__file__).parent.parent.parent  # backend/

    if app_env == "test":
        env_file = base_dir / ".env.test"
        if env_file.exists():
            return str(env_file)

    if app_env == "production":
        env_file = base_dir / ".env.production"
        if env_file.exists():
            return str(env_file)

    # Default to .env
    return str(base_dir / ".env")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=get_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "FinOps Autopilot"
    APP_ENV: str = "development"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False  # JSON lines for log shipping (enable in production)

    # Database
    # Note: Using str instead of PostgresDsn to support SQLite for testing
    DATABASE_URL: str = "sqlite+aiosqlite:///./finops_autopilot.db"
    DB_POOL_PRE_PING: bool = True

    # Redis / Celery
    REDIS_URL: RedisDsn = "redis://localhost:6379/0"  # type: ignore[assignment]
    CELERY_BROKER_URL: RedisDsn = "redis://localhost:6379/0"  # type: ignore[assignment]
    CELERY_RESULT_BACKEND: RedisDsn = "redis://localhost:6379/0"  # type: ignore[assignment]

    # Error Tracking (Sentry)
    SENTRY_DSN: str = ""  # Sentry Data Source Name (URL from sentry.io dashboard)
    SENTRY_ENVIRONMENT: str = "development"  # development, staging, production
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1  # 10% of transactions for performance monitoring

    # Agent loop
    SYSTEM_TENANT_ID: str = "default-tenant"
    AGENT_CYCLE_INTERVAL_SECONDS: float = 3.0
    AGENT_MIN_BATCH_SIZE: int = 2
    AGENT_MAX_BATCH_SIZE: int = 5
    AGENT_RANDOM_SEED: int | None = None  # Fixed seed for reproducible runs
    AGENT_EXECUTOR_NAME: str = "autonomous-agent"

    # Seed values for the system_config table (runtime agent configuration)
    AGENT_DEFAULT_AUTONOMOUS_MODE: bool = False
    AGENT_DEFAULT_AI_MODE: bool = False
    AGENT_DEFAULT_MAX_AUTONOMOUS_RISK_LEVEL: int = 5
    AGENT_DEFAULT_APPROVAL_REQUIRED_ABOVE_SAVINGS: float = 10000.0  # Annual USD
    AGENT_DEFAULT_AUTO_EXECUTE_TYPES: Annotated[List[str], NoDecode] = [
        "delete-unattached",
        "release-address",
        "delete-orphaned",
        "storage-tiering",
    ]

    # Vector-context store (optional enrichment, always behind a circuit breaker)
    VECTOR_STORE_URL: str = ""
    VECTOR_STORE_API_KEY: str = ""
    VECTOR_STORE_TOP_K: int = 20
    VECTOR_STORE_CALL_TIMEOUT_SECONDS: float = 5.0
    VECTOR_STORE_FAILURE_THRESHOLD: int = 5
    VECTOR_STORE_SUCCESS_THRESHOLD: int = 2
    VECTOR_STORE_RESET_TIMEOUT_SECONDS: float = 30.0

    # Transactional executor
    TRANSACTION_MAX_RETRIES: int = 3
    TRANSACTION_BASE_DELAY_SECONDS: float = 0.1
    TRANSACTION_MAX_DELAY_SECONDS: float = 2.0

    # Notifications (Slack incoming webhook)
    SLACK_WEBHOOK_URL: str = ""
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    @field_validator("AGENT_DEFAULT_AUTO_EXECUTE_TYPES", mode="before")
    @classmethod
    def parse_auto_execute_types(cls, v: str | List[str]) -> List[str]:
        """Parse the autonomous allow-list from a comma-separated string or list."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("AGENT_CYCLE_INTERVAL_SECONDS")
    @classmethod
    def validate_cycle_interval(cls, v: float) -> float:
        """Reject non-positive cycle intervals."""
        if v <= 0:
            raise ValueError("AGENT_CYCLE_INTERVAL_SECONDS must be greater than zero")
        return v

    @model_validator(mode="after")
    def validate_batch_bounds(self) -> "Settings":
        """
        Validate the per-cycle batch size range.

        Raises:
            ValueError: If the bounds are negative or inverted
        """
        if self.AGENT_MIN_BATCH_SIZE < 1:
            raise ValueError("AGENT_MIN_BATCH_SIZE must be at least 1")
        if self.AGENT_MAX_BATCH_SIZE < self.AGENT_MIN_BATCH_SIZE:
            raise ValueError(
                "AGENT_MAX_BATCH_SIZE must be greater than or equal to AGENT_MIN_BATCH_SIZE "
                f"(got {self.AGENT_MAX_BATCH_SIZE} < {self.AGENT_MIN_BATCH_SIZE})"
            )
        return self


# Create global settings instance
settings = Settings()  # type: ignore
