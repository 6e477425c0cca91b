"""Application configuration via pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_name: str = "Nudge"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = False

    # Database
    db_host: str = "localhost"
    db_port: int = 3306
    db_name: str = "nudge"
    db_user: str = "nudge"
    db_password: str = ""
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_recycle_s: int = 3600

    @property
    def database_url(self) -> str:
        return (
            f"mysql+aiomysql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @property
    def database_url_sync(self) -> str:
        return (
            f"mysql+pymysql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None

    @property
    def redis_url(self) -> str:
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # Celery
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None

    @property
    def effective_celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_backend(self) -> str:
        return self.celery_result_backend or self.redis_url

    # Scheduler
    scheduler_mode: Literal["polling", "webhook"] = "polling"
    scheduler_interval_ms: int = Field(default=3000, ge=100)
    stale_threshold_ms: int = Field(default=60 * 60 * 1000, ge=0)
    recurrence_timezone: str = "UTC"
    reminder_lock_backend: Literal["local", "redis"] = "local"
    reminder_lock_timeout_s: float = 30.0
    callback_queue: str = "alerts"
    # Celery's redis transport redelivers unacked eta tasks after this many seconds
    callback_visibility_timeout_s: int = 60 * 60 * 24 * 30
    cleanup_hour_utc: int = Field(default=0, ge=0, le=23)

    # Email (SMTP)
    email_smtp_host: str | None = None
    email_smtp_port: int = 587
    email_username: str | None = None
    email_password: str | None = None
    email_from: str | None = None

    # Telegram
    telegram_bot_token: str | None = None
    telegram_api_base: str = "https://api.telegram.org"

    # Web Push (VAPID)
    vapid_public_key: str | None = None
    vapid_private_key: str | None = None
    vapid_subject: str = "mailto:noreply@example.com"

    transport_timeout_s: float = 10.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
