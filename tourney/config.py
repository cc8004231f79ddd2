"""Application configuration."""
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # App
    app_env: str = "development"
    app_debug: bool = False
    log_level: str = "INFO"
    json_logs: bool = False

    # Database - 필수 필드 (환경변수에서 반드시 읽어야 함)
    database_url: str = Field(
        ...,
        description="SQLAlchemy async database URL (required)",
    )
    db_pool_size: int = Field(
        default=20,
        description="DB connection pool size (ignored for SQLite)",
    )
    db_max_overflow: int = Field(
        default=10,
        description="Max overflow connections (ignored for SQLite)",
    )
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    # Redis (locks + Celery broker)
    redis_url: str = "redis://localhost:6379/0"

    # Distributed locks
    lock_timeout_ms: int = Field(
        default=10000,
        description="Lock auto-expire time in milliseconds",
    )
    lock_acquire_timeout_ms: int = Field(
        default=5000,
        description="Max time to wait for a lock before LockAcquisitionError",
    )
    lock_retry_interval_ms: int = 25

    # Ledger
    default_currency: str = "USD"

    # Tournament
    tournament_min_participants: int = Field(
        default=2,
        description="Minimum field used when a tournament defines none",
    )

    # Lifecycle driver
    lifecycle_max_tournaments_per_tick: int = Field(
        default=100,
        description="Upper bound of tournaments processed per phase per tick",
    )
    lifecycle_refund_batch_size: int = Field(
        default=200,
        description="Upper bound of refunds issued per tournament per tick",
    )

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currency must be a 3-letter code."""
        if len(v) != 3 or not v.isalpha():
            raise ValueError("default_currency must be a 3-letter currency code")
        return v.upper()

    @field_validator("tournament_min_participants")
    @classmethod
    def validate_min_participants(cls, v: int) -> int:
        if v < 2:
            raise ValueError("tournament_min_participants must be at least 2")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate settings for production environment."""
        if self.app_env == "production":
            if self.app_debug:
                raise ValueError(
                    "app_debug must be False in production environment"
                )
            # 프로덕션은 항상 JSON 로그
            object.__setattr__(self, "json_logs", True)

        return self

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
