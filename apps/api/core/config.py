"""
Settings for the API, the Celery worker and migrations.

Read once at import from the environment (and ``.env`` when present).
Invalid values fail at startup rather than on first use.
"""
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # --- Storage ---
    # DATABASE_URL wins when set (tests, single-container deployments).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="running_days")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)

    REDIS_URL: str = Field(default="redis://redis:6379/0")
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # --- Auth ---
    # Shared with the session issuer; this service only verifies tokens.
    SECRET_KEY: str = Field(default=..., description="HS256 key for session JWTs (32+ chars)")

    # --- Observability ---
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: Literal["json", "text"] = Field(default="json")
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1, ge=0.0, le=1.0)

    # --- HTTP ---
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)
    CORS_ORIGINS: Optional[str] = Field(default=None)  # comma-separated
    RATE_LIMIT_ENABLED: bool = Field(default=True)
    RATE_LIMIT_PER_MINUTE: int = Field(default=60, ge=1)

    # --- Inbound: Health Auto Export push ---
    WEBHOOK_MAX_WORKOUTS: int = Field(default=1000, ge=1)
    WEBHOOK_MAX_PAYLOAD_BYTES: int = Field(default=1024 * 1024, ge=1)

    # --- Inbound: device sync ---
    SYNC_MAX_WORKOUTS: int = Field(default=1000, ge=1)
    SYNC_IDEMPOTENCY_TTL_S: int = Field(default=24 * 60 * 60, ge=1)
    # Two observations whose starts are this close are one physical run.
    SYNC_START_TOLERANCE_S: int = Field(default=60, ge=0)
    DEDUP_DURATION_TOLERANCE_S: float = Field(default=1.0, ge=0.0)
    DEDUP_DISTANCE_TOLERANCE_M: float = Field(default=1.0, ge=0.0)

    # --- Outbound delivery ---
    OUTBOUND_BACKOFF_BASE_S: int = Field(default=60, ge=1)
    OUTBOUND_BACKOFF_CEILING_S: int = Field(default=3600, ge=1)
    # Below 1.0 so a jittered delay never overtakes the next doubling.
    OUTBOUND_BACKOFF_JITTER_RATIO: float = Field(default=0.1, ge=0.0, lt=1.0)
    OUTBOUND_CIRCUIT_BREAKER_THRESHOLD: int = Field(default=5, ge=1)
    OUTBOUND_DISPATCH_BATCH_SIZE: int = Field(default=50, ge=1)
    OUTBOUND_DISPATCH_INTERVAL_S: int = Field(default=30, ge=1)
    OUTBOUND_CLAIM_LEASE_S: int = Field(default=300, ge=1)
    OUTBOUND_USER_AGENT: str = Field(default="RunningDays-Webhook/1.0")
    OUTBOUND_RESPONSE_EXCERPT_CHARS: int = Field(default=1000, ge=0)

    @field_validator("SECRET_KEY")
    @classmethod
    def secret_key_strength(cls, v: str) -> str:
        if len(v) < 32:
            raise ValueError(
                "SECRET_KEY must be at least 32 characters "
                "(python -c \"import secrets; print(secrets.token_urlsafe(32))\")"
            )
        return v


settings = Settings()
