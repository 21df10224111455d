"""Application Configuration - environment-driven settings via pydantic-settings.

Invariants:
    - All secrets come from environment variables (never hardcoded in prod)
    - get_settings() is cached (lru_cache) - single instance per process
    - Rate-limit overrides only touch window_ms / max_requests of known policies

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support
    - Defaults provided for all non-secret settings: works out-of-the-box with docker-compose
"""

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

from boxoffice.core.domain_types import DiscountType


class RateLimitOverride(BaseModel):
    """Per-policy replacement cap/window, e.g. RATE_LIMIT_OVERRIDES='{"order": {"max_requests": 20}}'."""
    window_ms: int | None = Field(None, gt=0)
    max_requests: int | None = Field(None, gt=0)


class PromoCodeConfig(BaseModel):
    """Promo definition, e.g. PROMO_CODES='{"EARLY10": {"discount_type": "percentage", "amount": 10}}'."""
    discount_type: DiscountType
    amount: Decimal = Field(ge=0)


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Database
    database_url: str = (
        "postgresql+asyncpg://boxoffice:boxoffice@db:5432/boxoffice"
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def convert_postgres_url(cls, v: str) -> str:
        """Hosting providers hand out postgresql:// but asyncpg needs postgresql+asyncpg://."""
        if isinstance(v, str) and v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql://", 1)
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Credentials
    ticket_signing_secret: str = "dev-ticket-secret-change-me"
    webhook_signing_secret: str = "dev-webhook-secret-change-me"

    # Webhooks
    webhook_max_age_seconds: int = 300
    webhook_max_future_seconds: int = 60
    replay_window_seconds: int = 86_400
    replay_purge_interval_seconds: float = 3600

    # Query guard
    slow_query_threshold_ms: int = 100
    query_timeout_ms: int = 30_000

    # Rate limiting
    rate_limit_skip: bool = False
    rate_limit_sweep_interval_seconds: float = 300
    rate_limit_overrides: dict[str, RateLimitOverride] = {}

    # Ticket issuance
    max_token_attempts: int = Field(5, ge=1)

    # Promotions
    promo_codes: dict[str, PromoCodeConfig] = {}

    # API
    cors_origins: list[str] = ["http://localhost:5173"]

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"


@lru_cache
def get_settings() -> Settings:
    return Settings()
