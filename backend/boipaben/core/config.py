from datetime import timedelta
from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_SALE_RETRY_BACKOFF = [0.5, 1.0, 2.0]
_POSTGRES_DRIVERS = {"postgresql+psycopg", "postgresql+asyncpg"}


def _with_postgres_driver(value: str) -> str:
    """Point bare ``postgres``/``postgresql`` URLs at psycopg and require TLS."""

    parsed = urlparse(value)
    if not parsed.scheme.lower().startswith("postgres"):
        return value

    scheme = parsed.scheme.lower()
    if scheme not in _POSTGRES_DRIVERS:
        scheme = "postgresql+psycopg"
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query.setdefault("sslmode", "require")
    return urlunparse(parsed._replace(scheme=scheme, query=urlencode(query, doseq=True)))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/boipaben.db",
        description="SQLAlchemy compatible database URL",
    )
    client_url: str = Field(
        default="http://localhost:5173",
        description="Storefront origin used for checkout redirect URLs",
    )
    visibility_window_hours: float = Field(
        default=12.0,
        description="Hours a sold book stays visible in public listings after the sale",
        gt=0,
    )
    cleanup_enabled: bool = Field(
        default=True,
        description="Run the sold-book cleanup sweep on a background timer inside the API process",
    )
    cleanup_interval_hours: float = Field(
        default=1.0,
        description="Hours between sold-book cleanup sweeps; must be shorter than the visibility window",
        gt=0,
    )
    shipping_fee: float = Field(
        default=50.0,
        description="Flat shipping fee added to every order, in the store currency",
        ge=0,
    )
    currency: str = Field(default="bdt", description="ISO currency code used for checkout")
    auth_token_secret: str = Field(
        default="change-me",
        description="Shared HS256 secret used to verify identity provider access tokens",
    )
    payment_api_base: AnyUrl | str = Field(
        default="https://api.stripe.com",
        description="Base URL of the payment gateway API",
    )
    payment_secret_key: str | None = Field(
        default=None,
        description="Secret API key for the payment gateway",
    )
    payment_webhook_secret: str | None = Field(
        default=None,
        description="Signing secret used to verify payment gateway webhooks",
    )
    payment_webhook_tolerance_seconds: int = Field(
        default=300,
        description="Maximum age of a webhook signature timestamp",
        ge=0,
    )
    sale_retry_attempts: int = Field(
        default=3,
        description="Number of attempts for card sale confirmations hitting transient store errors",
        ge=1,
    )
    sale_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: list(_DEFAULT_SALE_RETRY_BACKOFF),
        description="Comma-separated list or array of backoff delays (seconds) between sale retry attempts",
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("sale_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_retry_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return list(_DEFAULT_SALE_RETRY_BACKOFF)
        if isinstance(value, str):
            value = [token for token in value.split(",") if token.strip()]
        if not isinstance(value, (list, tuple)) or not value:
            raise ValueError("SALE_RETRY_BACKOFF_SECONDS must list at least one delay")
        try:
            delays = [float(item) for item in value]
        except (TypeError, ValueError) as exc:
            raise ValueError("SALE_RETRY_BACKOFF_SECONDS entries must be numeric") from exc
        if any(delay <= 0 for delay in delays):
            raise ValueError("SALE_RETRY_BACKOFF_SECONDS entries must be positive")
        return delays

    @model_validator(mode="after")
    def _check_cleanup_interval(self) -> "Settings":
        if self.cleanup_interval_hours >= self.visibility_window_hours:
            raise ValueError(
                "CLEANUP_INTERVAL_HOURS must be shorter than VISIBILITY_WINDOW_HOURS"
            )
        return self

    @property
    def resolved_database_url(self) -> str:
        return _with_postgres_driver(str(self.database_url))

    @property
    def cleanup_interval(self) -> timedelta:
        return timedelta(hours=self.cleanup_interval_hours)

    @property
    def sale_retry_backoff_schedule(self) -> tuple[float, ...]:
        return tuple(float(value) for value in self.sale_retry_backoff_seconds) or (0.5,)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
