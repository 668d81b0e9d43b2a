"""
Configuration and environment validation for the API service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from learnhub.errors import ConfigurationError

# Hosted Postgres providers hand out libpq-style URLs; SQLAlchemy needs the
# driver spelled out.
_POSTGRES_SCHEMES = ("postgres://", "postgresql://")
_POSTGRES_DRIVER_SCHEME = "postgresql+psycopg://"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def normalize_database_url(value: str) -> str:
    value = value.strip()
    for scheme in _POSTGRES_SCHEMES:
        if value.startswith(scheme):
            return _POSTGRES_DRIVER_SCHEME + value[len(scheme):]
    return value


# Field name -> the environment variable reported in error messages.
_ENV_NAMES = {
    "privy_app_id": "VITE_PRIVY_APP_ID",
}


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_prefix: str = Field(default="/api")

    # Required
    database_url: str
    node_env: Literal["development", "production", "test"]
    port: int = Field(ge=1, le=65535)
    stripe_secret_key: str
    privy_app_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("VITE_PRIVY_APP_ID", "PRIVY_APP_ID"),
    )

    # Stripe
    stripe_publishable_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_id: Optional[str] = None

    # Privy. Without a PEM key the JWKS document is fetched from Privy.
    privy_verification_key: Optional[str] = None
    privy_jwks_url: Optional[str] = None

    # Browser-facing origin used for Checkout redirects and CORS.
    app_url: str = Field(default="http://localhost:5000")
    cors_origins: Optional[str] = None

    log_level: str = Field(default="INFO")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias="LEARNHUB_USE_IN_MEMORY_BACKENDS",
    )

    # Rate limiting; a Redis URL shares counters between instances.
    redis_url: Optional[str] = None
    rate_limit_max_requests: int = Field(default=100, ge=0)
    rate_limit_window_seconds: int = Field(default=900, ge=1)

    @field_validator("database_url")
    @classmethod
    def _normalize_database_url(cls, value: str) -> str:
        value = normalize_database_url(value)
        try:
            make_url(value)
        except ArgumentError as exc:
            raise ValueError(f"not a valid database URL: {exc}") from exc
        return value

    @field_validator("stripe_secret_key")
    @classmethod
    def _check_secret_key(cls, value: str) -> str:
        if not value.startswith("sk_"):
            raise ValueError("must start with 'sk_'")
        return value

    @field_validator("stripe_publishable_key")
    @classmethod
    def _check_publishable_key(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith("pk_"):
            raise ValueError("must start with 'pk_'")
        return value or None

    @field_validator("stripe_webhook_secret")
    @classmethod
    def _check_webhook_secret(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith("whsec_"):
            raise ValueError("must start with 'whsec_'")
        return value or None

    @field_validator("app_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in _LOG_LEVELS:
            raise ValueError(f"must be one of {', '.join(_LOG_LEVELS)}")
        return value

    @property
    def is_production(self) -> bool:
        return self.node_env == "production"

    @property
    def allowed_origins(self) -> list[str]:
        if not self.cors_origins:
            return [self.app_url]
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


def _env_name(loc: tuple) -> str:
    if not loc:
        return "<environment>"
    field = str(loc[0])
    return _ENV_NAMES.get(field, field).upper()


def format_validation_error(exc: ValidationError) -> str:
    lines = ["Invalid environment configuration:"]
    for error in exc.errors():
        lines.append(f"  {_env_name(error['loc'])}: {error['msg']}")
    return "\n".join(lines)


def load_settings(**overrides) -> Settings:
    """
    Build settings from the environment, raising ConfigurationError with one
    line per missing or invalid variable.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(format_validation_error(exc)) from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return load_settings()
