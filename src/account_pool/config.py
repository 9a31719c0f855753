"""Settings for the account pool.

Values are read from environment variables prefixed with ``ACCOUNT_POOL_``
and from a ``.env`` file in the working directory.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Annotated

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from account_pool.constants import (
    CLOUDCODE_ENDPOINT_FALLBACKS,
    CLOUDCODE_USER_AGENT,
    DEFAULT_ACCOUNT_DB_PATH,
    DEFAULT_ACCOUNTS_PATH,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    GOOGLE_OAUTH_TOKEN_URL,
    MAX_WAIT_BEFORE_ERROR_MS,
    SOFT_LIMIT_THRESHOLD,
)


__all__ = ["PoolSettings", "configure_logging", "get_settings"]


class PoolSettings(BaseSettings):
    """Account pool configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCOUNT_POOL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    accounts_path: Path = Field(
        default=DEFAULT_ACCOUNTS_PATH,
        description="Path to the accounts JSON file",
    )

    default_account_db_path: Path = Field(
        default=DEFAULT_ACCOUNT_DB_PATH,
        description="Desktop client state database used when no accounts are configured",
    )

    cooldown_duration_ms: int | None = Field(
        default=None,
        gt=0,
        description="Hard-limit duration when the backend gives no reset time",
    )

    soft_limit_enabled: bool = Field(
        default=True,
        description="Prefer accounts whose remaining quota is above the threshold",
    )

    soft_limit_threshold: float = Field(
        default=SOFT_LIMIT_THRESHOLD,
        ge=0.0,
        le=1.0,
        description="Remaining quota fraction below which an account is soft-limited",
    )

    max_wait_before_error_ms: int = Field(
        default=MAX_WAIT_BEFORE_ERROR_MS,
        ge=0,
        description="Longest wait for the sticky account before switching or failing",
    )

    http_timeout_seconds: float = Field(
        default=DEFAULT_HTTP_TIMEOUT_SECONDS,
        gt=0,
        description="Timeout for quota, token and project requests",
    )

    cloudcode_endpoints: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(CLOUDCODE_ENDPOINT_FALLBACKS),
        description="Cloud Code base URLs, tried in order",
    )

    user_agent: str = Field(default=CLOUDCODE_USER_AGENT)

    oauth_token_url: str = Field(default=GOOGLE_OAUTH_TOKEN_URL)

    oauth_client_id: str | None = Field(
        default=None,
        description="OAuth client id used for refresh-token grants",
    )

    oauth_client_secret: str | None = Field(
        default=None,
        description="OAuth client secret used for refresh-token grants",
    )

    log_level: str = Field(default="INFO")

    @field_validator("accounts_path", "default_account_db_path", mode="after")
    @classmethod
    def expand_user(cls, v: Path) -> Path:
        return v.expanduser()

    @field_validator("cloudcode_endpoints", mode="before")
    @classmethod
    def parse_endpoints(cls, v: object) -> object:
        if isinstance(v, str):
            return [item.strip().rstrip("/") for item in v.split(",") if item.strip()]
        return v

    @field_validator("log_level", mode="after")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {v!r}")
        return level


@lru_cache
def get_settings() -> PoolSettings:
    """Get the process-wide settings instance."""
    return PoolSettings()


def configure_logging(level: str | None = None) -> None:
    """Configure structlog for console output at the given level."""
    level_name = (level or get_settings().log_level).upper()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping()[level_name]
        ),
        cache_logger_on_first_use=False,
    )
