"""Simple configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.

The merchant match thresholds live here on purpose: they change the
false-accept / false-reject balance of merchant verification and must
be tuned through configuration, never by editing the matcher.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


DEFAULT_BRAND_TOKENS: list[str] = [
    "7eleven",
    "caltex",
    "chowking",
    "jollibee",
    "kfc",
    "mcdonalds",
    "petron",
    "seaoil",
    "shell",
    "starbucks",
]


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    # API Settings
    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "Loyalty Receipt Points"
    ENVIRONMENT: str = Field(default="development")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    # Trusted connection used by the ledger updater.  Points are credited on
    # the customer's behalf, so this should reference a role that can write
    # ledger rows and balances.  Falls back to `DATABASE_URL` when unset.
    DATABASE_SERVICE_URL: Optional[str] = Field(default=None)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=False)
    DB_ECHO: bool = Field(default=False)

    # Redis / Dramatiq
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    # "redis" in production; "stub" keeps messages in memory (tests, local dev)
    DRAMATIQ_BROKER: str = Field(default="redis")
    DRAMATIQ_MAX_RETRIES: int = Field(default=3)

    # Storage
    STORAGE_BACKEND: str = Field(default="minio")
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="receipts")
    MINIO_USE_SSL: bool = Field(default=False)
    STORAGE_DIRECTORY: str = Field(default="./storage")

    # OCR
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    OCR_MODEL: str = Field(default="gpt-4o-mini")
    OCR_TIMEOUT_SECONDS: float = Field(default=30.0)
    OCR_DEFAULT_CURRENCY: str = Field(default="PHP")
    OCR_MAX_IMAGE_SIZE: int = Field(default=1600)

    # Points
    DEFAULT_POINTS_PER_CURRENCY: int = Field(default=100)
    LEDGER_WRITE_MAX_ATTEMPTS: int = Field(default=3)
    LEDGER_WRITE_BACKOFF_SECONDS: float = Field(default=0.2)

    # Merchant match policy
    MATCH_MIN_CONTAINED_LENGTH: int = Field(default=4)
    MATCH_MIN_WORD_LENGTH: int = Field(default=3)
    MATCH_PARTIAL_WORD_WEIGHT: float = Field(default=0.7)
    MATCH_WORD_RATIO_THRESHOLD: float = Field(default=0.40)
    MATCH_SIMILARITY_THRESHOLD: float = Field(default=0.50)
    MATCH_BRAND_TOKENS: list[str] = Field(default_factory=lambda: list(DEFAULT_BRAND_TOKENS))

    # Attribution (Meta Conversions API)
    META_CONVERSIONS_API_URL: str = Field(default="https://graph.facebook.com/v19.0")
    META_ACCESS_TOKEN: Optional[str] = Field(default=None)
    META_EVENT_NAME: str = Field(default="Purchase")
    META_REQUEST_TIMEOUT_SECONDS: float = Field(default=5.0)

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)


# Instantiate global settings
settings = Settings()


def is_development() -> bool:
    return (settings.ENVIRONMENT or "development").lower() == "development"


def service_database_url() -> Optional[str]:
    """Return the connection string the ledger updater should use."""
    return settings.DATABASE_SERVICE_URL or os.getenv("DATABASE_SERVICE_URL") or None
