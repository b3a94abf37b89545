"""
Rapport: Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection (and any other call-site) always receives the same
validated instance without re-parsing the environment on every request.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Rapport platform."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Database – Cloud SQL via Unix socket or private IP
    # ------------------------------------------------------------------ #
    DATABASE_URL: str
    DB_USER: str = "rapport_user"
    DB_PASSWORD: str = ""
    DB_NAME: str = "rapport"
    CLOUD_SQL_INSTANCE_CONNECTION: str = ""
    CLOUD_SQL_USE_UNIX_SOCKET: bool = True

    # ------------------------------------------------------------------ #
    # Redis – optional cross-process change-feed relay
    # ------------------------------------------------------------------ #
    REDIS_URL: str = ""
    CHANGE_FEED_CHANNEL: str = "rapport:changes"
    SUBSCRIPTION_QUEUE_SIZE: int = 256

    # ------------------------------------------------------------------ #
    # Push gateway (Expo)
    # ------------------------------------------------------------------ #
    EXPO_PUSH_URL: str = "https://exp.host/--/api/v2/push/send"
    EXPO_ACCESS_TOKEN: str = ""
    PUSH_TIMEOUT_SECONDS: float = 5.0

    # ------------------------------------------------------------------ #
    # Matching
    # ------------------------------------------------------------------ #
    MATCH_CANDIDATE_LIMIT: int = 5
    MATCH_MIN_SCORE: int = 50
    NEUTRAL_SCORE: int = 50

    # ------------------------------------------------------------------ #
    # Chat
    # ------------------------------------------------------------------ #
    MESSAGE_MAX_LENGTH: int = 1000

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # ------------------------------------------------------------------ #
    # CORS
    # ------------------------------------------------------------------ #
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator("MATCH_MIN_SCORE", "NEUTRAL_SCORE")
    @classmethod
    def _score_must_be_between_0_and_100(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError(f"Score must be between 0 and 100, got {v}")
        return v

    @field_validator("MATCH_CANDIDATE_LIMIT", "MESSAGE_MAX_LENGTH", "SUBSCRIPTION_QUEUE_SIZE")
    @classmethod
    def _must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be positive, got {v}")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime.  Import this function anywhere you
    need access to configuration::

        from app.config import get_settings
        settings = get_settings()
    """
    return Settings()  # type: ignore[call-arg]
