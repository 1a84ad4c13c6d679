"""
Tandem — Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
the engine, the Socket.IO gateway and the HTTP layer all receive the same
validated instance without re-parsing the environment.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Tandem pairing server."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # ------------------------------------------------------------------ #
    # Transport (Socket.IO / Engine.IO)
    # ------------------------------------------------------------------ #
    SOCKETIO_PATH: str = "socket.io"
    PING_INTERVAL_SECONDS: int = 25
    PING_TIMEOUT_SECONDS: int = 60

    # ------------------------------------------------------------------ #
    # Matchmaking & housekeeping
    # ------------------------------------------------------------------ #
    SEARCH_TIMEOUT_SECONDS: float = 180.0   # max wait in a queue
    SWEEP_INTERVAL_SECONDS: float = 60.0
    STATS_INTERVAL_SECONDS: float = 3.0

    # ------------------------------------------------------------------ #
    # Payload limits
    # ------------------------------------------------------------------ #
    CHAT_MAX_LENGTH: int = 500
    DISPLAY_NAME_MAX_LENGTH: int = 20

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

    @field_validator(
        "PING_INTERVAL_SECONDS",
        "PING_TIMEOUT_SECONDS",
        "SEARCH_TIMEOUT_SECONDS",
        "SWEEP_INTERVAL_SECONDS",
        "STATS_INTERVAL_SECONDS",
        "CHAT_MAX_LENGTH",
        "DISPLAY_NAME_MAX_LENGTH",
    )
    @classmethod
    def _must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Value must be positive, got {v}")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime::

        from tandem.config import get_settings
        settings = get_settings()
    """
    return Settings()
