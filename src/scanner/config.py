"""Application settings via pydantic-settings. Loads from environment and .env file."""

from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Scanner configuration.

    All values can be overridden via environment variables or .env file.
    """

    # Discord
    discord_bot_token: str = ""
    discord_enabled: bool = False
    # Rate limits longer than this surface as discord.RateLimited and are
    # retried by scanner.core.retry instead of inside discord.py.
    discord_max_ratelimit_timeout: float = 30.0

    # Database
    database_url: str = "sqlite+aiosqlite:///scanner.db"

    # Environment
    scanner_env: str = "development"

    # Commands
    scanner_owner_id: int = 0
    scanner_command_prefix: str = "-mmh"

    # Status message synchronization
    scanner_history_window: int = 32
    scanner_refresh_seconds: float = 1.0
    scanner_refresh_initial_delay: float = 1.0
    scanner_cleanup_workers: int = 16

    # Game watcher
    scanner_watcher_url: str = ""
    scanner_watcher_poll_seconds: float = 5.0

    # Logging
    scanner_log_level: str = "INFO"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    @field_validator("scanner_cleanup_workers", "scanner_history_window")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            msg = "must be at least 1"
            raise ValueError(msg)
        return value

    @field_validator("scanner_refresh_seconds", "scanner_watcher_poll_seconds")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            msg = "interval must be positive"
            raise ValueError(msg)
        return value
