"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files and
provides typed access to the engine's limits, paths and defaults.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables.

    Optional:
        DATA_DIR: Directory holding the fact ledger and session databases
        MAX_BUDGET_USD: Cost ceiling per analysis run (unset means unlimited)
        AGENT_TIMEOUT_SECONDS: Wall-clock limit for a single agent execution
        MAX_CONCURRENT_AGENTS: Upper bound on agents running inside one batch
        CHECKPOINT_RETENTION: Checkpoints kept per session
        CACHE_TTL_HOURS: Age after which a cached analysis is recomputed
        DEFAULT_MODE: Analysis mode when a caller does not pick one
        FAIL_FAST_ON_CRITICAL: Stop scheduling after a critical warning
        LOG_LEVEL: Logging level
        LOG_FILE: Optional JSON Lines log file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATA_DIR: Path = Field(default=Path(".dde"), description="Data directory")

    MAX_BUDGET_USD: float | None = Field(
        default=None, ge=0.0, description="Maximum cost per analysis run in USD"
    )
    AGENT_TIMEOUT_SECONDS: float = Field(
        default=300.0, gt=0.0, description="Per-agent execution timeout"
    )
    MAX_CONCURRENT_AGENTS: int = Field(
        default=12, ge=1, le=64, description="Maximum concurrent agents per batch"
    )

    CHECKPOINT_RETENTION: int = Field(
        default=5, ge=1, description="Checkpoints retained per session"
    )
    CACHE_TTL_HOURS: float = Field(
        default=24.0, ge=0.0, description="Analysis cache time-to-live in hours"
    )

    DEFAULT_MODE: Literal["full", "lite", "express"] = Field(
        default="full", description="Default analysis mode"
    )
    FAIL_FAST_ON_CRITICAL: bool = Field(
        default=False, description="Halt scheduling when a critical warning fires"
    )

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON Lines log file")

    @field_validator("DEFAULT_MODE", mode="before")
    @classmethod
    def normalize_mode(cls, v: object) -> object:
        """Accept mode names in any case."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @model_validator(mode="after")
    def validate_budget_positive(self) -> Settings:
        """A zero budget would halt every run before its first batch."""
        if self.MAX_BUDGET_USD is not None and self.MAX_BUDGET_USD == 0.0:
            raise ValueError("MAX_BUDGET_USD must be greater than 0 when set")
        return self

    @property
    def facts_db_path(self) -> Path:
        """SQLite file holding the cross-run fact ledger."""
        return self.DATA_DIR / "facts.db"

    @property
    def sessions_db_path(self) -> Path:
        """SQLite file holding sessions, transitions, checkpoints and cache."""
        return self.DATA_DIR / "sessions.db"

    @property
    def cache_ttl_seconds(self) -> float:
        return self.CACHE_TTL_HOURS * 3600.0

    def ensure_directories(self) -> None:
        """Create the data directory if it doesn't exist."""
        self.DATA_DIR.mkdir(parents=True, exist_ok=True)

    def display(self) -> dict[str, str | int | float | bool | None]:
        """Return settings as a flat mapping for display."""
        return {
            "DATA_DIR": str(self.DATA_DIR),
            "MAX_BUDGET_USD": self.MAX_BUDGET_USD,
            "AGENT_TIMEOUT_SECONDS": self.AGENT_TIMEOUT_SECONDS,
            "MAX_CONCURRENT_AGENTS": self.MAX_CONCURRENT_AGENTS,
            "CHECKPOINT_RETENTION": self.CHECKPOINT_RETENTION,
            "CACHE_TTL_HOURS": self.CACHE_TTL_HOURS,
            "DEFAULT_MODE": self.DEFAULT_MODE,
            "FAIL_FAST_ON_CRITICAL": self.FAIL_FAST_ON_CRITICAL,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Raises:
        ValidationError: If a setting is invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
