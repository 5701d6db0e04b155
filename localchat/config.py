"""
Application Configuration

Pydantic-based settings management using environment variables.
Supports nested configuration, validation, and caching.

Usage:
    from localchat.config import get_settings

    settings = get_settings()
    print(settings.store.path)
    print(settings.grouping.default_locale)
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = Path.home() / ".localchat"


class StoreSettings(BaseSettings):
    """Conversation store configuration."""

    path: Path = Field(
        default=DEFAULT_DATA_DIR / "conversations.sqlite3",
        description="SQLite file holding conversations and messages",
    )
    busy_timeout_ms: int = Field(
        default=5000,
        ge=0,
        le=60000,
        description="How long SQLite waits on a locked database before failing",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOCALCHAT_STORE_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("path")
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        """Expand ~ in configured paths."""
        return v.expanduser()


class GroupingSettings(BaseSettings):
    """Sidebar grouping configuration."""

    default_locale: str = Field(
        default="en",
        min_length=2,
        description="Locale used for month bucket names when none is supplied",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOCALCHAT_GROUPING_",
        env_file=".env",
        extra="ignore",
    )


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Application log level",
    )
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format",
    )
    date_format: str = Field(
        default="%Y-%m-%d %H:%M:%S",
        description="Log timestamp format",
    )
    file: Path | None = Field(
        default=None,
        description="Optional log file path (None = stderr only)",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        extra="ignore",
    )

    def configure(self) -> None:
        """Configure Python logging with these settings."""
        handlers: list[logging.Handler] = [logging.StreamHandler()]

        if self.file:
            self.file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(self.file))

        logging.basicConfig(
            level=getattr(logging, self.level),
            format=self.format,
            datefmt=self.date_format,
            handlers=handlers,
            force=True,
        )


class Settings(BaseSettings):
    """Top-level application settings."""

    app_name: str = Field(default="LocalChat", description="Application name")
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )

    store: StoreSettings = Field(default_factory=StoreSettings)
    grouping: GroupingSettings = Field(default_factory=GroupingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    def model_post_init(self, __context) -> None:
        """Configure logging and record where conversations live."""
        self.logging.configure()
        logger = logging.getLogger(__name__)
        logger.info(
            f"Settings loaded for {self.app_name} ({self.environment})",
            extra={
                "environment": self.environment,
                "store_path": str(self.store.path),
                "default_locale": self.grouping.default_locale,
            },
        )


_DOTENV_PATH = Path.cwd() / ".env"


def _apply_dotenv_precedence() -> None:
    env_source = os.getenv("LOCALCHAT_ENV_SOURCE", "dotenv").lower()
    if env_source not in {"dotenv", "envfile", "file"}:
        return
    if _DOTENV_PATH.exists():
        load_dotenv(_DOTENV_PATH, override=True)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings are loaded once per process; call clear_settings_cache() to
    reload them after changing the environment.

    Example:
        >>> from localchat.config import get_settings
        >>> get_settings().store.path
    """
    _apply_dotenv_precedence()
    return Settings()


def clear_settings_cache() -> None:
    """
    Clear the settings cache.

    Useful for testing when you need to reload settings with different
    environment variables.
    """
    get_settings.cache_clear()
