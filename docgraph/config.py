"""
Configuration for docgraph.

Settings are read from ``DOCGRAPH_*`` environment variables through
pydantic-settings. Only the bundled store backends and logging consume them;
schema config trees are passed in by the embedding application.
"""

from __future__ import annotations

import logging
from functools import lru_cache

import json_log_formatter
from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """docgraph configuration loaded from environment."""

    # Logging
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, ...)")
    log_format: str = Field(default="text", description="Log format (text, json)")

    # SQLite backend
    sqlite_data_dir: str = Field(
        default=".", description="Base directory for relative sqlite:// paths"
    )
    sqlite_busy_timeout_ms: int = Field(default=5000, description="SQLite busy timeout")
    sqlite_wal_mode: bool = Field(default=True, description="Enable SQLite WAL journal mode")

    model_config = {"env_prefix": "DOCGRAPH_"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    return Settings()


def setup_logging(settings: Settings | None = None) -> None:
    """Configure root logging from settings.

    Args:
        settings: Settings to use (defaults to ``get_settings()``)
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    logger.debug("Logging configured", extra={"level": settings.log_level})
