"""All configuration via environment.

Take note of the environment variable prefixes required for each
settings class, e.g. `DB_URL` for `DatabaseSettings.URL`.
"""
from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Configures the backing store.

    Prefix all environment variables with `DB_`, e.g., `DB_URL`.
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    URL: str = "sqlite://"
    """SQLAlchemy database URL, in-memory SQLite by default."""
    ECHO: bool = False
    """Passed through to `sqlalchemy.create_engine()`."""
    FOREIGN_KEYS: bool = True
    """Enable `PRAGMA foreign_keys` on SQLite connections."""


class LogSettings(BaseSettings):
    """Configures logging.

    Prefix all environment variables with `LOG_`, e.g., `LOG_LEVEL`.
    """

    model_config = SettingsConfigDict(
        env_prefix="LOG_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    FORMAT: Literal["console", "json"] = "console"
    QUERIES: bool = False
    """Log every SQL statement and its parameters at debug level."""


class ORMSettings(BaseSettings):
    """Configures the entity manager.

    Prefix all environment variables with `ORM_`, e.g., `ORM_DTO_INFO_KEY`.
    """

    model_config = SettingsConfigDict(
        env_prefix="ORM_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    DTO_INFO_KEY: str = "dto"
    """The key used to store DTO information on `Field.info`."""
    DEFAULT_ORDER: Literal["asc", "desc"] = "asc"
    """Primary key order applied to queries that give no `order_by`."""


db = DatabaseSettings()
"""Database settings."""
log = LogSettings()
"""Logging settings."""
orm = ORMSettings()
"""Entity manager settings."""
