"""Centralized settings management for the ingestion engine."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings powered by pydantic-settings.

    Loads configuration from environment variables and a .env file located
    at the project root.
    """

    # -------------------------------------------------------------------------
    # ENVIRONMENT
    # -------------------------------------------------------------------------
    ENV: str = "development"
    DEBUG: bool = False

    # -------------------------------------------------------------------------
    # LOGGING
    # -------------------------------------------------------------------------
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = False
    LOG_FILE: Path | None = None

    # -------------------------------------------------------------------------
    # TRANSPORT
    # -------------------------------------------------------------------------
    HTTP_USER_AGENT: str = "SourceIngestion/1.0"
    HTTP_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)
    HTTP_MAX_RETRIES: int = Field(default=2, ge=0)
    BROWSER_HEADLESS: bool = True

    # -------------------------------------------------------------------------
    # ENGINE
    # -------------------------------------------------------------------------
    RETRY_ATTEMPTS: int = Field(default=3, ge=0)
    RETRY_DELAY_SECONDS: float = Field(default=1.0, ge=0)
    MAX_CONCURRENT_SOURCES: int = Field(default=1, ge=1)
    MAX_CONCURRENT_DOCUMENTS: int = Field(default=1, ge=1)

    # -------------------------------------------------------------------------
    # SOURCE CREDENTIALS (referenced from the sources file as ${NAME})
    # -------------------------------------------------------------------------
    SOURCE_API_TOKEN: SecretStr | None = None

    # -------------------------------------------------------------------------
    # PATHS
    # -------------------------------------------------------------------------
    BASE_DIR: Path = Path(__file__).resolve().parents[2]
    SOURCES_CONFIG_PATH: Path = BASE_DIR / "src" / "configs" / "sources.yaml"
    # Unset keeps cursors in memory only
    CURSOR_STORE_PATH: Path | None = None

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns
    -------
    Settings
        The singleton settings instance.
    """
    return Settings()
