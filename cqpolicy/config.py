"""
Configuration management for cqpolicy.

This module uses Pydantic's BaseSettings to manage configuration
through environment variables. It provides a centralized and typed
way to handle application settings.
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings.

    These settings are loaded from environment variables prefixed with
    ``CQPOLICY_`` or from a local ``.env`` file.
    """

    # Policy cache
    CACHE_DIR: Path = Path.home() / ".cq" / "policies"

    # Policy hub
    HUB_URL: str = "https://api.github.com"
    HUB_TOKEN: str | None = None
    HTTP_TIMEOUT: float = 30.0  # seconds

    # Provider database
    DB_URL: str | None = None

    # Execution
    CALLBACK_TIMEOUT: float = 5.0  # seconds
    CANCEL_TIMEOUT: float = 5.0  # seconds to wait for an interrupted query
    STRICT_POLICIES: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        env_prefix="CQPOLICY_",
        extra="ignore",
    )


settings = Settings()
