"""Configuration management for the meeting knowledge store."""

from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


BackendKind = Literal["memory", "file", "redis"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Environment
    KNOWLEDGE_STORE_ENV: str = Field(
        default="dev", description="Environment: dev, test, staging, prod"
    )

    # Storage backend
    STATE_BACKEND: BackendKind = Field(
        default="memory", description="Storage backend: memory, file or redis"
    )
    STATE_NAMESPACE: str = Field(
        default="persistent-state", description="Namespace for all stored keys"
    )
    STATE_DEFAULT_TTL_SECONDS: int = Field(
        default=0, ge=0, description="Default time-to-live in seconds (0 = no expiry)"
    )
    STATE_FILE_DIR: str = Field(
        default=".state", description="Root directory for the file backend"
    )
    REDIS_URL: str = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )

    # Meeting index
    MEETING_INDEX_ENABLED: bool = Field(
        default=True, description="Maintain in-memory secondary indices"
    )
    MEETING_INDEX_REBUILD_INTERVAL_SECONDS: float = Field(
        default=3600.0, gt=0, description="Seconds before indices are considered stale"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If an environment variable holds an invalid value
    """
    return Settings()
