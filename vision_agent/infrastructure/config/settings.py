"""Runtime configuration, read from VISION_* environment variables or .env"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="VISION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = Field(default="vision-agent")
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")

    store_backend: Literal["memory", "sqlite"] = Field(default="memory")
    sqlite_path: str = Field(default="data/vision.db")

    title_field: str = Field(default="company_name", description="Identity field mirrored into the record title")
    default_context_budget: int = Field(default=2000, ge=0)
    recent_turns: int = Field(default=10, ge=1)
    user_memory_ttl: int = Field(default=30 * 24 * 3600, ge=1, description="Seconds a user memory fact stays live")

    cors_origins: list = Field(default_factory=lambda: ["*"])


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
