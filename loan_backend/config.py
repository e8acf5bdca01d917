"""
Configuration and settings for the loan tracker backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    app_env: str = Field(default="development")

    # Document store. MongoDB takes precedence over a SQLAlchemy URL.
    mongodb_uri: Optional[str] = Field(default=None)
    mongodb_database: str = Field(default="loan_tracker")
    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy connection string (Postgres expected).",
    )
    connect_timeout_ms: int = Field(default=5000, ge=1)
    connect_in_background: bool = Field(
        default=True,
        description="Accept requests while the first store connection is attempted.",
    )

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # HTTP
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    allowed_origins: str | list[str] = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins",
    )
    max_body_bytes: int = Field(default=50 * 1024 * 1024)

    log_level: str = Field(default="INFO")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
