"""
Configuration and settings for the showcase backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Database (Postgres expected, any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Blob storage
    blob_backend: Literal["database", "s3"] = Field(default="database")
    media_chunk_size: int = Field(default=255 * 1024)
    max_upload_bytes: int = Field(default=25 * 1024 * 1024)

    # S3-compatible storage
    s3_endpoint: Optional[str] = Field(default=None)
    s3_region: Optional[str] = Field(default=None)
    s3_bucket: Optional[str] = Field(default=None)
    s3_prefix: str = Field(default="media/")
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # Operator endpoints (cleanup). Unset means no token check.
    admin_api_token: Optional[str] = Field(default=None)

    # Orphan sweep
    sweep_older_than_minutes: int = Field(default=60)
    sweep_interval_seconds: int = Field(default=3600)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
