from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


S3_MIN_PART_SIZE_BYTES = 5 * 1024 * 1024


class Secrets(BaseSettings):
    """Secrets configuration, loaded from the environment or a secrets management service."""

    model_config = SettingsConfigDict(
        env_prefix="SPECIMENS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    jwt_secret: str = Field(default="change-me", description="Signing secret for JWT validation.")
    aws_access_key_id: Optional[str] = Field(default=None, description="S3 access key.")
    aws_secret_access_key: Optional[str] = Field(default=None, description="S3 secret key.")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Secrets":
        return cls()


class Settings(BaseSettings):
    """Centralised runtime configuration for the specimen ingest API."""

    model_config = SettingsConfigDict(
        env_prefix="SPECIMENS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Specimen Ingest API"
    environment: str = Field(default="development", description="Deployment environment label.")
    version: str = Field(default="0.1.0", description="API version for metadata and OpenAPI.")
    log_level: str = Field(default="info")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./specimens.db",
        description="SQLAlchemy compatible DSN.",
    )
    auto_create_schema: bool = Field(
        default=False,
        description="Create tables on startup instead of relying on alembic. Development only.",
    )

    storage_backend: Literal["local", "s3"] = Field(default="local", description="Active blob store implementation.")
    local_storage_base_path: Path = Field(
        default_factory=lambda: Path("blobs"),
        description="Root directory for the local blob store.",
    )
    s3_bucket: Optional[str] = None
    s3_region: Optional[str] = None
    s3_endpoint_url: Optional[str] = Field(default=None, description="Override for S3-compatible stores.")

    accepted_content_types: tuple[str, ...] = Field(
        default=("image/jpeg", "image/png", "image/gif", "image/webp"),
        description="Image MIME types accepted for upload.",
    )
    upload_flush_threshold_bytes: int = Field(
        default=S3_MIN_PART_SIZE_BYTES,
        ge=1,
        description="Buffered bytes required before a backend part is written.",
    )
    max_chunk_size_bytes: int = Field(default=20 * 1024 * 1024, ge=1, description="Largest accepted append chunk.")
    tus_part_size_bytes: int = Field(default=S3_MIN_PART_SIZE_BYTES, ge=1, description="Backend part size for tus uploads.")
    tus_max_size_bytes: int = Field(default=1024 * 1024 * 1024, ge=1, description="Largest accepted tus Upload-Length.")

    jwt_algorithm: str = Field(default="HS256", description="Algorithm used for JWT tokens.")
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None

    secrets: Secrets = Field(default_factory=Secrets, description="Holds sensitive configuration.")

    @property
    def environment_lower(self) -> str:
        return self.environment.lower()

    @property
    def part_size_floor(self) -> int:
        if self.storage_backend == "s3":
            return S3_MIN_PART_SIZE_BYTES
        return 1


@lru_cache()
def get_settings() -> Settings:
    load_dotenv(".env", override=False)

    _ENV_ALIAS_MAP = {
        "SPECIMENS_ENV": "SPECIMENS_ENVIRONMENT",
        "SPECIMENS_DB_URL": "SPECIMENS_DATABASE_URL",
    }

    for source, target in _ENV_ALIAS_MAP.items():
        value = os.getenv(source)
        if value:
            os.environ[target] = value

    settings = Settings()

    secrets = Secrets.from_settings(settings)

    if settings.environment == "production" and secrets.jwt_secret == "change-me":
        raise ValueError("Production environment must have a non-default JWT secret.")

    for name in ("upload_flush_threshold_bytes", "tus_part_size_bytes"):
        if getattr(settings, name) < settings.part_size_floor:
            raise ValueError(f"{name} must be at least {settings.part_size_floor} bytes for the {settings.storage_backend} backend.")

    settings.secrets = secrets
    return settings


__all__ = ["Settings", "Secrets", "get_settings", "S3_MIN_PART_SIZE_BYTES"]
