"""
Configuration settings for sitemark.

Reads credentials from the project .env file and provides typed settings.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Resolve paths
PACKAGE_DIR = Path(__file__).parent
PROJECT_ROOT = PACKAGE_DIR.parent
ENV_FILE = PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Database - PostgreSQL in production, SQLite for local runs
    database_url: str = Field(
        default="sqlite:///./sitemark.db",
        alias="DATABASE_URL",
        description="SQLAlchemy connection URL"
    )

    # Application settings
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Caller identity
    jwt_secret: str = Field(
        default="sitemark-dev-secret-change-me",
        alias="JWT_SECRET",
        description="HMAC secret used to verify bearer tokens"
    )
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    dev_auth_bypass: bool = Field(
        default=False,
        alias="DEV_AUTH_BYPASS",
        description="Accept unauthenticated requests as a fixed dev user"
    )

    # Object storage
    storage_bucket: str = Field(default="sitemark-local", alias="STORAGE_BUCKET")
    storage_public_url: str = Field(
        default="http://localhost:8080/api/v1/storage",
        alias="STORAGE_PUBLIC_URL",
        description="Public base URL of the storage download router"
    )
    export_prefix: str = Field(default="project-report-exports", alias="EXPORT_PREFIX")

    # Reference number allocation
    ref_counter_max_attempts: int = Field(
        default=10,
        alias="REF_COUNTER_MAX_ATTEMPTS",
        description="Max optimistic transaction attempts per allocation"
    )

    # Report composition
    photo_fetch_timeout: float = Field(
        default=10.0,
        alias="PHOTO_FETCH_TIMEOUT",
        description="Timeout in seconds for fetching one photo marker image"
    )
    photo_max_bytes: int = Field(default=15 * 1024 * 1024, alias="PHOTO_MAX_BYTES")
    photo_max_dimension: int = Field(
        default=1600,
        alias="PHOTO_MAX_DIMENSION",
        description="Photos are downscaled so their longest side fits this size"
    )
    report_include_cover: bool = Field(default=False, alias="REPORT_INCLUDE_COVER")
    max_export_payload_bytes: int = Field(default=50 * 1024 * 1024, alias="MAX_EXPORT_PAYLOAD_BYTES")

    # Orphan sweep
    orphan_sweep_minutes: int = Field(
        default=60,
        alias="ORPHAN_SWEEP_MINUTES",
        description="Export objects older than this with no history entry are swept"
    )

    @computed_field
    @property
    def is_sqlite(self) -> bool:
        """Whether the configured database is SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience accessors
settings = get_settings()
