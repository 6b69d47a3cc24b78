"""
Application configuration management using Pydantic Settings.
Loads environment variables and provides centralized configuration.
"""
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from filevault.storage.engine import StorageConfig, DEFAULT_ALLOWED_MIME_TYPES
from filevault.storage.retention import RetentionConfig


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # API Metadata
    APP_NAME: str = "FileVault Storage API"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    # Storage
    STORAGE_ROOT: str = Field(default_factory=lambda: str(Path.cwd() / "uploads"))
    MAX_FILE_SIZE: int = 100 * 1024 * 1024  # 100MB
    ALLOWED_MIME_TYPES: List[str] = list(DEFAULT_ALLOWED_MIME_TYPES)
    RETENTION_DAYS: int = 30
    COMPRESSION_ENABLED: bool = False

    # Retention
    TEMP_FILE_RETENTION_MINUTES: int = 60
    ARCHIVED_FILE_RETENTION_DAYS: int = 90
    DELETED_FILE_RETENTION_DAYS: int = 30
    MAX_STORAGE_SIZE: int = 10 * 1024 * 1024 * 1024  # 10GB
    ENABLE_AUTOMATIC_CLEANUP: bool = True
    CLEANUP_INTERVAL_MINUTES: int = 60

    # Download tokens
    DOWNLOAD_TOKEN_TTL_MINUTES: int = 60
    TOKEN_STORE: str = "memory"
    REDIS_URL: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    @field_validator("TOKEN_STORE")
    @classmethod
    def validate_token_store(cls, v: str) -> str:
        """Only the in-process and Redis backends exist."""
        v = v.lower()
        if v not in ("memory", "redis"):
            raise ValueError("TOKEN_STORE must be 'memory' or 'redis'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL: {v}")
        return v

    @field_validator("CLEANUP_INTERVAL_MINUTES")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError("CLEANUP_INTERVAL_MINUTES must be >= 1")
        return v

    def storage_config(self) -> StorageConfig:
        return StorageConfig(
            base_dir=Path(self.STORAGE_ROOT),
            max_file_size=self.MAX_FILE_SIZE,
            allowed_mime_types=frozenset(self.ALLOWED_MIME_TYPES),
            retention_days=self.RETENTION_DAYS,
            compression_enabled=self.COMPRESSION_ENABLED,
        )

    def retention_config(self) -> RetentionConfig:
        return RetentionConfig(
            temp_file_retention_minutes=self.TEMP_FILE_RETENTION_MINUTES,
            archived_file_retention_days=self.ARCHIVED_FILE_RETENTION_DAYS,
            deleted_file_retention_days=self.DELETED_FILE_RETENTION_DAYS,
            max_storage_size=self.MAX_STORAGE_SIZE,
            enable_automatic_cleanup=self.ENABLE_AUTOMATIC_CLEANUP,
            cleanup_interval_minutes=self.CLEANUP_INTERVAL_MINUTES,
        )


# Global settings instance
settings = Settings()
