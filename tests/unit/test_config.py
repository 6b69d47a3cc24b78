"""
Unit tests for settings and the token store factory.
Tests filevault/core/config.py and filevault/core/redis_client.py
"""
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from filevault.core.config import Settings
from filevault.core.redis_client import create_token_store
from filevault.storage.tokens import InMemoryTokenStore, RedisTokenStore


@pytest.mark.unit
class TestSettings:
    """Test Settings validation and conversion."""

    def test_defaults(self):
        config = Settings(_env_file=None)

        assert config.API_V1_PREFIX == "/api/v1"
        assert config.TOKEN_STORE == "memory"
        assert config.DOWNLOAD_TOKEN_TTL_MINUTES == 60

    def test_values_are_normalised(self):
        config = Settings(_env_file=None, TOKEN_STORE="Redis", LOG_LEVEL="debug")

        assert config.TOKEN_STORE == "redis"
        assert config.LOG_LEVEL == "DEBUG"

    def test_unknown_token_store(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, TOKEN_STORE="memcached")

    def test_unknown_log_level(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, LOG_LEVEL="verbose")

    def test_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, CLEANUP_INTERVAL_MINUTES=0)

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STORAGE_ROOT", str(tmp_path))
        monkeypatch.setenv("MAX_FILE_SIZE", "2048")
        monkeypatch.setenv("ENABLE_AUTOMATIC_CLEANUP", "false")

        config = Settings(_env_file=None)

        assert config.storage_config().base_dir == Path(tmp_path)
        assert config.storage_config().max_file_size == 2048
        assert config.retention_config().enable_automatic_cleanup is False

    def test_storage_config(self, tmp_path):
        config = Settings(
            _env_file=None,
            STORAGE_ROOT=str(tmp_path),
            ALLOWED_MIME_TYPES=["text/csv"],
            COMPRESSION_ENABLED=True,
        )

        storage = config.storage_config()

        assert storage.allowed_mime_types == frozenset({"text/csv"})
        assert storage.compression_enabled is True

    def test_retention_config(self):
        config = Settings(
            _env_file=None,
            TEMP_FILE_RETENTION_MINUTES=15,
            MAX_STORAGE_SIZE=1024,
            CLEANUP_INTERVAL_MINUTES=5,
        )

        retention = config.retention_config()

        assert retention.temp_file_retention_minutes == 15
        assert retention.max_storage_size == 1024
        assert retention.cleanup_interval_minutes == 5


@pytest.mark.unit
class TestCreateTokenStore:
    """Test create_token_store()."""

    def test_memory_store(self):
        store = create_token_store(Settings(_env_file=None))

        assert isinstance(store, InMemoryTokenStore)

    def test_redis_requires_url(self):
        with pytest.raises(ValueError, match="REDIS_URL is required"):
            create_token_store(Settings(_env_file=None, TOKEN_STORE="redis"))

    def test_redis_store(self):
        config = Settings(_env_file=None, TOKEN_STORE="redis", REDIS_URL="redis://cache:6379/1")

        with patch("filevault.core.redis_client.get_redis_client") as get_client:
            store = create_token_store(config)

        get_client.assert_called_once_with("redis://cache:6379/1")
        assert isinstance(store, RedisTokenStore)
