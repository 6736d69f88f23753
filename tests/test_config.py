"""
Unit tests for the configuration module.

This module tests the configuration loading, validation, and various settings
to ensure the archiver operates correctly with different configurations.
"""

import os
import pytest
from unittest.mock import patch
from pathlib import Path

from pydantic import ValidationError

from guild_archiver.config import (
    Config, LogLevel, load_config, load_config_with_overrides,
    get_config, reload_config, reset_config
)

from conftest import VALID_TOKEN


class TestLogLevel:
    """Test the LogLevel enum."""

    def test_log_levels(self):
        """Test all log levels are available."""
        assert LogLevel.CRITICAL == "CRITICAL"
        assert LogLevel.ERROR == "ERROR"
        assert LogLevel.WARNING == "WARNING"
        assert LogLevel.INFO == "INFO"
        assert LogLevel.DEBUG == "DEBUG"


class TestConfig:
    """Test the Config class and its validation."""

    def setup_method(self):
        """Reset configuration before each test."""
        reset_config()

    def test_config_with_valid_data(self):
        """Test creating config with valid data."""
        config = Config(discord_token=VALID_TOKEN)

        assert config.discord_token == VALID_TOKEN
        assert config.log_level == LogLevel.INFO
        assert config.history_page_size == 100
        assert config.max_concurrent_crawls == 10
        assert config.wal_dwell_time == 3600.0
        assert config.memory_scale_factor == 0.85

    def test_discord_token_validation(self):
        """Test Discord token validation."""
        with pytest.raises(ValidationError, match="Discord token appears to be invalid"):
            Config(discord_token="short")

        with pytest.raises(ValidationError, match="Discord token appears to be invalid"):
            Config(discord_token="")

    def test_history_page_size_validation(self):
        """Test the page size is capped at the API maximum."""
        assert Config(discord_token=VALID_TOKEN, history_page_size=50).history_page_size == 50

        with pytest.raises(ValidationError, match="History page size must be between 1 and 100"):
            Config(discord_token=VALID_TOKEN, history_page_size=0)

        with pytest.raises(ValidationError, match="History page size must be between 1 and 100"):
            Config(discord_token=VALID_TOKEN, history_page_size=101)

    def test_batch_size_validation(self):
        """Test batch size validation."""
        config = Config(discord_token=VALID_TOKEN, db_batch_size=50)
        assert config.db_batch_size == 50

        with pytest.raises(ValidationError, match="Batch size must be between 1 and 1000"):
            Config(discord_token=VALID_TOKEN, db_batch_size=0)

        with pytest.raises(ValidationError, match="Batch size must be between 1 and 1000"):
            Config(discord_token=VALID_TOKEN, member_batch_size=5000)

    def test_concurrency_validation(self):
        """Test crawl concurrency bounds."""
        with pytest.raises(ValidationError, match="Concurrent crawls must be between 1 and 50"):
            Config(discord_token=VALID_TOKEN, max_concurrent_crawls=0)

    def test_memory_settings(self):
        """Test memory budget validation and the effective limit."""
        config = Config(discord_token=VALID_TOKEN, memory_limit_mb=100, memory_scale_factor=0.5)
        assert config.memory_limit_bytes == 50 * 1024 * 1024

        with pytest.raises(ValidationError, match="Memory scale factor must be between 0 and 1"):
            Config(discord_token=VALID_TOKEN, memory_scale_factor=1.0)

        with pytest.raises(ValidationError, match="Memory limit must be at least 64 MB"):
            Config(discord_token=VALID_TOKEN, memory_limit_mb=10)

    def test_interval_validation(self):
        """Test negative timer intervals are rejected."""
        with pytest.raises(ValidationError, match="Intervals must not be negative"):
            Config(discord_token=VALID_TOKEN, wal_dwell_time=-1)

        with pytest.raises(ValidationError, match="Intervals must not be negative"):
            Config(discord_token=VALID_TOKEN, memory_cooldown_seconds=-0.5)

        with pytest.raises(ValidationError, match="Intervals must not be negative"):
            Config(discord_token=VALID_TOKEN, default_rate_limit_retry=-1)

        config = Config(discord_token=VALID_TOKEN, memory_cooldown_seconds=0, default_rate_limit_retry=0)
        assert config.memory_cooldown_seconds == 0
        assert config.default_rate_limit_retry == 0

    def test_count_validation(self):
        """Test loop counts and candidate limits must be positive."""
        for field in ("memory_check_every_fetches", "gc_passes", "left_member_candidate_limit", "role_candidate_limit"):
            with pytest.raises(ValidationError, match="Value must be at least 1"):
                Config(discord_token=VALID_TOKEN, **{field: 0})

        config = Config(discord_token=VALID_TOKEN, memory_check_every_fetches=1, gc_passes=1)
        assert config.memory_check_every_fetches == 1
        assert config.gc_passes == 1

    def test_retry_settings_validation(self):
        """Test storage retry bounds."""
        with pytest.raises(ValidationError, match="Max retries must be between 1 and 10"):
            Config(discord_token=VALID_TOKEN, max_retries=0)

        with pytest.raises(ValidationError, match="Retry delay must be between 0.01 and 60.0 seconds"):
            Config(discord_token=VALID_TOKEN, retry_delay=0)

    def test_port_validation(self):
        """Test port validation."""
        config = Config(discord_token=VALID_TOKEN, health_check_port=8080)
        assert config.health_check_port == 8080

        with pytest.raises(ValidationError, match="Port must be between 1024 and 65535"):
            Config(discord_token=VALID_TOKEN, health_check_port=80)

        with pytest.raises(ValidationError, match="Port must be between 1024 and 65535"):
            Config(discord_token=VALID_TOKEN, health_check_port=70000)

    def test_excluded_channels(self):
        """Test channel exclusion parsing."""
        config = Config(discord_token=VALID_TOKEN, excluded_channels="123456789, 987654321,")

        assert config.excluded_channels_list == ["123456789", "987654321"]
        assert config.should_process_channel("123456789") is False
        assert config.should_process_channel("555555555") is True

        config_empty = Config(discord_token=VALID_TOKEN, excluded_channels="")
        assert config_empty.excluded_channels_list == []
        assert config_empty.should_process_channel("any_channel") is True

    def test_database_path_for(self, tmp_path):
        """Test each guild gets its own archive file."""
        config = Config(discord_token=VALID_TOKEN, database_dir=str(tmp_path))

        assert config.database_path_for("42") == tmp_path / "archive_42.db"
        assert config.database_path_for("42") != config.database_path_for("43")

    def test_is_production_property(self):
        """Test production mode detection."""
        config_prod = Config(discord_token=VALID_TOKEN, enable_debug=False, log_level=LogLevel.INFO)
        assert config_prod.is_production is True

        config_dev = Config(discord_token=VALID_TOKEN, enable_debug=True, log_level=LogLevel.DEBUG)
        assert config_dev.is_production is False

    def test_create_directories(self, tmp_path):
        """Test directory creation."""
        config = Config(
            discord_token=VALID_TOKEN,
            database_dir=str(tmp_path / "archives"),
            log_file_path=str(tmp_path / "logs" / "bot.log")
        )

        config.create_directories()

        assert (tmp_path / "archives").is_dir()
        assert (tmp_path / "logs").is_dir()
        assert config.get_log_file_path() == Path(tmp_path / "logs" / "bot.log")


class TestConfigLoading:
    """Test configuration loading functions."""

    def setup_method(self):
        """Reset configuration before each test."""
        reset_config()

    def test_load_config_from_env(self, tmp_path):
        """Test loading configuration from environment variables."""
        with patch.dict(os.environ, {"DISCORD_TOKEN": VALID_TOKEN, "DATABASE_DIR": str(tmp_path)}):
            config = load_config()

        assert config.discord_token == VALID_TOKEN
        assert config.database_dir == str(tmp_path)

    def test_load_config_with_overrides(self, tmp_path):
        """Test loading configuration with overrides."""
        config = load_config_with_overrides(
            discord_token=VALID_TOKEN,
            database_dir=str(tmp_path),
            db_batch_size=25,
            enable_debug=True
        )

        assert config.db_batch_size == 25
        assert config.enable_debug is True

    def test_load_config_validation_error(self):
        """Test configuration loading with validation errors."""
        with pytest.raises(ValueError, match="Configuration validation failed"):
            load_config_with_overrides(discord_token="invalid_token")

    def test_get_config_singleton(self, tmp_path):
        """Test configuration singleton behavior."""
        with patch.dict(os.environ, {"DISCORD_TOKEN": VALID_TOKEN, "DATABASE_DIR": str(tmp_path)}):
            config1 = get_config()
            config2 = get_config()

        # Should return the same instance
        assert config1 is config2

    def test_reload_config(self, tmp_path):
        """Test configuration reloading."""
        with patch.dict(os.environ, {"DISCORD_TOKEN": VALID_TOKEN, "DATABASE_DIR": str(tmp_path)}):
            config1 = get_config()
            config2 = reload_config()

        # Should return a new instance
        assert config1 is not config2
        assert config2.discord_token == config1.discord_token
