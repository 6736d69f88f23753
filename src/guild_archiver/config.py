"""
Configuration management for the Guild Archiver.

This module handles all configuration settings, environment variables,
and provides validation for the crawler, write-ahead buffer, memory
governor and membership reconstruction settings.
"""

from pathlib import Path
from typing import Optional, List
from enum import Enum

from pydantic import Field, field_validator, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Valid log levels."""

    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"
    DEBUG = "DEBUG"


class Config(BaseSettings):
    """
    Configuration settings for the Guild Archiver.

    Settings are loaded from environment variables and .env files.
    Environment variables take precedence over .env file values.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_assignment=True
    )

    # Discord Bot Configuration
    discord_token: str = Field(..., description="Discord bot token")
    bot_prefix: str = Field("!", description="Bot command prefix")

    # Storage Configuration
    database_dir: str = Field("data", description="Directory holding one archive file per guild")
    max_retries: int = Field(3, description="Maximum number of database operation retries")
    retry_delay: float = Field(0.5, description="Initial delay between database retries in seconds")

    # Logging Configuration
    log_level: LogLevel = Field(LogLevel.INFO, description="Logging level")
    enable_debug: bool = Field(False, description="Enable debug mode")
    log_file_path: Optional[str] = Field(None, description="Path to log file")
    log_max_size: int = Field(10_000_000, description="Maximum log file size in bytes")
    log_backup_count: int = Field(5, description="Number of log backups to keep")

    # Channel Filtering
    excluded_channels: str = Field("", description="Comma-separated list of channel IDs never archived")

    # Backfill Crawler Configuration
    history_page_size: int = Field(100, description="Messages requested per history page")
    db_batch_size: int = Field(100, description="Messages buffered before a bulk insert")
    max_concurrent_crawls: int = Field(10, description="Maximum number of channels crawled at once")
    status_update_interval: float = Field(5.0, description="Minimum seconds between status message edits")
    default_rate_limit_retry: float = Field(1.0, description="Seconds to wait when a rate limit carries no retry hint")

    # Write-Ahead Buffer Configuration
    wal_check_interval: float = Field(60.0, description="Seconds between write-ahead buffer sweeps")
    wal_dwell_time: float = Field(3600.0, description="Seconds a live message waits before it is verified and archived")

    # Memory Governor Configuration
    memory_limit_mb: int = Field(1024, description="Resident memory budget in megabytes")
    memory_scale_factor: float = Field(0.85, description="Fraction of the budget that triggers cleanup")
    memory_check_interval: float = Field(5.0, description="Seconds between timed memory checks during an export")
    memory_check_every_fetches: int = Field(5, description="Crawler fetch cycles between opportunistic memory checks")
    memory_cooldown_seconds: float = Field(2.0, description="Pause applied when cleanup did not bring memory under the limit")
    gc_passes: int = Field(3, description="Garbage collection passes per cleanup")

    # Membership Configuration
    member_batch_size: int = Field(100, description="Members written per transaction during a member sync")
    left_member_candidate_limit: int = Field(10000, description="Maximum left-member candidates examined per run")
    reconstruction_batch_size: int = Field(100, description="Rows written per reconstruction transaction")
    role_candidate_limit: int = Field(1000, description="Maximum left members examined per role reconstruction run")

    # Health Check Configuration
    health_check_port: int = Field(8080, description="Port for health check server")

    @field_validator("discord_token")
    @classmethod
    def validate_discord_token(cls, v: str) -> str:
        """Validate Discord token format."""
        if not v or len(v) < 50:
            raise ValueError("Discord token appears to be invalid (too short)")
        return v

    @field_validator("history_page_size")
    @classmethod
    def validate_history_page_size(cls, v: int) -> int:
        """Validate history page size against the Discord API maximum."""
        if v < 1 or v > 100:
            raise ValueError("History page size must be between 1 and 100")
        return v

    @field_validator("db_batch_size", "member_batch_size", "reconstruction_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        """Validate batch sizes."""
        if v < 1 or v > 1000:
            raise ValueError("Batch size must be between 1 and 1000")
        return v

    @field_validator("max_concurrent_crawls")
    @classmethod
    def validate_max_concurrent_crawls(cls, v: int) -> int:
        """Validate crawl concurrency."""
        if v < 1 or v > 50:
            raise ValueError("Concurrent crawls must be between 1 and 50")
        return v

    @field_validator("memory_scale_factor")
    @classmethod
    def validate_memory_scale_factor(cls, v: float) -> float:
        """Validate memory scale factor leaves headroom."""
        if v <= 0.0 or v >= 1.0:
            raise ValueError("Memory scale factor must be between 0 and 1 (exclusive)")
        return v

    @field_validator("memory_limit_mb")
    @classmethod
    def validate_memory_limit(cls, v: int) -> int:
        """Validate memory limit."""
        if v < 64:
            raise ValueError("Memory limit must be at least 64 MB")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Validate max retries."""
        if v < 1 or v > 10:
            raise ValueError("Max retries must be between 1 and 10")
        return v

    @field_validator("retry_delay")
    @classmethod
    def validate_retry_delay(cls, v: float) -> float:
        """Validate retry delay."""
        if v < 0.01 or v > 60.0:
            raise ValueError("Retry delay must be between 0.01 and 60.0 seconds")
        return v

    @field_validator(
        "wal_dwell_time", "wal_check_interval", "status_update_interval", "memory_check_interval",
        "memory_cooldown_seconds", "default_rate_limit_retry"
    )
    @classmethod
    def validate_non_negative_interval(cls, v: float) -> float:
        """Validate timer intervals."""
        if v < 0:
            raise ValueError("Intervals must not be negative")
        return v

    @field_validator(
        "memory_check_every_fetches", "gc_passes", "left_member_candidate_limit", "role_candidate_limit"
    )
    @classmethod
    def validate_positive_count(cls, v: int) -> int:
        """Validate counts that drive loops and limits."""
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("health_check_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port numbers."""
        if v < 1024 or v > 65535:
            raise ValueError("Port must be between 1024 and 65535")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.enable_debug and self.log_level in (LogLevel.INFO, LogLevel.WARNING, LogLevel.ERROR)

    @property
    def excluded_channels_list(self) -> List[str]:
        """Get excluded channels as a list."""
        if not self.excluded_channels:
            return []
        return [item.strip() for item in self.excluded_channels.split(",") if item.strip()]

    @property
    def memory_limit_bytes(self) -> int:
        """Memory level above which the governor starts cleaning up."""
        return int(self.memory_limit_mb * 1024 * 1024 * self.memory_scale_factor)

    def should_process_channel(self, channel_id: str) -> bool:
        """Check if a channel should be archived."""
        return channel_id not in self.excluded_channels_list

    def database_path_for(self, guild_id: str) -> Path:
        """Get the archive file for a guild."""
        return Path(self.database_dir) / f"archive_{guild_id}.db"

    def create_directories(self) -> None:
        """Create necessary directories for logs and data."""
        Path(self.database_dir).mkdir(parents=True, exist_ok=True)
        if self.log_file_path:
            Path(self.log_file_path).parent.mkdir(parents=True, exist_ok=True)

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path as Path object."""
        if self.log_file_path:
            return Path(self.log_file_path)
        return None


def _format_validation_error(e: ValidationError) -> str:
    error_messages = []
    for error in e.errors():
        field = ".".join(str(x) for x in error["loc"])
        message = error["msg"]
        error_messages.append(f"{field}: {message}")
    return "Configuration validation failed:\n" + "\n".join(error_messages)


def load_config() -> Config:
    """
    Load and validate configuration from environment variables and .env files.

    Returns:
        Config: Validated configuration object

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    try:
        config = Config()  # type: ignore[call-arg]
        config.create_directories()
        return config

    except ValidationError as e:
        raise ValueError(_format_validation_error(e)) from e

    except Exception as e:
        raise ValueError(f"Failed to load configuration: {e}") from e


def load_config_with_overrides(**overrides) -> Config:
    """
    Load configuration with specific overrides for testing.

    Args:
        **overrides: Configuration values to override

    Returns:
        Config: Configuration object with overrides
    """
    try:
        config = Config(**overrides)
        config.create_directories()
        return config
    except ValidationError as e:
        raise ValueError(_format_validation_error(e)) from e
    except Exception as e:
        raise ValueError(f"Failed to load configuration with overrides: {e}") from e


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get the global configuration instance.

    Returns:
        Config: The configuration object

    Raises:
        ValueError: If configuration hasn't been loaded
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """
    Reload the configuration from environment variables and files.

    Returns:
        Config: The new configuration object
    """
    global _config
    _config = load_config()
    return _config


def reset_config() -> None:
    """Reset the global configuration instance (useful for testing)."""
    global _config
    _config = None
