"""Centralized configuration management for remote job processing.

Uses Pydantic BaseSettings for environment variable loading with validation.
Settings are loaded once and cached; a YAML file may overlay them.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional

import yaml  # type: ignore[import-untyped]
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Remote job settings.

    All settings can be overridden via environment variables prefixed with
    ``REMOTEJOBS_`` (e.g. ``REMOTEJOBS_REMOTE_HOST_NAME``).
    """

    model_config = SettingsConfigDict(
        env_prefix="REMOTEJOBS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========== Manager ==========
    manager_name: str = Field(
        default="remotejobs-manager",
        description="Name reported in .lock, .success and .fail files",
    )

    # ========== Remote Host ==========
    remote_host_name: Optional[str] = Field(
        default=None,
        description="Host running the offloaded job steps",
    )
    remote_host_user: Optional[str] = Field(
        default=None,
        description="SSH user on the remote host",
    )
    remote_host_port: int = Field(default=22, description="SSH port")
    remote_host_private_key_file: Optional[str] = Field(
        default=None,
        description="Path to the SSH private key",
    )
    remote_host_passphrase_file: Optional[str] = Field(
        default=None,
        description="Path to a file holding the private key passphrase",
    )

    # ========== Paths ==========
    remote_task_queue_path: Optional[str] = Field(
        default=None,
        description="Remote task queue root; one subdirectory per step tool",
    )
    remote_work_dir_path: Optional[str] = Field(
        default=None,
        description="Remote root under which per job-step work directories live",
    )
    local_work_dir: str = Field(
        default="./work",
        description="Local directory that receives retrieved status files",
    )
    local_task_queue_path: Optional[str] = Field(
        default=None,
        description="Task queue root as seen by the worker (worker side only)",
    )
    step_tools_enabled: str = Field(
        default="",
        description="Comma-separated step tools the worker accepts",
    )

    # ========== Polling Policy ==========
    poll_interval_seconds: int = Field(default=30, description="Seconds between polls")
    stale_lock_hours: float = Field(default=24, description="Age of a .lock without .jobstatus that triggers a notice")
    stale_jobstatus_hours: float = Field(default=24, description="Age of a .jobstatus that triggers a notice")
    copy_wait_poll_seconds: float = Field(default=10, description="Interval for concurrent copy checks")
    copy_wait_timeout_minutes: float = Field(default=15, description="Give up waiting for another writer after this")
    max_unreachable_polls: Optional[int] = Field(
        default=None,
        description="Consecutive unreachable polls before reporting Failed (None = never)",
    )

    # ========== Notifications ==========
    aws_region: str = Field(default="us-west-2", description="AWS region for SNS")
    aws_profile: Optional[str] = Field(default=None, description="AWS profile for SNS")
    sns_topic_arn: Optional[str] = Field(default=None, description="SNS topic ARN for notifications")
    linear_api_key: Optional[str] = Field(default=None, description="Linear API key")
    linear_team_id: Optional[str] = Field(default=None, description="Linear team ID")
    notification_event_types: str = Field(
        default="",
        description="Comma-separated event types to notify on (empty = all)",
    )

    # ========== Logging ==========
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()

    @field_validator("max_unreachable_polls")
    @classmethod
    def validate_unreachable_bound(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("max_unreachable_polls must be at least 1")
        return v

    def enabled_step_tools(self) -> List[str]:
        """Get list of enabled step tools from the comma-separated string."""
        return [t.strip() for t in self.step_tools_enabled.split(",") if t.strip()]

    def enabled_notification_event_types(self) -> List[str]:
        return [t.strip() for t in self.notification_event_types.split(",") if t.strip()]

    def remote_task_queue_for_tool(self, step_tool: str) -> str:
        """Remote task queue directory for a step tool, or "" if undefined."""
        if not self.remote_task_queue_path or not step_tool:
            return ""
        return str(PurePosixPath(self.remote_task_queue_path) / step_tool)

    @property
    def remote_configured(self) -> bool:
        """Check if the remote host and its paths are configured."""
        return bool(
            self.remote_host_name
            and self.remote_task_queue_path
            and self.remote_work_dir_path
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are loaded once and cached for the lifetime of the process.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with different
    environment variables.
    """
    get_settings.cache_clear()


def get_settings_for_testing(**overrides: Any) -> Settings:
    """Create settings instance with overrides for testing.

    This bypasses the cache, allowing tests to use custom configuration.
    """
    return Settings(**overrides)


def load_settings(path: Path) -> Settings:
    """Load settings from a YAML file, overlaying environment values.

    Keys in the file are Settings field names. Unknown keys are ignored.
    """
    with path.open("r", encoding="utf-8") as handle:
        data: Dict[str, Any] = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")
    return Settings(**data)
