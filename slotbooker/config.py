"""
Configuration management using Pydantic.
"""

from pathlib import Path
from typing import Optional

import pendulum
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .adapters.calendar_sync import RetryPolicy
from .domain.recurrence import MAX_SERIES_OCCURRENCES
from .domain.slot_generator import DEFAULT_GRANULARITY_MINUTES
from .services.availability import SyncFailurePolicy


class DefaultsConfig(BaseModel):
    """Defaults applied when a listing or request leaves a value out."""
    duration_minutes: int = 60
    slot_granularity_minutes: int = DEFAULT_GRANULARITY_MINUTES
    max_recurring_occurrences: int = MAX_SERIES_OCCURRENCES

    @field_validator("duration_minutes", "slot_granularity_minutes", "max_recurring_occurrences")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Ensure the value is positive."""
        if value <= 0:
            raise ValueError(f"Value must be greater than zero, got {value}")
        return value


class SyncConfig(BaseModel):
    """External calendar sync settings."""
    failure_policy: SyncFailurePolicy = SyncFailurePolicy.FAIL_OPEN
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    attempt_timeout_seconds: float = 5.0
    deadline_seconds: float = 10.0

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_attempts must be at least 1")
        return value

    @field_validator("backoff_seconds")
    @classmethod
    def validate_backoff(cls, value: float) -> float:
        if value < 0:
            raise ValueError("backoff_seconds must not be negative")
        return value

    @field_validator("backoff_multiplier")
    @classmethod
    def validate_multiplier(cls, value: float) -> float:
        if value < 1:
            raise ValueError("backoff_multiplier must be at least 1")
        return value

    @field_validator("attempt_timeout_seconds", "deadline_seconds")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Timeouts must be greater than zero")
        return value

    @model_validator(mode="after")
    def validate_deadline(self) -> "SyncConfig":
        """An attempt may not outlive the overall deadline."""
        if self.attempt_timeout_seconds > self.deadline_seconds:
            raise ValueError("attempt_timeout_seconds must not exceed deadline_seconds")
        return self

    def to_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            backoff_multiplier=self.backoff_multiplier,
            attempt_timeout_seconds=self.attempt_timeout_seconds,
            deadline_seconds=self.deadline_seconds,
        )


class GoogleConfig(BaseModel):
    """Google Calendar OAuth client."""
    client_id: str
    client_secret: str = ""


class OutlookConfig(BaseModel):
    """Microsoft Graph (Outlook) OAuth client."""
    client_id: str
    client_secret: str = ""
    tenant_id: str = "common"

    def get_authority_url(self) -> str:
        """Get the formatted authority URL."""
        return f"https://login.microsoftonline.com/{self.tenant_id}"


class AppConfig(BaseModel):
    """Application configuration."""
    timezone: str = "UTC"
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    storage_timeout_seconds: float = 5.0
    keyring_service: str = "slotbooker"
    google: Optional[GoogleConfig] = None
    outlook: Optional[OutlookConfig] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Ensure the timezone name is known."""
        try:
            pendulum.timezone(value)
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @field_validator("storage_timeout_seconds")
    @classmethod
    def validate_storage_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("storage_timeout_seconds must be greater than zero")
        return value

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a config.yaml file. See config.example.yaml for reference."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping at the root level.")

        return cls(**data)


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for config.yaml in current directory
    config_path = Path.cwd() / "config.yaml"

    if not config_path.exists():
        # Try in the project root (parent of the package)
        config_path = Path(__file__).parent.parent / "config.yaml"

    return config_path
