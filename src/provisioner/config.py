"""Configuration management with validation.

Limits are enforced at configuration load time so a misconfigured run fails
before any declaration is read or any provider call is made.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_STATE_DIR = ".provisioner/state"

DEFAULT_MAX_PARALLELISM = 4
MIN_MAX_PARALLELISM = 1
MAX_MAX_PARALLELISM = 64

DEFAULT_MAX_PROVIDER_ATTEMPTS = 3
MAX_MAX_PROVIDER_ATTEMPTS = 10

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 60.0

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 1800
MAX_PROVIDER_TIMEOUT_SECONDS = 4 * 3600

# Security constraints - enforced limits to prevent abuse
MAX_DECLARATION_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max declaration file
MAX_RESOURCES_PER_DECLARATION = 500

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))

    # Executor
    max_parallelism: int = DEFAULT_MAX_PARALLELISM
    max_provider_attempts: int = DEFAULT_MAX_PROVIDER_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS
    provider_timeout_seconds: int = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    # None means no run-level timeout
    run_timeout_seconds: int | None = None

    # Azure provider; only required when the Azure provider is used
    subscription_id: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: LogFormat = LogFormat.JSON

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (MIN_MAX_PARALLELISM <= self.max_parallelism <= MAX_MAX_PARALLELISM):
            errors.append(
                f"MAX_PARALLELISM must be between {MIN_MAX_PARALLELISM} "
                f"and {MAX_MAX_PARALLELISM}"
            )

        if not (1 <= self.max_provider_attempts <= MAX_MAX_PROVIDER_ATTEMPTS):
            errors.append(
                f"MAX_PROVIDER_ATTEMPTS must be between 1 and {MAX_MAX_PROVIDER_ATTEMPTS}"
            )

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")
        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX_SECONDS must be >= RETRY_BACKOFF_BASE_SECONDS")

        if not (1 <= self.provider_timeout_seconds <= MAX_PROVIDER_TIMEOUT_SECONDS):
            errors.append(
                f"PROVIDER_TIMEOUT must be between 1 and {MAX_PROVIDER_TIMEOUT_SECONDS} seconds"
            )

        if self.run_timeout_seconds is not None and self.run_timeout_seconds < 1:
            errors.append("RUN_TIMEOUT must be a positive number of seconds")

        if self.subscription_id is not None and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"STATE_DIR is not a directory: {self.state_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level.upper())

    def require_subscription_id(self) -> str:
        """Return the subscription ID or fail with a configuration error."""
        if not self.subscription_id:
            raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required for the Azure provider")
        return self.subscription_id

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            STATE_DIR: Directory holding state records (default: .provisioner/state)
            MAX_PARALLELISM: Concurrent provider operations (default: 4)
            MAX_PROVIDER_ATTEMPTS: Attempts per operation for transient errors (default: 3)
            RETRY_BACKOFF_BASE_SECONDS: First retry delay (default: 2.0)
            RETRY_BACKOFF_MAX_SECONDS: Retry delay cap (default: 60)
            PROVIDER_TIMEOUT: Timeout per provider call in seconds (default: 1800)
            RUN_TIMEOUT: Stop scheduling new operations after N seconds (default: none)
            AZURE_SUBSCRIPTION_ID: Target subscription for the Azure provider
            LOG_LEVEL: Logging level (default: INFO)
            LOG_FORMAT: json or text (default: json)
        """

        def get_int(key: str, default: int | None) -> int | None:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.JSON
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigurationError(f"LOG_FORMAT must be one of {valid}: {value}") from e

        return cls(
            state_dir=Path(os.environ.get("STATE_DIR", DEFAULT_STATE_DIR)),
            max_parallelism=get_int("MAX_PARALLELISM", DEFAULT_MAX_PARALLELISM) or 0,
            max_provider_attempts=get_int(
                "MAX_PROVIDER_ATTEMPTS", DEFAULT_MAX_PROVIDER_ATTEMPTS
            ) or 0,
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX_SECONDS", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            provider_timeout_seconds=get_int(
                "PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT_SECONDS
            ) or 0,
            run_timeout_seconds=get_int("RUN_TIMEOUT", None),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=get_log_format(os.environ.get("LOG_FORMAT")),
        )
