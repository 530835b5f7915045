"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from provisioner.config import (
    DEFAULT_MAX_PARALLELISM,
    ConfigurationError,
    EngineConfig,
    LogFormat,
)

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"


class TestEngineConfig:
    """Tests for EngineConfig validation."""

    def test_defaults(self) -> None:
        """Test the default configuration is valid."""
        config = EngineConfig()

        assert config.max_parallelism == DEFAULT_MAX_PARALLELISM
        assert config.max_provider_attempts == 3
        assert config.run_timeout_seconds is None
        assert config.subscription_id is None
        assert config.log_format == LogFormat.JSON

    @pytest.mark.parametrize("value", [0, 65])
    def test_parallelism_bounds(self, value: int) -> None:
        """Test parallelism outside 1..64 is rejected."""
        with pytest.raises(ConfigurationError, match="MAX_PARALLELISM"):
            EngineConfig(max_parallelism=value)

    def test_attempt_bounds(self) -> None:
        """Test provider attempts outside 1..10 are rejected."""
        with pytest.raises(ConfigurationError, match="MAX_PROVIDER_ATTEMPTS"):
            EngineConfig(max_provider_attempts=11)

    def test_backoff_max_below_base(self) -> None:
        """Test the backoff cap cannot be below the base."""
        with pytest.raises(ConfigurationError, match="RETRY_BACKOFF_MAX_SECONDS"):
            EngineConfig(retry_backoff_base_seconds=10.0, retry_backoff_max_seconds=5.0)

    def test_invalid_subscription_id(self) -> None:
        """Test the subscription ID must be a GUID."""
        with pytest.raises(ConfigurationError, match="AZURE_SUBSCRIPTION_ID"):
            EngineConfig(subscription_id="not-a-guid")

    def test_state_dir_must_be_directory(self, tmp_path: Path) -> None:
        """Test a file at STATE_DIR is rejected."""
        state_file = tmp_path / "state"
        state_file.write_text("x")

        with pytest.raises(ConfigurationError, match="STATE_DIR"):
            EngineConfig(state_dir=state_file)

    def test_all_errors_reported_together(self) -> None:
        """Test validation collects every error into one exception."""
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(max_parallelism=0, log_level="LOUD", run_timeout_seconds=0)

        message = str(exc_info.value)
        assert "MAX_PARALLELISM" in message
        assert "LOG_LEVEL" in message
        assert "RUN_TIMEOUT" in message

    def test_require_subscription_id(self) -> None:
        """Test the Azure provider requires a subscription."""
        with pytest.raises(ConfigurationError, match="required"):
            EngineConfig().require_subscription_id()
        assert EngineConfig(subscription_id=SUBSCRIPTION_ID).require_subscription_id() == (
            SUBSCRIPTION_ID
        )


class TestEngineConfigFromEnv:
    """Tests for EngineConfig.from_env()."""

    def test_from_env(self, tmp_path: Path) -> None:
        """Test loading every setting from the environment."""
        env = {
            "STATE_DIR": str(tmp_path / "state"),
            "MAX_PARALLELISM": "8",
            "MAX_PROVIDER_ATTEMPTS": "5",
            "RETRY_BACKOFF_BASE_SECONDS": "0.5",
            "RETRY_BACKOFF_MAX_SECONDS": "10",
            "PROVIDER_TIMEOUT": "600",
            "RUN_TIMEOUT": "3600",
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
            "LOG_LEVEL": "debug",
            "LOG_FORMAT": "TEXT",
        }
        with patch.dict(os.environ, env, clear=True):
            config = EngineConfig.from_env()

        assert config.state_dir == tmp_path / "state"
        assert config.max_parallelism == 8
        assert config.max_provider_attempts == 5
        assert config.retry_backoff_base_seconds == 0.5
        assert config.retry_backoff_max_seconds == 10.0
        assert config.provider_timeout_seconds == 600
        assert config.run_timeout_seconds == 3600
        assert config.subscription_id == SUBSCRIPTION_ID
        assert config.log_format == LogFormat.TEXT
        assert config.log_level_value == 10

    def test_defaults_from_empty_env(self) -> None:
        """Test an empty environment yields the defaults."""
        with patch.dict(os.environ, {}, clear=True):
            config = EngineConfig.from_env()

        assert config == EngineConfig()

    def test_non_integer(self) -> None:
        """Test a non-numeric integer setting is rejected."""
        with patch.dict(os.environ, {"MAX_PARALLELISM": "many"}, clear=True):
            with pytest.raises(ConfigurationError, match="must be an integer"):
                EngineConfig.from_env()

    def test_invalid_log_format(self) -> None:
        """Test unknown log formats are rejected."""
        with patch.dict(os.environ, {"LOG_FORMAT": "xml"}, clear=True):
            with pytest.raises(ConfigurationError, match="LOG_FORMAT"):
                EngineConfig.from_env()

    def test_zero_parallelism_rejected(self) -> None:
        """Test explicit zero is validated rather than defaulted."""
        with patch.dict(os.environ, {"MAX_PARALLELISM": "0"}, clear=True):
            with pytest.raises(ConfigurationError, match="MAX_PARALLELISM"):
                EngineConfig.from_env()
