"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from localcloud.config import (
    DEFAULT_NAMESPACE,
    DEFAULT_PORT,
    Config,
    ConfigurationError,
    LogFormat,
    RetrySettings,
)


class TestConfig:
    """Tests for Config class."""

    def test_defaults_are_valid(self) -> None:
        """Test that the default configuration validates."""
        config = Config()

        assert config.port == DEFAULT_PORT
        assert config.default_namespace == DEFAULT_NAMESPACE
        assert config.log_format == LogFormat.JSON
        assert config.seed_file is None

    def test_invalid_port(self) -> None:
        """Test that an out-of-range port raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(port=70000)

        assert "LOCALCLOUD_PORT" in str(exc_info.value)

    def test_invalid_region(self) -> None:
        """Test that a malformed region raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(region="Europe")

        assert "LOCALCLOUD_REGION" in str(exc_info.value)

    def test_invalid_account_id(self) -> None:
        """Test that the account id must be twelve digits."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(account_id="1234")

        assert "LOCALCLOUD_ACCOUNT_ID" in str(exc_info.value)

    def test_marker_without_spaces(self) -> None:
        """Test that the namespace marker cannot contain whitespace."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(namespace_marker="custom -")

        assert "LOCALCLOUD_NAMESPACE_MARKER" in str(exc_info.value)

    def test_retry_bounds(self) -> None:
        """Test that retry attempts and delay are bounded."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(read_retry=RetrySettings(attempts=0, delay_ms=5000))

        message = str(exc_info.value)
        assert "LOCALCLOUD_READ_RETRY_ATTEMPTS" in message
        assert "LOCALCLOUD_READ_RETRY_DELAY_MS" in message

    def test_missing_seed_file(self, tmp_path: Path) -> None:
        """Test that a configured seed file must exist."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(seed_file=tmp_path / "missing.yaml")

        assert "Seed file does not exist" in str(exc_info.value)

    def test_all_errors_reported_together(self) -> None:
        """Test that every invalid field is listed in one error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(port=0, region="nowhere", log_level="LOUD")

        message = str(exc_info.value)
        assert "LOCALCLOUD_PORT" in message
        assert "LOCALCLOUD_REGION" in message
        assert "LOG_LEVEL" in message

    def test_retry_delay_seconds(self) -> None:
        """Test conversion of the retry delay to seconds."""
        assert RetrySettings(attempts=3, delay_ms=250).delay_seconds == 0.25


class TestConfigFromEnv:
    """Tests for Config.from_env."""

    def test_from_env(self, tmp_path: Path) -> None:
        """Test loading configuration from environment."""
        seed = tmp_path / "seed.yaml"
        seed.write_text("resources: []\n")

        env = {
            "LOCALCLOUD_DATABASE_URL": "sqlite://",
            "LOCALCLOUD_PORT": "4600",
            "LOCALCLOUD_ENDPOINT_URL": "http://cloud.test:4600/",
            "LOCALCLOUD_REGION": "eu-west-1",
            "LOCALCLOUD_ACCOUNT_ID": "123456789012",
            "LOCALCLOUD_NAMESPACE_MARKER": "tenant-",
            "LOCALCLOUD_READ_RETRY_ATTEMPTS": "5",
            "LOCALCLOUD_READ_RETRY_DELAY_MS": "0",
            "LOCALCLOUD_SEED_FILE": str(seed),
            "LOG_LEVEL": "debug",
            "LOG_FORMAT": "console",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.database_url == "sqlite://"
        assert config.port == 4600
        assert config.endpoint_url == "http://cloud.test:4600"
        assert config.region == "eu-west-1"
        assert config.account_id == "123456789012"
        assert config.namespace_marker == "tenant-"
        assert config.read_retry == RetrySettings(attempts=5, delay_ms=0)
        assert config.seed_file == seed
        assert config.log_level == "DEBUG"
        assert config.log_format == LogFormat.CONSOLE

    def test_from_env_defaults(self) -> None:
        """Test that an empty environment yields the defaults."""
        with patch.dict(os.environ, {}, clear=True):
            config = Config.from_env()

        assert config == Config()

    def test_non_integer_port(self) -> None:
        """Test that a non-numeric port raises error."""
        with patch.dict(os.environ, {"LOCALCLOUD_PORT": "http"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "must be an integer" in str(exc_info.value)

    def test_invalid_log_format(self) -> None:
        """Test that an unknown log format raises error."""
        with patch.dict(os.environ, {"LOG_FORMAT": "xml"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "LOG_FORMAT" in str(exc_info.value)
