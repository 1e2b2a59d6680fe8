"""Configuration management with validation.

All settings come from environment variables and are validated once at
startup, so a misconfigured emulator fails before it binds a port rather
than on the first request.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    CONSOLE = "console"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_DATABASE_URL = "sqlite:///localcloud.db"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 4566
DEFAULT_ENDPOINT_URL = "http://localhost:4566"

DEFAULT_REGION = "us-east-1"
DEFAULT_ACCOUNT_ID = "000000000000"

DEFAULT_NAMESPACE_MARKER = "custom-"
DEFAULT_NAMESPACE = "default"

# Read-after-write tolerance for describe-style reads
DEFAULT_READ_RETRY_ATTEMPTS = 3
MAX_READ_RETRY_ATTEMPTS = 10
DEFAULT_READ_RETRY_DELAY_MS = 10
MAX_READ_RETRY_DELAY_MS = 1000

DEFAULT_SERVER_NAME = "AmazonEC2"

# Seed files are read fully into memory
MAX_SEED_FILE_SIZE_BYTES = 1024 * 1024  # 1MB

# Input validation patterns
VALID_REGION_PATTERN = r"^[a-z]{2}(-[a-z]+)+-\d$"
VALID_ACCOUNT_ID_PATTERN = r"^\d{12}$"
VALID_NAMESPACE_PATTERN = r"^[A-Za-z0-9_.-]{1,128}$"


@dataclass(frozen=True)
class RetrySettings:
    """Bounded retry applied to reads that follow a dependent write."""

    attempts: int = DEFAULT_READ_RETRY_ATTEMPTS
    delay_ms: int = DEFAULT_READ_RETRY_DELAY_MS

    @property
    def delay_seconds(self) -> float:
        """Fixed delay between attempts in seconds."""
        return self.delay_ms / 1000.0


@dataclass(frozen=True)
class Config:
    """Emulator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Persistence
    database_url: str = DEFAULT_DATABASE_URL

    # HTTP listener and the URL clients use to reach it
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    endpoint_url: str = DEFAULT_ENDPOINT_URL

    # Identity of the emulated provider account
    region: str = DEFAULT_REGION
    account_id: str = DEFAULT_ACCOUNT_ID

    # Tenant isolation
    namespace_marker: str = DEFAULT_NAMESPACE_MARKER
    default_namespace: str = DEFAULT_NAMESPACE

    # Response headers
    server_name: str = DEFAULT_SERVER_NAME

    # Behavior
    read_retry: RetrySettings = field(default_factory=RetrySettings)
    seed_file: Path | None = None

    # Logging
    log_level: str = "INFO"
    log_format: LogFormat = LogFormat.JSON

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.database_url:
            errors.append("LOCALCLOUD_DATABASE_URL is required")

        if not (1 <= self.port <= 65535):
            errors.append(f"LOCALCLOUD_PORT must be between 1 and 65535: {self.port}")

        if not self.endpoint_url.startswith(("http://", "https://")):
            errors.append(f"LOCALCLOUD_ENDPOINT_URL must be an http(s) URL: {self.endpoint_url}")

        if not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"LOCALCLOUD_REGION must be a valid region name: {self.region}")

        if not re.match(VALID_ACCOUNT_ID_PATTERN, self.account_id):
            errors.append(f"LOCALCLOUD_ACCOUNT_ID must be 12 digits: {self.account_id}")

        if not self.namespace_marker or any(c.isspace() for c in self.namespace_marker):
            errors.append("LOCALCLOUD_NAMESPACE_MARKER must be a non-empty token without spaces")

        if not re.match(VALID_NAMESPACE_PATTERN, self.default_namespace):
            errors.append(
                f"LOCALCLOUD_DEFAULT_NAMESPACE must match {VALID_NAMESPACE_PATTERN}: "
                f"{self.default_namespace}"
            )

        if not (1 <= self.read_retry.attempts <= MAX_READ_RETRY_ATTEMPTS):
            errors.append(
                f"LOCALCLOUD_READ_RETRY_ATTEMPTS must be between 1 and {MAX_READ_RETRY_ATTEMPTS}"
            )

        if not (0 <= self.read_retry.delay_ms <= MAX_READ_RETRY_DELAY_MS):
            errors.append(
                f"LOCALCLOUD_READ_RETRY_DELAY_MS must be between 0 and {MAX_READ_RETRY_DELAY_MS}"
            )

        if self.seed_file is not None and not self.seed_file.exists():
            errors.append(f"Seed file does not exist: {self.seed_file}")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"LOG_LEVEL is not a valid level: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            LOCALCLOUD_DATABASE_URL: SQLAlchemy database URL (default: sqlite:///localcloud.db)
            LOCALCLOUD_HOST: Listen address (default: 0.0.0.0)
            LOCALCLOUD_PORT: Listen port (default: 4566)
            LOCALCLOUD_ENDPOINT_URL: Base URL embedded in queue URLs (default: http://localhost:4566)
            LOCALCLOUD_REGION: Region used in ARNs (default: us-east-1)
            LOCALCLOUD_ACCOUNT_ID: Account used in ARNs (default: 000000000000)
            LOCALCLOUD_NAMESPACE_MARKER: User-Agent token prefix selecting a namespace
                (default: custom-)
            LOCALCLOUD_DEFAULT_NAMESPACE: Namespace used without a marker (default: default)
            LOCALCLOUD_READ_RETRY_ATTEMPTS: Attempts for read-after-write lookups (default: 3)
            LOCALCLOUD_READ_RETRY_DELAY_MS: Fixed delay between attempts (default: 10)
            LOCALCLOUD_SERVER_NAME: Value of the Server response header (default: AmazonEC2)
            LOCALCLOUD_SEED_FILE: Optional YAML file of resources loaded at startup
            LOG_LEVEL: Root log level (default: INFO)
            LOG_FORMAT: "json" or "console" (default: json)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.JSON
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigurationError(f"LOG_FORMAT must be one of {valid}: {value}") from e

        seed_file = os.environ.get("LOCALCLOUD_SEED_FILE")

        return cls(
            database_url=os.environ.get("LOCALCLOUD_DATABASE_URL", DEFAULT_DATABASE_URL),
            host=os.environ.get("LOCALCLOUD_HOST", DEFAULT_HOST),
            port=get_int("LOCALCLOUD_PORT", DEFAULT_PORT),
            endpoint_url=os.environ.get("LOCALCLOUD_ENDPOINT_URL", DEFAULT_ENDPOINT_URL).rstrip("/"),
            region=os.environ.get("LOCALCLOUD_REGION", DEFAULT_REGION),
            account_id=os.environ.get("LOCALCLOUD_ACCOUNT_ID", DEFAULT_ACCOUNT_ID),
            namespace_marker=os.environ.get(
                "LOCALCLOUD_NAMESPACE_MARKER", DEFAULT_NAMESPACE_MARKER
            ),
            default_namespace=os.environ.get("LOCALCLOUD_DEFAULT_NAMESPACE", DEFAULT_NAMESPACE),
            server_name=os.environ.get("LOCALCLOUD_SERVER_NAME", DEFAULT_SERVER_NAME),
            read_retry=RetrySettings(
                attempts=get_int("LOCALCLOUD_READ_RETRY_ATTEMPTS", DEFAULT_READ_RETRY_ATTEMPTS),
                delay_ms=get_int("LOCALCLOUD_READ_RETRY_DELAY_MS", DEFAULT_READ_RETRY_DELAY_MS),
            ),
            seed_file=Path(seed_file) if seed_file else None,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            log_format=get_log_format(os.environ.get("LOG_FORMAT")),
        )
