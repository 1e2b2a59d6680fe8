"""Main entry point for the localcloud emulator.

Loads configuration, installs structured logging and serves the FastAPI
application with uvicorn until interrupted.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

import uvicorn

from .config import Config, ConfigurationError, LogFormat
from .errors import CloudError
from .idempotency import PolicyTableError
from .logcontext import CONTEXT_FIELDS, RequestContextFilter
from .protocol import RegistryError
from .seed import SeedLoadError

# LogRecord attributes that are not user-supplied extras
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
        "color_message",
    }
)


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    """User-supplied fields, request context first."""
    fields = {key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)}
    for key, value in record.__dict__.items():
        if key not in _RESERVED_RECORD_KEYS and key not in fields and key != "asctime":
            fields[key] = value
    return fields


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Fixed keys come first (timestamp, level, logger, message), then the
    request context (request_id, namespace) and then any other extras.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, UTC)
        entry: dict[str, Any] = {
            "timestamp": timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_extras(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human readable lines with extras appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = [f"{key}={value}" for key, value in _extras(record).items()]
        return f"{line} {' '.join(extras)}" if extras else line


def setup_logging(level: str = "INFO", log_format: LogFormat = LogFormat.JSON) -> None:
    """Configure root logging for the emulator process."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if log_format == LogFormat.JSON else ConsoleFormatter())
    handler.addFilter(RequestContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Request lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def serve(config: Config) -> int:
    """Serve the emulator until interrupted.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    from .app import create_app

    logger = logging.getLogger(__name__)

    try:
        app = create_app(config)
    except (RegistryError, PolicyTableError) as e:
        logger.critical("Service catalog is inconsistent", extra={"error": str(e)})
        return 2
    except SeedLoadError as e:
        logger.error("Seed loading failed", extra={"error": str(e)})
        return 1
    except CloudError as e:
        logger.error(
            "Failed to open resource store",
            extra={"error": e.message, "database_url": config.database_url},
        )
        return 1

    logger.info(
        "Starting localcloud",
        extra={"host": config.host, "port": config.port, "endpoint_url": config.endpoint_url},
    )
    try:
        uvicorn.run(app, host=config.host, port=config.port, log_config=None)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("localcloud stopped")
    return 0


def main() -> int:
    """Load configuration from the environment and serve."""
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level, config.log_format)
    return serve(config)


def run() -> None:
    """Entry point for ``python -m``-style launching."""
    sys.exit(main())


if __name__ == "__main__":
    run()
