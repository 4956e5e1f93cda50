"""Main entry point for the OpenStack operator.

Reads configuration from the environment, loads the cluster spec, and runs
one reconciliation of the resulting task graph. The exit code reports the
outcome so a scheduler (cron job, CI step) can retry a partial run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .errors import OperatorError
from .reconciler import Reconciler
from .spec_loader import SpecLoadError

# Exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PARTIAL = 3

# LogRecord attributes that are not structured extras
_RESERVED_ATTRS = frozenset(
    (
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
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the OpenStack SDK
    logging.getLogger("openstack").setLevel(logging.WARNING)
    logging.getLogger("keystoneauth").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def main() -> int:
    """Run one reconciliation.

    Returns:
        Exit code: 0 on success, 3 when the run was partially applied,
        1 on configuration or spec errors.
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_ERROR

    logger.info(
        "Starting OpenStack operator",
        extra={
            "cloud": config.cloud_name,
            "cluster_spec": str(config.cluster_spec_path),
            "dry_run": config.dry_run,
        },
    )

    try:
        reconciler = Reconciler.from_config(config)
    except SpecLoadError as e:
        logger.error(
            "Failed to load cluster spec",
            extra={"error": str(e), "path": str(config.cluster_spec_path)},
        )
        return EXIT_ERROR
    except OperatorError as e:
        logger.error(
            "Failed to initialize reconciler",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_ERROR

    result = await reconciler.reconcile_once()
    if result.error is not None:
        return EXIT_ERROR
    if result.failed:
        return EXIT_PARTIAL
    return EXIT_OK


def run() -> None:
    """Entry point for the operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
