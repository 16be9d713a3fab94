"""
Centralized logging configuration for the cluster manager.

Implements file-based logging with rotation, separate streams for cluster
lifecycle, health and API access, and optional JSON output.
"""
# mypy: ignore-errors

import copy
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

LIFECYCLE_LOGGER = "cluster_manager.lifecycle"
HEALTH_LOGGER = "cluster_manager.health"
API_ACCESS_LOGGER = "cluster_manager.api.access"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = ("cluster_id", "operation", "request_id", "duration_ms", "status")

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON for better parsing."""
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in self.EXTRA_FIELDS:
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter for console and file logs."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False):
        """Initialize formatter with optional color support."""
        self.use_colors = use_colors
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format with optional colors for console output."""
        if self.use_colors and record.levelname in self.COLORS:
            # Colored copy so file handlers see the plain level name
            record = copy.copy(record)
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
        return super().format(record)


def _rotating_handler(
    path: Path, formatter: logging.Formatter, max_bytes: int, backup_count: int
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count
    )
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    log_dir: str = "/var/log/cluster-manager",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    use_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 10,
) -> None:
    """
    Configure logging for the cluster manager.

    Args:
        log_dir: Directory for log files
        console_level: Console logging level
        file_level: File logging level
        use_json: Use JSON formatting for files
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    # Console handler with color
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, console_level.upper()))
    console_handler.setFormatter(HumanReadableFormatter(use_colors=True))
    root_logger.addHandler(console_handler)

    file_formatter = StructuredFormatter() if use_json else HumanReadableFormatter()

    # Main application log
    main_handler = _rotating_handler(
        log_path / "manager.log", file_formatter, max_bytes, backup_count
    )
    main_handler.setLevel(getattr(logging, file_level.upper()))
    root_logger.addHandler(main_handler)

    # Error-only log for monitoring
    error_handler = _rotating_handler(
        log_path / "error.log", file_formatter, max_bytes, backup_count
    )
    error_handler.setLevel(logging.ERROR)
    root_logger.addHandler(error_handler)

    # Lifecycle and health streams also reach the main log
    for name, filename in (
        (LIFECYCLE_LOGGER, "cluster-lifecycle.log"),
        (HEALTH_LOGGER, "health.log"),
    ):
        stream_logger = logging.getLogger(name)
        stream_logger.handlers.clear()
        stream_logger.addHandler(
            _rotating_handler(log_path / filename, file_formatter, max_bytes, backup_count)
        )
        stream_logger.setLevel(logging.DEBUG)

    # API access log
    api_logger = logging.getLogger(API_ACCESS_LOGGER)
    api_logger.handlers.clear()
    api_logger.addHandler(
        _rotating_handler(log_path / "api-access.log", file_formatter, max_bytes, backup_count)
    )
    api_logger.setLevel(logging.INFO)
    api_logger.propagate = False  # Don't duplicate to root logger

    # Set third-party loggers to WARNING to reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)

    root_logger.info(
        f"Logging initialized - Console: {console_level}, File: {file_level}, "
        f"Directory: {log_dir}, JSON: {use_json}"
    )


def log_cluster_operation(
    operation: str,
    cluster_id: str,
    details: Optional[Dict[str, Any]] = None,
    level: str = "INFO",
) -> None:
    """
    Log a cluster lifecycle operation to the lifecycle stream.

    Args:
        operation: Operation type (create, stage, scale, terminate, ...)
        cluster_id: Cluster identifier
        details: Additional operation details
        level: Log level (INFO, WARNING, ERROR)
    """
    logger = logging.getLogger(LIFECYCLE_LOGGER)

    message = f"Cluster operation: {operation} [{cluster_id}]"
    extra: Dict[str, Any] = {"cluster_id": cluster_id, "operation": operation}

    if details:
        message += f" - {json.dumps(details, default=str)}"

    log_method = getattr(logger, level.lower())
    log_method(message, extra=extra)
