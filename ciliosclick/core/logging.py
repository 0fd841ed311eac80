"""
Structured logging configuration for the CíliosClick provisioning service.

Provides centralized logging with context propagation, structured JSON output,
and integration with CloudWatch/ELK.
"""
import json
import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict, Optional

from ciliosclick.core.config import get_settings

settings = get_settings()

# Context variables for request-scoped data
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
transaction_id_var: ContextVar[Optional[str]] = ContextVar("transaction_id", default=None)

_RESERVED_RECORD_KEYS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in JSON format with context information for easy parsing
    by log aggregation systems (CloudWatch, ELK, etc.).
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as JSON.

        Args:
            record: Log record

        Returns:
            JSON string
        """
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        trace_id = trace_id_var.get()
        if trace_id:
            log_data["trace_id"] = trace_id

        transaction_id = transaction_id_var.get()
        if transaction_id:
            log_data["transaction_id"] = transaction_id

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        # Fields passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str, ensure_ascii=False)


def setup_logging() -> None:
    """
    Configure logging for the application.

    Sets up structured JSON logging for production and human-readable
    logging for development.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    # Remove existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    if settings.DEBUG:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = StructuredFormatter()

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Set levels for third-party libraries
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DEBUG else logging.WARNING
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


class LogContext:
    """
    Context manager for adding context to logs.

    Usage:
        with LogContext(trace_id="abc", transaction_id="HP123"):
            logger.info("This log will include trace_id and transaction_id")
    """

    def __init__(
        self,
        trace_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ):
        self.trace_id = trace_id
        self.transaction_id = transaction_id
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        if self.trace_id:
            self._tokens.append((trace_id_var, trace_id_var.set(self.trace_id)))

        if self.transaction_id:
            self._tokens.append((transaction_id_var, transaction_id_var.set(self.transaction_id)))

        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


def log_operation(
    logger: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    **context: Any,
) -> None:
    """
    Log an operation with context.

    Args:
        logger: Logger instance
        operation: Operation name
        level: Log level
        **context: Additional context fields
    """
    logger.log(
        level,
        f"Operation: {operation}",
        extra={"operation": operation, **context},
    )


def log_performance(
    logger: logging.Logger,
    operation: str,
    duration_seconds: float,
    **context: Any,
) -> None:
    """
    Log operation performance.

    Args:
        logger: Logger instance
        operation: Operation name
        duration_seconds: Duration in seconds
        **context: Additional context fields
    """
    logger.info(
        f"Operation {operation} completed in {duration_seconds:.3f}s",
        extra={
            "operation": operation,
            "duration_seconds": duration_seconds,
            "performance": True,
            **context,
        },
    )


# Initialize logging on module import
setup_logging()
