"""Structured logging for tenant lifecycle operations.

Every log line carries the tenant and operation it belongs to, taken from
context variables so nested components do not need to thread them through.
Output is either JSON (one object per line) or the operator-facing text form
``2024-01-01 12:00:00 [INFO] message``.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

ROOT_LOGGER = "dcloud_core"

# Context variables for operation-scoped data
operation_id_var: ContextVar[str | None] = ContextVar("operation_id", default=None)
operation_var: ContextVar[str | None] = ContextVar("operation", default=None)
tenant_var: ContextVar[str | None] = ContextVar("tenant", default=None)


class LogLevel(str, Enum):
    """Log levels matching Python's logging module."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class LogContext:
    """Context data to include with every log entry."""

    operation_id: str | None = None
    operation: str | None = None
    tenant: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def current(cls) -> "LogContext":
        """Get current context from context variables."""
        return cls(
            operation_id=operation_id_var.get(),
            operation=operation_var.get(),
            tenant=tenant_var.get(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result: dict[str, Any] = {}
        if self.operation_id:
            result["operation_id"] = self.operation_id
        if self.operation:
            result["operation"] = self.operation
        if self.tenant:
            result["tenant"] = self.tenant
        result.update(self.extra)
        return result


@dataclass
class LogEntry:
    """A structured log entry."""

    level: LogLevel
    message: str
    timestamp: str
    logger: str
    context: dict[str, Any] = field(default_factory=dict)
    error: dict[str, Any] | None = None
    duration_ms: float | None = None

    def to_json(self) -> str:
        """Serialize to JSON string."""
        data: dict[str, Any] = {
            "level": self.level.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "logger": self.logger,
        }
        if self.context:
            data["context"] = self.context
        if self.error:
            data["error"] = self.error
        if self.duration_ms is not None:
            data["duration_ms"] = self.duration_ms
        return json.dumps(data, default=str)


def _record_context(record: logging.LogRecord) -> dict[str, Any]:
    context = LogContext.current().to_dict()
    if hasattr(record, "context") and isinstance(record.context, dict):
        context.update(record.context)
    return context


class StructuredFormatter(logging.Formatter):
    """Formats log records as structured JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        error = None
        if record.exc_info:
            error = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else "Unknown",
                "message": str(record.exc_info[1]) if record.exc_info[1] else "",
            }

        entry = LogEntry(
            level=LogLevel(record.levelname),
            message=record.getMessage(),
            timestamp=datetime.now(timezone.utc).isoformat(),
            logger=record.name,
            context=_record_context(record),
            error=error,
            duration_ms=getattr(record, "duration_ms", None),
        )
        return entry.to_json()


class TextFormatter(logging.Formatter):
    """Timestamped, leveled single-line output for operators."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _record_context(record)
        context.pop("operation_id", None)
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        if record.exc_info and record.exc_info[1] is not None and not record.exc_text:
            line += f" ({type(record.exc_info[1]).__name__}: {record.exc_info[1]})"
        return line

    def formatException(self, ei: Any) -> str:  # noqa: N802
        # Errors are summarised on the log line itself
        return ""


class StructuredLogger:
    """Wrapper around Python logging with structured output.

    Example:
        logger = StructuredLogger("dcloud_core.backup")
        logger.info("Backup created", context={"archive": path})
        logger.warning("Cache rebuild failed", error=exception)
    """

    def __init__(self, name: str) -> None:
        """Initialize structured logger.

        Args:
            name: Logger name (typically module name). Handlers live on the
                package root logger, see configure_logging().
        """
        self.logger = logging.getLogger(name)

    def _log(
        self,
        level: LogLevel,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Internal log method."""
        extra: dict[str, Any] = {}
        if context:
            extra["context"] = context
        if duration_ms is not None:
            extra["duration_ms"] = duration_ms

        log_func = getattr(self.logger, level.value.lower())
        if error:
            log_func(message, exc_info=(type(error), error, error.__traceback__), extra=extra)
        else:
            log_func(message, extra=extra)

    def debug(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log at DEBUG level."""
        self._log(LogLevel.DEBUG, message, context, duration_ms=duration_ms)

    def info(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log at INFO level."""
        self._log(LogLevel.INFO, message, context, duration_ms=duration_ms)

    def warning(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log at WARNING level."""
        self._log(LogLevel.WARNING, message, context, error, duration_ms)

    def error(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log at ERROR level."""
        self._log(LogLevel.ERROR, message, context, error, duration_ms)


class OperationContext:
    """Context manager binding log lines to one tenant operation.

    Example:
        async with OperationContext("create", tenant="acme"):
            # All logs in this block will include operation and tenant
            logger.info("Copying directory")
    """

    def __init__(
        self,
        operation: str,
        tenant: str | None = None,
        operation_id: str | None = None,
    ) -> None:
        self.operation = operation
        self.tenant = tenant
        self.operation_id = operation_id or uuid.uuid4().hex[:12]
        # Store (var, token) tuples so we can reset properly
        self._tokens: list[tuple[ContextVar, Any]] = []

    def __enter__(self) -> "OperationContext":
        """Set context variables."""
        self._tokens.append((operation_id_var, operation_id_var.set(self.operation_id)))
        self._tokens.append((operation_var, operation_var.set(self.operation)))
        if self.tenant:
            self._tokens.append((tenant_var, tenant_var.set(self.tenant)))
        return self

    def __exit__(self, *args: Any) -> None:
        """Reset context variables to their previous values."""
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    async def __aenter__(self) -> "OperationContext":
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


class Timer:
    """Context manager for timing operations.

    Example:
        with Timer() as t:
            await do_operation()
        logger.info("Operation complete", duration_ms=t.duration_ms)
    """

    def __init__(self) -> None:
        self.start_time: float = 0
        self.end_time: float = 0

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        end = self.end_time or time.perf_counter()
        return round((end - self.start_time) * 1000, 2)

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.end_time = time.perf_counter()

    async def __aenter__(self) -> "Timer":
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    format: str = "text",
    stream: Any = None,
) -> None:
    """Configure the package root logger.

    Args:
        level: Minimum log level
        format: Output format ("json" or "text")
        stream: Destination stream (defaults to stderr so stdout stays
            reserved for command output such as ``list json``)
    """
    level = LogLevel(level.upper()) if isinstance(level, str) else level
    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level.value)

    # Remove existing handlers
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    if format == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a module.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structured logger
    """
    return StructuredLogger(name)
