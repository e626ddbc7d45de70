"""
NEARBRIDGE Observability

Structured logging and correlation ids for transfer processing. Every record
carries the id of the transfer being processed so that the interleaved output
of many concurrently polled transfers can be split back apart.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Transfer Processing                   │
    │  logger.info("msg", transfer_id=x, tx_hash=y)            │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                      BridgeLogger                        │
    │  Correlation ids, component tagging, structured context │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                   StructuredHandler                      │
    │              one JSON object per log record              │
    └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import contextvars
import functools
import inspect
import json
import logging
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

# Context variable for request-scoped data
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class BridgeComponent(Enum):
    """Components of the bridge client, used to tag log records."""
    LOCATOR = "locator"
    CONFIRMATIONS = "confirmations"
    PROOF = "proof"
    TRANSFER = "transfer"
    REDIRECT = "redirect"
    METADATA = "metadata"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    component: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def _plain(event: LogEvent) -> str:
    """Single human readable line for terminals."""
    line = f"{event.timestamp} {event.level.upper():<7} [{event.component or event.logger}] {event.message}"
    if event.correlation_id:
        line += f" ({event.correlation_id})"
    if event.context:
        line += " " + " ".join(f"{k}={v}" for k, v in event.context.items())
    if event.exception:
        line += "\n" + event.exception.rstrip()
    return line


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None, structured: bool = True):
        super().__init__()
        self.stream = stream or sys.stderr
        self.structured = structured

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                component=getattr(record, "component", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            if self.structured:
                self.stream.write(event.to_json() + "\n")
            else:
                self.stream.write(_plain(event) + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class BridgeLogger:
    """
    Structured logger for bridge components.

    Includes the current correlation id and the component name in every
    record; keyword arguments become the record's structured context.
    """

    def __init__(
        self,
        name: str,
        component: BridgeComponent,
        level: LogLevel = LogLevel.INFO,
        structured: bool = True,
    ):
        self.name = name
        self.component = component
        self._logger = logging.getLogger(f"nearbridge.{component.value}.{name}")
        self._logger.setLevel(getattr(logging, level.value.upper()))

        if structured and not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler())

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "component": self.component.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Bind ``correlation_id`` for the duration of the block."""
    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)


def get_logger(
    name: str,
    component: BridgeComponent,
    level: LogLevel = LogLevel.INFO,
) -> BridgeLogger:
    """Get a logger for a bridge component."""
    return BridgeLogger(name, component, level)


def configure_logging(level: str = "info", structured: bool = True) -> None:
    """Apply a level and output style to every nearbridge logger created so far."""
    numeric = getattr(logging, level.upper())
    logging.getLogger("nearbridge").setLevel(numeric)
    for name, obj in list(logging.Logger.manager.loggerDict.items()):
        if not name.startswith("nearbridge.") or not isinstance(obj, logging.Logger):
            continue
        obj.setLevel(numeric)
        for handler in obj.handlers:
            if isinstance(handler, StructuredHandler):
                handler.structured = structured


T = TypeVar("T")


def timed_operation(
    logger: BridgeLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations. Works on coroutines too."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start = time.monotonic()
                success = True
                try:
                    return await func(*args, **kwargs)
                except Exception:
                    success = False
                    raise
                finally:
                    duration_ms = (time.monotonic() - start) * 1000
                    logger.operation(operation_name, duration_ms, success)
            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator
