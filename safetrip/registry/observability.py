"""
Registry Observability

Structured logging for the identity registry. Every line carries the
correlation ID of the request that produced it, the registry layer, and
for rejected operations the stable error code.

    component ──► RegistryLogger ──► StructuredHandler ──► stderr
                  (layer, operation,   (one JSON object
                   error_code, ctx)     or text line)

The CLI sets one correlation ID per invocation; library callers may set
their own with ``set_correlation_id``.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Optional, TypeVar

from safetrip.registry.config import RegistryConfig, get_config, get_config_manager

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "safetrip_correlation_id", default=""
)


class RegistryLayer(Enum):
    """Which component emitted a log line."""
    ROLES = "roles"
    STORE = "store"
    VERIFIERS = "verifiers"
    ENGINE = "engine"
    TRIPS = "trips"
    EMERGENCY = "emergency"
    AUDIT = "audit"
    EVENTS = "events"
    BULK = "bulk"
    STATS = "stats"
    PAUSE = "pause"
    PERSISTENCE = "persistence"
    CLI = "cli"
    CONFIG = "config"


@dataclass
class LogEvent:
    """One structured log line."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Fields with a value; empty strings, None and {} are dropped."""
        return {k: v for k, v in asdict(self).items() if v not in (None, "", {})}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)

    def to_text(self) -> str:
        parts = [self.timestamp, self.level.upper(), self.logger, self.message]
        if self.error_code:
            parts.append(f"[{self.error_code}]")
        if self.context:
            parts.append(" ".join(f"{k}={v}" for k, v in sorted(self.context.items())))
        return " ".join(parts)

    @classmethod
    def from_record(cls, record: logging.LogRecord) -> "LogEvent":
        event = cls(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname.lower(),
            logger=record.name,
            message=record.getMessage(),
            correlation_id=correlation_id_var.get(),
            layer=getattr(record, "layer", ""),
            operation=getattr(record, "operation", ""),
            duration_ms=getattr(record, "duration_ms", None),
            error_code=getattr(record, "error_code", ""),
            context=dict(getattr(record, "context", {})),
        )
        if record.exc_info:
            event.exception = "".join(traceback.format_exception(*record.exc_info))
        return event


class StructuredHandler(logging.Handler):
    """
    Writes each record as a JSON object (or a text line) to ``stream``.

    Without an explicit ``fmt`` the handler follows ``observability.log_format``.
    """

    def __init__(self, stream: Any = None, fmt: Optional[str] = None):
        super().__init__()
        self.stream = stream if stream is not None else sys.stderr
        self.follows_config = fmt is None
        self.fmt = fmt or "json"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent.from_record(record)
            self.stream.write((event.to_text() if self.fmt == "text" else event.to_json()) + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class RegistryLogger:
    """
    Logger bound to one registry component.

    Keyword arguments other than ``operation``, ``error_code`` and
    ``duration_ms`` become the line's ``context``.
    """

    def __init__(self, name: str, layer: RegistryLayer, level: Optional[str] = None):
        self.name = name
        self.layer = layer
        self._fixed_level = level
        self._logger = logging.getLogger(f"safetrip.{layer.value}.{name}")
        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler())
        self.configure(get_config())
        _loggers[self._logger.name] = self

    def configure(self, config: RegistryConfig) -> None:
        """Apply the level and line format from ``config``. An explicit level wins."""
        settings = config.observability
        self._logger.setLevel((self._fixed_level or settings.log_level.get()).upper())
        for handler in self._logger.handlers:
            if isinstance(handler, StructuredHandler) and handler.follows_config:
                handler.fmt = settings.log_format.get()

    def log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._logger.log(
            level,
            message,
            exc_info=exc_info,
            extra={
                "layer": self.layer.value,
                "operation": operation,
                "error_code": error_code,
                "duration_ms": duration_ms,
                "context": context,
            },
        )

    def debug(self, message: str, **context: Any) -> None:
        self.log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self.log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self.log(logging.WARNING, message, **context)

    def error(self, message: str, error_code: str = "", exc_info: bool = False, **context: Any) -> None:
        self.log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def rejected(self, operation: str, error: Exception, **context: Any) -> None:
        """A refused operation: warning level, tagged with the error's code."""
        self.log(
            logging.WARNING,
            f"{operation} rejected: {error}",
            operation=operation,
            error_code=getattr(error, "code", type(error).__name__),
            **context,
        )

    def operation(self, name: str, duration_ms: float, success: bool = True, **context: Any) -> None:
        self.log(
            logging.DEBUG if success else logging.WARNING,
            f"{name} {'finished' if success else 'raised'} in {duration_ms:.2f}ms",
            operation=name,
            duration_ms=round(duration_ms, 3),
            **context,
        )


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """The current correlation ID; one is created on first use."""
    current = correlation_id_var.get()
    if not current:
        current = generate_correlation_id()
        correlation_id_var.set(current)
    return current


# Latest RegistryLogger per underlying logger name.
_loggers: Dict[str, RegistryLogger] = {}


def get_logger(name: str, layer: RegistryLayer) -> RegistryLogger:
    return RegistryLogger(name, layer)


def apply_logging_config(config: RegistryConfig) -> None:
    """Re-read level and format for every registry logger; runs on each config change."""
    for registry_logger in list(_loggers.values()):
        registry_logger.configure(config)


get_config_manager().watch(apply_logging_config)


T = TypeVar("T")


def timed_operation(
    logger: RegistryLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Log how long the wrapped call took and whether it raised."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            started = time.monotonic()
            ok = False
            try:
                result = func(*args, **kwargs)
                ok = True
                return result
            finally:
                logger.operation(operation_name, (time.monotonic() - started) * 1000, ok)
        return wrapper
    return decorator
