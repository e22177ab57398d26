"""
kaiproof Observability

Structured logging for the proof pipeline.

Every component logs through :class:`KaiproofLogger`, which writes to the
stdlib logger ``kaiproof.<layer>.<name>`` and attaches the layer, the
operation and a context dict. :func:`configure_logging` installs either a
plain formatter or :class:`StructuredHandler` (one JSON object per line) on
the ``kaiproof`` logger. Correlation ids travel through ``contextvars`` so a
verification run can be followed across layers.

Signature bytes and client data are never written out; context values under
those keys are replaced before the event is emitted.
"""

from __future__ import annotations

import contextlib
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
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

ROOT_LOGGER = "kaiproof"

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

REDACTED = "[redacted]"
_REDACTED_KEYS = frozenset(
    {"signature", "authenticatorData", "clientDataJSON", "authorSig", "privateKey", "d"}
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class KaiproofLayer(Enum):
    """Pipeline layers used to categorize log events."""
    BUNDLE = "bundle"
    ZK = "zk"
    KAS = "kas"
    OWNER = "owner"
    CACHE = "cache"
    VERIFY = "verify"
    SESSION = "session"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
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
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)


def redact(context: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (REDACTED if k in _REDACTED_KEYS else v) for k, v in context.items()}


class StructuredHandler(logging.Handler):
    """Logging handler that writes one JSON event per line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=redact(getattr(record, "context", {}) or {}),
            )
            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))
            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class KaiproofLogger:
    """
    Structured logger for kaiproof components.

    Context keyword arguments are attached to the record rather than
    formatted into the message, so the JSON handler can emit them as fields.
    """

    def __init__(self, name: str, layer: KaiproofLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"{ROOT_LOGGER}.{layer.value}.{name}")

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
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": redact(context),
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, error_code: str = "", exc_info: bool = False, **context: Any) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(self, name: str, duration_ms: float, success: bool = True, **context: Any) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(level, f"Operation {name} {status}", operation=name, duration_ms=duration_ms, **context)


def get_logger(name: str, layer: KaiproofLayer) -> KaiproofLogger:
    return KaiproofLogger(name, layer)


# ---------------------------------------------------------------------------
# Correlation ids
# ---------------------------------------------------------------------------


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def get_correlation_id() -> str:
    """Correlation id of the current scope, or an empty string outside one."""
    return correlation_id_var.get()


@contextlib.contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Run a block under a correlation id (a fresh one unless given)."""
    token = correlation_id_var.set(correlation_id or generate_correlation_id())
    try:
        yield correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def configure_logging(level: str = "warning", json_output: bool = False, stream: Any = None) -> logging.Logger:
    """Install a single handler on the ``kaiproof`` logger.

    Calling this again replaces the handler it installed before.
    """

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, LogLevel(level.lower()).name))
    for handler in list(root.handlers):
        if getattr(handler, "_kaiproof_installed", False):
            root.removeHandler(handler)

    handler: logging.Handler
    if json_output:
        handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler._kaiproof_installed = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    return root


T = TypeVar("T")


def timed_operation(
    logger: KaiproofLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                logger.operation(operation_name, (time.monotonic() - start) * 1000, success)
        wrapper.__name__ = getattr(func, "__name__", operation_name)
        wrapper.__doc__ = func.__doc__
        return wrapper
    return decorator
