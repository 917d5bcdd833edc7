"""
FIN Gateway Observability

Structured logging for the message engine. Components log through a
``GatewayLogger`` tagged with their layer. Each JSON event carries:

- the correlation id of the operation that produced it (one id per
  assembled, released or ingested message)
- ``message_id`` and ``mt_type`` as top-level keys when the call supplies
  them, so a message can be followed through every layer with one filter
- any remaining keyword arguments under ``context``

Handlers are installed once on the ``fingate`` logger by
``configure_logging``; component loggers only create records.
"""

from __future__ import annotations

import contextvars
import functools
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

ROOT_LOGGER_NAME = "fingate"

# Keys lifted out of ``context`` into their own LogEvent fields.
PROMOTED_KEYS = ("message_id", "mt_type")

_correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    "fingate_correlation_id", default=""
)


class GatewayLayer(Enum):
    """Engine layers, used as the second part of every logger name."""
    VALIDATION = "validation"
    AUTOFIELDS = "autofields"
    BLOCKS = "blocks"
    ASSEMBLER = "assembler"
    LIFECYCLE = "lifecycle"
    INBOUND = "inbound"
    STORE = "store"
    CONFIG = "config"
    CLI = "cli"


# =============================================================================
# EVENTS
# =============================================================================

@dataclass
class LogEvent:
    """One structured log line."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    message_id: Optional[str] = None
    mt_type: Optional[str] = None
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    @classmethod
    def from_record(cls, record: logging.LogRecord) -> "LogEvent":
        context = dict(getattr(record, "context", None) or {})
        promoted = {key: context.pop(key, None) for key in PROMOTED_KEYS}
        event = cls(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname.lower(),
            logger=record.name,
            message=record.getMessage(),
            correlation_id=_correlation_id.get(),
            layer=getattr(record, "layer", ""),
            operation=getattr(record, "operation", ""),
            duration_ms=getattr(record, "duration_ms", None),
            error_code=getattr(record, "error_code", ""),
            context=context,
            **{k: (str(v) if v is not None else None) for k, v in promoted.items()},
        )
        if record.exc_info:
            event.exception = "".join(traceback.format_exception(*record.exc_info))
        return event

    def to_dict(self) -> Dict[str, Any]:
        """Drop unset fields so lines stay short."""
        return {k: v for k, v in asdict(self).items() if v not in (None, "", {})}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Writes one JSON object per record."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.stream.write(LogEvent.from_record(record).to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


# =============================================================================
# LOGGER
# =============================================================================

class GatewayLogger:
    """
    Layer-tagged adapter over ``logging.getLogger("fingate.<layer>.<name>")``.

    ``bind`` returns a child that adds fixed context to every call, e.g. the
    id of the message a lifecycle step works on.
    """

    def __init__(self, name: str, layer: GatewayLayer, bound: Optional[Dict[str, Any]] = None):
        self.name = name
        self.layer = layer
        self.bound: Dict[str, Any] = dict(bound or {})
        self._logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{layer.value}.{name}")

    @property
    def stdlib(self) -> logging.Logger:
        return self._logger

    def bind(self, **context: Any) -> "GatewayLogger":
        return GatewayLogger(self.name, self.layer, {**self.bound, **context})

    def log(
        self,
        level: int,
        message: str,
        *,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(
            level,
            message,
            exc_info=exc_info,
            extra={
                "layer": self.layer.value,
                "operation": operation,
                "error_code": error_code,
                "duration_ms": duration_ms,
                "context": {**self.bound, **context},
            },
        )

    def debug(self, message: str, **context: Any) -> None:
        self.log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self.log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self.log(logging.WARNING, message, **context)

    def error(self, message: str, **context: Any) -> None:
        self.log(logging.ERROR, message, **context)

    def operation(self, name: str, duration_ms: float, success: bool = True, **context: Any) -> None:
        """Completion record for a timed operation; failures at WARNING."""
        self.log(
            logging.DEBUG if success else logging.WARNING,
            f"Operation {name} {'completed' if success else 'failed'}",
            operation=name,
            duration_ms=round(duration_ms, 3),
            **context,
        )


def get_logger(name: str, layer: GatewayLayer) -> GatewayLogger:
    return GatewayLogger(name, layer)


# =============================================================================
# CORRELATION
# =============================================================================

def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def get_correlation_id() -> str:
    """Current correlation id; one is created and bound when none is set."""
    cid = _correlation_id.get()
    if not cid:
        cid = generate_correlation_id()
        _correlation_id.set(cid)
    return cid


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id for the duration of a block."""
    token = _correlation_id.set(correlation_id or generate_correlation_id())
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)


# =============================================================================
# SETUP
# =============================================================================

def configure_logging(
    level: str = "info",
    fmt: str = "json",
    stream: Any = None,
) -> logging.Logger:
    """Install a single handler on the ``fingate`` logger hierarchy.

    Calling again replaces the handler installed by the previous call.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, level.upper()))
    for h in list(root.handlers):
        if getattr(h, "_fingate_handler", False):
            root.removeHandler(h)

    handler: logging.Handler
    if fmt == "json":
        handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler._fingate_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.propagate = False
    return root


def configure_from_config() -> logging.Logger:
    """Apply the ``observability`` section of the active gateway config."""
    from fingate.config import get_config

    obs = get_config().observability
    return configure_logging(obs.log_level.get(), obs.log_format.get())


T = TypeVar("T")


def timed_operation(
    logger: GatewayLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Log the wall time of every call to the decorated function."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.perf_counter()
            ok = False
            try:
                result = func(*args, **kwargs)
                ok = True
                return result
            finally:
                logger.operation(operation_name, (time.perf_counter() - start) * 1000, ok)
        return wrapper
    return decorator
