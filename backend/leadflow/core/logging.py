"""
Logging Setup
Trace id propagation for worker log lines.

The trace id created at intake is bound to a ContextVar while a message is
being processed, and a logging.Filter stamps it onto every record so that
all log lines for one lead can be correlated.
"""
import logging
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator, Optional

trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [trace=%(trace_id)s] %(message)s'


def set_trace_id(value: Optional[str]) -> Token:
    return trace_id_var.set(value)


def reset_trace_id(token: Token) -> None:
    trace_id_var.reset(token)


def get_trace_id() -> Optional[str]:
    return trace_id_var.get()


@contextmanager
def trace_context(trace_id: Optional[str]) -> Iterator[None]:
    """Bind a trace id for the duration of a block."""
    token = set_trace_id(trace_id)
    try:
        yield
    finally:
        reset_trace_id(token)


class TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "trace_id", None):
            record.trace_id = get_trace_id() or "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for a worker process."""
    root_logger = logging.getLogger()
    if getattr(root_logger, "_leadflow_configured", False):
        return

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )
    for handler in root_logger.handlers:
        handler.addFilter(TraceIdFilter())

    root_logger._leadflow_configured = True  # type: ignore[attr-defined]
