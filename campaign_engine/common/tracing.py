# campaign_engine/common/tracing.py
from __future__ import annotations
import logging, uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator, Optional, Union

_TRACE_ID: ContextVar[Optional[str]] = ContextVar("_TRACE_ID", default=None)
_FACTORY_INSTALLED = False

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [trace=%(trace_id)s]: %(message)s"


def new_trace_id() -> str:
    return str(uuid.uuid4())

def get_trace_id() -> Optional[str]:
    return _TRACE_ID.get()

def set_trace_id(value: Optional[str]) -> None:
    _TRACE_ID.set(value)


@contextmanager
def trace_scope(trace_id: Optional[str] = None) -> Iterator[str]:
    """Bind a trace id (a job id, usually) for the duration of the block."""
    value = trace_id or new_trace_id()
    token = _TRACE_ID.set(value)
    try:
        yield value
    finally:
        _TRACE_ID.reset(token)


def _install_logrecord_factory() -> None:
    """Ensure every LogRecord has .trace_id (even for 3rd-party loggers)."""
    global _FACTORY_INSTALLED
    if _FACTORY_INSTALLED:
        return
    old_factory: Callable[..., logging.LogRecord] = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs) -> logging.LogRecord:
        record = old_factory(*args, **kwargs)
        if not hasattr(record, "trace_id"):
            record.trace_id = get_trace_id() or "-"
        return record

    logging.setLogRecordFactory(record_factory)
    _FACTORY_INSTALLED = True


def setup_logging(level: Union[int, str] = logging.INFO) -> None:
    """Set a format that includes trace_id and install the factory."""
    _install_logrecord_factory()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(level=level, format=LOG_FORMAT)
