"""
Tracing port.

Components take a ``Tracer`` in their constructor and open spans at the
boundaries that matter operationally (registry calls, store writes, job
phases). The default implementation writes span timings to the standard
logger; tests inject a recording tracer.
"""

import asyncio
import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Protocol

logger = logging.getLogger(__name__)


class Span:
    """A single timed operation."""
    
    def __init__(self, operation: str, description: Optional[str] = None, **data: Any):
        self.operation = operation
        self.description = description
        self.data: Dict[str, Any] = dict(data)
        self.status = "ok"
        self.started_at = time.perf_counter()
        self.duration_ms: Optional[float] = None
    
    def set_data(self, key: str, value: Any) -> None:
        self.data[key] = value
    
    def set_status(self, status: str) -> None:
        self.status = status
    
    def finish(self) -> None:
        self.duration_ms = (time.perf_counter() - self.started_at) * 1000


class Tracer(Protocol):
    def span(self, operation: str, description: Optional[str] = None, **data: Any):
        ...


class LoggingTracer:
    """Tracer that reports finished spans through ``logging``."""
    
    def __init__(self, name: str = "tracing", level: int = logging.DEBUG):
        self._logger = logging.getLogger(name)
        self._level = level
    
    @contextmanager
    def span(self, operation: str, description: Optional[str] = None, **data: Any) -> Iterator[Span]:
        span = Span(operation, description, **data)
        try:
            yield span
        except BaseException as e:
            span.set_status("cancelled" if isinstance(e, asyncio.CancelledError) else "error")
            span.set_data("error", type(e).__name__)
            raise
        finally:
            span.finish()
            self._emit(span)
    
    def _emit(self, span: Span) -> None:
        level = logging.WARNING if span.status == "error" else self._level
        if not self._logger.isEnabledFor(level):
            return
        details = " ".join(f"{k}={v}" for k, v in span.data.items())
        label = f"{span.operation} {span.description}" if span.description else span.operation
        self._logger.log(
            level,
            f"span {label} status={span.status} duration_ms={span.duration_ms:.1f} {details}".rstrip()
        )


default_tracer = LoggingTracer()
