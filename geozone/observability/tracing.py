"""Tracing helpers for resolution stages."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

_CONTEXT_KEYS = ("cache_key", "operation")


def _logger():
    return structlog.get_logger("geozone.trace")


def set_context(*, cache_key: str, operation: str) -> None:
    bind_contextvars(cache_key=cache_key, operation=operation)
    _logger().debug("trace_context", cache_key=cache_key, operation=operation)


def clear_context() -> None:
    unbind_contextvars(*_CONTEXT_KEYS)


@contextlib.contextmanager
def span(*, name: str, detail: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().info("trace_span", span=name, detail=detail, elapsed_ms=elapsed_ms)
