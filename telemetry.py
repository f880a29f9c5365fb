#!/usr/bin/env python3
"""
OpenTelemetry tracing for the ingestion pipeline.

Spans cover feed fetches, item normalization, dedup inserts, ingestion cycles
and every DatabaseQueue operation; aiohttp, logging and sqlite3 are
auto-instrumented once init_telemetry() has run. Before that (and in tests)
the decorators produce no-op spans.

Environment variables:
  - OTEL_SERVICE_NAME      service name when none is passed (news-ingest)
  - OTEL_ENVIRONMENT       deployment.environment resource attribute
  - OTEL_CONSOLE_EXPORT    "true" prints finished spans to stdout
  - DISABLE_TELEMETRY      "true" turns init_telemetry() into a no-op
"""

from __future__ import annotations

import atexit
import inspect
import logging
import os
import threading
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Status, StatusCode

DEFAULT_SERVICE_NAME = "news-ingest"

_logger = logging.getLogger("NewsIngest.telemetry")
_state_lock = threading.Lock()
_provider: Optional[TracerProvider] = None


def _env_true(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() == "true"


def telemetry_disabled() -> bool:
    return _env_true("DISABLE_TELEMETRY")


def _install_provider(service_name: str) -> TracerProvider:
    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        # an auto-instrumentation agent got there first
        return current
    resource_attrs = {"service.name": service_name}
    if os.environ.get("OTEL_ENVIRONMENT"):
        resource_attrs["deployment.environment"] = os.environ["OTEL_ENVIRONMENT"]
    provider = TracerProvider(resource=Resource.create(resource_attrs))
    trace.set_tracer_provider(provider)
    return provider


def _instrument_libraries() -> None:
    for instrumentor in (AioHttpClientInstrumentor(), LoggingInstrumentor(), SQLite3Instrumentor()):
        if not instrumentor.is_instrumented_by_opentelemetry:
            instrumentor.instrument()


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install the tracer provider and library instrumentation, once per process."""
    global _provider
    if telemetry_disabled():
        return
    with _state_lock:
        if _provider is not None:
            return
        name = service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)
        provider = _install_provider(name)
        if _env_true("OTEL_CONSOLE_EXPORT"):
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        _instrument_libraries()
        _provider = provider
        atexit.register(provider.shutdown)
    _logger.info("Telemetry initialized for %s (console export: %s)", name, _env_true("OTEL_CONSOLE_EXPORT"))


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    return trace.get_tracer(name)


@contextmanager
def _span(tracer, name: str, attributes: Dict[str, Any]) -> Iterator[Any]:
    with tracer.start_as_current_span(name, record_exception=False) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Run the decorated function (sync or async) inside a span.

    ``attr_from_args`` receives the call's arguments and returns extra span
    attributes; if it fails the call still proceeds without them. Exceptions
    from the function are recorded on the span and re-raised unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or DEFAULT_SERVICE_NAME)

        def _attributes(args, kwargs) -> Dict[str, Any]:
            attributes = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    attributes.update(attr_from_args(*args, **kwargs) or {})
                except (TypeError, AttributeError, KeyError, IndexError) as e:
                    _logger.debug("Span attribute extraction failed for %s: %s", name, e)
            return attributes

        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with _span(tracer, name, _attributes(args, kwargs)):
                    return await func(*args, **kwargs)
            return _async_wrapper

        @wraps(func)
        def _sync_wrapper(*args, **kwargs):
            with _span(tracer, name, _attributes(args, kwargs)):
                return func(*args, **kwargs)
        return _sync_wrapper

    return _decorator
