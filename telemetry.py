#!/usr/bin/env python3
"""
OpenTelemetry tracing for Newsdesk.

Spans are opened around refresh passes, per-source ingestion and image
backfill batches; the aiohttp client instrumentation adds one child span per
proxy hop, and the logging instrumentation stamps trace ids onto log records.

Environment variables:
  - OTEL_SERVICE_NAME (default: newsdesk)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true to print finished spans to stdout
  - DISABLE_TELEMETRY=true to skip provider setup entirely

Without a configured provider the OpenTelemetry API hands out no-op tracers,
so ``trace_span`` is always safe to use.
"""

from __future__ import annotations

import atexit
import functools
import inspect
import logging
import os
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Status, StatusCode

_logger = logging.getLogger("Newsdesk.telemetry")

_lock = threading.Lock()
_provider: Optional[TracerProvider] = None


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() == "true"


def _build_resource(service_name: Optional[str]) -> Resource:
    attributes = {"service.name": service_name or os.environ.get("OTEL_SERVICE_NAME", "newsdesk")}
    environment = os.environ.get("OTEL_ENVIRONMENT")
    if environment:
        attributes["deployment.environment"] = environment
    return Resource.create(attributes)


def _instrument_libraries() -> None:
    for name, instrumentor in (("aiohttp", AioHttpClientInstrumentor()), ("logging", LoggingInstrumentor())):
        if instrumentor.is_instrumented_by_opentelemetry:
            continue
        try:
            instrumentor.instrument()
        except Exception as e:
            _logger.debug("%s instrumentation unavailable: %s", name, e)


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install a tracer provider and instrument aiohttp and logging.

    Idempotent; a no-op when DISABLE_TELEMETRY=true.
    """
    global _provider
    if _env_flag("DISABLE_TELEMETRY"):
        return
    with _lock:
        if _provider is not None:
            return

        current = trace.get_tracer_provider()
        # Reuse a provider installed by external auto-instrumentation
        provider = current if isinstance(current, TracerProvider) else TracerProvider(resource=_build_resource(service_name))

        if _env_flag("OTEL_CONSOLE_EXPORT"):
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            _logger.info("Telemetry exporting spans to console")

        if provider is not current:
            trace.set_tracer_provider(provider)
        _provider = provider
        _instrument_libraries()
        atexit.register(shutdown_telemetry)
        _logger.debug("Telemetry initialized")


def shutdown_telemetry() -> None:
    """Flush pending spans; registered with atexit for short-lived commands."""
    if _provider is not None:
        _provider.shutdown()


def get_tracer(name: str = "newsdesk"):
    return trace.get_tracer(name)


def _annotate(span, static_attrs: Optional[Dict[str, Any]], attr_from_args: Optional[Callable], args, kwargs) -> None:
    try:
        attributes = dict(static_attrs or {})
        if attr_from_args is not None:
            attributes.update(attr_from_args(*args, **kwargs) or {})
        for key, value in attributes.items():
            span.set_attribute(key, value)
    except Exception as e:
        # Attribute extraction must never break the traced call
        _logger.debug("Could not set span attributes: %s", e)


@contextmanager
def _span_scope(tracer, name: str) -> Iterator[Any]:
    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


def trace_span(
    span_name: Optional[str] = None,
    *,
    tracer_name: Optional[str] = None,
    static_attrs: Optional[Dict[str, Any]] = None,
    attr_from_args: Optional[Callable[..., Dict[str, Any]]] = None,
):
    """Run the decorated function inside a span.

    Args:
        span_name: Span name (defaults to ``module.function``)
        tracer_name: Tracer name (defaults to the first dotted part of the span name)
        static_attrs: Attributes set on every span
        attr_from_args: Called with the function's arguments; returns extra attributes

    Works for both plain and ``async`` functions.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or "newsdesk")

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with _span_scope(tracer, name) as span:
                    _annotate(span, static_attrs, attr_from_args, args, kwargs)
                    return await func(*args, **kwargs)

            return _async_wrapper

        @functools.wraps(func)
        def _wrapper(*args, **kwargs):
            with _span_scope(tracer, name) as span:
                _annotate(span, static_attrs, attr_from_args, args, kwargs)
                return func(*args, **kwargs)

        return _wrapper

    return _decorator
