#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry and Azure Application Insights.

Traces the poll cycle, individual page requests and export runs, plus the
aiohttp client calls underneath them. Spans are exported to Azure Monitor
when a connection string is configured; otherwise they stay in-process.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: post-tracker)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to fully disable

Initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
import asyncio
import functools
from typing import Callable, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("PostTracker.telemetry")


def _connection_string() -> Optional[str]:
    return os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )


def telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if telemetry_disabled() or _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "post-tracker")
        attrs = {"service.name": svc}
        env = os.environ.get("OTEL_ENVIRONMENT")
        if env:
            attrs["deployment.environment"] = env

        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=Resource.create(attrs))

        conn = _connection_string()
        if conn:
            try:
                exporter = AzureMonitorTraceExporter.from_connection_string(conn)
                provider.add_span_processor(BatchSpanProcessor(exporter))
                _logger.info("Telemetry initialized: Azure Monitor trace exporter enabled (service=%s)", svc)
            except ValueError as e:
                _logger.warning("Telemetry init: invalid Azure connection string, spans will not be exported: %s", e)
        else:
            _logger.debug("Telemetry initialized without exporter (service=%s)", svc)

        if not isinstance(existing, TracerProvider):
            trace.set_tracer_provider(provider)
        _provider = provider

        AioHttpClientInstrumentor().instrument()
        # Inject otelTraceID / otelSpanID into log records without changing the format
        LoggingInstrumentor().instrument(set_logging_format=False)

        _initialized = True
        atexit.register(_shutdown)


def _shutdown() -> None:
    # TracerProvider.shutdown() flushes BatchSpanProcessor
    if _provider:
        _provider.shutdown()


def get_tracer(name: str = "post-tracker"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first dotted part of span_name)
        attr_from_args: Callable taking (*args, **kwargs) and returning a dict
                        of attributes to set on the span

    Works with sync and async functions. Exceptions are recorded on the span
    and re-raised unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or "post-tracker")

        def _set_attrs(span, args, kwargs):
            if attr_from_args is None:
                return
            for key, value in (attr_from_args(*args, **kwargs) or {}).items():
                span.set_attribute(key, value)

        def _record(span, exc: BaseException) -> None:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR))

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _record(span, e)
                        raise

            return _aw

        @functools.wraps(func)
        def _w(*args, **kwargs):
            with tracer.start_as_current_span(name) as span:
                _set_attrs(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _record(span, e)
                    raise

        return _w

    return _decorator
