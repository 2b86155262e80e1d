"""OpenTelemetry tracing and metrics, with a Prometheus fallback.

Both backends are optional. Their packages are imported only when enabled
in config, and every recorder below is a no-op until ``initialize`` has
wired one up.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI

from agentaudit import config

logger = logging.getLogger("agentaudit.observability")


@dataclass(frozen=True)
class _MetricSpec:
    kind: str  # "counter" | "histogram"
    unit: str
    description: str
    prom_labels: tuple[str, ...]


_METRICS: dict[str, _MetricSpec] = {
    "agentaudit_session_loads_total": _MetricSpec(
        "counter", "1", "Count of session file loads by result", ("kind", "result")
    ),
    "agentaudit_session_load_latency_ms": _MetricSpec(
        "histogram", "ms", "Latency for reading and parsing one session file", ("kind",)
    ),
    "agentaudit_parser_failures_total": _MetricSpec(
        "counter", "1", "Count of log lines that failed to parse", ("parser",)
    ),
    "agentaudit_merge_passes_total": _MetricSpec(
        "counter", "1", "Count of global merge passes by result", ("result",)
    ),
    "agentaudit_merge_latency_ms": _MetricSpec(
        "histogram", "ms", "Duration of full global merge passes", ("result",)
    ),
}

_initialized = False
_enabled = False
_tracer: Any | None = None
_providers: list[Any] = []
_fastapi_instrumentor: Any | None = None
_otel_instruments: dict[str, Any] = {}
_prom_instruments: dict[str, Any] = {}


def _otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip().rstrip("/")
    if not endpoint or endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/v1"):
        endpoint = endpoint[: -len("/v1")]
    return f"{endpoint}{signal_path}"


def _label(value: str) -> str:
    return (value or "").strip() or "unknown"


def _start_prometheus() -> None:
    try:
        from prometheus_client import Counter, Histogram, start_http_server
    except ImportError as exc:
        logger.warning("Prometheus fallback not started: %s", exc)
        return

    factories = {"counter": Counter, "histogram": Histogram}
    try:
        start_http_server(config.PROM_PORT)
        for name, spec in _METRICS.items():
            _prom_instruments[name] = factories[spec.kind](name, spec.description, list(spec.prom_labels))
    except (OSError, ValueError) as exc:
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_instruments.clear()
        return
    logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _fastapi_instrumentor

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (AGENTAUDIT_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    service_name = config.OTEL_SERVICE_NAME or "agentaudit"
    resource = Resource.create({"service.name": service_name, "service.namespace": "agentaudit"})

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces") or None))
    )
    trace.set_tracer_provider(trace_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics") or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("agentaudit")

    for name, spec in _METRICS.items():
        create = meter.create_counter if spec.kind == "counter" else meter.create_histogram
        _otel_instruments[name] = create(name, unit=spec.unit, description=spec.description)

    _providers[:] = [meter_provider, trace_provider]
    _tracer = trace.get_tracer("agentaudit")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True
    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus()

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    if app and _fastapi_instrumentor:
        try:
            _fastapi_instrumentor.uninstrument_app(app)
        except Exception as exc:  # noqa: BLE001
            logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in _providers:
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("%s shutdown failed: %s", type(provider).__name__, exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def _count(name: str, labels: dict[str, Any], prom_labels: dict[str, str]) -> None:
    instrument = _otel_instruments.get(name) if _enabled else None
    if instrument is not None:
        instrument.add(1, labels)
    prom = _prom_instruments.get(name)
    if prom is not None:
        prom.labels(**prom_labels).inc()


def _observe(name: str, value: float, labels: dict[str, str], prom_labels: dict[str, str]) -> None:
    instrument = _otel_instruments.get(name) if _enabled else None
    if instrument is not None:
        instrument.record(value, labels)
    prom = _prom_instruments.get(name)
    if prom is not None:
        prom.labels(**prom_labels).observe(value)


def record_parser_failure(parser: str) -> None:
    labels = {"parser": _label(parser)}
    _count("agentaudit_parser_failures_total", labels, labels)


def record_session_load(kind: str, result: str, duration_ms: float) -> None:
    labels = {"kind": _label(kind), "result": _label(result)}
    _count("agentaudit_session_loads_total", labels, labels)
    _observe("agentaudit_session_load_latency_ms", max(0.0, float(duration_ms)), labels, {"kind": labels["kind"]})


def record_merge(result: str, duration_ms: float, *, sessions: int = 0, events: int = 0) -> None:
    labels = {"result": _label(result)}
    _count("agentaudit_merge_passes_total", {**labels, "sessions": int(sessions), "events": int(events)}, labels)
    _observe("agentaudit_merge_latency_ms", max(0.0, float(duration_ms)), labels, labels)
