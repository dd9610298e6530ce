from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import os
from typing import Protocol

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
CORRELATED_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_ENDPOINT_ENV_VARS = ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT")

logger = logging.getLogger(__name__)


class TelemetrySettings(Protocol):
    environment: str
    otel_enabled: bool
    otel_service_name: str
    otel_exporter_otlp_endpoint: str | None
    otel_exporter_otlp_headers: str | None
    otel_trace_sample_ratio: float
    otel_log_correlation: bool


@dataclass(slots=True)
class TelemetryHandle:
    """Tracer provider plus the undo hooks for whatever got instrumented."""

    provider: TracerProvider | None = None
    teardown: list[Callable[[], None]] = field(default_factory=list)

    @property
    def enabled(self) -> bool:
        return self.provider is not None


class TraceContextFilter(logging.Filter):
    """Stamps trace/span ids on records so CORRELATED_LOG_FORMAT can always render them."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "-"
        record.span_id = format(context.span_id, "016x") if context.is_valid else "-"
        return True


def configure_logging(level: int = logging.INFO, *, correlate: bool = True) -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler()
    if correlate:
        handler.setFormatter(logging.Formatter(CORRELATED_LOG_FORMAT))
        handler.addFilter(TraceContextFilter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)


def start_telemetry(
    settings: TelemetrySettings,
    *,
    app: FastAPI | None = None,
    instrument_httpx: bool = False,
) -> TelemetryHandle:
    """Install a tracer provider and instrument the FastAPI app and/or outbound httpx calls."""
    if not settings.otel_enabled:
        return TelemetryHandle()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    handle = TelemetryHandle(provider=provider)
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
        handle.teardown.append(lambda: FastAPIInstrumentor.uninstrument_app(app))
    if instrument_httpx:
        instrumentor = HTTPXClientInstrumentor()
        instrumentor.instrument(tracer_provider=provider)
        handle.teardown.append(instrumentor.uninstrument)
    return handle


def stop_telemetry(handle: TelemetryHandle) -> None:
    while handle.teardown:
        handle.teardown.pop()()
    if handle.provider is not None:
        handle.provider.force_flush()
        handle.provider.shutdown()
        handle.provider = None


def _build_exporter(settings: TelemetrySettings) -> OTLPSpanExporter | None:
    endpoint = settings.otel_exporter_otlp_endpoint or next(
        (os.environ[name] for name in _ENDPOINT_ENV_VARS if os.getenv(name)),
        None,
    )
    if not endpoint:
        logger.info("no OTLP endpoint configured; spans stay in-process for service=%s", settings.otel_service_name)
        return None

    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; entries without ``=`` or with a blank key are skipped."""
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, sep, value in pairs if sep and key.strip()}
