import logging

from notifier.core.config import Settings
from notifier.core.telemetry import TraceContextFilter, parse_otlp_headers, start_telemetry, stop_telemetry


def test_parse_otlp_headers_skips_malformed_entries() -> None:
    raw = "authorization=Bearer abc, x-tenant = acme ,novalue,=orphan,"
    assert parse_otlp_headers(raw) == {"authorization": "Bearer abc", "x-tenant": "acme"}
    assert parse_otlp_headers(None) == {}


def test_disabled_telemetry_is_a_noop_handle() -> None:
    handle = start_telemetry(Settings(otel_enabled=False))
    assert handle.enabled is False
    stop_telemetry(handle)


def test_trace_filter_marks_records_outside_spans() -> None:
    record = logging.LogRecord("notifier", logging.INFO, __file__, 1, "hello", None, None)
    assert TraceContextFilter().filter(record) is True
    assert record.trace_id == "-"
    assert record.span_id == "-"
