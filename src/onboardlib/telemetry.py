"""OpenTelemetry tracing and JSON-lines file logging for pipeline runs.

The Telemetry class is a small facade over an OTel tracer. Span helpers are
exception-safe so instrumentation cannot break a run.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Generator

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

logger = logging.getLogger(__name__)

_TRACER_NAME = "onboardlib.pipeline"


class _Span:
    """Span wrapper whose setters never raise."""

    def __init__(self, span: object) -> None:
        self._span = span

    def set_attribute(self, key: str, value: object) -> None:
        try:
            self._span.set_attribute(key, value)  # type: ignore[attr-defined]
        except Exception:
            logger.debug("Could not set span attribute %s", key, exc_info=True)

    def record_exception(self, exc: BaseException) -> None:
        try:
            self._span.record_exception(exc)  # type: ignore[attr-defined]
        except Exception:
            logger.debug("Could not record exception on span", exc_info=True)


class Telemetry:
    """Thin OTel facade used by the coordinator.

    Construct with ``noop()`` when no tracing backend is configured and with
    ``for_testing()`` to capture finished spans in memory.
    """

    def __init__(self, tracer: object) -> None:
        self._tracer = tracer

    @contextmanager
    def span(self, name: str) -> Generator[_Span, None, None]:
        """Open an OTel span as the current span.

        Args:
            name: Span name, e.g. ``"pipeline.day"``.

        Yields:
            _Span wrapper for attributes and exceptions.
        """
        with self._tracer.start_as_current_span(name) as otel_span:  # type: ignore[attr-defined]
            yield _Span(otel_span)

    @classmethod
    def for_testing(cls) -> tuple["Telemetry", InMemorySpanExporter]:
        """Create a Telemetry instance with an in-memory exporter.

        Returns:
            ``(Telemetry, InMemorySpanExporter)``. Call
            ``exporter.get_finished_spans()`` to assert on span names and
            attributes.
        """
        exporter = InMemorySpanExporter()
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        return cls(provider.get_tracer(_TRACER_NAME)), exporter

    @classmethod
    def noop(cls) -> "Telemetry":
        """Create a Telemetry instance whose spans are discarded."""
        provider = TracerProvider()
        return cls(provider.get_tracer(_TRACER_NAME))


# ---------------------------------------------------------------------------
# File logging helpers
# ---------------------------------------------------------------------------


class _TraceContextFilter(logging.Filter):
    """Stamp trace_id and span_id of the current span onto every record.

    Zero values are used outside any span so the formatter can always emit
    ``trace`` and ``span`` fields.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = trace.get_current_span().get_span_context()
        if ctx.is_valid:
            record.trace_id = format(ctx.trace_id, "032x")  # type: ignore[attr-defined]
            record.span_id = format(ctx.span_id, "016x")  # type: ignore[attr-defined]
        else:
            record.trace_id = "0" * 32  # type: ignore[attr-defined]
            record.span_id = "0" * 16  # type: ignore[attr-defined]
        return True


class _JsonFormatter(logging.Formatter):
    """One JSON object per line with keys ts, level, logger, trace, span, msg."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(
            {
                "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
                "level": record.levelname,
                "logger": record.name,
                "trace": getattr(record, "trace_id", "0" * 32),
                "span": getattr(record, "span_id", "0" * 16),
                "msg": record.getMessage(),
            },
            ensure_ascii=False,
        )


def configure_file_logging(log_dir: str = "logs") -> str:
    """Attach a JSON-lines file handler to the ``onboardlib`` logger.

    Creates ``{log_dir}/pipeline-YYYYMMDD.log``. Calling it twice does not
    add a second handler.

    Args:
        log_dir: Directory to write log files into (created if absent).

    Returns:
        Path of the log file.
    """
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, f"pipeline-{datetime.now().strftime('%Y%m%d')}.log")

    package_logger = logging.getLogger("onboardlib")
    if any(isinstance(h, logging.FileHandler) for h in package_logger.handlers):
        return log_path

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.addFilter(_TraceContextFilter())
    handler.setFormatter(_JsonFormatter())

    package_logger.setLevel(logging.DEBUG)
    package_logger.addHandler(handler)
    return log_path
