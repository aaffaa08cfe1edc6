"""Tests for the OTel facade and JSON-lines file logging."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from onboardlib.telemetry import Telemetry, configure_file_logging


@pytest.fixture
def package_logger():
    logger = logging.getLogger("onboardlib")
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
            logger.removeHandler(handler)
    logger.setLevel(level)


class TestTelemetry:
    def test_spans_are_captured(self):
        telemetry, exporter = Telemetry.for_testing()

        with telemetry.span("pipeline.run") as span:
            span.set_attribute("pipeline.days", 3)
            with telemetry.span("pipeline.day"):
                pass

        spans = {s.name: s for s in exporter.get_finished_spans()}
        assert set(spans) == {"pipeline.run", "pipeline.day"}
        assert spans["pipeline.run"].attributes["pipeline.days"] == 3
        assert spans["pipeline.day"].parent.span_id == spans["pipeline.run"].context.span_id

    def test_record_exception(self):
        telemetry, exporter = Telemetry.for_testing()
        with telemetry.span("pipeline.batch") as span:
            span.record_exception(ValueError("bad batch"))
        [finished] = exporter.get_finished_spans()
        assert finished.events[0].name == "exception"

    def test_bad_attribute_does_not_raise(self):
        telemetry, _ = Telemetry.for_testing()
        with telemetry.span("x") as span:
            span.set_attribute("obj", object())

    def test_noop(self):
        with Telemetry.noop().span("anything") as span:
            span.set_attribute("k", "v")


class TestFileLogging:
    def test_writes_json_lines_with_trace_context(self, tmp_path, package_logger):
        path = Path(configure_file_logging(str(tmp_path / "logs")))
        telemetry, _ = Telemetry.for_testing()

        logging.getLogger("onboardlib.pipeline.coordinator").info("outside %s", "span")
        with telemetry.span("pipeline.run"):
            logging.getLogger("onboardlib.pipeline.coordinator").warning("inside span")
        for handler in package_logger.handlers:
            handler.flush()

        outside, inside = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        assert path.name.startswith("pipeline-")
        assert outside["msg"] == "outside span"
        assert outside["trace"] == "0" * 32
        assert inside["level"] == "WARNING"
        assert inside["logger"] == "onboardlib.pipeline.coordinator"
        assert inside["trace"] != "0" * 32
        assert len(inside["span"]) == 16

    def test_second_call_adds_no_handler(self, tmp_path, package_logger):
        configure_file_logging(str(tmp_path))
        count = len(package_logger.handlers)
        configure_file_logging(str(tmp_path))
        assert len(package_logger.handlers) == count
