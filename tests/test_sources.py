"""Tests for the JSON-lines message source and classifier loading."""

from __future__ import annotations

from datetime import date

import pytest

from conftest import ScriptedClassifier, make_message
from onboardlib.exceptions import ConfigurationError
from onboardlib.pipeline.sources import JsonlMessageSource, build_sent_query, load_classifier

# Loaded by import path in the tests below.
shared_classifier = ScriptedClassifier()
not_a_classifier = "just a string"


def test_sent_query_bounds_one_day():
    assert build_sent_query(date(2024, 2, 29)) == "in:sent after:2024-02-29 before:2024-03-01"


class TestJsonlMessageSource:
    @pytest.fixture
    def export(self, tmp_path):
        path = tmp_path / "sent.jsonl"
        lines = [
            make_message("early", day="2024-01-01", hour=8).model_dump_json(by_alias=True),
            make_message("late", day="2024-01-01", hour=18).model_dump_json(by_alias=True),
            "",
            '{"id": "no-date"}',
            '{"id": "naive", "date": "2024-01-02T09:30:00", "from": "me@example.com"}',
        ]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    async def test_groups_by_day_newest_first(self, export):
        source = JsonlMessageSource(export)

        messages = await source.fetch_day(date(2024, 1, 1), limit=10)

        assert [m.id for m in messages] == ["late", "early"]
        assert source.skipped_lines == 1

    async def test_limit_and_empty_day(self, export):
        source = JsonlMessageSource(export)
        assert [m.id for m in await source.fetch_day(date(2024, 1, 1), limit=1)] == ["late"]
        assert await source.fetch_day(date(2023, 12, 31), limit=10) == []

    async def test_naive_timestamp_is_utc(self, export):
        [message] = await JsonlMessageSource(export).fetch_day(date(2024, 1, 2), limit=10)
        assert message.date.utcoffset().total_seconds() == 0
        assert message.sender == "me@example.com"

    async def test_check_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            await JsonlMessageSource(tmp_path / "missing.jsonl").check()


class TestLoadClassifier:
    def test_instance(self):
        assert load_classifier("test_sources:shared_classifier") is shared_classifier

    def test_class_is_instantiated(self):
        assert isinstance(load_classifier("conftest:ScriptedClassifier"), ScriptedClassifier)

    @pytest.mark.parametrize(
        "path",
        [
            "no_colon",
            ":attr",
            "module:",
            "onboardlib_missing_module:thing",
            "test_sources:missing_attribute",
            "test_sources:not_a_classifier",
        ],
    )
    def test_errors(self, path):
        with pytest.raises(ConfigurationError):
            load_classifier(path)
