"""Tests for FewShotGenerator and prompt rendering."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import ticking_clock
from onboardlib.feedback.store import FeedbackStore
from onboardlib.training.few_shot import (
    EntityFewShotExample,
    FewShotGenerator,
    FewShotOptions,
    RelationshipFewShotExample,
    format_as_prompt_section,
)

CONTEXT = {"subject": "Intro", "from": "me@example.com", "snippet": "Meet Jane from Acme"}


@pytest.fixture
def store() -> FeedbackStore:
    s = FeedbackStore(clock=ticking_clock())
    s.record("entity", {"value": "Jane", "entityType": "company", "confidence": 0.6}, "negative", CONTEXT, "person:Jane")
    s.record("entity", {"value": "Acme", "entityType": "company"}, "positive", CONTEXT)
    s.record("entity", {"value": "Hi", "entityType": "person"}, "negative", CONTEXT, "DELETE")
    s.record("entity", {"value": "Bob", "entityType": "person"}, "negative", CONTEXT)
    s.record(
        "relationship",
        {"value": "Jane -> Acme", "relationshipType": "WORKS_WITH", "source": "Jane", "target": "Acme"},
        "negative",
        CONTEXT,
        "WORKS_FOR Jane -> Acme",
    )
    return s


class TestGenerateExamples:
    def test_newest_first_and_negative_with_correction_only(self, store):
        examples = FewShotGenerator(store).generate_examples(FewShotOptions(max_examples=10))

        assert [type(e) for e in examples] == [
            RelationshipFewShotExample,
            EntityFewShotExample,
            EntityFewShotExample,
        ]
        assert [e.incorrect_extraction.value for e in examples[1:]] == ["Hi", "Jane"]

    def test_entity_correction_parsed(self, store):
        examples = FewShotGenerator(store).generate_examples(FewShotOptions(entity_types=["company"]))
        assert len(examples) == 1
        example = examples[0]
        assert example.correct_extraction.type == "person"
        assert example.correct_extraction.value == "Jane"
        assert example.incorrect_extraction.confidence == 0.6
        assert example.context.sender == "me@example.com"

    def test_delete_correction_has_no_correct_extraction(self, store):
        examples = FewShotGenerator(store).generate_examples(FewShotOptions(entity_types=["person"]))
        assert examples[0].correct_extraction is None

    def test_relationship_correction_parsed(self, store):
        examples = FewShotGenerator(store).generate_examples(FewShotOptions(relationship_types=["works_with"]))
        assert len(examples) == 1
        fix = examples[0].correct_extraction
        assert (fix.relationship_type, fix.source, fix.target) == ("WORKS_FOR", "Jane", "Acme")

    def test_type_filters_union(self, store):
        options = FewShotOptions(entity_types=["company"], relationship_types=["WORKS_WITH"])
        assert len(FewShotGenerator(store).generate_examples(options)) == 2

    def test_max_examples(self, store):
        assert len(FewShotGenerator(store).generate_examples(FewShotOptions(max_examples=1))) == 1

    def test_without_requiring_correction_skips_unusable(self, store):
        # "Bob" has no correction text and is unusable as an entity example
        options = FewShotOptions(require_correction=False)
        values = [e.incorrect_extraction.value for e in FewShotGenerator(store).generate_examples(options)
                  if isinstance(e, EntityFewShotExample)]
        assert "Bob" not in values

    def test_date_range(self, store):
        records = store.all_records()
        options = FewShotOptions(start=records[2].timestamp.replace(tzinfo=None))
        examples = FewShotGenerator(store).generate_examples(options)
        assert {e.feedback_id for e in examples} == {records[2].id, records[4].id}

    def test_future_start_yields_nothing(self, store):
        options = FewShotOptions(start=datetime(2030, 1, 1, tzinfo=timezone.utc))
        assert FewShotGenerator(store).generate_examples(options) == []

    def test_unparseable_relationship_keeps_note(self):
        s = FeedbackStore()
        s.record(
            "relationship",
            {"value": "x", "relationshipType": "WORKS_WITH", "source": "A", "target": "B"},
            "negative",
            correction_text="they are not related",
        )
        example = FewShotGenerator(s).generate_examples()[0]
        assert example.correct_extraction is None
        assert "could not be parsed" in example.note

    def test_stats(self, store):
        stats = FewShotGenerator(store).stats()
        assert stats.total_feedback == 5
        assert stats.negative_feedback == 4
        assert stats.with_corrections == 3
        assert stats.by_kind == {"entity": 3, "relationship": 1}


class TestPromptSection:
    def test_empty(self):
        assert format_as_prompt_section([]) == ""

    def test_renders_examples(self, store):
        examples = FewShotGenerator(store).generate_examples()
        section = format_as_prompt_section(examples)
        assert section.startswith("## Learning from Previous Corrections")
        assert "### Example 1" in section
        assert "- From: me@example.com" in section
        assert "**Incorrect Extraction:**" in section
        assert '- Value: "Jane"' in section
