"""Few-shot examples derived from negative feedback.

Examples are regenerated from the feedback store on every call; nothing is
cached. Records whose correction parses to nothing usable are skipped
without failing the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from onboardlib.feedback.models import FeedbackRecord
from onboardlib.feedback.store import FeedbackStore
from onboardlib.schemas import CamelModel
from onboardlib.training.corrections import (
    EntityCorrection,
    RelationshipCorrection,
    parse_entity_correction,
    parse_relationship_correction,
)

logger = logging.getLogger(__name__)


class ExampleContext(CamelModel):
    subject: str = ""
    sender: str = Field(default="", alias="from")
    snippet: str = ""


class EntityExtraction(CamelModel):
    type: str
    value: str
    confidence: float | None = None


class RelationshipExtraction(CamelModel):
    relationship_type: str
    source: str
    target: str
    confidence: float | None = None


class EntityFewShotExample(CamelModel):
    kind: Literal["entity"] = "entity"
    feedback_id: str
    context: ExampleContext
    incorrect_extraction: EntityExtraction
    correct_extraction: EntityExtraction | None = None
    note: str | None = None


class RelationshipFewShotExample(CamelModel):
    kind: Literal["relationship"] = "relationship"
    feedback_id: str
    context: ExampleContext
    incorrect_extraction: RelationshipExtraction
    correct_extraction: RelationshipExtraction | None = None
    note: str | None = None


FewShotExample = Annotated[
    Union[EntityFewShotExample, RelationshipFewShotExample],
    Field(discriminator="kind"),
]


class FewShotStats(BaseModel):
    total_feedback: int
    negative_feedback: int
    with_corrections: int
    by_kind: dict[str, int]


@dataclass
class FewShotOptions:
    """Selection of feedback records turned into examples.

    Attributes:
        max_examples: Upper bound on returned examples.
        require_correction: Only records with non-empty correction text.
        entity_types: Keep entity records of these types.
        relationship_types: Keep relationship records of these types. When
            either filter is set, a record must match the filter for its kind.
        start: Earliest record timestamp (naive values are UTC).
        end: Latest record timestamp (naive values are UTC).
    """

    max_examples: int = 10
    require_correction: bool = True
    entity_types: list[str] | None = None
    relationship_types: list[str] | None = None
    start: datetime | None = None
    end: datetime | None = None


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _context_of(record: FeedbackRecord) -> ExampleContext:
    return ExampleContext(
        subject=record.context.subject,
        sender=record.context.sender,
        snippet=record.context.snippet,
    )


def record_to_example(
    record: FeedbackRecord,
) -> EntityFewShotExample | RelationshipFewShotExample | None:
    """Convert one negative record into an example, or None if nothing usable."""
    extracted = record.extracted
    if record.kind == "entity":
        if not extracted.entity_type:
            logger.warning("Entity feedback %s has no entity type, skipping", record.id)
            return None
        parsed = parse_entity_correction(record.correction_text, extracted.entity_type)
        if not parsed.usable:
            logger.debug("Feedback %s has no usable correction, skipping", record.id)
            return None
        correct = None
        if isinstance(parsed.correct, EntityCorrection):
            correct = EntityExtraction(type=parsed.correct.type, value=parsed.correct.value)
        return EntityFewShotExample(
            feedback_id=record.id,
            context=_context_of(record),
            incorrect_extraction=EntityExtraction(
                type=extracted.entity_type,
                value=extracted.value,
                confidence=extracted.confidence,
            ),
            correct_extraction=correct,
            note=parsed.note,
        )

    if not (extracted.relationship_type and extracted.source and extracted.target):
        logger.warning("Relationship feedback %s is missing type, source or target, skipping", record.id)
        return None
    parsed = parse_relationship_correction(record.correction_text, extracted.relationship_type)
    correct_rel = None
    if isinstance(parsed.correct, RelationshipCorrection):
        correct_rel = RelationshipExtraction(
            relationship_type=parsed.correct.relationship_type,
            source=parsed.correct.source,
            target=parsed.correct.target,
        )
    return RelationshipFewShotExample(
        feedback_id=record.id,
        context=_context_of(record),
        incorrect_extraction=RelationshipExtraction(
            relationship_type=extracted.relationship_type,
            source=extracted.source,
            target=extracted.target,
            confidence=extracted.confidence,
        ),
        correct_extraction=correct_rel,
        note=parsed.note,
    )


class FewShotGenerator:
    """Builds few-shot examples from the negative records of a FeedbackStore."""

    def __init__(self, store: FeedbackStore) -> None:
        self._store = store

    def _select(self, options: FewShotOptions) -> list[FeedbackRecord]:
        records = [r for r in self._store.all_records() if r.judgment == "negative"]
        if options.require_correction:
            records = [r for r in records if r.correction_text and r.correction_text.strip()]
        if options.start is not None:
            start = _as_utc(options.start)
            records = [r for r in records if r.timestamp >= start]
        if options.end is not None:
            end = _as_utc(options.end)
            records = [r for r in records if r.timestamp <= end]

        if options.entity_types or options.relationship_types:
            entity_types = {t.lower() for t in options.entity_types or ()}
            relationship_types = {t.upper() for t in options.relationship_types or ()}
            records = [
                r
                for r in records
                if (r.kind == "entity" and r.extracted.entity_type in entity_types)
                or (r.kind == "relationship" and r.extracted.relationship_type in relationship_types)
            ]
        # Newest corrections first
        records.reverse()
        return records

    def generate_examples(
        self, options: FewShotOptions | None = None
    ) -> list[EntityFewShotExample | RelationshipFewShotExample]:
        options = options or FewShotOptions()
        examples: list[EntityFewShotExample | RelationshipFewShotExample] = []
        candidates = self._select(options)
        for record in candidates:
            if len(examples) >= options.max_examples:
                break
            example = record_to_example(record)
            if example is not None:
                examples.append(example)
        logger.info("Generated %d few-shot examples from %d candidates", len(examples), len(candidates))
        return examples

    def stats(self) -> FewShotStats:
        records = self._store.all_records()
        negative = [r for r in records if r.judgment == "negative"]
        return FewShotStats(
            total_feedback=len(records),
            negative_feedback=len(negative),
            with_corrections=sum(1 for r in negative if r.correction_text and r.correction_text.strip()),
            by_kind={
                "entity": sum(1 for r in negative if r.kind == "entity"),
                "relationship": sum(1 for r in negative if r.kind == "relationship"),
            },
        )


def format_as_prompt_section(
    examples: list[EntityFewShotExample | RelationshipFewShotExample],
) -> str:
    """Render examples as a Markdown section for an extraction prompt."""
    if not examples:
        return ""

    lines = [
        "## Learning from Previous Corrections",
        "",
        "The following examples show previous extraction errors and their corrections.",
        "Use these to improve your extraction accuracy:",
        "",
    ]
    for number, example in enumerate(examples, start=1):
        lines.extend([f"### Example {number}", ""])
        ctx = example.context
        if ctx.subject or ctx.sender or ctx.snippet:
            lines.append("**Email Context:**")
            if ctx.sender:
                lines.append(f"- From: {ctx.sender}")
            if ctx.subject:
                lines.append(f"- Subject: {ctx.subject}")
            if ctx.snippet:
                lines.append(f'- Snippet: "{ctx.snippet}"')
            lines.append("")

        lines.append("**Incorrect Extraction:**")
        if isinstance(example, EntityFewShotExample):
            wrong = example.incorrect_extraction
            lines.extend([f"- Type: {wrong.type}", f'- Value: "{wrong.value}"', ""])
            if example.correct_extraction is not None:
                lines.extend(
                    [
                        "**Correct Extraction:**",
                        f"- Type: {example.correct_extraction.type}",
                        f'- Value: "{example.correct_extraction.value}"',
                    ]
                )
            else:
                lines.append("**Correction:** This should NOT have been extracted.")
        else:
            wrong_rel = example.incorrect_extraction
            lines.extend(
                [
                    f"- Relationship: {wrong_rel.source} -[{wrong_rel.relationship_type}]-> {wrong_rel.target}",
                    "",
                ]
            )
            right = example.correct_extraction
            if right is not None:
                lines.extend(
                    [
                        "**Correct Extraction:**",
                        f"- Relationship: {right.source} -[{right.relationship_type}]-> {right.target}",
                    ]
                )
            else:
                lines.append("**Correction:** This relationship should NOT have been extracted.")
        if example.note:
            lines.append(f"- Note: {example.note}")
        lines.append("")

    return "\n".join(lines)
