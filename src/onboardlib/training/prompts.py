"""Instruction and turn templates for fine-tuning exports.

The system instruction describes the extraction task; user turns present
one extraction for review; assistant turns state whether it was correct and
what it should have been.
"""

from __future__ import annotations

from onboardlib.training.corrections import (
    EntityCorrection,
    ParsedCorrection,
    RelationshipCorrection,
)

DEFAULT_SYSTEM_PROMPT = """You are an AI assistant that extracts entities and relationships from emails.

Your task is to identify:
- People (names, roles)
- Companies/Organizations
- Projects
- Tools (software, platforms, APIs)
- Topics
- Locations
- Action items

And relationships between them:
- WORKS_WITH, REPORTS_TO, WORKS_FOR (professional)
- LEADS, WORKS_ON (project involvement)
- FRIEND_OF, FAMILY_OF (personal)
- PARTNERS_WITH, COMPETES_WITH (business)

Be precise and avoid over-extraction. Only extract entities and relationships that are clearly mentioned or strongly implied in the email content."""


def describe_relationship(source: str, relationship_type: str, target: str) -> str:
    return f"{source} -[{relationship_type}]-> {target}"


def build_user_message(
    extraction: str,
    *,
    subject: str = "",
    sender: str = "",
    snippet: str = "",
    confidence: float | None = None,
    header: str = "Review this extraction:",
) -> str:
    """User turn presenting one extraction with its message context.

    Args:
        extraction: Pre-rendered line, e.g. ``Extracted person: "Jane"``.
    """
    parts = [header, ""]
    if sender:
        parts.append(f"From: {sender}")
    if subject:
        parts.append(f"Subject: {subject}")
    if snippet:
        parts.append(f'Content: "{snippet}"')
    parts.append("")
    parts.append(extraction)
    if confidence:
        parts.append(f"Confidence: {confidence * 100:.0f}%")
    parts.extend(["", "Is this extraction correct? If not, what should it be?"])
    return "\n".join(parts)


def describe_correction(parsed: ParsedCorrection) -> str:
    """One sentence stating what the extraction should have been."""
    correct = parsed.correct
    if isinstance(correct, EntityCorrection):
        return f'The correct extraction is: {correct.type}: "{correct.value}"'
    if isinstance(correct, RelationshipCorrection):
        return "The correct relationship is: " + describe_relationship(
            correct.source, correct.relationship_type, correct.target
        )
    return "This should not have been extracted."


def build_assistant_message(
    is_correct: bool,
    parsed: ParsedCorrection | None = None,
    correction_text: str | None = None,
) -> str:
    """Assistant turn for a feedback record."""
    if is_correct:
        return "This extraction is correct."
    parts = ["This extraction is incorrect."]
    if parsed is not None and parsed.usable:
        parts.append(describe_correction(parsed))
    elif correction_text:
        parts.append(f"Correction: {correction_text}")
    return " ".join(parts)
