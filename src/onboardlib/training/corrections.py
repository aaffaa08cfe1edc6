"""Grammar for free-text corrections attached to negative feedback.

Entity corrections::

    DELETE              the item should not have been extracted
    <type>:<value>      corrected type and value (type from the vocabulary)
    <value>             corrected value, original type kept

Relationship corrections::

    DELETE | ""                         should not have been extracted
    [<TYPE>] <source> -> <target>       TYPE only when followed by a source

A relationship correction without ``->`` cannot be parsed. By default it is
treated as "should not have been extracted" with an explanatory note; with
``strict=True`` it raises CorrectionParseError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from onboardlib.constants import ENTITY_TYPE_SET, RELATIONSHIP_TYPE_SET
from onboardlib.exceptions import CorrectionParseError

logger = logging.getLogger(__name__)

DELETE_MARKER = "DELETE"
ARROW = "->"


@dataclass(frozen=True)
class EntityCorrection:
    type: str
    value: str


@dataclass(frozen=True)
class RelationshipCorrection:
    relationship_type: str
    source: str
    target: str


@dataclass(frozen=True)
class ParsedCorrection:
    """Result of parsing a correction.

    Attributes:
        correct: The corrected extraction, or None for "should not have
            been extracted".
        usable: False when the text yields nothing that can become an
            example (e.g. an empty entity correction).
        note: Diagnostic attached to lenient parses.
    """

    correct: EntityCorrection | RelationshipCorrection | None
    usable: bool = True
    note: str | None = None

    @property
    def should_extract(self) -> bool:
        return self.correct is not None


def _is_delete(text: str) -> bool:
    return text.strip().upper() == DELETE_MARKER


def parse_entity_correction(
    text: str | None,
    original_type: str,
    *,
    strict: bool = False,
) -> ParsedCorrection:
    """Parse an entity correction.

    Args:
        text: The correction text from the reviewer.
        original_type: Type of the extraction being corrected.
        strict: Raise CorrectionParseError instead of returning an unusable result.
    """
    if text is None or not text.strip():
        if strict:
            raise CorrectionParseError(text or "", "empty entity correction")
        return ParsedCorrection(None, usable=False, note="No correction given")

    text = text.strip()
    if _is_delete(text):
        return ParsedCorrection(None)

    colon = text.find(":")
    if colon > 0:
        candidate_type = text[:colon].strip().lower()
        if candidate_type in ENTITY_TYPE_SET:
            value = text[colon + 1 :].strip()
            if not value:
                if strict:
                    raise CorrectionParseError(text, "missing value after type")
                return ParsedCorrection(None, usable=False, note="Correction has a type but no value")
            return ParsedCorrection(EntityCorrection(candidate_type, value))

    return ParsedCorrection(EntityCorrection(original_type, text))


def parse_relationship_correction(
    text: str | None,
    original_type: str,
    *,
    strict: bool = False,
) -> ParsedCorrection:
    """Parse a relationship correction.

    Args:
        text: The correction text from the reviewer.
        original_type: Relationship type of the extraction being corrected.
        strict: Raise CorrectionParseError for text without ``->``.
    """
    if text is None or not text.strip() or _is_delete(text):
        return ParsedCorrection(None)

    text = text.strip()
    arrow = text.find(ARROW)
    before = text[:arrow].strip() if arrow > 0 else ""
    target = text[arrow + len(ARROW) :].strip() if arrow > 0 else ""
    if not before or not target:
        reason = "expected '<source> -> <target>'"
        if strict:
            raise CorrectionParseError(text, reason)
        logger.warning("Unparseable relationship correction %r treated as DELETE", text)
        return ParsedCorrection(
            None,
            note=f"Correction {text!r} could not be parsed ({reason}); treated as should not have been extracted",
        )

    words = before.split()
    if len(words) >= 2 and words[0].upper() in RELATIONSHIP_TYPE_SET:
        return ParsedCorrection(RelationshipCorrection(words[0].upper(), " ".join(words[1:]), target))
    return ParsedCorrection(RelationshipCorrection(original_type, before, target))
