"""Pydantic models for data crossing the collaborator boundaries.

Messages come in from the message source, extraction results come back from
the classifier. Both serialise with camelCase keys so they can be embedded in
events unchanged.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_WHITESPACE = re.compile(r"\s+")


def normalize_key(text: str) -> str:
    """Canonicalise a value for identity comparison.

    NFKC normalisation, case folding, trimming and collapsing internal
    whitespace to a single space. The same function is used when recording
    and when looking up, so keys stay consistent.
    """
    folded = unicodedata.normalize("NFKC", text).casefold()
    return _WHITESPACE.sub(" ", folded).strip()


class CamelModel(BaseModel):
    """Base model: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        """Dump to a JSON-compatible dict with camelCase keys and no null fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Message(CamelModel):
    """A single outbound message as delivered by the message source."""

    id: str
    subject: str = ""
    sender: str = Field(default="", alias="from")
    to: list[str] = Field(default_factory=list)
    date: datetime
    snippet: str = ""
    body: str | None = None

    @field_validator("date")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        """Naive timestamps are taken as UTC so dates stay comparable."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class Entity(CamelModel):
    """An entity reported by the classifier for one message."""

    type: str
    value: str
    normalized: str | None = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    source: str | None = None
    context: str | None = None


class Relationship(CamelModel):
    """A directed relationship reported by the classifier."""

    from_type: str
    from_value: str
    relationship_type: str
    to_type: str
    to_value: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    evidence: str | None = None


class ExtractionResult(CamelModel):
    """Classifier output for one message."""

    message_id: str
    entities: list[Entity] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    is_spam: bool = False
    spam_score: float = 0.0

    @classmethod
    def empty(cls, message_id: str) -> ExtractionResult:
        return cls(message_id=message_id)


class TopEntity(CamelModel):
    type: str
    value: str
    count: int


class TopRelationship(CamelModel):
    source: str = Field(alias="from")
    target: str = Field(alias="to")
    type: str
    count: int


class CoverageWindow(CamelModel):
    start: datetime
    end: datetime


class RunSummary(CamelModel):
    """End-of-run aggregate report derived from the ledger."""

    total_messages_processed: int = 0
    total_entities: int = 0
    total_relationships: int = 0
    entities_by_type: dict[str, int] = Field(default_factory=dict)
    unique_people: int = 0
    unique_companies: int = 0
    unique_projects: int = 0
    error_count: int = 0
    processing_time_ms: int = 0
    date_range: CoverageWindow | None = None
    top_entities: list[TopEntity] = Field(default_factory=list)
    top_relationships: list[TopRelationship] = Field(default_factory=list)
