"""Pydantic models for feedback records.

Records are frozen once created and serialise to one JSON object per line
with camelCase keys. Entity and relationship types are validated against
the fixed vocabularies.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import ConfigDict, Field, field_validator, model_validator

from onboardlib.constants import ENTITY_TYPE_SET, RELATIONSHIP_TYPE_SET
from onboardlib.schemas import CamelModel

FeedbackKind = Literal["entity", "relationship"]
Judgment = Literal["positive", "negative"]


class FeedbackContext(CamelModel):
    """The message an extracted item came from."""

    model_config = ConfigDict(frozen=True)

    subject: str = ""
    sender: str = Field(default="", alias="from")
    snippet: str = ""
    message_id: str | None = None


class ExtractedItem(CamelModel):
    """The item being judged. Extra keys are kept as-is."""

    model_config = ConfigDict(frozen=True, extra="allow")

    value: str
    entity_type: str | None = None
    relationship_type: str | None = None
    source: str | None = None
    target: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)

    @field_validator("entity_type")
    @classmethod
    def _check_entity_type(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip().lower()
        if v not in ENTITY_TYPE_SET:
            raise ValueError(f"unknown entity type {v!r}")
        return v

    @field_validator("relationship_type")
    @classmethod
    def _check_relationship_type(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip().upper()
        if v not in RELATIONSHIP_TYPE_SET:
            raise ValueError(f"unknown relationship type {v!r}")
        return v

    @property
    def subtype(self) -> str | None:
        return self.entity_type or self.relationship_type


class FeedbackRecord(CamelModel):
    """One human judgment on one extracted item."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    kind: FeedbackKind
    context: FeedbackContext = Field(default_factory=FeedbackContext)
    extracted: ExtractedItem
    judgment: Judgment
    correction_text: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def _check_kind(self) -> FeedbackRecord:
        if self.kind == "entity" and self.extracted.entity_type is None:
            raise ValueError("entity feedback requires extracted.entityType")
        if self.kind == "relationship" and self.extracted.relationship_type is None:
            raise ValueError("relationship feedback requires extracted.relationshipType")
        return self


class KindBreakdown(CamelModel):
    positive: int = 0
    negative: int = 0


class FeedbackStats(CamelModel):
    """Counts by judgment, by kind and by extracted subtype."""

    total: int = 0
    positive: int = 0
    negative: int = 0
    with_correction: int = 0
    by_kind: dict[str, KindBreakdown] = Field(default_factory=dict)
    by_entity_type: dict[str, KindBreakdown] = Field(default_factory=dict)
    by_relationship_type: dict[str, KindBreakdown] = Field(default_factory=dict)
