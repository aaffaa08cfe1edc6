"""Incremental, deduplicating accumulator for one pipeline run.

Entities are keyed by (type, normalize_key(value)); relationships by the
directional ``fromType:fromValue|relationshipType|toType:toValue`` string.
All updates for a message are staged first and then applied in one step,
so readers never observe a half-recorded message.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from onboardlib.constants import TOP_N
from onboardlib.events import ProgressEvent
from onboardlib.models import DiscoveredEntity, DiscoveredRelationship, ProcessingState
from onboardlib.schemas import (
    CoverageWindow,
    Entity,
    Message,
    Relationship,
    RunSummary,
    TopEntity,
    TopRelationship,
    normalize_key,
)

logger = logging.getLogger(__name__)


def entity_key(entity_type: str, value: str) -> str:
    return f"{entity_type.strip().lower()}:{normalize_key(value)}"


def relationship_key(rel: Relationship) -> str:
    return (
        f"{rel.from_type.strip().lower()}:{normalize_key(rel.from_value)}"
        f"|{rel.relationship_type.strip().upper()}"
        f"|{rel.to_type.strip().lower()}:{normalize_key(rel.to_value)}"
    )


@dataclass
class RecordOutcome:
    """Identities created by one ``record_message`` call (first sightings)."""

    new_entities: list[DiscoveredEntity] = field(default_factory=list)
    new_relationships: list[DiscoveredRelationship] = field(default_factory=list)


@dataclass
class LedgerStats:
    emails_processed: int = 0
    total_emails: int = 0
    current_day: str | None = None
    current_batch: int = 0
    total_batches: int = 0
    error_count: int = 0


class AggregationLedger:
    """Accumulates entities, relationships and counters for one run.

    Args:
        top_n: Number of entities and relationships in the run summary.
        clock: Monotonic clock used for the processing duration.
    """

    def __init__(self, top_n: int = TOP_N, clock: Callable[[], float] = time.monotonic) -> None:
        self._top_n = top_n
        self._clock = clock
        self._entities: dict[str, DiscoveredEntity] = {}
        self._relationships: dict[str, DiscoveredRelationship] = {}
        self._stats = LedgerStats()
        self._started_at = clock()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_message(
        self,
        message: Message,
        entities: Iterable[Entity],
        relationships: Iterable[Relationship],
    ) -> RecordOutcome:
        """Record one processed message with its entities and relationships.

        Every listed entity and relationship counts as one sighting, including
        repeats within the same message.

        Returns:
            RecordOutcome listing identities created by this call.
        """
        seen_at = message.date
        staged_entities = [(entity_key(e.type, e.normalized or e.value), e) for e in entities]
        staged_relationships = [(relationship_key(r), r) for r in relationships]

        outcome = RecordOutcome()
        for key, entity in staged_entities:
            existing = self._entities.get(key)
            if existing is None:
                created = DiscoveredEntity(
                    type=entity.type.strip().lower(),
                    value=entity.value,
                    normalized_key=key.split(":", 1)[1],
                    first_seen=seen_at,
                    last_seen=seen_at,
                    source_message_ids=[message.id],
                    confidence=entity.confidence,
                    context=entity.context,
                )
                self._entities[key] = created
                outcome.new_entities.append(created)
            else:
                existing.occurrence_count += 1
                existing.source_message_ids.append(message.id)
                existing.first_seen = min(existing.first_seen, seen_at)
                existing.last_seen = max(existing.last_seen, seen_at)
                existing.confidence = max(existing.confidence, entity.confidence)
                if not existing.context and entity.context:
                    existing.context = entity.context

        for key, rel in staged_relationships:
            existing_rel = self._relationships.get(key)
            if existing_rel is None:
                created_rel = DiscoveredRelationship(
                    from_type=rel.from_type.strip().lower(),
                    from_value=rel.from_value,
                    relationship_type=rel.relationship_type.strip().upper(),
                    to_type=rel.to_type.strip().lower(),
                    to_value=rel.to_value,
                    first_seen=seen_at,
                    last_seen=seen_at,
                    source_message_ids=[message.id],
                    confidence=rel.confidence,
                )
                self._relationships[key] = created_rel
                outcome.new_relationships.append(created_rel)
            else:
                existing_rel.occurrence_count += 1
                existing_rel.source_message_ids.append(message.id)
                existing_rel.first_seen = min(existing_rel.first_seen, seen_at)
                existing_rel.last_seen = max(existing_rel.last_seen, seen_at)
                existing_rel.confidence = max(existing_rel.confidence, rel.confidence)

        self._stats.emails_processed += 1
        logger.debug(
            "Recorded message %s: %d entities (%d new), %d relationships (%d new)",
            message.id,
            len(staged_entities),
            len(outcome.new_entities),
            len(staged_relationships),
            len(outcome.new_relationships),
        )
        return outcome

    def record_error(self) -> None:
        self._stats.error_count += 1

    def add_total_messages(self, count: int) -> None:
        self._stats.total_emails += count

    def set_current_day(self, day: str) -> None:
        self._stats.current_day = day

    def set_batch_progress(self, current: int, total: int) -> None:
        self._stats.current_batch = current
        self._stats.total_batches = total

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get_entities(self) -> list[DiscoveredEntity]:
        """Snapshot of all entities (insertion order)."""
        return list(self._entities.values())

    def get_relationships(self) -> list[DiscoveredRelationship]:
        """Snapshot of all relationships (insertion order)."""
        return list(self._relationships.values())

    def get_entity(self, entity_type: str, value: str) -> DiscoveredEntity | None:
        return self._entities.get(entity_key(entity_type, value))

    @property
    def entity_count(self) -> int:
        return len(self._entities)

    @property
    def relationship_count(self) -> int:
        return len(self._relationships)

    def stats(self) -> LedgerStats:
        """Copy of the run counters."""
        return LedgerStats(**vars(self._stats))

    def build_progress_snapshot(self, state: ProcessingState) -> ProgressEvent:
        return ProgressEvent(
            state=state,
            current_day=self._stats.current_day,
            emails_processed=self._stats.emails_processed,
            total_emails=self._stats.total_emails,
            entities_found=len(self._entities),
            relationships_found=len(self._relationships),
            current_batch=self._stats.current_batch,
            total_batches=self._stats.total_batches,
        )

    def build_run_summary(self) -> RunSummary:
        """Derive the end-of-run report from the current contents."""
        by_type: dict[str, int] = {}
        for entity in self._entities.values():
            by_type[entity.type] = by_type.get(entity.type, 0) + 1

        # sorted() is stable: ties keep first-seen order
        top_entities = sorted(self._entities.values(), key=lambda e: -e.occurrence_count)
        top_relationships = sorted(self._relationships.values(), key=lambda r: -r.occurrence_count)

        date_range = None
        if self._entities:
            date_range = CoverageWindow(
                start=min(e.first_seen for e in self._entities.values()),
                end=max(e.last_seen for e in self._entities.values()),
            )

        return RunSummary(
            total_messages_processed=self._stats.emails_processed,
            total_entities=len(self._entities),
            total_relationships=len(self._relationships),
            entities_by_type=by_type,
            unique_people=by_type.get("person", 0),
            unique_companies=by_type.get("company", 0),
            unique_projects=by_type.get("project", 0),
            error_count=self._stats.error_count,
            processing_time_ms=int((self._clock() - self._started_at) * 1000),
            date_range=date_range,
            top_entities=[
                TopEntity(type=e.type, value=e.value, count=e.occurrence_count)
                for e in top_entities[: self._top_n]
            ],
            top_relationships=[
                TopRelationship(
                    source=r.from_value,
                    target=r.to_value,
                    type=r.relationship_type,
                    count=r.occurrence_count,
                )
                for r in top_relationships[: self._top_n]
            ],
        )

    def reset(self) -> None:
        """Clear all accumulated state and restart the duration clock."""
        self._entities.clear()
        self._relationships.clear()
        self._stats = LedgerStats()
        self._started_at = self._clock()
        logger.debug("Ledger reset")
