"""Append-only store of feedback records with JSON-lines persistence.

Records are kept in memory keyed by id. ``export_lines`` and ``load_lines``
round-trip the whole set; loading merges by id, so re-loading the same file
never duplicates records.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, NamedTuple

from pydantic import ValidationError

from onboardlib.exceptions import ConfigurationError, PreconditionError, UnknownTypeError
from onboardlib.feedback.models import (
    ExtractedItem,
    FeedbackContext,
    FeedbackRecord,
    FeedbackStats,
    KindBreakdown,
)
from onboardlib.schemas import normalize_key
from onboardlib.storage import atomic_write_text

logger = logging.getLogger(__name__)

_KINDS = ("entity", "relationship")
_JUDGMENTS = ("positive", "negative")


class LoadResult(NamedTuple):
    loaded: int
    skipped: int


def _new_feedback_id(now: datetime) -> str:
    return f"fb_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"


def _as_precondition(exc: ValidationError) -> PreconditionError:
    """Translate a validation failure into the error taxonomy."""
    for err in exc.errors():
        field = str(err["loc"][0]) if err["loc"] else ""
        if field in ("entity_type", "entityType"):
            return UnknownTypeError("entity", str(err.get("input")))
        if field in ("relationship_type", "relationshipType"):
            return UnknownTypeError("relationship", str(err.get("input")))
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return PreconditionError(f"Invalid feedback ({location}): {first['msg']}")


class FeedbackStore:
    """In-memory feedback records, persisted to JSON-lines files on demand.

    Args:
        directory: Directory used by ``save_to_file`` and ``load_directory``.
        clock: Returns the current time (UTC); injectable for tests.
    """

    def __init__(
        self,
        directory: Path | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._directory = Path(directory) if directory is not None else None
        self._clock = clock
        self._records: dict[str, FeedbackRecord] = {}

    @property
    def directory(self) -> Path | None:
        return self._directory

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def record(
        self,
        kind: str,
        extracted: ExtractedItem | Mapping[str, Any],
        judgment: str,
        context: FeedbackContext | Mapping[str, Any] | None = None,
        correction_text: str | None = None,
    ) -> FeedbackRecord:
        """Create, store and return a new feedback record.

        Raises:
            PreconditionError: Unknown kind or judgment, or a malformed item.
            UnknownTypeError: Entity or relationship type outside the vocabulary.
        """
        if kind not in _KINDS:
            raise PreconditionError(f"kind must be one of {_KINDS}, got {kind!r}")
        if judgment not in _JUDGMENTS:
            raise PreconditionError(f"judgment must be one of {_JUDGMENTS}, got {judgment!r}")

        now = self._clock()
        correction = correction_text.strip() if correction_text else None
        try:
            item = (
                extracted
                if isinstance(extracted, ExtractedItem)
                else ExtractedItem.model_validate(dict(extracted))
            )
            ctx = (
                context
                if isinstance(context, FeedbackContext)
                else FeedbackContext.model_validate(dict(context or {}))
            )
            record = FeedbackRecord(
                id=_new_feedback_id(now),
                timestamp=now,
                kind=kind,  # type: ignore[arg-type]
                context=ctx,
                extracted=item,
                judgment=judgment,  # type: ignore[arg-type]
                correction_text=correction or None,
            )
        except ValidationError as exc:
            raise _as_precondition(exc) from exc

        self._records[record.id] = record
        logger.info(
            "Recorded %s feedback %s on %s %r",
            judgment,
            record.id,
            kind,
            item.value,
        )
        return record

    def delete(self, feedback_id: str) -> bool:
        """Remove a record by id. Returns False if it did not exist."""
        removed = self._records.pop(feedback_id, None)
        if removed is not None:
            logger.info("Deleted feedback %s", feedback_id)
        return removed is not None

    def clear(self) -> None:
        self._records.clear()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get(self, feedback_id: str) -> FeedbackRecord | None:
        return self._records.get(feedback_id)

    def all_records(self) -> list[FeedbackRecord]:
        """All records, oldest first."""
        return sorted(self._records.values(), key=lambda r: r.timestamp)

    def find_by_value(self, value: str) -> list[FeedbackRecord]:
        wanted = normalize_key(value)
        return [r for r in self.all_records() if normalize_key(r.extracted.value) == wanted]

    def stats(self) -> FeedbackStats:
        stats = FeedbackStats()
        for record in self._records.values():
            stats.total += 1
            positive = record.judgment == "positive"
            if positive:
                stats.positive += 1
            else:
                stats.negative += 1
            if record.correction_text:
                stats.with_correction += 1

            buckets = [stats.by_kind.setdefault(record.kind, KindBreakdown())]
            if record.extracted.entity_type:
                buckets.append(stats.by_entity_type.setdefault(record.extracted.entity_type, KindBreakdown()))
            if record.extracted.relationship_type:
                buckets.append(
                    stats.by_relationship_type.setdefault(record.extracted.relationship_type, KindBreakdown())
                )
            for bucket in buckets:
                if positive:
                    bucket.positive += 1
                else:
                    bucket.negative += 1
        return stats

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_lines(self) -> str:
        """Serialise every record, one JSON object per line."""
        lines = [
            r.model_dump_json(by_alias=True, exclude_none=True) for r in self.all_records()
        ]
        return "".join(line + "\n" for line in lines)

    def load_lines(self, text: str) -> LoadResult:
        """Merge records from JSON-lines text, keyed by id.

        Malformed lines are logged and skipped; they do not abort the load.
        """
        loaded = skipped = 0
        for line_no, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                record = FeedbackRecord.model_validate(json.loads(line))
            except (json.JSONDecodeError, ValidationError) as exc:
                skipped += 1
                logger.error("Skipping malformed feedback line %d: %s", line_no, exc)
                continue
            self._records[record.id] = record
            loaded += 1
        if skipped:
            logger.warning("Loaded %d feedback records, skipped %d malformed lines", loaded, skipped)
        return LoadResult(loaded, skipped)

    def save_to_file(self, path: Path | None = None) -> Path:
        """Write every record to *path*, or to a timestamped file in the store directory."""
        if path is None:
            if self._directory is None:
                raise ConfigurationError("FeedbackStore has no directory to save into")
            stamp = self._clock().strftime("%Y%m%d-%H%M%S")
            path = self._directory / f"feedback-{stamp}.jsonl"
        atomic_write_text(path, self.export_lines())
        logger.info("Saved %d feedback records to %s", len(self._records), path)
        return path

    def load_from_file(self, path: Path) -> LoadResult:
        return self.load_lines(Path(path).read_text(encoding="utf-8"))

    def load_directory(self, directory: Path | None = None) -> LoadResult:
        """Merge every ``*.jsonl`` file in *directory* (default: the store directory)."""
        directory = Path(directory) if directory is not None else self._directory
        if directory is None or not directory.is_dir():
            return LoadResult(0, 0)
        loaded = skipped = 0
        for path in sorted(directory.glob("*.jsonl")):
            result = self.load_from_file(path)
            loaded += result.loaded
            skipped += result.skipped
        logger.info("Loaded %d feedback records from %s", loaded, directory)
        return LoadResult(loaded, skipped)
