"""Data models and enums for the onboarding pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum

from onboardlib.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_INTER_BATCH_DELAY,
    DEFAULT_LOOKBACK_DAYS,
    DEFAULT_MAX_MESSAGES_PER_DAY,
    DEFAULT_PAUSE_POLL_INTERVAL,
    DEFAULT_SYNC_CALL_DELAY,
    DEFAULT_TASK_LIST_NAME,
)
from onboardlib.exceptions import ConfigurationError


class ProcessingState(str, Enum):
    """Lifecycle state of a pipeline run."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class PipelineConfig:
    """Configuration for a single pipeline run.

    Attributes:
        batch_size: Messages classified between two inter-batch delays.
        inter_batch_delay: Seconds to sleep between batches and between days.
        max_messages_per_day: Upper bound on messages fetched for one day.
        date_range_start: First day to scan. None means 365 days before today.
        date_range_end: Last day to scan. None means today (UTC).
        auto_sync_enabled: Forward newly discovered people and action items
            to the contacts and tasks adapters during the run.
        target_list_name: Task list used by the tasks adapter.
        pause_poll_interval: Backstop wake-up interval while paused.
        classify_rate_limit_rpm: Optional cap on classifier calls per minute.
        sync_call_delay: Fixed delay between calls made by a sync adapter.
    """

    batch_size: int = DEFAULT_BATCH_SIZE
    inter_batch_delay: float = DEFAULT_INTER_BATCH_DELAY
    max_messages_per_day: int = DEFAULT_MAX_MESSAGES_PER_DAY
    date_range_start: date | None = None
    date_range_end: date | None = None
    auto_sync_enabled: bool = False
    target_list_name: str = DEFAULT_TASK_LIST_NAME
    pause_poll_interval: float = DEFAULT_PAUSE_POLL_INTERVAL
    classify_rate_limit_rpm: int | None = None
    sync_call_delay: float = DEFAULT_SYNC_CALL_DELAY

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_messages_per_day < 1:
            raise ConfigurationError(
                f"max_messages_per_day must be >= 1, got {self.max_messages_per_day}"
            )
        for name in ("inter_batch_delay", "sync_call_delay"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.pause_poll_interval <= 0:
            raise ConfigurationError(
                f"pause_poll_interval must be > 0, got {self.pause_poll_interval}"
            )
        if self.classify_rate_limit_rpm is not None and self.classify_rate_limit_rpm < 1:
            raise ConfigurationError(
                f"classify_rate_limit_rpm must be >= 1, got {self.classify_rate_limit_rpm}"
            )
        if (
            self.date_range_start is not None
            and self.date_range_end is not None
            and self.date_range_start > self.date_range_end
        ):
            raise ConfigurationError(
                f"date_range_start {self.date_range_start} is after date_range_end {self.date_range_end}"
            )

    def resolve_range(self, today: date | None = None) -> tuple[date, date]:
        """Return the concrete (start, end) days, filling defaults relative to today."""
        today = today or datetime.now(timezone.utc).date()
        end = self.date_range_end or today
        start = self.date_range_start or (end - timedelta(days=DEFAULT_LOOKBACK_DAYS))
        if start > end:
            raise ConfigurationError(f"date range start {start} is after end {end}")
        return start, end


@dataclass(slots=True)
class DiscoveredEntity:
    """An entity identity aggregated across the messages of one run."""

    type: str
    value: str
    normalized_key: str
    first_seen: datetime
    last_seen: datetime
    occurrence_count: int = 1
    source_message_ids: list[str] = field(default_factory=list)
    confidence: float = 1.0
    context: str | None = None

    @property
    def key(self) -> str:
        return f"{self.type}:{self.normalized_key}"

    def to_dict(self) -> dict[str, object]:
        """Convert to a camelCase dictionary with ISO timestamps."""
        d: dict[str, object] = {
            "type": self.type,
            "value": self.value,
            "normalizedKey": self.normalized_key,
            "occurrenceCount": self.occurrence_count,
            "firstSeen": self.first_seen.isoformat(),
            "lastSeen": self.last_seen.isoformat(),
            "sourceMessageIds": list(self.source_message_ids),
            "confidence": self.confidence,
        }
        if self.context:
            d["context"] = self.context
        return d


@dataclass(slots=True)
class DiscoveredRelationship:
    """A directed relationship identity aggregated across one run."""

    from_type: str
    from_value: str
    relationship_type: str
    to_type: str
    to_value: str
    first_seen: datetime
    last_seen: datetime
    occurrence_count: int = 1
    source_message_ids: list[str] = field(default_factory=list)
    confidence: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Convert to a camelCase dictionary with ISO timestamps."""
        return {
            "fromType": self.from_type,
            "fromValue": self.from_value,
            "relationshipType": self.relationship_type,
            "toType": self.to_type,
            "toValue": self.to_value,
            "occurrenceCount": self.occurrence_count,
            "firstSeen": self.first_seen.isoformat(),
            "lastSeen": self.last_seen.isoformat(),
            "sourceMessageIds": list(self.source_message_ids),
            "confidence": self.confidence,
        }
