"""Shared result types and throttling for the sync adapters."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

from aiolimiter import AsyncLimiter

from onboardlib.models import DiscoveredEntity

logger = logging.getLogger(__name__)


class SyncAction(str, Enum):
    """Outcome of syncing a single entity."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass(slots=True)
class SyncResult:
    """Result of ``sync_entity``. Failures are ``skipped`` with ``error`` set."""

    action: SyncAction
    external_id: str | None = None
    error: str | None = None
    reason: str | None = None
    list_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        d: dict[str, object] = {"action": self.action.value}
        if self.external_id is not None:
            d["externalId"] = self.external_id
        if self.error is not None:
            d["error"] = self.error
        if self.reason is not None:
            d["reason"] = self.reason
        return d


@dataclass
class SyncSummary:
    """Aggregate over a bulk sync."""

    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    error_count: int = 0
    list_id: str | None = None
    list_name: str | None = None
    results: dict[str, SyncResult] = field(default_factory=dict)

    def add(self, value: str, result: SyncResult) -> None:
        self.total += 1
        if result.action is SyncAction.CREATED:
            self.created += 1
        elif result.action is SyncAction.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1
        if result.error:
            self.error_count += 1
        self.results[value] = result

    def to_dict(self) -> dict[str, object]:
        d: dict[str, object] = {
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errorCount": self.error_count,
        }
        if self.list_id is not None:
            d["taskListId"] = self.list_id
        if self.list_name is not None:
            d["taskListName"] = self.list_name
        return d


ProgressCallback = Callable[[int, int, DiscoveredEntity, SyncResult], None]


class SyncAdapter(ABC):
    """Syncs one entity type into an external store.

    Subclasses implement ``_sync``; ``sync_entity`` applies the fixed
    inter-call delay and guarantees that nothing raises for a single item.

    Args:
        call_delay: Minimum seconds between two external calls. 0 disables it.
    """

    entity_type: str = ""

    def __init__(self, call_delay: float = 0.1) -> None:
        self._limiter: AsyncLimiter | None = None
        self.set_call_delay(call_delay)

    def set_call_delay(self, call_delay: float) -> None:
        """Change the minimum spacing of external calls (0 disables it)."""
        self._limiter = AsyncLimiter(1, call_delay) if call_delay > 0 else None

    async def _throttle(self) -> None:
        if self._limiter is not None:
            await self._limiter.acquire()

    async def sync_entity(self, entity: DiscoveredEntity, **kwargs: object) -> SyncResult:
        if entity.type != self.entity_type:
            return SyncResult(SyncAction.SKIPPED, error=f"Not a {self.entity_type} entity")
        try:
            return await self._sync(entity, **kwargs)
        except Exception as exc:
            logger.warning("Sync of %s %r failed: %s", self.entity_type, entity.value, exc)
            return SyncResult(SyncAction.SKIPPED, error=str(exc))

    @abstractmethod
    async def _sync(self, entity: DiscoveredEntity, **kwargs: object) -> SyncResult:
        ...

    async def _sync_all(
        self,
        entities: Iterable[DiscoveredEntity],
        on_progress: ProgressCallback | None = None,
        **kwargs: object,
    ) -> SyncSummary:
        candidates = [e for e in entities if e.type == self.entity_type]
        summary = SyncSummary()
        for current, entity in enumerate(candidates, start=1):
            result = await self.sync_entity(entity, **kwargs)
            summary.add(entity.value, result)
            if on_progress is not None:
                on_progress(current, len(candidates), entity, result)
        logger.info(
            "%s sync: %d total, %d created, %d updated, %d skipped, %d errors",
            self.entity_type,
            summary.total,
            summary.created,
            summary.updated,
            summary.skipped,
            summary.error_count,
        )
        return summary
