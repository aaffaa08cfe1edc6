"""Sync discovered action items into an external task list.

The target list is found by title (case-insensitive) or created. A task
whose title already exists in the list is skipped as a duplicate.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

from onboardlib.constants import DEFAULT_TASK_LIST_NAME
from onboardlib.exceptions import ExternalServiceError
from onboardlib.models import DiscoveredEntity
from onboardlib.schemas import normalize_key
from onboardlib.sync.base import ProgressCallback, SyncAction, SyncAdapter, SyncResult, SyncSummary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskList:
    id: str
    title: str


@dataclass(frozen=True)
class ExternalTask:
    id: str
    title: str


class TasksClient(ABC):
    """Native API of the external task store."""

    @abstractmethod
    async def list_task_lists(self) -> list[TaskList]:
        ...

    @abstractmethod
    async def create_task_list(self, title: str) -> TaskList:
        ...

    @abstractmethod
    async def list_tasks(self, list_id: str) -> list[ExternalTask]:
        ...

    @abstractmethod
    async def create_task(self, list_id: str, title: str, notes: str | None = None) -> ExternalTask:
        ...


def build_task_notes(entity: DiscoveredEntity) -> str:
    lines: list[str] = []
    if entity.context:
        lines.append(f"Context: {entity.context}")
    lines.append(f"Seen {entity.occurrence_count} times in sent email.")
    lines.append(f"First seen: {entity.first_seen.date().isoformat()}")
    lines.append(f"Last seen: {entity.last_seen.date().isoformat()}")
    lines.append("Discovered via email analysis.")
    return "\n".join(lines)


class TasksSyncAdapter(SyncAdapter):
    """Creates tasks for ``action_item`` entities.

    Args:
        client: Task store client.
        list_name: Default target list title.
        call_delay: Minimum seconds between two external calls.
    """

    entity_type = "action_item"

    def __init__(
        self,
        client: TasksClient,
        list_name: str = DEFAULT_TASK_LIST_NAME,
        call_delay: float = 0.1,
    ) -> None:
        super().__init__(call_delay)
        self._client = client
        self._default_list_name = list_name
        self._lists: dict[str, TaskList] = {}

    async def ensure_task_list(self, name: str) -> TaskList:
        """Find the list titled *name* (case-insensitive) or create it.

        Raises:
            ExternalServiceError: The task store could not list or create lists.
        """
        cache_key = normalize_key(name)
        cached = self._lists.get(cache_key)
        if cached is not None:
            return cached

        try:
            await self._throttle()
            for task_list in await self._client.list_task_lists():
                if normalize_key(task_list.title) == cache_key:
                    self._lists[cache_key] = task_list
                    return task_list

            await self._throttle()
            created = await self._client.create_task_list(name)
        except Exception as exc:
            raise ExternalServiceError("tasks", f"cannot ensure list {name!r}: {exc}") from exc
        logger.info("Created task list %r (%s)", name, created.id)
        self._lists[cache_key] = created
        return created

    async def _is_duplicate(self, list_id: str, title: str) -> bool:
        await self._throttle()
        try:
            tasks = await self._client.list_tasks(list_id)
        except Exception as exc:
            logger.warning("Could not list tasks in %s, assuming no duplicate: %s", list_id, exc)
            return False
        wanted = title.strip().casefold()
        return any(task.title.strip().casefold() == wanted for task in tasks)

    async def _sync(
        self,
        entity: DiscoveredEntity,
        list_name: str | None = None,
        **_: object,
    ) -> SyncResult:
        name = list_name or self._default_list_name
        try:
            task_list = await self.ensure_task_list(name)
        except ExternalServiceError as exc:
            logger.warning("Could not ensure task list %r: %s", name, exc)
            return SyncResult(SyncAction.SKIPPED, error=f"Task list unavailable: {exc}")

        title = entity.value.strip()
        if await self._is_duplicate(task_list.id, title):
            return SyncResult(SyncAction.SKIPPED, reason="duplicate", list_id=task_list.id)

        await self._throttle()
        task = await self._client.create_task(task_list.id, title, build_task_notes(entity))
        logger.debug("Created task %s in %s for %r", task.id, task_list.id, title)
        return SyncResult(SyncAction.CREATED, external_id=task.id, list_id=task_list.id)

    async def sync_entities(
        self,
        entities: Iterable[DiscoveredEntity],
        list_name: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SyncSummary:
        """Sync every action item in *entities* into the target list."""
        name = list_name or self._default_list_name
        summary = await self._sync_all(entities, on_progress, list_name=name)
        summary.list_name = name
        cached = self._lists.get(normalize_key(name))
        if cached is not None:
            summary.list_id = cached.id
        return summary
