"""Shared pytest fixtures and fakes for onboardlib tests.

Provides an in-memory message source, a scripted classifier, a recording
event sink and fake contacts / tasks clients. No network or external
service is touched by any test.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

from onboardlib.events import Event
from onboardlib.feedback.store import FeedbackStore
from onboardlib.models import PipelineConfig
from onboardlib.pipeline.broadcast import EventBroadcaster, EventSink
from onboardlib.pipeline.fsm import LifecycleStateMachine
from onboardlib.pipeline.ledger import AggregationLedger
from onboardlib.pipeline.sources import Classifier, MessageSource
from onboardlib.schemas import Entity, ExtractionResult, Message, Relationship
from onboardlib.sync.contacts import ContactDraft, ContactsClient, ExternalContact
from onboardlib.sync.tasks import ExternalTask, TaskList, TasksClient


# ======================================================================
# Builders
# ======================================================================


def make_message(
    message_id: str,
    day: str = "2024-01-01",
    hour: int = 12,
    subject: str = "Hello",
    sender: str = "me@example.com",
) -> Message:
    """Build a Message dated *day* at *hour* UTC."""
    d = date.fromisoformat(day)
    return Message(
        id=message_id,
        subject=subject,
        sender=sender,
        to=["you@example.com"],
        date=datetime(d.year, d.month, d.day, hour, tzinfo=timezone.utc),
        snippet=f"snippet of {message_id}",
    )


def ticking_clock(start: datetime | None = None) -> Callable[[], datetime]:
    """Clock that advances one second per call."""
    current = [start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)]

    def clock() -> datetime:
        current[0] = current[0] + timedelta(seconds=1)
        return current[0]

    return clock


def person(value: str, confidence: float = 0.9, context: str | None = None) -> Entity:
    return Entity(type="person", value=value, confidence=confidence, context=context)


def entity(entity_type: str, value: str, confidence: float = 0.9) -> Entity:
    return Entity(type=entity_type, value=value, confidence=confidence)


def works_with(a: str, b: str) -> Relationship:
    return Relationship(
        from_type="person",
        from_value=a,
        relationship_type="WORKS_WITH",
        to_type="person",
        to_value=b,
        confidence=0.8,
    )


# ======================================================================
# Fakes
# ======================================================================


class FakeMessageSource(MessageSource):
    """Serves messages from a dict of ISO day -> messages; records fetch order."""

    def __init__(
        self,
        by_day: dict[str, list[Message]] | None = None,
        failing_days: set[str] | None = None,
        check_error: Exception | None = None,
    ) -> None:
        self.by_day = by_day or {}
        self.failing_days = failing_days or set()
        self.check_error = check_error
        self.fetched: list[str] = []
        self.on_fetch: Callable[[str], None] | None = None

    async def check(self) -> None:
        if self.check_error is not None:
            raise self.check_error

    async def fetch_day(self, day: date, limit: int) -> list[Message]:
        key = day.isoformat()
        self.fetched.append(key)
        if self.on_fetch is not None:
            self.on_fetch(key)
        if key in self.failing_days:
            raise RuntimeError(f"mailbox unavailable for {key}")
        return list(self.by_day.get(key, []))[:limit]


class ScriptedClassifier(Classifier):
    """Returns pre-registered results by message id; empty results otherwise."""

    def __init__(
        self,
        results: dict[str, ExtractionResult] | None = None,
        failing_ids: set[str] | None = None,
    ) -> None:
        self.results = results or {}
        self.failing_ids = failing_ids or set()
        self.calls: list[str] = []
        self.identity: tuple[str, str | None] | None = None

    def set_user_identity(self, email: str, name: str | None = None) -> None:
        self.identity = (email, name)

    def script(
        self,
        message_id: str,
        entities: list[Entity] | None = None,
        relationships: list[Relationship] | None = None,
        is_spam: bool = False,
    ) -> None:
        self.results[message_id] = ExtractionResult(
            message_id=message_id,
            entities=entities or [],
            relationships=relationships or [],
            is_spam=is_spam,
            spam_score=0.9 if is_spam else 0.0,
        )

    async def classify(self, message: Message) -> ExtractionResult:
        self.calls.append(message.id)
        if message.id in self.failing_ids:
            raise RuntimeError(f"classifier timeout on {message.id}")
        return self.results.get(message.id, ExtractionResult.empty(message.id))


class GatedClassifier(ScriptedClassifier):
    """ScriptedClassifier that blocks on the *gated* ids until ``release()`` is called."""

    def __init__(self, gated: set[str], **kwargs) -> None:
        super().__init__(**kwargs)
        self.gated = set(gated)
        self.entered = asyncio.Event()
        self._gate = asyncio.Event()

    def release(self) -> None:
        self._gate.set()

    async def classify(self, message: Message) -> ExtractionResult:
        if message.id in self.gated and not self._gate.is_set():
            self.entered.set()
            await self._gate.wait()
        return await super().classify(message)


class RecordingSink(EventSink):
    """Collects every event it receives."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def send(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.type == event_type]

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]


class FailingSink(EventSink):
    def send(self, event: Event) -> None:
        raise ConnectionResetError("observer went away")


class FakeContactsClient(ContactsClient):
    """In-memory contact book keyed by email."""

    def __init__(self, existing: dict[str, str] | None = None, fail_create: bool = False) -> None:
        self.by_email: dict[str, str] = dict(existing or {})
        self.created: list[ContactDraft] = []
        self.updated: list[tuple[str, ContactDraft]] = []
        self.fail_create = fail_create

    async def find_by_email(self, email: str) -> ExternalContact | None:
        resource = self.by_email.get(email)
        return ExternalContact(resource, email) if resource else None

    async def create_contact(self, draft: ContactDraft) -> ExternalContact:
        if self.fail_create:
            raise RuntimeError("quota exceeded")
        self.created.append(draft)
        resource = f"people/c{len(self.created)}"
        if draft.email:
            self.by_email[draft.email] = resource
        return ExternalContact(resource, draft.email)

    async def update_contact(self, resource_name: str, draft: ContactDraft) -> ExternalContact:
        self.updated.append((resource_name, draft))
        return ExternalContact(resource_name, draft.email)


class FakeTasksClient(TasksClient):
    """In-memory task lists."""

    def __init__(
        self,
        lists: dict[str, list[str]] | None = None,
        fail_lists: bool = False,
        fail_list_tasks: bool = False,
    ) -> None:
        self.lists: dict[str, TaskList] = {}
        self.tasks: dict[str, list[ExternalTask]] = {}
        for title, task_titles in (lists or {}).items():
            task_list = TaskList(f"list{len(self.lists) + 1}", title)
            self.lists[task_list.id] = task_list
            self.tasks[task_list.id] = [
                ExternalTask(f"{task_list.id}-t{i}", t) for i, t in enumerate(task_titles, start=1)
            ]
        self.fail_lists = fail_lists
        self.fail_list_tasks = fail_list_tasks
        self.list_calls = 0

    async def list_task_lists(self) -> list[TaskList]:
        self.list_calls += 1
        if self.fail_lists:
            raise RuntimeError("tasks API down")
        return list(self.lists.values())

    async def create_task_list(self, title: str) -> TaskList:
        task_list = TaskList(f"list{len(self.lists) + 1}", title)
        self.lists[task_list.id] = task_list
        self.tasks[task_list.id] = []
        return task_list

    async def list_tasks(self, list_id: str) -> list[ExternalTask]:
        if self.fail_list_tasks:
            raise RuntimeError("cannot list tasks")
        return list(self.tasks.get(list_id, []))

    async def create_task(self, list_id: str, title: str, notes: str | None = None) -> ExternalTask:
        task = ExternalTask(f"{list_id}-t{len(self.tasks[list_id]) + 1}", title)
        self.tasks[list_id].append(task)
        return task


# ======================================================================
# Fixtures
# ======================================================================


@pytest.fixture
def fast_config() -> PipelineConfig:
    """Three-day range with every delay disabled."""
    return PipelineConfig(
        batch_size=2,
        inter_batch_delay=0,
        date_range_start=date(2024, 1, 1),
        date_range_end=date(2024, 1, 3),
        pause_poll_interval=0.01,
        sync_call_delay=0,
    )


@pytest.fixture
def ledger() -> AggregationLedger:
    return AggregationLedger()


@pytest.fixture
def lifecycle(ledger: AggregationLedger) -> LifecycleStateMachine:
    return LifecycleStateMachine(ledger=ledger)


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def sink(broadcaster: EventBroadcaster) -> RecordingSink:
    recording = RecordingSink()
    broadcaster.subscribe(recording)
    return recording


@pytest.fixture
def feedback_store(tmp_path: Path) -> FeedbackStore:
    """Store writing into a temporary feedback directory, one second per record."""
    return FeedbackStore(tmp_path / "feedback", clock=ticking_clock())
