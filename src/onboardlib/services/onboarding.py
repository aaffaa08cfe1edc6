"""Control surface of the onboarding pipeline.

OnboardingService wires explicitly constructed collaborators together and
exposes the request/response operations: run control, status, discovered
items, feedback, sync and the topic ontology. Each run gets its own
lifecycle controller and ledger; the feedback store and the ontology are
long-lived and shared between runs.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Mapping

from onboardlib.events import (
    ConnectedEvent,
    ContactSyncEvent,
    ErrorEvent,
    FeedbackEvent,
    StateChangeEvent,
    TaskSyncEvent,
)
from onboardlib.exceptions import ConfigurationError, InvalidStateTransition, PreconditionError
from onboardlib.feedback.models import FeedbackRecord, FeedbackStats
from onboardlib.feedback.store import FeedbackStore
from onboardlib.models import DiscoveredEntity, DiscoveredRelationship, PipelineConfig, ProcessingState
from onboardlib.ontology.tree import OntologyNode, TopicOntology, TopicWithParent
from onboardlib.pipeline.broadcast import EventBroadcaster, EventSink
from onboardlib.pipeline.coordinator import PipelineCoordinator
from onboardlib.pipeline.fsm import CancellationToken, LifecycleStateMachine
from onboardlib.pipeline.ledger import AggregationLedger
from onboardlib.pipeline.sources import Classifier, MessageSource
from onboardlib.schemas import RunSummary, normalize_key
from onboardlib.sync.base import SyncResult, SyncSummary
from onboardlib.sync.contacts import ContactsSyncAdapter
from onboardlib.sync.tasks import TasksSyncAdapter
from onboardlib.telemetry import Telemetry

logger = logging.getLogger(__name__)


class OnboardingService:
    """Facade over one onboarding pipeline.

    Usage::

        svc = OnboardingService(source, classifier, feedback=FeedbackStore(dir))
        svc.attach(QueueSink())
        await svc.start(PipelineConfig(auto_sync_enabled=False))
        summary = await svc.wait()

    Args:
        source: Message source.
        classifier: Classifier.
        feedback: Long-lived feedback store.
        ontology: Long-lived topic ontology.
        contacts: Optional contacts adapter.
        tasks: Optional tasks adapter.
        broadcaster: Event fan-out (a new one by default).
        telemetry: Tracing facade.
    """

    def __init__(
        self,
        source: MessageSource,
        classifier: Classifier,
        *,
        feedback: FeedbackStore | None = None,
        ontology: TopicOntology | None = None,
        contacts: ContactsSyncAdapter | None = None,
        tasks: TasksSyncAdapter | None = None,
        broadcaster: EventBroadcaster | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._source = source
        self._classifier = classifier
        self._feedback = feedback or FeedbackStore()
        self._ontology = ontology or TopicOntology()
        self._contacts = contacts
        self._tasks = tasks
        self._broadcaster = broadcaster or EventBroadcaster()
        self._telemetry = telemetry or Telemetry.noop()

        self._ledger = AggregationLedger()
        self._lifecycle = self._new_lifecycle(ProcessingState.IDLE, self._ledger)
        self._task: asyncio.Task[RunSummary | None] | None = None
        self._signal_count = 0

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _new_lifecycle(self, initial: ProcessingState, ledger: AggregationLedger) -> LifecycleStateMachine:
        lifecycle = LifecycleStateMachine(initial=initial, ledger=ledger)
        lifecycle.on_state_change(self._mirror_state)
        return lifecycle

    def _mirror_state(self, previous: ProcessingState, new: ProcessingState) -> None:
        self._broadcaster.publish(StateChangeEvent(previous_state=previous, new_state=new))

    @property
    def broadcaster(self) -> EventBroadcaster:
        return self._broadcaster

    @property
    def feedback(self) -> FeedbackStore:
        return self._feedback

    @property
    def ontology(self) -> TopicOntology:
        return self._ontology

    @property
    def state(self) -> ProcessingState:
        return self._lifecycle.state

    def attach(self, sink: EventSink) -> bool:
        """Subscribe an observer and bring it up to date.

        Sends ``connected``, the current state as a ``state_change`` and,
        when a run exists, the current ``progress`` snapshot.
        """
        state = self._lifecycle.state
        try:
            sink.send(ConnectedEvent())
            sink.send(StateChangeEvent(previous_state=state, new_state=state))
            if state is not ProcessingState.IDLE:
                sink.send(self._ledger.build_progress_snapshot(state))
        except Exception as exc:
            logger.info("Observer %r failed during attach: %s", sink, exc)
            return False
        self._broadcaster.subscribe(sink)
        return True

    def detach(self, sink: EventSink) -> None:
        self._broadcaster.unsubscribe(sink)

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------

    async def start(
        self,
        config: PipelineConfig | None = None,
        *,
        user_email: str | None = None,
        user_name: str | None = None,
    ) -> dict[str, str]:
        """Start a run in the background.

        A stopped or flushed run that is still finishing an in-flight call
        is awaited first, so two runs never overlap.

        Raises:
            InvalidStateTransition: A run is already active.
            ConfigurationError: The date range is invalid or the message
                source preflight failed; the lifecycle is left as it was.
        """
        if not self._lifecycle.can_start():
            raise InvalidStateTransition("start", self._lifecycle.state.value)
        config = config or PipelineConfig()
        config.resolve_range()

        try:
            await self._source.check()
        except ConfigurationError:
            raise
        except Exception as exc:
            raise ConfigurationError(f"Message source unavailable: {exc}") from exc

        previous = self._task
        if previous is not None and not previous.done():
            logger.info("Waiting for the previous run to wind down")
            await previous
        # another start may have won while we waited
        if not self._lifecycle.can_start():
            raise InvalidStateTransition("start", self._lifecycle.state.value)

        if user_email:
            self._classifier.set_user_identity(user_email, user_name)
        for adapter in (self._contacts, self._tasks):
            if adapter is not None:
                adapter.set_call_delay(config.sync_call_delay)

        self._ledger = AggregationLedger()
        self._lifecycle = self._new_lifecycle(self._lifecycle.state, self._ledger)
        token = self._lifecycle.start()
        if token is None:
            raise InvalidStateTransition("start", self._lifecycle.state.value)

        coordinator = PipelineCoordinator(
            self._source,
            self._classifier,
            self._lifecycle,
            self._ledger,
            self._broadcaster,
            config,
            ontology=self._ontology,
            contacts=self._contacts,
            tasks=self._tasks,
            telemetry=self._telemetry,
        )
        self._task = asyncio.create_task(self._run_guarded(coordinator, token, self._lifecycle))
        return {"state": self._lifecycle.state.value}

    async def _run_guarded(
        self,
        coordinator: PipelineCoordinator,
        token: CancellationToken,
        lifecycle: LifecycleStateMachine,
    ) -> RunSummary | None:
        try:
            return await coordinator.run(token)
        except Exception as exc:
            logger.exception("Pipeline run failed")
            self._broadcaster.publish(ErrorEvent(message="Processing failed", details=str(exc)))
            if lifecycle.can_stop():
                lifecycle.stop()
            return None

    async def wait(self) -> RunSummary | None:
        """Wait for the active run; returns its summary, or None if it was cancelled."""
        if self._task is None:
            return None
        return await self._task

    def pause(self) -> dict[str, str]:
        if not self._lifecycle.pause():
            raise InvalidStateTransition("pause", self._lifecycle.state.value)
        return {"state": self._lifecycle.state.value}

    def resume(self) -> dict[str, str]:
        if not self._lifecycle.resume():
            raise InvalidStateTransition("resume", self._lifecycle.state.value)
        return {"state": self._lifecycle.state.value}

    def stop(self) -> dict[str, str]:
        if not self._lifecycle.stop():
            raise InvalidStateTransition("stop", self._lifecycle.state.value)
        return {"state": self._lifecycle.state.value}

    def flush(self) -> dict[str, str]:
        """Hard reset: cancel any run and clear discovered items.

        A classification already in flight finishes in the background and
        its result is discarded.
        """
        self._lifecycle.flush()
        return {"state": self._lifecycle.state.value}

    def setup_signal_handlers(self) -> None:
        """Register SIGINT/SIGTERM handlers.

        First signal stops the run gracefully (aggregated data is kept).
        Second signal forces immediate exit.
        """
        self._signal_count = 0

        def _handler(signum: int, frame: Any) -> None:
            self._signal_count += 1
            if self._signal_count == 1:
                logger.warning("Stopping run, press Ctrl+C again to exit immediately...")
                self._lifecycle.stop()
            else:
                logger.warning("Forced shutdown. Exiting immediately.")
                raise SystemExit(1)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except (OSError, ValueError):
            logger.debug("Could not set signal handlers (not main thread)")

    # ------------------------------------------------------------------
    # Status and discovered items
    # ------------------------------------------------------------------

    def status(self) -> dict[str, object]:
        return {
            "state": self._lifecycle.state.value,
            "entityCount": self._ledger.entity_count,
            "relationshipCount": self._ledger.relationship_count,
        }

    def list_entities(self, entity_type: str | None = None) -> list[DiscoveredEntity]:
        """Discovered entities, most frequent first."""
        entities = self._ledger.get_entities()
        if entity_type:
            entities = [e for e in entities if e.type == entity_type]
        return sorted(entities, key=lambda e: -e.occurrence_count)

    def list_relationships(self) -> list[DiscoveredRelationship]:
        """Discovered relationships, most frequent first."""
        return sorted(self._ledger.get_relationships(), key=lambda r: -r.occurrence_count)

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def post_feedback(
        self,
        kind: str,
        extracted: Mapping[str, Any],
        judgment: str,
        context: Mapping[str, Any] | None = None,
        correction: str | None = None,
    ) -> FeedbackRecord:
        """Record a judgment and announce it on the event stream."""
        record = self._feedback.record(kind, extracted, judgment, context, correction)
        self._broadcaster.publish(
            FeedbackEvent(
                feedback_id=record.id,
                feedback_type=record.kind,
                value=record.extracted.value,
                feedback=record.judgment,
                entity_type=record.extracted.entity_type,
                relationship_type=record.extracted.relationship_type,
            )
        )
        return record

    def feedback_stats(self) -> FeedbackStats:
        return self._feedback.stats()

    def export_feedback(self) -> str:
        """All feedback as JSON lines (download body)."""
        return self._feedback.export_lines()

    def list_feedback(self) -> list[FeedbackRecord]:
        return self._feedback.all_records()

    def delete_feedback(self, feedback_id: str) -> bool:
        return self._feedback.delete(feedback_id)

    # ------------------------------------------------------------------
    # External sync
    # ------------------------------------------------------------------

    def _select(self, entity_type: str, values: list[str] | None) -> list[DiscoveredEntity]:
        entities = self.list_entities(entity_type)
        if values is None:
            return entities
        wanted = {normalize_key(v) for v in values}
        return [e for e in entities if e.normalized_key in wanted]

    async def sync_contacts(
        self,
        entity_values: list[str] | None = None,
        email_map: dict[str, str] | None = None,
    ) -> SyncSummary:
        """Sync discovered people (all, or those named in *entity_values*)."""
        if self._contacts is None:
            raise ConfigurationError("No contacts adapter configured")
        people = self._select("person", entity_values)

        def _progress(current: int, total: int, entity: DiscoveredEntity, result: SyncResult) -> None:
            self._broadcaster.publish(
                ContactSyncEvent(
                    entity_value=entity.value,
                    action=result.action.value,
                    resource_name=result.external_id,
                    error=result.error,
                    current=current,
                    total=total,
                )
            )

        return await self._contacts.sync_entities(people, email_map=email_map, on_progress=_progress)

    async def sync_tasks(
        self,
        entity_values: list[str] | None = None,
        list_name: str | None = None,
    ) -> SyncSummary:
        """Sync discovered action items into *list_name* (or the adapter default)."""
        if self._tasks is None:
            raise ConfigurationError("No tasks adapter configured")
        items = self._select("action_item", entity_values)

        def _progress(current: int, total: int, entity: DiscoveredEntity, result: SyncResult) -> None:
            self._broadcaster.publish(
                TaskSyncEvent(
                    entity_value=entity.value,
                    action=result.action.value,
                    task_id=result.external_id,
                    task_list_id=result.list_id,
                    error=result.error,
                    current=current,
                    total=total,
                )
            )

        return await self._tasks.sync_entities(items, list_name=list_name, on_progress=_progress)

    # ------------------------------------------------------------------
    # Ontology
    # ------------------------------------------------------------------

    def ontology_snapshot(self) -> dict[str, object]:
        """Tree, flat list and stats."""
        return self._ontology.snapshot()

    def add_topic(
        self,
        name: str,
        parent_name: str | None = None,
        auto_detect_parent: bool = False,
    ) -> dict[str, object]:
        if not name or not name.strip():
            raise PreconditionError("Topic name is required")
        node: OntologyNode
        if auto_detect_parent and not parent_name:
            node = self._ontology.add_topic_with_auto_parent(name)
        else:
            node = self._ontology.add_topic(name, parent_name)
        hierarchy = self._ontology.get_topic_with_hierarchy(node.name)
        return {
            "topic": node.to_dict(recursive=False),
            "hierarchy": hierarchy.to_dict() if hierarchy else None,
        }

    def get_topic(self, name: str) -> TopicWithParent | None:
        return self._ontology.get_topic_with_hierarchy(name)
