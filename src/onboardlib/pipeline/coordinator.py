"""Day-by-day orchestration of a pipeline run.

For each day, newest first: wait while paused, fetch the day's sent
messages, classify them in batches, record results in the ledger, publish
events and optionally forward first sightings to the sync adapters.
Transient failures (a day's fetch, one classification, one sync) become
``error`` events; the run continues. Cancellation is checked at the top of
every day and every batch, and a cancelled run never reaches ``complete``.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import TYPE_CHECKING

from aiolimiter import AsyncLimiter

from onboardlib.events import (
    CompleteEvent,
    ContactSyncEvent,
    EmailEvent,
    EmailSummary,
    ErrorEvent,
    RelationshipEvent,
    TaskSyncEvent,
)
from onboardlib.models import DiscoveredEntity, PipelineConfig
from onboardlib.pipeline.broadcast import EventBroadcaster
from onboardlib.pipeline.fsm import CancellationToken, LifecycleStateMachine
from onboardlib.pipeline.ledger import AggregationLedger
from onboardlib.pipeline.sources import Classifier, MessageSource
from onboardlib.schemas import ExtractionResult, Message, RunSummary
from onboardlib.telemetry import Telemetry

if TYPE_CHECKING:
    from onboardlib.ontology.tree import TopicOntology
    from onboardlib.sync.contacts import ContactsSyncAdapter
    from onboardlib.sync.tasks import TasksSyncAdapter

logger = logging.getLogger(__name__)


def enumerate_days(start: date, end: date) -> list[str]:
    """Whole calendar days from *end* back to *start* inclusive, newest first, as ISO strings."""
    days: list[str] = []
    current = end
    while current >= start:
        days.append(current.isoformat())
        current -= timedelta(days=1)
    return days


class PipelineCoordinator:
    """Runs one pass over the configured day range.

    Args:
        source: Message source for day-bounded fetches.
        classifier: Classifier invoked once per message.
        lifecycle: Lifecycle of this run (pause state and ``complete``).
        ledger: Ledger of this run.
        broadcaster: Event fan-out.
        config: Run configuration.
        ontology: Optional topic ontology fed with ``topic`` entities.
        contacts: Optional contacts adapter for auto-sync of people.
        tasks: Optional tasks adapter for auto-sync of action items.
        telemetry: Tracing facade (no-op by default).
    """

    def __init__(
        self,
        source: MessageSource,
        classifier: Classifier,
        lifecycle: LifecycleStateMachine,
        ledger: AggregationLedger,
        broadcaster: EventBroadcaster,
        config: PipelineConfig | None = None,
        *,
        ontology: TopicOntology | None = None,
        contacts: ContactsSyncAdapter | None = None,
        tasks: TasksSyncAdapter | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._source = source
        self._classifier = classifier
        self._lifecycle = lifecycle
        self._ledger = ledger
        self._broadcaster = broadcaster
        self._config = config or PipelineConfig()
        self._ontology = ontology
        self._contacts = contacts
        self._tasks = tasks
        self._telemetry = telemetry or Telemetry.noop()
        self._rate_limiter: AsyncLimiter | None = None
        if self._config.classify_rate_limit_rpm:
            self._rate_limiter = AsyncLimiter(self._config.classify_rate_limit_rpm, 60)

    def _publish_progress(self) -> None:
        self._broadcaster.publish(self._ledger.build_progress_snapshot(self._lifecycle.state))

    async def run(self, token: CancellationToken) -> RunSummary | None:
        """Process every day in the configured range.

        Returns:
            The run summary, or None if the run was cancelled.
        """
        start, end = self._config.resolve_range()
        days = enumerate_days(start, end)
        logger.info("Processing %d days from %s back to %s", len(days), days[0], days[-1])

        with self._telemetry.span("pipeline.run") as run_span:
            run_span.set_attribute("pipeline.days", len(days))
            for index, day in enumerate(days):
                if token.cancelled:
                    logger.info("Run cancelled before day %s", day)
                    return None
                if not await self._lifecycle.wait_while_paused(token, self._config.pause_poll_interval):
                    logger.info("Run cancelled while paused before day %s", day)
                    return None

                self._ledger.set_current_day(day)
                self._ledger.set_batch_progress(index + 1, len(days))
                self._publish_progress()

                with self._telemetry.span("pipeline.day") as day_span:
                    day_span.set_attribute("pipeline.day", day)
                    await self._process_day(date.fromisoformat(day), token, day_span)

                if token.cancelled:
                    logger.info("Run cancelled during day %s", day)
                    return None
                if index < len(days) - 1:
                    await self._delay(token)

            if token.cancelled:
                return None

        self._lifecycle.complete()
        summary = self._ledger.build_run_summary()
        logger.info(
            "Run complete: %d messages, %d entities, %d relationships in %d ms",
            summary.total_messages_processed,
            summary.total_entities,
            summary.total_relationships,
            summary.processing_time_ms,
        )
        self._broadcaster.publish(CompleteEvent(summary=summary))
        return summary

    async def _delay(self, token: CancellationToken) -> None:
        if self._config.inter_batch_delay > 0:
            await token.wait(timeout=self._config.inter_batch_delay)

    async def _process_day(self, day: date, token: CancellationToken, span: object) -> None:
        try:
            messages = await self._source.fetch_day(day, self._config.max_messages_per_day)
        except Exception as exc:
            if token.cancelled:
                return
            logger.error("Failed to fetch messages for %s: %s", day, exc)
            self._ledger.record_error()
            self._broadcaster.publish(
                ErrorEvent(message=f"Failed to fetch messages for {day.isoformat()}", details=str(exc))
            )
            span.set_attribute("pipeline.error", True)  # type: ignore[attr-defined]
            return
        if token.cancelled:
            return

        messages = messages[: self._config.max_messages_per_day]
        self._ledger.add_total_messages(len(messages))
        span.set_attribute("pipeline.messages_fetched", len(messages))  # type: ignore[attr-defined]
        logger.debug("Fetched %d messages for %s", len(messages), day)

        processed = 0
        batch_size = self._config.batch_size
        for offset in range(0, len(messages), batch_size):
            if token.cancelled:
                break
            if not await self._lifecycle.wait_while_paused(token, self._config.pause_poll_interval):
                break
            for message in messages[offset : offset + batch_size]:
                if token.cancelled:
                    break
                if await self._process_message(message, token):
                    processed += 1
            if offset + batch_size < len(messages):
                await self._delay(token)

        span.set_attribute("pipeline.messages_processed", processed)  # type: ignore[attr-defined]

    async def _classify(self, message: Message) -> ExtractionResult:
        if self._rate_limiter is not None:
            async with self._rate_limiter:
                return await self._classifier.classify(message)
        return await self._classifier.classify(message)

    async def _process_message(self, message: Message, token: CancellationToken) -> bool:
        """Classify and record one message; returns False if the run was cancelled meanwhile."""
        try:
            result = await self._classify(message)
        except Exception as exc:
            if token.cancelled:
                return False
            logger.error("Failed to classify message %s: %s", message.id, exc)
            self._ledger.record_error()
            self._broadcaster.publish(
                ErrorEvent(message=f"Failed to classify message {message.id}", details=str(exc))
            )
            result = ExtractionResult.empty(message.id)
        # a stop or flush during the classify await must not touch the ledger
        if token.cancelled:
            logger.debug("Discarding result for %s, run cancelled", message.id)
            return False

        outcome = self._ledger.record_message(message, result.entities, result.relationships)

        self._broadcaster.publish(
            EmailEvent(
                email=EmailSummary(
                    id=message.id,
                    subject=message.subject,
                    sender=message.sender,
                    to=message.to,
                    date=message.date.isoformat(),
                    snippet=message.snippet,
                ),
                entities=result.entities,
                relationships=result.relationships,
                is_spam=result.is_spam,
                spam_score=result.spam_score,
            )
        )
        for rel in result.relationships:
            self._broadcaster.publish(RelationshipEvent(relationship=rel, source_email=message.id))

        if self._ontology is not None:
            for entity in result.entities:
                if entity.type.strip().lower() == "topic":
                    self._ontology.record_sighting(entity.value, message.id)

        self._publish_progress()

        if self._config.auto_sync_enabled and outcome.new_entities:
            await self._auto_sync(outcome.new_entities, token)
        return True

    async def _auto_sync(self, entities: list[DiscoveredEntity], token: CancellationToken) -> None:
        people = [e for e in entities if e.type == "person"]
        action_items = [e for e in entities if e.type == "action_item"]

        if self._contacts is not None:
            for current, entity in enumerate(people, start=1):
                if token.cancelled:
                    return
                try:
                    result = await self._contacts.sync_entity(entity)
                except Exception as exc:
                    logger.warning("Contact sync failed for %r: %s", entity.value, exc)
                    self._broadcaster.publish(
                        ErrorEvent(message=f"Contact sync failed for {entity.value}", details=str(exc))
                    )
                    continue
                self._broadcaster.publish(
                    ContactSyncEvent(
                        entity_value=entity.value,
                        action=result.action.value,
                        resource_name=result.external_id,
                        error=result.error,
                        current=current,
                        total=len(people),
                    )
                )

        if self._tasks is not None:
            for current, entity in enumerate(action_items, start=1):
                if token.cancelled:
                    return
                try:
                    result = await self._tasks.sync_entity(entity, list_name=self._config.target_list_name)
                except Exception as exc:
                    logger.warning("Task sync failed for %r: %s", entity.value, exc)
                    self._broadcaster.publish(
                        ErrorEvent(message=f"Task sync failed for {entity.value}", details=str(exc))
                    )
                    continue
                self._broadcaster.publish(
                    TaskSyncEvent(
                        entity_value=entity.value,
                        action=result.action.value,
                        task_id=result.external_id,
                        task_list_id=result.list_id,
                        error=result.error,
                        current=current,
                        total=len(action_items),
                    )
                )
