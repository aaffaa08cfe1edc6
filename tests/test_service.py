"""Tests for OnboardingService: observers, run control, feedback, sync and topics."""

from __future__ import annotations

import asyncio
from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

from conftest import (
    FailingSink,
    FakeContactsClient,
    FakeMessageSource,
    FakeTasksClient,
    GatedClassifier,
    RecordingSink,
    ScriptedClassifier,
    entity,
    make_message,
    person,
)
from onboardlib.exceptions import ConfigurationError, InvalidStateTransition, PreconditionError
from onboardlib.models import PipelineConfig, ProcessingState
from onboardlib.pipeline.broadcast import EventSink
from onboardlib.pipeline.coordinator import PipelineCoordinator
from onboardlib.services.onboarding import OnboardingService
from onboardlib.sync.contacts import ContactsSyncAdapter
from onboardlib.sync.tasks import TasksSyncAdapter


def _service(classifier=None, source=None, **kwargs) -> OnboardingService:
    if source is None:
        source = FakeMessageSource(
            {
                "2024-01-03": [make_message("m1", day="2024-01-03")],
                "2024-01-02": [make_message("m2", day="2024-01-02")],
            }
        )
    if classifier is None:
        classifier = ScriptedClassifier()
        classifier.script("m1", [person("Jane Doe"), entity("action_item", "Send deck")])
        classifier.script("m2", [person("Jane Doe"), entity("company", "Acme")])
    return OnboardingService(source, classifier, **kwargs)


def _gated_classifier() -> GatedClassifier:
    classifier = GatedClassifier({"m1"})
    classifier.script("m1", [person("Jane Doe"), entity("action_item", "Send deck")])
    classifier.script("m2", [person("Jane Doe"), entity("company", "Acme")])
    return classifier


# ======================================================================
# Observers
# ======================================================================


class TestAttach:
    def test_idle_attach_sends_connected_and_state(self):
        service = _service()
        sink = RecordingSink()

        assert service.attach(sink) is True

        assert sink.types == ["connected", "state_change"]
        assert sink.events[1].new_state is ProcessingState.IDLE
        assert service.broadcaster.subscriber_count == 1

    async def test_attach_during_run_sends_progress(self, fast_config):
        service = _service()
        await service.start(fast_config)
        sink = RecordingSink()

        service.attach(sink)

        assert sink.types[:3] == ["connected", "state_change", "progress"]
        assert sink.events[2].state is ProcessingState.RUNNING
        await service.wait()

    def test_failing_observer_not_subscribed(self):
        service = _service()
        assert service.attach(FailingSink()) is False
        assert service.broadcaster.subscriber_count == 0

    def test_attached_sink_receives_later_events(self):
        service = _service()
        sink = MagicMock(spec=EventSink)
        service.attach(sink)
        service.add_topic("Python")
        service.post_feedback("entity", {"value": "Acme", "entityType": "company"}, "positive")
        assert sink.send.call_count == 3
        assert sink.send.call_args.args[0].type == "feedback"

    def test_detach(self):
        service = _service()
        sink = RecordingSink()
        service.attach(sink)
        service.detach(sink)
        assert service.broadcaster.subscriber_count == 0


# ======================================================================
# Run control
# ======================================================================


class TestRunControl:
    async def test_start_and_wait(self, fast_config):
        service = _service()
        sink = RecordingSink()
        service.attach(sink)

        response = await service.start(fast_config)
        summary = await service.wait()

        assert response == {"state": "running"}
        assert summary is not None
        assert summary.total_entities == 3
        assert service.state is ProcessingState.IDLE
        assert sink.types[-1] == "complete"
        assert service.status() == {"state": "idle", "entityCount": 3, "relationshipCount": 0}

    async def test_wait_without_run(self):
        assert await _service().wait() is None

    async def test_start_while_running_rejected(self, fast_config):
        service = _service()
        await service.start(fast_config)
        with pytest.raises(InvalidStateTransition):
            await service.start(fast_config)
        await service.wait()

    async def test_second_run_starts_fresh(self, fast_config):
        service = _service()
        await service.start(fast_config)
        await service.wait()
        await service.start(fast_config)
        await service.wait()
        jane = [e for e in service.list_entities("person")][0]
        assert jane.occurrence_count == 2

    async def test_preflight_configuration_error_propagates(self, fast_config):
        service = _service(source=FakeMessageSource(check_error=ConfigurationError("no credentials")))
        with pytest.raises(ConfigurationError, match="no credentials"):
            await service.start(fast_config)
        assert service.state is ProcessingState.IDLE

    async def test_preflight_other_error_wrapped(self, fast_config):
        service = _service(source=FakeMessageSource(check_error=RuntimeError("dns failure")))
        with pytest.raises(ConfigurationError, match="Message source unavailable: dns failure"):
            await service.start(fast_config)

    async def test_user_identity_forwarded(self, fast_config):
        classifier = ScriptedClassifier()
        service = _service(classifier=classifier)
        await service.start(fast_config, user_email="me@example.com", user_name="Me")
        await service.wait()
        assert classifier.identity == ("me@example.com", "Me")

    @pytest.mark.parametrize("action", ["pause", "resume", "stop"])
    def test_illegal_actions_raise_when_idle(self, action):
        with pytest.raises(InvalidStateTransition):
            getattr(_service(), action)()

    async def test_pause_resume_stop(self, fast_config):
        service = _service()
        await service.start(fast_config)

        assert service.pause() == {"state": "paused"}
        assert service.resume() == {"state": "running"}
        assert service.stop() == {"state": "stopped"}

        assert await service.wait() is None
        assert service.state is ProcessingState.STOPPED

    async def test_flush_clears_discovered_items(self, fast_config):
        service = _service()
        await service.start(fast_config)
        await service.wait()
        assert service.list_entities()

        assert service.flush() == {"state": "idle"}
        assert service.list_entities() == []

    async def test_flush_during_run_discards_in_flight_result(self, fast_config):
        classifier = _gated_classifier()
        service = _service(classifier=classifier)
        sink = RecordingSink()
        service.attach(sink)
        await service.start(fast_config)
        await asyncio.wait_for(classifier.entered.wait(), timeout=5)

        assert service.flush() == {"state": "idle"}
        classifier.release()

        assert await asyncio.wait_for(service.wait(), timeout=5) is None
        assert service.status() == {"state": "idle", "entityCount": 0, "relationshipCount": 0}
        assert classifier.calls == ["m1"]
        assert sink.of_type("email") == []

    async def test_start_after_stop_waits_for_previous_run(self, fast_config):
        classifier = _gated_classifier()
        service = _service(classifier=classifier)
        await service.start(fast_config)
        await asyncio.wait_for(classifier.entered.wait(), timeout=5)
        service.stop()

        restart = asyncio.create_task(service.start(fast_config))
        await asyncio.sleep(0.02)
        assert not restart.done()

        classifier.release()
        assert await asyncio.wait_for(restart, timeout=5) == {"state": "running"}
        summary = await asyncio.wait_for(service.wait(), timeout=5)

        # the old run finished m1 and stopped before the new run began
        assert classifier.calls == ["m1", "m1", "m2"]
        assert summary is not None
        assert summary.total_messages_processed == 2
        assert service.list_entities("person")[0].occurrence_count == 2

    async def test_invalid_date_range_rejected_before_start(self):
        service = _service()
        sink = RecordingSink()
        service.attach(sink)
        config = PipelineConfig(date_range_start=date.today() + timedelta(days=2))

        with pytest.raises(ConfigurationError, match="is after end"):
            await service.start(config)

        assert service.state is ProcessingState.IDLE
        assert sink.types == ["connected", "state_change"]
        assert await service.wait() is None

    async def test_unexpected_run_failure_publishes_error(self, fast_config, monkeypatch):
        async def explode(self, token):
            raise RuntimeError("ledger corrupted")

        monkeypatch.setattr(PipelineCoordinator, "run", explode)
        service = _service()
        sink = RecordingSink()
        service.attach(sink)

        await service.start(fast_config)

        assert await service.wait() is None
        [error] = sink.of_type("error")
        assert error.message == "Processing failed"
        assert error.details == "ledger corrupted"
        assert service.state is ProcessingState.STOPPED


# ======================================================================
# Discovered items and feedback
# ======================================================================


class TestDiscoveredItems:
    async def test_list_entities_most_frequent_first(self, fast_config):
        service = _service()
        await service.start(fast_config)
        await service.wait()

        entities = service.list_entities()

        assert entities[0].value == "Jane Doe"
        assert entities[0].occurrence_count == 2
        assert [e.value for e in service.list_entities("company")] == ["Acme"]
        assert service.list_relationships() == []


class TestFeedback:
    def test_post_feedback_announces_record(self, feedback_store):
        service = _service(feedback=feedback_store)
        sink = RecordingSink()
        service.attach(sink)

        record = service.post_feedback(
            "entity", {"value": "Acme", "entityType": "company"}, "negative", correction="DELETE"
        )

        [event] = sink.of_type("feedback")
        assert event.feedback_id == record.id
        assert event.feedback == "negative"
        assert event.entity_type == "company"
        assert service.feedback_stats().negative == 1
        assert service.list_feedback() == [record]
        assert '"correctionText":"DELETE"' in service.export_feedback().replace(" ", "")

    def test_delete_feedback(self, feedback_store):
        service = _service(feedback=feedback_store)
        record = service.post_feedback("entity", {"value": "Acme", "entityType": "company"}, "positive")
        assert service.delete_feedback(record.id) is True
        assert service.list_feedback() == []

    def test_invalid_feedback_raises_and_emits_nothing(self):
        service = _service()
        sink = RecordingSink()
        service.attach(sink)
        with pytest.raises(PreconditionError):
            service.post_feedback("entity", {"value": "Acme", "entityType": "company"}, "meh")
        assert sink.of_type("feedback") == []


# ======================================================================
# External sync
# ======================================================================


class TestSync:
    async def test_sync_contacts_emits_progress(self, fast_config):
        client = FakeContactsClient()
        service = _service(contacts=ContactsSyncAdapter(client, call_delay=0))
        sink = RecordingSink()
        service.attach(sink)
        await service.start(fast_config)
        await service.wait()

        summary = await service.sync_contacts(email_map={"Jane Doe": "jane@example.com"})

        assert summary.created == 1
        assert client.created[0].email == "jane@example.com"
        [event] = sink.of_type("contact_sync")
        assert (event.entity_value, event.action, event.current, event.total) == ("Jane Doe", "created", 1, 1)
        assert event.resource_name == "people/c1"

    async def test_sync_contacts_selected_values(self, fast_config):
        service = _service(contacts=ContactsSyncAdapter(FakeContactsClient(), call_delay=0))
        await service.start(fast_config)
        await service.wait()

        summary = await service.sync_contacts(["Someone Else"])

        assert summary.total == 0

    async def test_sync_tasks(self, fast_config):
        client = FakeTasksClient()
        service = _service(tasks=TasksSyncAdapter(client, call_delay=0))
        sink = RecordingSink()
        service.attach(sink)
        await service.start(fast_config)
        await service.wait()

        summary = await service.sync_tasks(list_name="Inbox")

        assert summary.created == 1
        assert summary.list_name == "Inbox"
        [event] = sink.of_type("task_sync")
        assert event.task_list_id == summary.list_id
        assert event.task_id == f"{summary.list_id}-t1"

    async def test_missing_adapters(self):
        service = _service()
        with pytest.raises(ConfigurationError):
            await service.sync_contacts()
        with pytest.raises(ConfigurationError):
            await service.sync_tasks()


# ======================================================================
# Ontology
# ======================================================================


class TestTopics:
    def test_add_topic_with_parent(self):
        service = _service()
        response = service.add_topic("Deep Learning", "Machine Learning")
        assert response["topic"]["parentId"] == "topic_machine_learning"
        assert response["hierarchy"]["path"] == ["Machine Learning", "Deep Learning"]

    def test_add_topic_auto_parent(self):
        service = _service()
        service.add_topic("Python")
        response = service.add_topic("Python Packaging", auto_detect_parent=True)
        assert response["hierarchy"]["parentName"] == "Python"

    @pytest.mark.parametrize("name", ["", "   "])
    def test_blank_name_rejected(self, name):
        with pytest.raises(PreconditionError):
            _service().add_topic(name)

    def test_snapshot_and_lookup(self):
        service = _service()
        service.add_topic("Deep Learning", "Machine Learning")
        assert service.ontology_snapshot()["stats"]["totalTopics"] == 2
        assert service.get_topic("deep learning").parent_name == "Machine Learning"
        assert service.get_topic("nothing") is None
