"""Tests for the run lifecycle state machine and cancellation token.

Covers:
  - Legal transitions of the four-state lifecycle
  - Illegal transitions are rejected with False and leave the state alone
  - Token issue on start, cancellation on stop and flush
  - flush clears the ledger
  - Listener notification and isolation
  - Cooperative pause wait
"""

from __future__ import annotations

import asyncio

import pytest

from conftest import make_message, person
from onboardlib.models import ProcessingState
from onboardlib.pipeline.fsm import CancellationToken, LifecycleStateMachine, create_fsm
from onboardlib.pipeline.ledger import AggregationLedger


# ======================================================================
# Declarative transition table
# ======================================================================


class TestProcessingLifecycleSM:
    @pytest.mark.parametrize(
        "state, event, expected",
        [
            ("idle", "start", "running"),
            ("stopped", "start", "running"),
            ("running", "pause", "paused"),
            ("paused", "resume", "running"),
            ("running", "stop", "stopped"),
            ("paused", "stop", "stopped"),
            ("running", "complete", "idle"),
            ("paused", "complete", "idle"),
            ("stopped", "complete", "idle"),
            ("idle", "flush", "idle"),
            ("running", "flush", "idle"),
            ("paused", "flush", "idle"),
            ("stopped", "flush", "idle"),
        ],
    )
    def test_legal_transition(self, state, event, expected):
        fsm = create_fsm(state)
        fsm.send(event)
        assert fsm.current_state.value == expected

    @pytest.mark.parametrize(
        "state, event",
        [
            ("running", "start"),
            ("paused", "start"),
            ("idle", "pause"),
            ("paused", "pause"),
            ("stopped", "pause"),
            ("idle", "resume"),
            ("running", "resume"),
            ("idle", "stop"),
            ("stopped", "stop"),
            ("idle", "complete"),
        ],
    )
    def test_illegal_transition_reported_by_can(self, state, event):
        lifecycle = LifecycleStateMachine(initial=ProcessingState(state))
        assert lifecycle.can(event) is False


# ======================================================================
# Controller
# ======================================================================


class TestLifecycleStateMachine:
    def test_starts_idle(self):
        assert LifecycleStateMachine().state is ProcessingState.IDLE

    def test_start_issues_token(self):
        lifecycle = LifecycleStateMachine()
        token = lifecycle.start()
        assert isinstance(token, CancellationToken)
        assert lifecycle.token is token
        assert lifecycle.state is ProcessingState.RUNNING
        assert not token.cancelled

    def test_start_while_running_rejected(self):
        lifecycle = LifecycleStateMachine()
        first = lifecycle.start()
        assert lifecycle.start() is None
        assert lifecycle.token is first
        assert lifecycle.state is ProcessingState.RUNNING

    def test_pause_from_idle_returns_false(self, caplog):
        lifecycle = LifecycleStateMachine()
        with caplog.at_level("WARNING"):
            assert lifecycle.pause() is False
        assert lifecycle.state is ProcessingState.IDLE
        assert "Rejected lifecycle action 'pause'" in caplog.text

    def test_stop_cancels_token(self):
        lifecycle = LifecycleStateMachine()
        token = lifecycle.start()
        assert lifecycle.stop() is True
        assert token.cancelled
        assert lifecycle.token is None
        assert lifecycle.state is ProcessingState.STOPPED

    def test_restart_after_stop_gets_fresh_token(self):
        lifecycle = LifecycleStateMachine()
        old = lifecycle.start()
        lifecycle.stop()
        new = lifecycle.start()
        assert new is not old
        assert old.cancelled and not new.cancelled

    def test_pause_resume_round_trip(self):
        lifecycle = LifecycleStateMachine()
        lifecycle.start()
        assert lifecycle.pause() is True
        assert lifecycle.state is ProcessingState.PAUSED
        assert lifecycle.resume() is True
        assert lifecycle.state is ProcessingState.RUNNING

    def test_complete_returns_to_idle(self):
        lifecycle = LifecycleStateMachine()
        token = lifecycle.start()
        assert lifecycle.complete() is True
        assert lifecycle.state is ProcessingState.IDLE
        assert lifecycle.token is None
        assert not token.cancelled

    def test_flush_cancels_and_clears_ledger(self):
        ledger = AggregationLedger()
        ledger.record_message(make_message("m1"), [person("Jane Doe")], [])
        lifecycle = LifecycleStateMachine(ledger=ledger)
        token = lifecycle.start()

        assert lifecycle.flush() is True

        assert token.cancelled
        assert lifecycle.state is ProcessingState.IDLE
        assert ledger.entity_count == 0
        assert ledger.stats().emails_processed == 0

    def test_flush_from_idle_is_allowed(self):
        assert LifecycleStateMachine().flush() is True

    def test_can_helpers(self):
        lifecycle = LifecycleStateMachine()
        assert lifecycle.can_start() and not lifecycle.can_pause()
        lifecycle.start()
        assert lifecycle.can_pause() and lifecycle.can_stop() and not lifecycle.can_resume()

    def test_initial_state_is_respected(self):
        lifecycle = LifecycleStateMachine(initial=ProcessingState.STOPPED)
        assert lifecycle.state is ProcessingState.STOPPED
        assert lifecycle.can_start()


# ======================================================================
# Listeners
# ======================================================================


class TestStateListeners:
    def test_listener_sees_previous_and_new(self):
        lifecycle = LifecycleStateMachine()
        seen = []
        lifecycle.on_state_change(lambda prev, new: seen.append((prev, new)))
        lifecycle.start()
        lifecycle.pause()
        assert seen == [
            (ProcessingState.IDLE, ProcessingState.RUNNING),
            (ProcessingState.RUNNING, ProcessingState.PAUSED),
        ]

    def test_rejected_transition_not_notified(self):
        lifecycle = LifecycleStateMachine()
        seen = []
        lifecycle.on_state_change(lambda prev, new: seen.append(new))
        lifecycle.resume()
        assert seen == []

    def test_unsubscribe(self):
        lifecycle = LifecycleStateMachine()
        seen = []
        unsubscribe = lifecycle.on_state_change(lambda prev, new: seen.append(new))
        unsubscribe()
        lifecycle.start()
        assert seen == []

    def test_failing_listener_does_not_block_others(self):
        lifecycle = LifecycleStateMachine()
        seen = []

        def broken(prev, new):
            raise RuntimeError("boom")

        lifecycle.on_state_change(broken)
        lifecycle.on_state_change(lambda prev, new: seen.append(new))
        assert lifecycle.start() is not None
        assert seen == [ProcessingState.RUNNING]


# ======================================================================
# Cancellation and cooperative pause
# ======================================================================


class TestCancellationAndPause:
    async def test_token_wait_times_out(self):
        token = CancellationToken()
        assert await token.wait(timeout=0.01) is False

    async def test_token_wait_wakes_on_cancel(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        assert await token.wait(timeout=5) is True

    async def test_wait_while_running_returns_immediately(self):
        lifecycle = LifecycleStateMachine()
        token = lifecycle.start()
        assert await lifecycle.wait_while_paused(token, 0.01) is True

    async def test_wait_while_paused_resumes(self):
        lifecycle = LifecycleStateMachine()
        token = lifecycle.start()
        lifecycle.pause()
        asyncio.get_running_loop().call_later(0.02, lifecycle.resume)
        assert await asyncio.wait_for(lifecycle.wait_while_paused(token, 0.01), timeout=5) is True
        assert lifecycle.state is ProcessingState.RUNNING

    async def test_stop_while_paused_reports_cancelled(self):
        lifecycle = LifecycleStateMachine()
        token = lifecycle.start()
        lifecycle.pause()
        asyncio.get_running_loop().call_later(0.02, lifecycle.stop)
        assert await asyncio.wait_for(lifecycle.wait_while_paused(token, 0.01), timeout=5) is False
