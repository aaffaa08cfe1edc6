"""Run lifecycle state machine and cancellation token.

``ProcessingLifecycleSM`` declares the legal transitions and is used purely
for validation. ``LifecycleStateMachine`` owns the current state of one run,
issues cancellation tokens and notifies subscribers of every change.
Illegal transitions are rejected with a warning and a ``False`` return value;
they never raise into the run.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Callable

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from onboardlib.models import ProcessingState

if TYPE_CHECKING:
    from onboardlib.pipeline.ledger import AggregationLedger

logger = logging.getLogger(__name__)

StateListener = Callable[[ProcessingState, ProcessingState], None]


class ProcessingLifecycleSM(StateMachine):
    """Four-state lifecycle of a pipeline run.

    States:
        idle    -- No run in progress (initial, and after complete/flush).
        running -- The coordinator is processing days.
        paused  -- The coordinator is blocked until resumed or cancelled.
        stopped -- The run was cancelled; aggregated data is still readable.

    ``complete`` is issued by the coordinator itself. ``flush`` is a hard
    reset that is legal from every state.
    """

    idle = State("idle", initial=True, value="idle")
    running = State("running", value="running")
    paused = State("paused", value="paused")
    stopped = State("stopped", value="stopped")

    start = idle.to(running) | stopped.to(running)
    pause = running.to(paused)
    resume = paused.to(running)
    stop = running.to(stopped) | paused.to(stopped)
    complete = running.to(idle) | paused.to(idle) | stopped.to(idle)
    flush = idle.to.itself() | running.to(idle) | paused.to(idle) | stopped.to(idle)


def create_fsm(current_state: str) -> ProcessingLifecycleSM:
    """Create an FSM instance positioned at *current_state*.

    Args:
        current_state: One of 'idle', 'running', 'paused', 'stopped'.
    """
    return ProcessingLifecycleSM(start_value=current_state)


class CancellationToken:
    """One-shot cancellation signal shared by the lifecycle and the coordinator."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until cancelled or *timeout* seconds pass.

        Used as a cancellable sleep. Returns True if the token was cancelled.
        """
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


class LifecycleStateMachine:
    """Lifecycle controller for a single run.

    Args:
        initial: State to start from. A new controller is created per run,
            positioned at the previous run's final state.
        ledger: Ledger cleared on ``flush``.
    """

    def __init__(
        self,
        initial: ProcessingState = ProcessingState.IDLE,
        ledger: AggregationLedger | None = None,
    ) -> None:
        self._sm = create_fsm(ProcessingState(initial).value)
        self._ledger = ledger
        self._token: CancellationToken | None = None
        self._listeners: list[StateListener] = []
        self._resumed = asyncio.Event()
        self._sync_resume_signal()

    @property
    def state(self) -> ProcessingState:
        return ProcessingState(self._sm.current_state.value)

    @property
    def token(self) -> CancellationToken | None:
        return self._token

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener called with (previous, new). Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, previous: ProcessingState, new: ProcessingState) -> None:
        for listener in list(self._listeners):
            try:
                listener(previous, new)
            except Exception:
                logger.exception("State listener failed on %s -> %s", previous.value, new.value)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def can(self, event: str) -> bool:
        """Return True if *event* is legal from the current state."""
        probe = create_fsm(self.state.value)
        try:
            probe.send(event)
        except TransitionNotAllowed:
            return False
        return True

    def _fire(self, event: str) -> ProcessingState | None:
        """Send *event*; return the previous state, or None if rejected."""
        previous = self.state
        try:
            self._sm.send(event)
        except TransitionNotAllowed:
            logger.warning("Rejected lifecycle action %r in state %s", event, previous.value)
            return None
        self._sync_resume_signal()
        return previous

    def _sync_resume_signal(self) -> None:
        if self.state is ProcessingState.PAUSED:
            self._resumed.clear()
        else:
            self._resumed.set()

    def start(self) -> CancellationToken | None:
        """Move to running and issue a fresh cancellation token.

        Returns:
            The new token, or None if the transition was rejected.
        """
        previous = self._fire("start")
        if previous is None:
            return None
        self._token = CancellationToken()
        logger.info("Pipeline started (from %s)", previous.value)
        self._notify(previous, self.state)
        return self._token

    def pause(self) -> bool:
        previous = self._fire("pause")
        if previous is None:
            return False
        self._notify(previous, self.state)
        return True

    def resume(self) -> bool:
        previous = self._fire("resume")
        if previous is None:
            return False
        self._notify(previous, self.state)
        return True

    def stop(self) -> bool:
        """Move to stopped and signal the current cancellation token."""
        previous = self._fire("stop")
        if previous is None:
            return False
        if self._token is not None:
            self._token.cancel()
            self._token = None
        logger.info("Pipeline stopped")
        self._notify(previous, self.state)
        return True

    def complete(self) -> bool:
        """Normal end of run, issued by the coordinator."""
        previous = self._fire("complete")
        if previous is None:
            return False
        self._token = None
        self._notify(previous, self.state)
        return True

    def flush(self) -> bool:
        """Hard reset to idle: cancel and discard the token, clear the ledger."""
        previous = self._fire("flush")
        if previous is None:
            return False
        if self._token is not None:
            self._token.cancel()
            self._token = None
        if self._ledger is not None:
            self._ledger.reset()
        logger.info("Pipeline flushed (was %s)", previous.value)
        self._notify(previous, self.state)
        return True

    def can_start(self) -> bool:
        return self.can("start")

    def can_pause(self) -> bool:
        return self.can("pause")

    def can_resume(self) -> bool:
        return self.can("resume")

    def can_stop(self) -> bool:
        return self.can("stop")

    # ------------------------------------------------------------------
    # Cooperative pause
    # ------------------------------------------------------------------

    async def wait_while_paused(self, token: CancellationToken, poll_interval: float = 0.5) -> bool:
        """Block while paused, waking on resume, on leaving paused, or every *poll_interval*.

        Returns:
            False if *token* was cancelled, True when processing may continue.
        """
        while self.state is ProcessingState.PAUSED and not token.cancelled:
            try:
                await asyncio.wait_for(self._resumed.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass
        return not token.cancelled
