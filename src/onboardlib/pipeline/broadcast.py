"""One-to-many fan-out of pipeline events to observers.

The broadcaster knows nothing about event semantics. A sink whose ``send``
raises is dropped from the subscriber set; the remaining sinks still receive
the event and the publisher never sees the failure.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, TextIO

from rich.console import Console

from onboardlib.events import (
    CompleteEvent,
    ErrorEvent,
    Event,
    PingEvent,
    StateChangeEvent,
)

logger = logging.getLogger(__name__)


class EventSink(ABC):
    """Destination for pipeline events (SSE response, queue, console, ...)."""

    @abstractmethod
    def send(self, event: Event) -> None:
        """Deliver *event*. Raising marks the sink as disconnected."""
        ...


class EventBroadcaster:
    """Synchronous fan-out to every subscribed sink."""

    def __init__(self) -> None:
        self._sinks: list[EventSink] = []

    def subscribe(self, sink: EventSink) -> None:
        if sink not in self._sinks:
            self._sinks.append(sink)
            logger.debug("Sink subscribed (%d total)", len(self._sinks))

    def unsubscribe(self, sink: EventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)
            logger.debug("Sink unsubscribed (%d total)", len(self._sinks))

    @property
    def subscriber_count(self) -> int:
        return len(self._sinks)

    def publish(self, event: Event) -> int:
        """Send *event* to every sink, dropping sinks that fail.

        Returns:
            Number of sinks the event was delivered to.
        """
        delivered = 0
        for sink in list(self._sinks):
            try:
                sink.send(event)
            except Exception as exc:
                logger.info("Dropping event sink %r after failed write: %s", sink, exc)
                self.unsubscribe(sink)
            else:
                delivered += 1
        return delivered


# ---------------------------------------------------------------------------
# Sink implementations
# ---------------------------------------------------------------------------


class CallbackSink(EventSink):
    """Calls a plain function with each event."""

    def __init__(self, callback: Callable[[Event], None]) -> None:
        self._callback = callback

    def send(self, event: Event) -> None:
        self._callback(event)


class QueueSink(EventSink):
    """Puts events on a bounded asyncio queue (in-process channel).

    A full queue means the consumer has stopped reading, so ``send`` raises
    and the broadcaster drops the sink.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)

    def send(self, event: Event) -> None:
        self.queue.put_nowait(event)


class StreamSink(EventSink):
    """Writes events to a text stream.

    With ``sse=True`` each event is framed as a server-sent event
    (``data: <json>`` followed by a blank line); otherwise one JSON object
    per line.
    """

    def __init__(self, stream: TextIO, sse: bool = True) -> None:
        self._stream = stream
        self._sse = sse

    def send(self, event: Event) -> None:
        payload = event.to_json()
        if self._sse:
            self._stream.write(f"data: {payload}\n\n")
        else:
            self._stream.write(payload + "\n")
        self._stream.flush()


class ConsoleSink(EventSink):
    """Logs notable events to a Rich console."""

    def __init__(self, console: Console | None = None, verbose: bool = False) -> None:
        self._console = console or Console()
        self._verbose = verbose

    def send(self, event: Event) -> None:
        if isinstance(event, StateChangeEvent):
            self._console.log(
                f"[cyan]state[/cyan] {event.previous_state.value} -> {event.new_state.value}"
            )
        elif isinstance(event, ErrorEvent):
            detail = f" ({event.details})" if event.details else ""
            self._console.log(f"[red]error[/red] {event.message}{detail}")
        elif isinstance(event, CompleteEvent):
            s = event.summary
            self._console.log(
                f"[green]complete[/green] {s.total_messages_processed} messages, "
                f"{s.total_entities} entities, {s.total_relationships} relationships"
            )
        elif self._verbose and not isinstance(event, PingEvent):
            self._console.log(event.to_json())


async def keepalive(
    broadcaster: EventBroadcaster,
    interval: float,
    stop_event: asyncio.Event,
) -> None:
    """Publish ``ping`` events every *interval* seconds until *stop_event* is set."""
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            broadcaster.publish(PingEvent())
