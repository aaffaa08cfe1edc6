"""Rich progress display for a pipeline run, driven by the event stream.

Two tiers:

* **Days** -- overall progress through the day range
* **Messages** -- messages classified so far, with the current day as status
"""

from __future__ import annotations

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from onboardlib.events import (
    CompleteEvent,
    EmailEvent,
    ErrorEvent,
    Event,
    ProgressEvent,
    StateChangeEvent,
)
from onboardlib.pipeline.broadcast import EventSink


class RunProgressTracker(EventSink):
    """Event sink that renders run progress with Rich.

    Usage::

        tracker = RunProgressTracker()
        broadcaster.subscribe(tracker)
        with tracker:
            await service.wait()
    """

    def __init__(self, console: Console | None = None) -> None:
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            TextColumn("{task.fields[status]}", style="dim"),
            console=console,
        )
        self._days_task: TaskID | None = None
        self._messages_task: TaskID | None = None
        self._stats: dict[str, int] = {"messages": 0, "spam": 0, "errors": 0}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._progress.start()
        self._days_task = self._progress.add_task("[green]Days", total=None, status="starting...")
        self._messages_task = self._progress.add_task("[blue]Messages", total=None, status="")

    def stop(self) -> None:
        self._progress.stop()

    def __enter__(self) -> RunProgressTracker:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def send(self, event: Event) -> None:
        if isinstance(event, ProgressEvent):
            self._on_progress(event)
        elif isinstance(event, EmailEvent):
            self._stats["messages"] += 1
            if event.is_spam:
                self._stats["spam"] += 1
        elif isinstance(event, ErrorEvent):
            self._stats["errors"] += 1
            self._progress.console.log(f"[red]{event.message}[/red]")
        elif isinstance(event, StateChangeEvent) and self._days_task is not None:
            self._progress.update(self._days_task, status=event.new_state.value)
        elif isinstance(event, CompleteEvent) and self._days_task is not None:
            self._progress.update(self._days_task, status="[green]complete[/green]")

    def _on_progress(self, event: ProgressEvent) -> None:
        if self._days_task is not None and event.total_batches:
            self._progress.update(
                self._days_task,
                total=event.total_batches,
                completed=max(event.current_batch - 1, 0),
                status=event.current_day or "",
            )
        if self._messages_task is not None:
            self._progress.update(
                self._messages_task,
                total=event.total_emails or None,
                completed=event.emails_processed,
                status=f"{event.entities_found} entities, {event.relationships_found} relationships",
            )

    @property
    def stats(self) -> dict[str, int]:
        """Return a copy of the event counters."""
        return dict(self._stats)
