"""CLI entry point for the onboarding pipeline.

Provides commands:
  - run: Offline pipeline run over a JSON-lines mailbox export
  - train: Few-shot examples and fine-tuning files from collected feedback
  - feedback: Inspect, export and add feedback records
  - ontology: Show and extend the topic ontology
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from onboardlib.config import (
    feedback_dir,
    load_pipeline_config,
    ontology_path,
    resolve_data_dir,
    training_dir,
)
from onboardlib.constants import KEEPALIVE_INTERVAL
from onboardlib.exceptions import ConfigurationError, PreconditionError
from onboardlib.feedback.store import FeedbackStore
from onboardlib.ontology.tree import OntologyNode, TopicOntology
from onboardlib.pipeline.broadcast import ConsoleSink, StreamSink, keepalive
from onboardlib.pipeline.progress import RunProgressTracker
from onboardlib.pipeline.sources import JsonlMessageSource, load_classifier
from onboardlib.schemas import RunSummary
from onboardlib.services.onboarding import OnboardingService
from onboardlib.telemetry import configure_file_logging
from onboardlib.training.exporter import (
    ALL_FORMATS,
    ExportFormat,
    ExportOptions,
    ExportResult,
    TrainingExporter,
    strip_format_suffix,
)
from onboardlib.training.few_shot import FewShotGenerator, FewShotOptions

app = typer.Typer(
    help="Onboarding pipeline - discover entities in sent mail and turn feedback into training data",
    rich_markup_mode="rich",
)
console = Console()

feedback_app = typer.Typer(help="Inspect, export and add feedback records")
app.add_typer(feedback_app, name="feedback")

ontology_app = typer.Typer(help="Show and extend the topic ontology")
app.add_typer(ontology_app, name="ontology")

DataDirOption = Annotated[
    Optional[Path],
    typer.Option("--data-dir", help="Data directory (default: $ONBOARDLIB_DATA_DIR or ./data)"),
]


def _parse_formats(value: str) -> list[ExportFormat]:
    if value == "all":
        return list(ALL_FORMATS)
    try:
        return [ExportFormat(value)]
    except ValueError:
        console.print(f"[red]Error:[/red] Unknown format {value!r} (use jsonl, openai, anthropic or all)")
        raise typer.Exit(code=1)


def _load_feedback(data_dir: Path) -> FeedbackStore:
    store = FeedbackStore(feedback_dir(data_dir))
    result = store.load_directory()
    if result.skipped:
        console.print(f"[yellow]Skipped {result.skipped} malformed feedback lines[/yellow]")
    return store


def _print_results(title: str, results: list[ExportResult]) -> None:
    table = Table(title=title)
    table.add_column("Format", style="bold")
    table.add_column("Records", justify="right")
    table.add_column("Path")
    table.add_column("Status")
    for r in results:
        status = "[green]ok[/green]" if r.success else f"[red]failed: {r.error}[/red]"
        table.add_row(r.format.value, str(r.record_count), str(r.path), status)
    console.print(table)


def _print_summary(summary: RunSummary) -> None:
    table = Table(title="Run Summary")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Messages processed", str(summary.total_messages_processed))
    table.add_row("Entities", str(summary.total_entities))
    table.add_row("Relationships", str(summary.total_relationships))
    for entity_type, count in sorted(summary.entities_by_type.items()):
        table.add_row(f"  {entity_type}", str(count))
    table.add_row("Errors", f"[red]{summary.error_count}[/red]" if summary.error_count else "0")
    table.add_row("Duration", f"{summary.processing_time_ms / 1000:.1f}s")
    if summary.date_range is not None:
        table.add_row(
            "Coverage",
            f"{summary.date_range.start.date().isoformat()} .. {summary.date_range.end.date().isoformat()}",
        )
    console.print(table)

    if summary.top_entities:
        top = Table(title="Top Entities")
        top.add_column("Type")
        top.add_column("Value")
        top.add_column("Count", justify="right")
        for entity in summary.top_entities:
            top.add_row(entity.type, entity.value, str(entity.count))
        console.print(top)


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@app.command()
def run(
    messages: Annotated[
        Path,
        typer.Option("--messages", "-m", help="JSON-lines export of sent messages"),
    ],
    classifier: Annotated[
        str,
        typer.Option("--classifier", "-c", help="Classifier import path, e.g. mypkg.extract:classifier"),
    ],
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", help="Pipeline configuration JSON"),
    ] = None,
    days: Annotated[
        Optional[int],
        typer.Option("--days", help="Only scan the last N days"),
    ] = None,
    events_out: Annotated[
        Optional[Path],
        typer.Option("--events-out", help="Append every event as a JSON line to this file"),
    ] = None,
    user_email: Annotated[
        Optional[str],
        typer.Option("--user-email", help="Mailbox owner's address, passed to the classifier"),
    ] = None,
    log_dir: Annotated[
        Optional[Path],
        typer.Option("--log-dir", help="Write JSON-lines logs into this directory"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log every event to the console"),
    ] = False,
    data_dir: DataDirOption = None,
) -> None:
    """Run the pipeline over a local message export.

    Press Ctrl+C once to stop gracefully (discovered items are kept and
    reported), twice to exit immediately.
    """
    if log_dir is not None:
        configure_file_logging(str(log_dir))
    data = resolve_data_dir(data_dir)

    try:
        config = load_pipeline_config(config_path)
        if days is not None:
            config.date_range_start = datetime.now(timezone.utc).date() - timedelta(days=days)
        source = JsonlMessageSource(messages)
        loaded_classifier = load_classifier(classifier)
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    ontology = TopicOntology()
    ontology.load(ontology_path(data))
    service = OnboardingService(
        source,
        loaded_classifier,
        feedback=FeedbackStore(feedback_dir(data)),
        ontology=ontology,
    )
    tracker = RunProgressTracker(console)
    service.attach(tracker)
    if verbose:
        service.attach(ConsoleSink(console, verbose=True))

    async def _run() -> RunSummary | None:
        service.setup_signal_handlers()
        await service.start(config, user_email=user_email)
        stop_pings = asyncio.Event()
        pinger = asyncio.create_task(keepalive(service.broadcaster, KEEPALIVE_INTERVAL, stop_pings))
        try:
            with tracker:
                return await service.wait()
        finally:
            stop_pings.set()
            await pinger

    events_file = open(events_out, "a", encoding="utf-8") if events_out is not None else None
    try:
        if events_file is not None:
            service.attach(StreamSink(events_file, sse=False))
        summary = asyncio.run(_run())
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    finally:
        if events_file is not None:
            events_file.close()

    ontology.save(ontology_path(data))

    if summary is None:
        status = service.status()
        console.print(
            Panel(
                f"Run {status['state']}: {status['entityCount']} entities and "
                f"{status['relationshipCount']} relationships discovered before stopping.",
                title="Stopped",
                border_style="yellow",
            )
        )
        return
    _print_summary(summary)


# ---------------------------------------------------------------------------
# train
# ---------------------------------------------------------------------------


@app.command()
def train(
    days: Annotated[
        int,
        typer.Option("--days", help="Use feedback from the last N days"),
    ] = 30,
    export: Annotated[
        Optional[Path],
        typer.Option("--export", "-o", help="Output base path (default: <data>/training/training_<date>)"),
    ] = None,
    fmt: Annotated[
        str,
        typer.Option("--format", "-f", help="jsonl, openai, anthropic or all"),
    ] = "jsonl",
    max_examples: Annotated[
        int,
        typer.Option("--max-examples", help="Maximum few-shot examples"),
    ] = 50,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would be written without writing"),
    ] = False,
    data_dir: DataDirOption = None,
) -> None:
    """Generate few-shot examples and training files from feedback."""
    data = resolve_data_dir(data_dir)
    formats = _parse_formats(fmt)
    store = _load_feedback(data)

    stats = store.stats()
    stats_table = Table(title="Feedback")
    stats_table.add_column("Metric", style="bold")
    stats_table.add_column("Count", justify="right")
    stats_table.add_row("Total", str(stats.total))
    stats_table.add_row("Positive", f"[green]{stats.positive}[/green]")
    stats_table.add_row("Negative", f"[red]{stats.negative}[/red]")
    stats_table.add_row("With correction", str(stats.with_correction))
    console.print(stats_table)

    if stats.total == 0:
        console.print(f"[yellow]No feedback found in {feedback_dir(data)}[/yellow]")
        return

    since = datetime.now(timezone.utc) - timedelta(days=days)
    examples = FewShotGenerator(store).generate_examples(
        FewShotOptions(max_examples=max_examples, start=since)
    )
    console.print(f"Generated [bold]{len(examples)}[/bold] few-shot examples from the last {days} days")

    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    base = export or training_dir(data) / f"training_{today}"
    base = base.with_name(strip_format_suffix(base.name))
    fewshot_base = base.with_name(base.name + "_fewshot")

    if dry_run:
        console.print("[bold]Dry run, would write:[/bold]")
        for f in formats:
            console.print(f"  {base.with_name(base.name + f.suffix)}")
            console.print(f"  {fewshot_base.with_name(fewshot_base.name + f.suffix)}")
        return

    exporter = TrainingExporter(store, training_dir(data))
    results = exporter.export(ExportOptions(output_path=base, formats=formats, start=since))
    results += exporter.export_few_shot_examples(examples, fewshot_base, formats)
    _print_results("Training Export", results)

    if not all(r.success for r in results):
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# feedback
# ---------------------------------------------------------------------------


@feedback_app.command("stats")
def feedback_stats(data_dir: DataDirOption = None) -> None:
    """Show feedback counts by judgment, kind and type."""
    store = _load_feedback(resolve_data_dir(data_dir))
    stats = store.stats()

    table = Table(title=f"Feedback ({stats.total} records)")
    table.add_column("Group", style="bold")
    table.add_column("Positive", justify="right", style="green")
    table.add_column("Negative", justify="right", style="red")
    for label, groups in (
        ("kind", stats.by_kind),
        ("entity", stats.by_entity_type),
        ("relationship", stats.by_relationship_type),
    ):
        for name, counts in sorted(groups.items()):
            table.add_row(f"{label}: {name}", str(counts.positive), str(counts.negative))
    console.print(table)


@feedback_app.command("export")
def feedback_export(
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write to this file instead of stdout"),
    ] = None,
    data_dir: DataDirOption = None,
) -> None:
    """Export every feedback record as JSON lines."""
    store = _load_feedback(resolve_data_dir(data_dir))
    if output is None:
        typer.echo(store.export_lines(), nl=False)
        return
    store.save_to_file(output)
    console.print(f"[green]Exported {len(store)} records to {output}[/green]")


@feedback_app.command("add")
def feedback_add(
    kind: Annotated[str, typer.Option("--kind", help="entity or relationship")],
    value: Annotated[str, typer.Option("--value", help="Extracted value")],
    judgment: Annotated[str, typer.Option("--judgment", help="positive or negative")],
    entity_type: Annotated[Optional[str], typer.Option("--entity-type")] = None,
    relationship_type: Annotated[Optional[str], typer.Option("--relationship-type")] = None,
    source: Annotated[Optional[str], typer.Option("--source", help="Relationship source")] = None,
    target: Annotated[Optional[str], typer.Option("--target", help="Relationship target")] = None,
    correction: Annotated[Optional[str], typer.Option("--correction", help="Correction text")] = None,
    subject: Annotated[str, typer.Option("--subject", help="Message subject")] = "",
    sender: Annotated[str, typer.Option("--from", help="Message sender")] = "",
    data_dir: DataDirOption = None,
) -> None:
    """Record one judgment in the CLI feedback file."""
    path = feedback_dir(resolve_data_dir(data_dir)) / "feedback-cli.jsonl"
    store = FeedbackStore()
    if path.exists():
        store.load_from_file(path)

    extracted = {
        "value": value,
        "entityType": entity_type,
        "relationshipType": relationship_type,
        "source": source,
        "target": target,
    }
    try:
        record = store.record(
            kind,
            {k: v for k, v in extracted.items() if v is not None},
            judgment,
            {"subject": subject, "from": sender},
            correction,
        )
    except PreconditionError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    store.save_to_file(path)
    console.print(f"[green]Recorded {record.id}[/green] in {path}")


# ---------------------------------------------------------------------------
# ontology
# ---------------------------------------------------------------------------


def _add_branch(parent: Tree, node: OntologyNode) -> None:
    count = node.metadata.get("occurrenceCount")
    label = f"{node.name} [dim]({count})[/dim]" if count else node.name
    branch = parent.add(label)
    for child in sorted(node.children, key=lambda n: n.name.casefold()):
        _add_branch(branch, child)


@ontology_app.command("show")
def ontology_show(data_dir: DataDirOption = None) -> None:
    """Print the topic tree."""
    ontology = TopicOntology()
    ontology.load(ontology_path(resolve_data_dir(data_dir)))
    if not len(ontology):
        console.print("[yellow]Ontology is empty[/yellow]")
        return

    tree = Tree("[bold]Topics[/bold]")
    for root in sorted(ontology.get_root_topics(), key=lambda n: n.name.casefold()):
        _add_branch(tree, root)
    console.print(tree)

    stats = ontology.stats()
    console.print(
        f"{stats['totalTopics']} topics, {stats['rootTopics']} roots, "
        f"max depth {stats['maxDepth']}, average depth {stats['avgDepth']:.2f}"
    )


@ontology_app.command("add")
def ontology_add(
    name: Annotated[str, typer.Argument(help="Topic name")],
    parent: Annotated[Optional[str], typer.Option("--parent", "-p", help="Parent topic")] = None,
    auto: Annotated[bool, typer.Option("--auto", help="Infer the parent from existing topics")] = False,
    data_dir: DataDirOption = None,
) -> None:
    """Add a topic and print its hierarchy path."""
    path = ontology_path(resolve_data_dir(data_dir))
    ontology = TopicOntology()
    ontology.load(path)
    try:
        if auto and not parent:
            node = ontology.add_topic_with_auto_parent(name)
        else:
            node = ontology.add_topic(name, parent)
    except PreconditionError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    ontology.save(path)
    console.print(ontology.get_hierarchy_path(node.name))
