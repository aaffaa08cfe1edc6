"""Serialise feedback records and few-shot examples into training files.

Three formats, each written to its own file next to a common base path:

* ``jsonl``      -- generic record per line (``<base>.jsonl``)
* ``openai``     -- chat turns system/user/assistant (``<base>.openai.jsonl``)
* ``anthropic``  -- prompt/completion pairs (``<base>.anthropic.jsonl``)

Formats are written independently: a failure writing one is reported in its
ExportResult and does not stop the others.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Sequence

from onboardlib.feedback.models import FeedbackRecord
from onboardlib.feedback.store import FeedbackStore
from onboardlib.storage import atomic_write_text
from onboardlib.training.corrections import (
    EntityCorrection,
    ParsedCorrection,
    RelationshipCorrection,
    parse_entity_correction,
    parse_relationship_correction,
)
from onboardlib.training.few_shot import (
    EntityFewShotExample,
    FewShotExample,
    RelationshipFewShotExample,
)
from onboardlib.training.prompts import (
    DEFAULT_SYSTEM_PROMPT,
    build_assistant_message,
    build_user_message,
    describe_correction,
    describe_relationship,
)

logger = logging.getLogger(__name__)


class ExportFormat(str, Enum):
    JSONL = "jsonl"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"

    @property
    def suffix(self) -> str:
        if self is ExportFormat.JSONL:
            return ".jsonl"
        return f".{self.value}.jsonl"


ALL_FORMATS: tuple[ExportFormat, ...] = tuple(ExportFormat)


def strip_format_suffix(name: str) -> str:
    """Drop a trailing export suffix (".jsonl", ".openai.jsonl", ".anthropic.jsonl") from *name*."""
    for suffix in sorted((f.suffix for f in ExportFormat), key=len, reverse=True):
        if name.endswith(suffix) and len(name) > len(suffix):
            return name[: -len(suffix)]
    return name


@dataclass
class ExportOptions:
    """What to export and where.

    Attributes:
        output_path: Base path; a trailing export suffix is dropped. Defaults to a
            timestamped name in the exporter's output directory.
        formats: Formats to write.
        include_positive: Also export positive judgments.
        max_examples: Cap on exported records (oldest first).
        start: Earliest record timestamp.
        end: Latest record timestamp.
        system_prompt: Instruction used by the chat and prompt formats.
    """

    output_path: Path | None = None
    formats: Sequence[ExportFormat] = (ExportFormat.JSONL,)
    include_positive: bool = False
    max_examples: int | None = None
    start: datetime | None = None
    end: datetime | None = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


@dataclass
class ExportResult:
    format: ExportFormat
    path: Path
    record_count: int
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        d: dict[str, object] = {
            "format": self.format.value,
            "path": str(self.path),
            "recordCount": self.record_count,
            "success": self.success,
        }
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass
class _Turns:
    """Normalised (user, assistant) pair plus the generic-record payload."""

    user: str
    assistant: str
    record: dict = field(default_factory=dict)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _drop_none(d: dict) -> dict:
    return {k: v for k, v in d.items() if v is not None}


def _parse_record_correction(record: FeedbackRecord) -> ParsedCorrection | None:
    if record.judgment == "positive" or not record.correction_text:
        return None
    if record.kind == "entity":
        return parse_entity_correction(record.correction_text, record.extracted.entity_type or "")
    return parse_relationship_correction(record.correction_text, record.extracted.relationship_type or "")


def _correction_fields(parsed: ParsedCorrection | None) -> dict:
    if parsed is None or not parsed.usable:
        return {}
    correct = parsed.correct
    if correct is None:
        return {"correctType": "DELETE", "correctValue": "", "shouldExtract": False}
    if isinstance(correct, EntityCorrection):
        return {"correctType": correct.type, "correctValue": correct.value, "shouldExtract": True}
    if not isinstance(correct, RelationshipCorrection):
        return {}
    return {
        "correctType": correct.relationship_type,
        "correctValue": f"{correct.source} -> {correct.target}",
        "correctSource": correct.source,
        "correctTarget": correct.target,
        "shouldExtract": True,
    }


def record_turns(record: FeedbackRecord) -> _Turns:
    """Turns and generic record for one feedback record."""
    item = record.extracted
    if record.kind == "entity":
        extraction = f'Extracted {item.entity_type or "entity"}: "{item.value}"'
        extracted_type = item.entity_type or "unknown"
    else:
        extraction = "Extracted relationship: " + describe_relationship(
            item.source or "", item.relationship_type or "", item.target or ""
        )
        extracted_type = item.relationship_type or "unknown"

    parsed = _parse_record_correction(record)
    user = build_user_message(
        extraction,
        subject=record.context.subject,
        sender=record.context.sender,
        snippet=record.context.snippet,
        confidence=item.confidence,
    )
    assistant = build_assistant_message(record.judgment == "positive", parsed, record.correction_text)
    generic = {
        "id": record.id,
        "timestamp": record.timestamp.isoformat(),
        "type": record.kind,
        "input": {
            "emailContext": _drop_none(
                {
                    "subject": record.context.subject or None,
                    "from": record.context.sender or None,
                    "snippet": record.context.snippet or None,
                }
            ),
            "extractedValue": item.value,
            "extractedType": extracted_type,
        },
        "output": _drop_none(
            {
                "isCorrect": record.judgment == "positive",
                "correction": record.correction_text,
                **_correction_fields(parsed),
            }
        ),
        "metadata": _drop_none({"confidence": item.confidence, "source": item.source}),
    }
    return _Turns(user, assistant, generic)


def example_turns(example: EntityFewShotExample | RelationshipFewShotExample) -> _Turns:
    """Turns for one few-shot example (always a negative judgment)."""
    ctx = example.context
    if isinstance(example, EntityFewShotExample):
        wrong = example.incorrect_extraction
        extraction = f'Extracted {wrong.type}: "{wrong.value}"'
        header = "Review this entity extraction:"
        if example.correct_extraction is not None:
            fix = example.correct_extraction
            assistant = f'Incorrect. The correct extraction is: {fix.type}: "{fix.value}"'
        else:
            assistant = "Incorrect. This should not have been extracted."
    else:
        wrong_rel = example.incorrect_extraction
        extraction = "Extracted relationship: " + describe_relationship(
            wrong_rel.source, wrong_rel.relationship_type, wrong_rel.target
        )
        header = "Review this relationship extraction:"
        if example.correct_extraction is not None:
            fix_rel = example.correct_extraction
            assistant = "Incorrect. " + describe_correction(
                ParsedCorrection(RelationshipCorrection(fix_rel.relationship_type, fix_rel.source, fix_rel.target))
            )
        else:
            assistant = "Incorrect. This relationship should not have been extracted."

    user = build_user_message(
        extraction,
        subject=ctx.subject,
        sender=ctx.sender,
        snippet=ctx.snippet,
        confidence=example.incorrect_extraction.confidence,
        header=header,
    )
    return _Turns(user, assistant, example.model_dump(mode="json", by_alias=True))


def render(turns: Iterable[_Turns], fmt: ExportFormat, system_prompt: str) -> str:
    """Render turns in *fmt*, one JSON object per line."""
    lines: list[str] = []
    for t in turns:
        if fmt is ExportFormat.JSONL:
            obj: dict = t.record
        elif fmt is ExportFormat.OPENAI:
            obj = {
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": t.user},
                    {"role": "assistant", "content": t.assistant},
                ]
            }
        else:
            obj = {
                "prompt": f"{system_prompt}\n\nHuman: {t.user}\n\nAssistant:",
                "completion": f" {t.assistant}",
            }
        lines.append(json.dumps(obj, ensure_ascii=False))
    return "".join(line + "\n" for line in lines)


class TrainingExporter:
    """Writes training files from a FeedbackStore.

    Args:
        store: Source of feedback records.
        output_dir: Directory for exports without an explicit output path.
        clock: Current time (UTC), used for default file names.
    """

    def __init__(
        self,
        store: FeedbackStore,
        output_dir: Path = Path("data/training"),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._output_dir = Path(output_dir)
        self._clock = clock

    def _base_path(self, output_path: Path | None) -> Path:
        if output_path is None:
            stamp = self._clock().strftime("%Y-%m-%dT%H-%M-%S")
            return self._output_dir / f"training_{stamp}"
        output_path = Path(output_path)
        return output_path.with_name(strip_format_suffix(output_path.name))

    def select_records(self, options: ExportOptions) -> list[FeedbackRecord]:
        records = self._store.all_records()
        if not options.include_positive:
            records = [r for r in records if r.judgment == "negative"]
        if options.start is not None:
            records = [r for r in records if r.timestamp >= _as_utc(options.start)]
        if options.end is not None:
            records = [r for r in records if r.timestamp <= _as_utc(options.end)]
        if options.max_examples is not None:
            records = records[: options.max_examples]
        return records

    def _write_formats(
        self,
        turns: list[_Turns],
        base: Path,
        formats: Sequence[ExportFormat],
        system_prompt: str,
        label: str,
    ) -> list[ExportResult]:
        results: list[ExportResult] = []
        for fmt in formats:
            fmt = ExportFormat(fmt)
            path = base.with_name(base.name + fmt.suffix)
            try:
                atomic_write_text(path, render(turns, fmt, system_prompt))
            except Exception as exc:
                logger.error("Failed to export %s %s to %s: %s", label, fmt.value, path, exc)
                results.append(ExportResult(fmt, path, 0, False, str(exc)))
                continue
            logger.info("Exported %d %s to %s", len(turns), label, path)
            results.append(ExportResult(fmt, path, len(turns), True))
        return results

    def export(self, options: ExportOptions | None = None) -> list[ExportResult]:
        """Export feedback records in every requested format."""
        options = options or ExportOptions()
        records = self.select_records(options)
        turns = [record_turns(r) for r in records]
        return self._write_formats(
            turns,
            self._base_path(options.output_path),
            options.formats,
            options.system_prompt,
            "feedback records",
        )

    def export_few_shot_examples(
        self,
        examples: Sequence[FewShotExample],
        base_path: Path,
        formats: Sequence[ExportFormat] = (ExportFormat.JSONL,),
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> list[ExportResult]:
        """Export few-shot examples in every requested format."""
        turns = [example_turns(e) for e in examples]
        return self._write_formats(turns, self._base_path(base_path), formats, system_prompt, "few-shot examples")

    def stats(self) -> dict[str, int]:
        records = self._store.all_records()
        negative = [r for r in records if r.judgment == "negative"]
        return {
            "totalRecords": len(records),
            "positiveRecords": len(records) - len(negative),
            "negativeRecords": len(negative),
            "withCorrections": sum(1 for r in negative if r.correction_text),
        }
