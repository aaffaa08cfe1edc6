"""Boundaries to the external collaborators of the pipeline.

The message source fetches a user's sent messages one day at a time; the
classifier turns a message into entities and relationships. Both are opaque
to the pipeline and are supplied by the caller.
"""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from datetime import date, timedelta
from pathlib import Path

from pydantic import ValidationError

from onboardlib.exceptions import ConfigurationError
from onboardlib.schemas import ExtractionResult, Message

logger = logging.getLogger(__name__)


def build_sent_query(day: date) -> str:
    """Day-bounded search query for sent messages (``after`` inclusive, ``before`` exclusive)."""
    next_day = day + timedelta(days=1)
    return f"in:sent after:{day.isoformat()} before:{next_day.isoformat()}"


class MessageSource(ABC):
    """Fetches outbound messages by day."""

    async def check(self) -> None:
        """Preflight: raise if the source cannot be reached at all."""

    @abstractmethod
    async def fetch_day(self, day: date, limit: int) -> list[Message]:
        """Return up to *limit* sent messages dated *day*."""
        ...


class Classifier(ABC):
    """Extracts entities and relationships from one message."""

    def set_user_identity(self, email: str, name: str | None = None) -> None:
        """Tell the classifier who the mailbox owner is (optional)."""

    @abstractmethod
    async def classify(self, message: Message) -> ExtractionResult:
        ...


class JsonlMessageSource(MessageSource):
    """Message source backed by a local JSON-lines mailbox export.

    Each line is one message object (``id``, ``subject``, ``from``, ``to``,
    ``date``, ``snippet``). Lines that do not parse are skipped.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._by_day: dict[date, list[Message]] | None = None
        self.skipped_lines = 0

    async def check(self) -> None:
        if not self._path.is_file():
            raise ConfigurationError(f"Message export not found: {self._path}")

    def _load(self) -> dict[date, list[Message]]:
        if self._by_day is not None:
            return self._by_day
        by_day: dict[date, list[Message]] = {}
        with open(self._path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    message = Message.model_validate_json(line)
                except ValidationError as exc:
                    self.skipped_lines += 1
                    logger.warning("Skipping line %d of %s: %s", line_no, self._path, exc.errors()[0]["msg"])
                    continue
                by_day.setdefault(message.date.date(), []).append(message)
        for messages in by_day.values():
            messages.sort(key=lambda m: m.date, reverse=True)
        self._by_day = by_day
        logger.info("Loaded %d messages from %s", sum(len(v) for v in by_day.values()), self._path)
        return by_day

    async def fetch_day(self, day: date, limit: int) -> list[Message]:
        return self._load().get(day, [])[:limit]


def load_classifier(import_path: str) -> Classifier:
    """Load a classifier from a ``module:attribute`` path.

    The attribute may be a Classifier instance, or a class/factory that is
    called without arguments to produce one.

    Raises:
        ConfigurationError: If the path cannot be imported or does not
            produce a Classifier.
    """
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Classifier path must look like 'module:attribute', got {import_path!r}")
    try:
        module = importlib.import_module(module_name)
        target = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(f"Cannot load classifier {import_path!r}: {exc}") from exc

    if isinstance(target, Classifier):
        return target
    classifier = target() if callable(target) else None
    if not isinstance(classifier, Classifier):
        raise ConfigurationError(f"{import_path!r} did not produce a Classifier")
    return classifier
