"""Parent inference strategies for new topics.

``ParentInferrer`` is the seam: given a new topic name and the names already
in the tree, return a candidate parent or None. ``HeuristicParentInferrer``
is the built-in strategy; a learned or LLM-backed strategy can replace it
without touching the tree.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Sequence

from onboardlib.schemas import normalize_key

# Broad topics mapped to phrases that mark a subtopic of them.
TOPIC_HIERARCHY: dict[str, tuple[str, ...]] = {
    "programming": ("python", "javascript", "typescript", "java", "rust", "go"),
    "machine learning": ("deep learning", "neural networks", "nlp", "computer vision", "rlhf"),
    "ai": ("machine learning", "llm", "artificial intelligence"),
    "web development": ("frontend", "backend", "fullstack", "react", "vue", "angular"),
    "databases": ("sql", "nosql", "postgresql", "mongodb", "redis"),
    "cloud": ("aws", "azure", "gcp", "kubernetes", "docker"),
    "devops": ("ci/cd", "jenkins", "github actions", "infrastructure"),
}


@dataclass(frozen=True)
class ParentCandidate:
    name: str
    confidence: float
    reasoning: str


class ParentInferrer(ABC):
    """Strategy that proposes a parent for a new topic."""

    @abstractmethod
    def infer_parent(self, name: str, existing_topics: Sequence[str]) -> ParentCandidate | None:
        ...


def _contains_phrase(words: list[str], phrase: str) -> bool:
    """True if *phrase* occurs in *words* as a whole-word sequence."""
    target = phrase.split()
    if not target or len(target) > len(words):
        return False
    return any(words[i : i + len(target)] == target for i in range(len(words) - len(target) + 1))


class HeuristicParentInferrer(ParentInferrer):
    """Prefix/suffix matching plus a fixed table of known subtopics.

    For each existing topic (in order), the new name is a subtopic if the
    existing name is a whitespace-bounded prefix or suffix of it
    (confidence 0.8), or if the existing name is a broad topic in the table
    and one of its child phrases occurs in the new name (confidence 0.75).
    """

    def __init__(self, hierarchy: Mapping[str, Sequence[str]] | None = None) -> None:
        table = TOPIC_HIERARCHY if hierarchy is None else hierarchy
        self._hierarchy = {normalize_key(k): tuple(normalize_key(c) for c in v) for k, v in table.items()}

    def infer_parent(self, name: str, existing_topics: Sequence[str]) -> ParentCandidate | None:
        topic = normalize_key(name)
        words = topic.split()
        for existing in existing_topics:
            candidate = normalize_key(existing)
            if not candidate or candidate == topic:
                continue
            if topic.startswith(candidate + " ") or topic.endswith(" " + candidate):
                return ParentCandidate(existing, 0.8, f'"{name}" appears to be a subtopic of "{existing}"')
            for child in self._hierarchy.get(candidate, ()):
                if _contains_phrase(words, child):
                    return ParentCandidate(existing, 0.75, f'"{name}" is a known subtopic of "{existing}"')
        return None
