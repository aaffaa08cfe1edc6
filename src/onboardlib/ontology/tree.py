"""Topic tree maintenance.

Nodes are identified by a slug of their normalised name, so each name can
be created once. Existing nodes are never re-pointed to a new parent, which
keeps the structure a forest without cycles.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from onboardlib.exceptions import PreconditionError
from onboardlib.ontology.inference import HeuristicParentInferrer, ParentInferrer
from onboardlib.schemas import normalize_key
from onboardlib.storage import atomic_write_text

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"\W+")


def topic_id(name: str) -> str:
    return "topic_" + _NON_WORD.sub("_", normalize_key(name))


@dataclass(eq=False)
class OntologyNode:
    id: str
    name: str
    parent_id: str | None = None
    depth: int = 0
    children: list[OntologyNode] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self, recursive: bool = True) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "depth": self.depth,
            "metadata": dict(self.metadata),
        }
        if self.parent_id is not None:
            d["parentId"] = self.parent_id
        if recursive:
            d["children"] = [child.to_dict() for child in self.children]
        return d


@dataclass(frozen=True)
class TopicWithParent:
    id: str
    name: str
    parent_name: str | None
    depth: int
    path: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"id": self.id, "name": self.name, "depth": self.depth, "path": list(self.path)}
        if self.parent_name is not None:
            d["parentName"] = self.parent_name
        return d


class TopicOntology:
    """Forest of topics with optional automatic parent inference.

    Args:
        inferrer: Strategy used by ``add_topic_with_auto_parent``.
    """

    def __init__(self, inferrer: ParentInferrer | None = None) -> None:
        self._inferrer = inferrer or HeuristicParentInferrer()
        self._nodes: dict[str, OntologyNode] = {}
        self._roots: list[str] = []

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and topic_id(name) in self._nodes

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------

    def add_topic(
        self,
        name: str,
        parent_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> OntologyNode:
        """Create *name* under *parent_name* (created as a root if missing).

        Idempotent by name: an existing node only has *metadata* merged in;
        its parent never changes.

        Raises:
            PreconditionError: Empty name, or a topic named as its own parent.
        """
        name = name.strip()
        if not name:
            raise PreconditionError("Topic name must not be empty")
        node_id = topic_id(name)

        existing = self._nodes.get(node_id)
        if existing is not None:
            if metadata:
                existing.metadata.update(metadata)
            return existing

        parent: OntologyNode | None = None
        if parent_name and parent_name.strip():
            if topic_id(parent_name) == node_id:
                raise PreconditionError(f"Topic {name!r} cannot be its own parent")
            parent = self._nodes.get(topic_id(parent_name)) or self.add_topic(parent_name)

        node = OntologyNode(
            id=node_id,
            name=name,
            parent_id=parent.id if parent else None,
            depth=parent.depth + 1 if parent else 0,
            metadata={"createdAt": datetime.now(timezone.utc).isoformat(), **(metadata or {})},
        )
        self._nodes[node_id] = node
        if parent is not None:
            parent.children.append(node)
        else:
            self._roots.append(node_id)
        logger.debug("Added topic %r%s", name, f" (parent: {parent.name})" if parent else " (root)")
        return node

    def add_topic_with_auto_parent(self, name: str, metadata: dict[str, Any] | None = None) -> OntologyNode:
        """Add *name*, asking the inferrer for a parent among existing topics."""
        existing = self.get_topic(name)
        if existing is not None:
            return self.add_topic(name, metadata=metadata)

        candidate = self._inferrer.infer_parent(name, self.get_all_topic_names())
        if candidate is None:
            return self.add_topic(name, metadata=metadata)

        logger.info(
            "Auto-assigned parent %r to %r (confidence %.2f)",
            candidate.name,
            name,
            candidate.confidence,
        )
        merged = {"confidence": candidate.confidence, **(metadata or {})}
        return self.add_topic(name, candidate.name, merged)

    def record_sighting(self, name: str, message_id: str) -> OntologyNode:
        """Insert a topic seen in a message and count the sighting."""
        node = self.add_topic_with_auto_parent(name)
        ids = node.metadata.setdefault("emailIds", [])
        if message_id not in ids:
            ids.append(message_id)
        node.metadata["occurrenceCount"] = node.metadata.get("occurrenceCount", 0) + 1
        return node

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_topic(self, name: str) -> OntologyNode | None:
        return self._nodes.get(topic_id(name))

    def get_all_topic_names(self) -> list[str]:
        return [node.name for node in self._nodes.values()]

    def get_root_topics(self) -> list[OntologyNode]:
        return [self._nodes[root_id] for root_id in self._roots]

    def get_topic_with_hierarchy(self, name: str) -> TopicWithParent | None:
        node = self.get_topic(name)
        if node is None:
            return None
        path: list[str] = []
        current: OntologyNode | None = node
        while current is not None:
            path.append(current.name)
            current = self._nodes.get(current.parent_id) if current.parent_id else None
        path.reverse()
        parent = self._nodes.get(node.parent_id) if node.parent_id else None
        return TopicWithParent(
            id=node.id,
            name=node.name,
            parent_name=parent.name if parent else None,
            depth=node.depth,
            path=tuple(path),
        )

    def get_hierarchy_path(self, name: str, separator: str = " > ") -> str:
        """Root-to-node names joined by *separator*; the name itself if unknown."""
        hierarchy = self.get_topic_with_hierarchy(name)
        if hierarchy is None:
            return name
        return separator.join(hierarchy.path)

    def get_all_topics_flat(self) -> list[TopicWithParent]:
        """Every topic with its path, sorted by depth then name."""
        flat = [self.get_topic_with_hierarchy(node.name) for node in self._nodes.values()]
        return sorted((t for t in flat if t is not None), key=lambda t: (t.depth, t.name.casefold()))

    def stats(self) -> dict[str, float]:
        depths = [node.depth for node in self._nodes.values()]
        return {
            "totalTopics": len(self._nodes),
            "rootTopics": len(self._roots),
            "maxDepth": max(depths, default=0),
            "avgDepth": sum(depths) / len(depths) if depths else 0.0,
        }

    def snapshot(self) -> dict[str, Any]:
        """Tree, flat list and stats, as served by the control surface."""
        return {
            "tree": [root.to_dict() for root in self.get_root_topics()],
            "flat": [t.to_dict() for t in self.get_all_topics_flat()],
            "stats": self.stats(),
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_json(self) -> str:
        return json.dumps(
            {
                "nodes": [node.to_dict(recursive=False) for node in self._nodes.values()],
                "rootIds": list(self._roots),
                "exportedAt": datetime.now(timezone.utc).isoformat(),
            },
            indent=2,
            ensure_ascii=False,
        )

    def import_json(self, text: str) -> int:
        """Replace the tree with an export. Nodes whose parent is missing become roots."""
        data = json.loads(text)
        self.clear()
        for raw in data.get("nodes", []):
            node = OntologyNode(
                id=raw["id"],
                name=raw["name"],
                parent_id=raw.get("parentId"),
                metadata=dict(raw.get("metadata") or {}),
            )
            self._nodes[node.id] = node

        for node in self._nodes.values():
            if node.parent_id is not None and node.parent_id not in self._nodes:
                logger.warning("Topic %r references missing parent %s; making it a root", node.name, node.parent_id)
                node.parent_id = None
            if node.parent_id is None:
                self._roots.append(node.id)
            else:
                self._nodes[node.parent_id].children.append(node)

        # Depths are derived from the parent links, not trusted from the file.
        # Nodes unreachable from a root sit on a parent cycle and are detached.
        visited = self._assign_depths(self._roots)
        for node in list(self._nodes.values()):
            if node.id in visited:
                continue
            logger.warning("Topic %r is part of a parent cycle; making it a root", node.name)
            parent = self._nodes[node.parent_id]  # type: ignore[index]
            parent.children = [child for child in parent.children if child is not node]
            node.parent_id = None
            self._roots.append(node.id)
            visited |= self._assign_depths([node.id])

        logger.info("Imported %d topics", len(self._nodes))
        return len(self._nodes)

    def _assign_depths(self, root_ids: list[str]) -> set[str]:
        visited: set[str] = set()
        pending = [(self._nodes[root_id], 0) for root_id in root_ids]
        while pending:
            node, depth = pending.pop()
            if node.id in visited:
                continue
            visited.add(node.id)
            node.depth = depth
            pending.extend((child, depth + 1) for child in node.children)
        return visited

    def save(self, path: Path) -> Path:
        return atomic_write_text(path, self.export_json())

    def load(self, path: Path) -> int:
        """Load a snapshot from *path*; a missing file leaves the tree empty."""
        path = Path(path)
        if not path.exists():
            return 0
        return self.import_json(path.read_text(encoding="utf-8"))

    def clear(self) -> None:
        self._nodes.clear()
        self._roots.clear()
