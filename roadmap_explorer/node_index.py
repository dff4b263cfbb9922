"""
Node index: a flat, id-keyed arena built from a nested roadmap response.

The nested ``roadmapNodes`` forest is walked once. Every node becomes an
:class:`IndexedNode` whose ``children``, ``dependencies`` and
``prerequisites`` are plain id tuples, so downstream code works by id
lookup and never follows embedded object graphs.

Children (and roots) are ordered by ``position`` ascending; ties keep the
original array order.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from pydantic import ValidationError

from roadmap_explorer.models import Duration, Resource, RoadmapNode
from roadmap_explorer.utils import timed

logger = logging.getLogger(__name__)

RawNode = Union[RoadmapNode, Dict[str, Any]]


@dataclass(frozen=True)
class IndexedNode:
    """One arena entry. Immutable for the lifetime of a loaded roadmap."""

    id: str
    title: str
    description: Optional[str]
    depth: int
    level: int
    position: int
    node_type: str
    is_optional: bool
    estimated_duration: Optional[Duration]
    resources: Tuple[Resource, ...]
    difficulty: Optional[str]
    importance: Optional[str]
    parent_id: Optional[str]
    children: Tuple[str, ...]
    dependencies: Tuple[str, ...]
    prerequisites: Tuple[str, ...]
    # id -> title as written by this node's references
    ref_titles: Dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def has_children(self) -> bool:
        return bool(self.children)

    def snapshot(self) -> Dict[str, Any]:
        """Display fields for node payloads and detail dialogs."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "depth": self.depth,
            "nodeType": self.node_type,
            "isOptional": self.is_optional,
            "estimatedDuration": (
                self.estimated_duration.model_dump()
                if self.estimated_duration else None
            ),
            "difficulty": self.difficulty,
            "importance": self.importance,
            "resourceCount": len(self.resources),
            "hasChildren": self.has_children,
            "dependencies": [
                {"id": d, "title": self.ref_titles.get(d, "")}
                for d in self.dependencies
            ],
            "prerequisites": [
                {"id": p, "title": self.ref_titles.get(p, "")}
                for p in self.prerequisites
            ],
        }


def _sorted_by_position(nodes: List[RoadmapNode]) -> List[RoadmapNode]:
    # sorted() is stable, so equal positions keep array order
    return sorted(nodes, key=lambda n: n.position)


def _validate_roots(raw_nodes: Iterable[RawNode]) -> List[RoadmapNode]:
    roots: List[RoadmapNode] = []
    for idx, raw in enumerate(raw_nodes):
        if isinstance(raw, RoadmapNode):
            roots.append(raw)
            continue
        try:
            roots.append(RoadmapNode.model_validate(raw))
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed root node #%d: %d validation error(s).",
                idx, exc.error_count(),
            )
        except RecursionError:
            logger.warning(
                "Skipping root node #%d: nesting is too deep to index.", idx
            )
    return roots


class NodeIndex:
    """Flat lookup of roadmap nodes by id."""

    def __init__(self) -> None:
        self._nodes: Dict[str, IndexedNode] = {}
        self._roots: Tuple[str, ...] = ()
        self._seen: Set[str] = set()
        self.skipped_duplicates = 0

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_forest(cls, raw_nodes: Iterable[RawNode]) -> "NodeIndex":
        """Build an index from a list of root nodes (models or raw dicts)."""
        index = cls()
        with timed("Node index build"):
            roots = _validate_roots(raw_nodes)
            index._roots = tuple(
                nid for nid in (
                    index._add(node, parent_id=None, level=0)
                    for node in _sorted_by_position(roots)
                )
                if nid is not None
            )
        logger.info(
            "Indexed %d node(s) under %d root(s).", len(index), len(index._roots)
        )
        return index

    @classmethod
    def from_response(cls, payload: Any) -> "NodeIndex":
        """Build an index from a roadmap-detail response.

        Accepts ``{"roadmapNodes": [...]}`` or a bare list of nodes.
        Anything else yields an empty index.
        """
        if isinstance(payload, dict):
            nodes = payload.get("roadmapNodes")
        else:
            nodes = payload
        if not isinstance(nodes, list):
            logger.warning("Roadmap response has no node list; index is empty.")
            return cls()
        return cls.from_forest(nodes)

    def _add(
        self, node: RoadmapNode, parent_id: Optional[str], level: int
    ) -> Optional[str]:
        if node.id in self._seen:
            self.skipped_duplicates += 1
            logger.warning(
                "Duplicate node id %s under parent %s; skipping its subtree.",
                node.id, parent_id,
            )
            return None

        # Reserve the id before descending so a child repeating it is skipped.
        self._seen.add(node.id)
        child_ids = tuple(
            cid for cid in (
                self._add(child, parent_id=node.id, level=level + 1)
                for child in _sorted_by_position(node.children)
            )
            if cid is not None
        )

        ref_titles: Dict[str, str] = {}
        for ref in list(node.dependencies) + list(node.prerequisites):
            if ref.title:
                ref_titles.setdefault(ref.id, ref.title)

        meta = node.metadata
        self._nodes[node.id] = IndexedNode(
            id=node.id,
            title=node.title,
            description=node.description,
            depth=node.depth if node.depth is not None else level,
            level=level,
            position=node.position,
            node_type=node.node_type,
            is_optional=node.is_optional,
            estimated_duration=node.estimated_duration,
            resources=tuple(node.resources),
            difficulty=meta.difficulty if meta else None,
            importance=meta.importance if meta else None,
            parent_id=parent_id,
            children=child_ids,
            dependencies=tuple(d.id for d in node.dependencies),
            prerequisites=tuple(p.id for p in node.prerequisites),
            ref_titles=ref_titles,
        )
        return node.id

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def get(self, node_id: str) -> Optional[IndexedNode]:
        return self._nodes.get(node_id)

    @property
    def roots(self) -> Tuple[str, ...]:
        return self._roots

    def children_of(self, node_id: str) -> Tuple[str, ...]:
        node = self._nodes.get(node_id)
        return node.children if node else ()

    def has_children(self, node_id: str) -> bool:
        return bool(self.children_of(node_id))

    def depth_of(self, node_id: str) -> Optional[int]:
        node = self._nodes.get(node_id)
        return node.depth if node else None

    def iter_depth_first(self) -> Iterator[IndexedNode]:
        """Pre-order walk over the whole forest in display order."""
        stack: List[str] = list(reversed(self._roots))
        while stack:
            node = self._nodes[stack.pop()]
            yield node
            stack.extend(reversed(node.children))

    def ids(self) -> List[str]:
        return [n.id for n in self.iter_depth_first()]
