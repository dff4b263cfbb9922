"""
Expansion state store: per-node expand/collapse flags.

Absent entries resolve through a depth rule (shallow nodes start
expanded). Mutations never trigger a layout themselves; they return a
:class:`RelayoutRequested` command that the coordinator acts on.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from roadmap_explorer.config import ExpansionConfig
from roadmap_explorer.node_index import NodeIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayoutRequested:
    """Command asking the coordinator for a new layout pass."""

    reason: str
    node_id: Optional[str] = None


class ExpansionStore:
    """Owns the expansion flags for the active roadmap."""

    def __init__(
        self,
        index: Optional[NodeIndex] = None,
        config: Optional[ExpansionConfig] = None,
    ) -> None:
        self.config = config or ExpansionConfig()
        self._index = index if index is not None else NodeIndex()
        self._roadmap_id: Optional[str] = None
        self._state: Dict[str, bool] = {}

    @property
    def roadmap_id(self) -> Optional[str]:
        return self._roadmap_id

    def bind_roadmap(self, roadmap_id: Optional[str], index: NodeIndex) -> bool:
        """Attach the store to *index*; flags reset when the roadmap changes.

        Returns ``True`` if stored flags were cleared.
        """
        changed = roadmap_id != self._roadmap_id
        self._index = index
        self._roadmap_id = roadmap_id
        if changed:
            self.reset_all()
        return changed

    def default_for(self, node_id: str) -> bool:
        depth = self._index.depth_of(node_id)
        if depth is None:
            return False
        return depth < self.config.default_expanded_depth

    def is_expanded(self, node_id: str) -> bool:
        stored = self._state.get(node_id)
        if stored is not None:
            return stored
        return self.default_for(node_id)

    def toggle(self, node_id: str) -> Optional[RelayoutRequested]:
        """Flip the flag for *node_id*. Unknown ids are ignored."""
        if node_id not in self._index:
            logger.warning("Toggle ignored for unknown node %s.", node_id)
            return None
        self._state[node_id] = not self.is_expanded(node_id)
        logger.debug("Node %s expanded=%s.", node_id, self._state[node_id])
        return RelayoutRequested(reason="toggle", node_id=node_id)

    def expand_all(self) -> RelayoutRequested:
        for node in self._index.iter_depth_first():
            if node.has_children:
                self._state[node.id] = True
        return RelayoutRequested(reason="expand_all")

    def collapse_all(self) -> RelayoutRequested:
        for node in self._index.iter_depth_first():
            if node.has_children:
                self._state[node.id] = False
        return RelayoutRequested(reason="collapse_all")

    def reset_all(self) -> None:
        if self._state:
            logger.info("Expansion state cleared (%d entries).", len(self._state))
        self._state.clear()

    def stored(self) -> Dict[str, bool]:
        """Copy of the explicitly stored flags."""
        return dict(self._state)
