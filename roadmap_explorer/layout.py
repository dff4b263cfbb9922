"""
Graph layout engine: turns the indexed roadmap forest into positioned
visual nodes and typed visual edges.

Usage::

    python -m roadmap_explorer.layout \\
        --input tests/sample_roadmap.json \\
        --out ./data/layout.json \\
        --expand-all

Layout rules:

* Each rendered node reserves one slot (``node_height``). An expanded
  node with children reserves the sum of its children's subtree heights
  instead, never less than ``expanded_floor``.
* Children sit one ``depth_step`` to the right of their parent and start
  at the parent's ``y``. A running cursor stacks siblings so subtrees
  never overlap.
* Collapsed subtrees are not visited at all.
* Cross-link edges (dependency / prerequisite) are emitted only when
  both endpoints were rendered in the same pass; the rest are dropped.
"""

import argparse
import json
import logging
import os
import sys
from typing import Dict, List, Mapping, Optional, Protocol, Set

from roadmap_explorer.config import ExplorerConfig, LayoutConfig, load_config, save_config
from roadmap_explorer.errors import ConfigError
from roadmap_explorer.expansion import ExpansionStore
from roadmap_explorer.link_validator import compute_roadmap_metrics
from roadmap_explorer.models import (
    EdgeKind,
    EdgeStyle,
    LayoutResult,
    OutlineRow,
    VisualEdge,
    VisualNode,
)
from roadmap_explorer.node_index import IndexedNode, NodeIndex
from roadmap_explorer.utils import read_json, setup_logging, timed

logger = logging.getLogger(__name__)


class ExpansionView(Protocol):
    def is_expanded(self, node_id: str) -> bool: ...


# =========================================================================
# Edge styles
# =========================================================================

EDGE_STYLES: Dict[str, EdgeStyle] = {
    "hierarchy": EdgeStyle(),
    "dependency": EdgeStyle(animated=True, dash_pattern="5,5", stroke="#94a3b8"),
    "prerequisite": EdgeStyle(stroke="#cbd5e1"),
}


def edge_id(kind: str, source: str, target: str) -> str:
    return f"{kind}:{source}->{target}"


def _make_edge(kind: EdgeKind, source: str, target: str) -> VisualEdge:
    return VisualEdge(
        id=edge_id(kind, source, target),
        source=source,
        target=target,
        kind=kind,
        style=EDGE_STYLES[kind].model_copy(),
    )


# =========================================================================
# Layout pass
# =========================================================================


class _LayoutPass:
    """State of one layout pass. Not reused across passes."""

    def __init__(
        self,
        index: NodeIndex,
        expansion: ExpansionView,
        config: LayoutConfig,
        statuses: Optional[Mapping[str, str]],
    ) -> None:
        self.index = index
        self.expansion = expansion
        self.config = config
        self.statuses = statuses or {}
        self.nodes: List[VisualNode] = []
        self.edges: List[VisualEdge] = []
        self.edge_ids: Set[str] = set()
        self.placed: Set[str] = set()
        self.visits = 0
        self.dropped = 0

    def _payload(self, node: IndexedNode, expanded: bool) -> Dict:
        payload = node.snapshot()
        payload["isExpanded"] = expanded
        if node.id in self.statuses:
            payload["status"] = self.statuses[node.id]
        return payload

    def _add_edge(self, kind: EdgeKind, source: str, target: str) -> None:
        edge = _make_edge(kind, source, target)
        if edge.id in self.edge_ids:
            return
        self.edge_ids.add(edge.id)
        self.edges.append(edge)

    def place(
        self,
        ids,
        x: float,
        y: float,
        parent_id: Optional[str],
    ) -> float:
        """Place *ids* as siblings starting at ``(x, y)``; return used height."""
        cursor = y
        for node_id in ids:
            node = self.index.get(node_id)
            if node is None or node_id in self.placed:
                logger.debug("Skipping unplaceable node %s.", node_id)
                continue

            self.visits += 1
            self.placed.add(node_id)
            expanded = self.expansion.is_expanded(node_id)
            self.nodes.append(
                VisualNode(id=node_id, x=x, y=cursor,
                           payload=self._payload(node, expanded))
            )
            if parent_id is not None:
                self._add_edge("hierarchy", parent_id, node_id)

            if expanded and node.children:
                used = self.place(
                    node.children, x + self.config.depth_step, cursor, node_id
                )
                cursor += max(self.config.expanded_floor, used)
            else:
                cursor += self.config.node_height
        return cursor - y

    def link(self) -> None:
        """Emit dependency/prerequisite edges between rendered nodes."""
        for visual in self.nodes:
            node = self.index.get(visual.id)
            for kind, refs in (
                ("dependency", node.dependencies),
                ("prerequisite", node.prerequisites),
            ):
                for source in refs:
                    if source not in self.placed:
                        self.dropped += 1
                        logger.debug(
                            "Dropped %s edge %s -> %s (endpoint not rendered).",
                            kind, source, node.id,
                        )
                        continue
                    self._add_edge(kind, source, node.id)


def layout(
    index: NodeIndex,
    expansion: ExpansionView,
    origin_x: float = 0.0,
    origin_y: float = 0.0,
    config: Optional[LayoutConfig] = None,
    statuses: Optional[Mapping[str, str]] = None,
) -> LayoutResult:
    """Run one layout pass over the roots of *index*.

    Args:
        index: The roadmap's node index.
        expansion: Anything with ``is_expanded(node_id) -> bool``.
        origin_x: ``x`` of the root column.
        origin_y: ``y`` of the first root.
        config: Geometry; defaults to :class:`LayoutConfig`.
        statuses: Optional ``{node_id: learner status}`` added to payloads.

    Returns:
        :class:`LayoutResult` with nodes in render order, edges, the total
        height used, the number of nodes visited and edges dropped.
    """
    config = config or LayoutConfig()
    run = _LayoutPass(index, expansion, config, statuses)

    with timed("Layout pass"):
        height = run.place(index.roots, origin_x, origin_y, parent_id=None)
        run.link()

    if run.dropped:
        logger.warning(
            "Layout dropped %d cross-link edge(s) with unrendered endpoints.",
            run.dropped,
        )
    logger.debug(
        "Layout: %d node(s), %d edge(s), height=%.1f, visits=%d.",
        len(run.nodes), len(run.edges), height, run.visits,
    )
    return LayoutResult(
        visual_nodes=run.nodes,
        visual_edges=run.edges,
        subtree_height=height,
        visits=run.visits,
        dropped_edges=run.dropped,
    )


# =========================================================================
# Outline (list view)
# =========================================================================


def outline(index: NodeIndex, expansion: ExpansionView) -> List[OutlineRow]:
    """Indented rows for the list view, honouring the same expansion rules."""
    rows: List[OutlineRow] = []
    stack = [(root, 0) for root in reversed(index.roots)]
    while stack:
        node_id, level = stack.pop()
        node = index.get(node_id)
        if node is None:
            continue
        expanded = expansion.is_expanded(node_id)
        rows.append(OutlineRow(
            id=node_id,
            title=node.title,
            level=level,
            has_children=node.has_children,
            is_expanded=expanded,
        ))
        if expanded:
            stack.extend((cid, level + 1) for cid in reversed(node.children))
    return rows


# =========================================================================
# Pipeline
# =========================================================================


def run_layout(
    input_path: str,
    out_path: Optional[str] = None,
    config: Optional[ExplorerConfig] = None,
    expand: Optional[str] = None,
    origin_x: float = 0.0,
    origin_y: float = 0.0,
) -> Dict:
    """Load a roadmap-detail JSON file, lay it out and write the result.

    Args:
        expand: ``"all"``, ``"none"`` or ``None`` for the depth defaults.

    Returns:
        Summary dict: roadmap metrics plus rendered node/edge counts.
    """
    config = config or ExplorerConfig()
    payload = read_json(input_path)

    index = NodeIndex.from_response(payload)
    roadmap_id = None
    if isinstance(payload, dict) and isinstance(payload.get("roadmap"), dict):
        header = payload["roadmap"]
        roadmap_id = header.get("_id") or header.get("id")

    expansion = ExpansionStore(config=config.expansion)
    expansion.bind_roadmap(roadmap_id, index)
    if expand == "all":
        expansion.expand_all()
    elif expand == "none":
        expansion.collapse_all()

    result = layout(index, expansion, origin_x, origin_y, config.layout)

    summary = compute_roadmap_metrics(index)
    summary.update({
        "roadmap_id": roadmap_id,
        "rendered_nodes": len(result.visual_nodes),
        "rendered_edges": len(result.visual_edges),
        "dropped_edges": result.dropped_edges,
        "height": result.subtree_height,
    })

    if out_path:
        os.makedirs(os.path.dirname(os.path.abspath(out_path)), exist_ok=True)
        with open(out_path, "w", encoding="utf-8") as fh:
            json.dump(
                {"summary": summary, "layout": result.model_dump(mode="json")},
                fh, indent=2,
            )
        logger.info("📄 Layout → %s", out_path)

    return summary


# =========================================================================
# CLI
# =========================================================================


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="python -m roadmap_explorer.layout",
        description="Lay out a roadmap-detail JSON file as a visual graph.",
    )
    parser.add_argument("--input", required=True)
    parser.add_argument("--out", default=None)
    parser.add_argument("--origin-x", type=float, default=0.0)
    parser.add_argument("--origin-y", type=float, default=0.0)
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--expand-all", action="store_true")
    group.add_argument("--collapse-all", action="store_true")
    parser.add_argument(
        "--config", type=str, default=None,
        help="Apply a saved config JSON.",
    )
    parser.add_argument(
        "--save-config", type=str, default=None,
        help="Save current settings to a config JSON and exit.",
    )
    return parser.parse_args(argv)


def main(argv=None):
    """CLI entry-point."""
    setup_logging()
    args = _parse_args(argv)

    try:
        config = load_config(args.config) if args.config else ExplorerConfig()
    except ConfigError as exc:
        logger.error("%s", exc)
        sys.exit(2)

    if args.save_config:
        save_config(config, args.save_config)
        return

    expand = "all" if args.expand_all else "none" if args.collapse_all else None
    try:
        summary = run_layout(
            args.input, out_path=args.out, config=config, expand=expand,
            origin_x=args.origin_x, origin_y=args.origin_y,
        )
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Cannot read roadmap %s: %s", args.input, exc)
        sys.exit(1)

    logger.info(
        "✅ Layout complete — nodes=%d/%d, edges=%d, dropped=%d, height=%.0f",
        summary["rendered_nodes"], summary["total_nodes"],
        summary["rendered_edges"], summary["dropped_edges"],
        summary["height"],
    )
    sys.exit(0)


if __name__ == "__main__":
    main()
