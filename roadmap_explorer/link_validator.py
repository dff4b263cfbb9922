"""
Cross-link validation and roadmap metrics.

Dependency and prerequisite references are allowed to be cyclic or to
point at nodes outside the loaded forest. Nothing here raises on such
data: cycles and dangling references are *reported* so callers can log
or display them.

Uses ``networkx.DiGraph`` for cycle detection and depth metrics.
"""

import logging
from collections import Counter, defaultdict
from typing import Any, Dict, List, Tuple

import networkx as nx

from roadmap_explorer.node_index import NodeIndex

logger = logging.getLogger(__name__)

LINK_KINDS = ("dependency", "prerequisite")


def _iter_links(index: NodeIndex):
    """Yield ``(source_id, target_id, kind)`` for every cross-link.

    A node's reference points *from* the referenced node *to* the node
    that declares it, matching the direction of rendered edges.
    """
    for node in index.iter_depth_first():
        for dep in node.dependencies:
            yield dep, node.id, "dependency"
        for pre in node.prerequisites:
            yield pre, node.id, "prerequisite"


# =========================================================================
# Dangling references
# =========================================================================


def find_dangling_references(index: NodeIndex) -> List[Dict[str, str]]:
    """Return references whose source node is not in *index*."""
    dangling = [
        {"source_id": src, "target_id": tgt, "kind": kind}
        for src, tgt, kind in _iter_links(index)
        if src not in index
    ]
    if dangling:
        logger.info("Found %d dangling cross-link(s).", len(dangling))
    return dangling


# =========================================================================
# Cycles
# =========================================================================


def build_link_graph(index: NodeIndex) -> nx.DiGraph:
    """Directed graph of the cross-links between indexed nodes."""
    G = nx.DiGraph()
    G.add_nodes_from(index.ids())
    for src, tgt, kind in _iter_links(index):
        if src in index and src != tgt:
            G.add_edge(src, tgt, kind=kind)
    return G


def find_link_cycles(index: NodeIndex) -> List[List[Tuple[str, str]]]:
    """Detect cycles among dependency/prerequisite links.

    Uses ``networkx.find_cycle`` one cycle at a time on a working copy,
    removing one edge of each reported cycle until none remain. Self
    references are reported as one-edge cycles.

    Returns:
        List of cycles, each a list of ``(source_id, target_id)`` pairs.
    """
    cycles: List[List[Tuple[str, str]]] = [
        [(src, tgt)]
        for src, tgt, _ in _iter_links(index)
        if src == tgt and src in index
    ]

    G = build_link_graph(index)
    while True:
        try:
            cycle = nx.find_cycle(G, orientation="original")
        except nx.NetworkXNoCycle:
            break
        cycle_edges = [(u, v) for u, v, _ in cycle]
        cycles.append(cycle_edges)
        G.remove_edge(*cycle_edges[-1])

    if cycles:
        logger.warning(
            "Cross-links contain %d cycle(s); rendering is unaffected.",
            len(cycles),
        )
    return cycles


# =========================================================================
# Metrics
# =========================================================================


def compute_roadmap_metrics(index: NodeIndex) -> Dict[str, Any]:
    """Compute roadmap summary metrics.

    Returns dict with: total_nodes, root_count, max_depth,
    node_type_distribution, optional_count, cross_link_count,
    dangling_count, has_link_cycles, longest_link_chain,
    total_duration_by_unit.
    """
    type_counts: Counter = Counter()
    duration_by_unit: Dict[str, float] = defaultdict(float)
    optional = 0
    max_level = -1

    for node in index.iter_depth_first():
        type_counts[node.node_type] += 1
        if node.is_optional:
            optional += 1
        if node.level > max_level:
            max_level = node.level
        if node.estimated_duration is not None:
            duration_by_unit[node.estimated_duration.unit] += (
                node.estimated_duration.value
            )

    links = list(_iter_links(index))
    dangling = sum(1 for src, _, _ in links if src not in index)

    G = build_link_graph(index)
    has_cycles = any(src == tgt for src, tgt, _ in links if src in index)
    has_cycles = has_cycles or not nx.is_directed_acyclic_graph(G)
    longest_chain = 0
    if not has_cycles and G.number_of_edges() > 0:
        longest_chain = nx.dag_longest_path_length(G)

    return {
        "total_nodes": len(index),
        "root_count": len(index.roots),
        "max_depth": max_level + 1 if max_level >= 0 else 0,
        "node_type_distribution": dict(type_counts),
        "optional_count": optional,
        "cross_link_count": len(links),
        "dangling_count": dangling,
        "has_link_cycles": has_cycles,
        "longest_link_chain": longest_chain,
        "total_duration_by_unit": dict(duration_by_unit),
    }
