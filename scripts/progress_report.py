import json
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from roadmap_explorer.node_index import NodeIndex
from roadmap_explorer.progress_store import (
    compute_progress_stats,
    get_connection,
    get_node_statuses,
)

DB_PATH = "./data/progress.db"


def build_report(db_path, roadmap_path):
    with open(roadmap_path, "r", encoding="utf-8") as fh:
        payload = json.load(fh)
    header = payload.get("roadmap") or {}
    roadmap_id = header.get("_id") or header.get("id")
    index = NodeIndex.from_response(payload)

    con = get_connection(db_path)
    try:
        stats = compute_progress_stats(con, roadmap_id, index)
        statuses = get_node_statuses(con, roadmap_id)
    finally:
        con.close()

    lines = [
        "-" * 40,
        f"LEARNER PROGRESS: {header.get('title', roadmap_id)}",
        "-" * 40,
        f"Nodes:       {stats.total_nodes}",
        f"Completed:   {stats.completed_nodes} ({stats.completion_percentage:.1f}%)",
        f"In progress: {stats.in_progress_nodes}",
        f"Skipped:     {stats.skipped_nodes}",
        "",
        "Outline:",
    ]
    for node in index.iter_depth_first():
        mark = {"completed": "x", "in_progress": "~", "skipped": "-"}.get(
            statuses.get(node.id), " "
        )
        lines.append(f"  {'  ' * node.level}[{mark}] {node.title}")
    lines.append("-" * 40)
    return lines


def report(roadmap_path, db_path=DB_PATH):
    if not os.path.exists(db_path):
        print(f"Error: {db_path} not found.")
        return 1
    for line in build_report(db_path, roadmap_path):
        print(line)
    return 0


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: python scripts/progress_report.py ROADMAP_JSON [DB_PATH]")
        sys.exit(2)
    sys.exit(report(*sys.argv[1:3]))
