"""
Learner progress store: per-node status for each roadmap, in SQLite.

Provides:
- ``migrate_progress`` — create the ``NodeProgress`` table with indexes.
- Status writes with started/completed timestamps.
- Status reads and aggregate completion stats against a node index.
"""

import logging
import os
import sqlite3
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from roadmap_explorer.models import PROGRESS_STATUSES, NodeProgressRecord, ProgressStats
from roadmap_explorer.node_index import NodeIndex

logger = logging.getLogger(__name__)

# =========================================================================
# Schema
# =========================================================================

_CREATE_NODE_PROGRESS = """\
CREATE TABLE IF NOT EXISTS NodeProgress (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    roadmap_id    TEXT    NOT NULL,
    node_id       TEXT    NOT NULL,
    status        TEXT    NOT NULL CHECK(status IN ('not_started','in_progress',
                                                    'completed','skipped')),
    started_at    TIMESTAMP,
    completed_at  TIMESTAMP,
    notes         TEXT,
    updated_at    TIMESTAMP,
    UNIQUE(roadmap_id, node_id)
);
"""

_CREATE_IDX_ROADMAP = """\
CREATE INDEX IF NOT EXISTS idx_progress_roadmap
    ON NodeProgress(roadmap_id);
"""


# =========================================================================
# Connection + migration
# =========================================================================


def get_connection(db_path: str) -> sqlite3.Connection:
    """Return a new SQLite connection with WAL mode and row-factory enabled."""
    os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    return conn


def migrate_progress(db_path: str) -> None:
    """Create (or verify) the ``NodeProgress`` table + index."""
    conn = get_connection(db_path)
    try:
        conn.execute(_CREATE_NODE_PROGRESS)
        conn.execute(_CREATE_IDX_ROADMAP)
        conn.commit()
        logger.info("Progress migration OK at %s", os.path.abspath(db_path))
    finally:
        conn.close()


# =========================================================================
# Lock-retry helper
# =========================================================================

_SQLITE_LOCK_RETRIES = 5
_SQLITE_LOCK_BASE_DELAY = 0.1


def _retry_on_lock(fn, *args, **kwargs):  # type: ignore[no-untyped-def]
    """Wrap *fn* with SQLite-lock retry."""
    for attempt in range(1, _SQLITE_LOCK_RETRIES + 1):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc).lower() and attempt < _SQLITE_LOCK_RETRIES:
                delay = _SQLITE_LOCK_BASE_DELAY * (2 ** (attempt - 1))
                logger.warning(
                    "SQLite locked (attempt %d/%d), retrying in %.2fs",
                    attempt, _SQLITE_LOCK_RETRIES, delay,
                )
                time.sleep(delay)
            else:
                raise


# =========================================================================
# Writes
# =========================================================================


def set_node_status(
    conn: sqlite3.Connection,
    roadmap_id: str,
    node_id: str,
    status: str,
    notes: Optional[str] = None,
) -> NodeProgressRecord:
    """Upsert the status of one node and return the stored record.

    ``started_at`` is set the first time a node leaves ``not_started``;
    ``completed_at`` is set on ``completed`` and cleared otherwise.
    """
    if status not in PROGRESS_STATUSES:
        raise ValueError(f"Unknown progress status: {status!r}")

    now = datetime.now(timezone.utc).isoformat()
    started = now if status in ("in_progress", "completed") else None
    completed = now if status == "completed" else None

    def _do_upsert() -> None:
        conn.execute(
            """
            INSERT INTO NodeProgress
                (roadmap_id, node_id, status, started_at, completed_at,
                 notes, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(roadmap_id, node_id) DO UPDATE SET
                status       = excluded.status,
                started_at   = COALESCE(NodeProgress.started_at,
                                        excluded.started_at),
                completed_at = excluded.completed_at,
                notes        = COALESCE(excluded.notes, NodeProgress.notes),
                updated_at   = excluded.updated_at
            """,
            (roadmap_id, node_id, status, started, completed, notes, now),
        )
        conn.commit()

    _retry_on_lock(_do_upsert)
    record = get_node_progress(conn, roadmap_id, node_id)
    logger.debug("Node %s of roadmap %s → %s", node_id, roadmap_id, status)
    return record  # type: ignore[return-value]


def clear_roadmap_progress(conn: sqlite3.Connection, roadmap_id: str) -> int:
    """Delete every progress row of *roadmap_id*. Returns rows deleted."""
    def _do_delete() -> sqlite3.Cursor:
        cur = conn.execute(
            "DELETE FROM NodeProgress WHERE roadmap_id = ?", (roadmap_id,)
        )
        conn.commit()
        return cur

    cursor = _retry_on_lock(_do_delete)
    logger.info(
        "Cleared %d progress row(s) for roadmap %s.", cursor.rowcount, roadmap_id
    )
    return cursor.rowcount


# =========================================================================
# Reads
# =========================================================================


def get_node_progress(
    conn: sqlite3.Connection, roadmap_id: str, node_id: str
) -> Optional[NodeProgressRecord]:
    """Return the record for one node, or ``None``."""
    row = conn.execute(
        """SELECT roadmap_id, node_id, status, started_at, completed_at, notes
           FROM NodeProgress WHERE roadmap_id = ? AND node_id = ?""",
        (roadmap_id, node_id),
    ).fetchone()
    return NodeProgressRecord(**dict(row)) if row else None


def get_all_progress(
    conn: sqlite3.Connection, roadmap_id: str
) -> List[NodeProgressRecord]:
    rows = conn.execute(
        """SELECT roadmap_id, node_id, status, started_at, completed_at, notes
           FROM NodeProgress WHERE roadmap_id = ? ORDER BY id""",
        (roadmap_id,),
    ).fetchall()
    return [NodeProgressRecord(**dict(r)) for r in rows]


def get_node_statuses(conn: sqlite3.Connection, roadmap_id: str) -> Dict[str, str]:
    """Return ``{node_id: status}`` for *roadmap_id*."""
    rows = conn.execute(
        "SELECT node_id, status FROM NodeProgress WHERE roadmap_id = ?",
        (roadmap_id,),
    ).fetchall()
    return {r["node_id"]: r["status"] for r in rows}


def compute_progress_stats(
    conn: sqlite3.Connection, roadmap_id: str, index: NodeIndex
) -> ProgressStats:
    """Aggregate statuses over the nodes currently in *index*.

    Rows for nodes no longer in the roadmap are ignored.
    """
    statuses = get_node_statuses(conn, roadmap_id)
    stats = ProgressStats(total_nodes=len(index))
    for node_id, status in statuses.items():
        if node_id not in index:
            continue
        if status == "completed":
            stats.completed_nodes += 1
        elif status == "in_progress":
            stats.in_progress_nodes += 1
        elif status == "skipped":
            stats.skipped_nodes += 1
    if stats.total_nodes:
        stats.completion_percentage = round(
            stats.completed_nodes / stats.total_nodes * 100, 2
        )
    return stats
