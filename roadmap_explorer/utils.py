"""
Utility helpers for Roadmap Explorer.

Provides:
- Structured logging configuration with timestamps.
- A ``timed`` context manager for stage timing.
- JSON / JSON-lines readers for the CLIs.
"""

import contextlib
import json
import logging
import time
from typing import Any, Dict, Generator, List

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def setup_logging(
    level: int = logging.INFO,
    fmt: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt: str = "%Y-%m-%dT%H:%M:%S%z",
) -> None:
    """Configure the root logger with timestamped structured output."""
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt, force=True)


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def timed(label: str) -> Generator[None, None, None]:
    """Context manager that logs elapsed wall-clock time for *label*."""
    t0 = time.monotonic()
    try:
        yield
    finally:
        elapsed = time.monotonic() - t0
        logger.debug("⏱  %s completed in %.4fs.", label, elapsed)


# ---------------------------------------------------------------------------
# File readers
# ---------------------------------------------------------------------------


def read_json(path: str) -> Any:
    """Load a JSON document from *path*."""
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


def read_jsonl(path: str) -> List[Dict[str, Any]]:
    """Load a JSON-lines file, skipping blank and unparsable lines."""
    records: List[Dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as exc:
                logger.warning("Skipping line %d of %s: %s", lineno, path, exc)
    return records
