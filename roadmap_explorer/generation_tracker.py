"""
Generation progress tracker: an ordered-step state machine fed by push
events from the roadmap-generation pipeline.

Usage::

    python -m roadmap_explorer.generation_tracker \\
        --events tests/sample_events.jsonl

Steps advance ``searching → analyzing → researching → structuring →
generating → finalizing → complete``; ``failed`` is reachable from any
running state.

Every session carries a token. Events are applied only when their token
matches the current session, which is how a new submission cancels the
events still in flight for the previous one.
"""

import argparse
import json
import logging
import math
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from roadmap_explorer.config import TrackerConfig, load_config
from roadmap_explorer.errors import ConfigError
from roadmap_explorer.models import ProgressEvent, ProgressSnapshot
from roadmap_explorer.utils import read_jsonl, setup_logging

logger = logging.getLogger(__name__)

# =========================================================================
# Step sequence
# =========================================================================

STEPS = (
    ("searching", "Searching existing roadmaps"),
    ("analyzing", "Analyzing prompt"),
    ("researching", "Researching content"),
    ("structuring", "Structuring roadmap"),
    ("generating", "Generating details"),
    ("finalizing", "Finalizing roadmap"),
    ("complete", "Complete"),
)
STEP_KEYS = tuple(key for key, _ in STEPS)
STEP_LABELS = dict(STEPS)
_STEP_INDEX = {key: idx for idx, key in enumerate(STEP_KEYS)}

STALL_ERROR = "Generation stalled"


def step_index(step: str) -> Optional[int]:
    """Index of *step* in the fixed sequence, or ``None`` if unknown."""
    return _STEP_INDEX.get(step)


@dataclass
class GenerationProgress:
    """Mutable state of one generation session."""

    token: int = 0
    step_pointer: int = 0
    percentage: float = 0.0
    error: Optional[str] = None
    terminal: Optional[str] = None
    status: str = "idle"
    last_event_at: Optional[float] = None
    idle_deadline: Optional[float] = None


# =========================================================================
# Tracker
# =========================================================================


class GenerationTracker:
    """Owns the :class:`GenerationProgress` of the current session."""

    def __init__(
        self,
        config: Optional[TrackerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or TrackerConfig()
        self._clock = clock
        self._last_token = 0
        self._progress = GenerationProgress()

    @property
    def token(self) -> int:
        return self._progress.token

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(self) -> int:
        """Issue a new token and reset progress to the first step."""
        self._last_token += 1
        self._progress = GenerationProgress(
            token=self._last_token,
            status="running",
            last_event_at=self._clock(),
        )
        logger.info("Generation session %d started.", self._last_token)
        return self._last_token

    def reset(self) -> None:
        """Discard the current session (view teardown).

        The token is kept, so late events for it are still matched and
        then ignored because the session is no longer running.
        """
        self._progress = GenerationProgress(token=self._progress.token)

    def fail(self, token: int, reason: str) -> bool:
        """Force the session identified by *token* into ``failed``."""
        progress = self._progress
        if token != progress.token or progress.status != "running":
            return False
        self._mark_failed(reason)
        return True

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def is_fatal(self, error: str, severity: Optional[str] = None) -> bool:
        """Decide whether *error* ends the session.

        An explicit *severity* wins. Without one, errors containing any of
        the configured benign substrings are informational.
        """
        if severity is not None:
            return severity == "error"
        return not any(s in error for s in self.config.benign_error_substrings)

    def apply_event(
        self,
        token: int,
        step: str,
        percentage: float,
        error: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> bool:
        """Apply one progress event. Returns ``True`` if it changed state."""
        self.tick()
        progress = self._progress

        if token != progress.token:
            logger.debug(
                "Discarding stale event for session %d (current %d).",
                token, progress.token,
            )
            return False
        if progress.status != "running":
            logger.debug(
                "Ignoring event for session %d in state %s.",
                token, progress.status,
            )
            return False

        now = self._clock()
        progress.last_event_at = now

        try:
            value = float(percentage)
        except (TypeError, ValueError):
            value = math.nan
        if math.isfinite(value):
            progress.percentage = min(100.0, max(0.0, value))
        progress.error = error

        idx = step_index(step)
        if idx is None:
            logger.debug("Unknown progress step %r; pointer unchanged.", step)
        elif idx > progress.step_pointer:
            progress.step_pointer = idx

        if error and self.is_fatal(error, severity):
            self._mark_failed(error)
            return True

        if step == "complete" or progress.percentage >= 100.0:
            progress.status = "complete"
            progress.terminal = "complete"
            progress.idle_deadline = now + self.config.idle_grace_seconds
            logger.info("Generation session %d complete.", progress.token)
        return True

    def handle_message(self, token: int, message: Dict[str, Any]) -> bool:
        """Validate a raw channel message and apply it under *token*."""
        try:
            event = ProgressEvent.model_validate(message)
        except ValidationError as exc:
            logger.warning(
                "Dropping malformed progress message (%d error(s)): %r",
                exc.error_count(), message,
            )
            return False
        return self.apply_event(
            token, event.step, event.progress, event.error, event.severity
        )

    def _mark_failed(self, error: str) -> None:
        progress = self._progress
        progress.status = "failed"
        progress.terminal = "failed"
        progress.error = error
        progress.idle_deadline = None
        logger.warning("Generation session %d failed: %s", progress.token, error)

    # ------------------------------------------------------------------
    # Time-based transitions
    # ------------------------------------------------------------------

    def tick(self) -> None:
        """Apply any deferred transition that is now due."""
        progress = self._progress
        now = self._clock()

        if (
            progress.status == "complete"
            and progress.idle_deadline is not None
            and now >= progress.idle_deadline
        ):
            progress.status = "idle"
            progress.idle_deadline = None
            logger.debug("Generation session %d is idle.", progress.token)
            return

        stall = self.config.stall_timeout_seconds
        if (
            stall is not None
            and progress.status == "running"
            and progress.last_event_at is not None
            and now - progress.last_event_at >= stall
        ):
            self._mark_failed(STALL_ERROR)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def current_snapshot(self) -> ProgressSnapshot:
        self.tick()
        progress = self._progress
        key = STEP_KEYS[progress.step_pointer]
        return ProgressSnapshot(
            token=progress.token,
            step_pointer=progress.step_pointer,
            step_key=key,
            step_label=STEP_LABELS[key],
            percentage=progress.percentage,
            error=progress.error,
            terminal=progress.terminal,
            status=progress.status,
        )


# =========================================================================
# Replay
# =========================================================================


def replay_events(
    records, tracker: Optional[GenerationTracker] = None
) -> list:
    """Replay recorded channel messages and return every snapshot.

    A record ``{"new_session": true}`` starts a new session. A record may
    carry ``"token"`` to simulate an event from an earlier session;
    otherwise the current token is used. A session is started before the
    first event if the stream does not start one.
    """
    tracker = tracker or GenerationTracker()
    snapshots = []
    for record in records:
        if record.get("new_session"):
            tracker.start_session()
            continue
        if tracker.token == 0:
            tracker.start_session()
        token = record.get("token", tracker.token)
        message = {k: v for k, v in record.items() if k != "token"}
        tracker.handle_message(token, message)
        snapshots.append(tracker.current_snapshot())
    return snapshots


# =========================================================================
# CLI
# =========================================================================


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="python -m roadmap_explorer.generation_tracker",
        description="Replay a recorded generation progress stream.",
    )
    parser.add_argument("--events", required=True, help="JSON-lines file.")
    parser.add_argument(
        "--config", type=str, default=None,
        help="Apply a saved config JSON.",
    )
    return parser.parse_args(argv)


def main(argv=None):
    """CLI entry-point."""
    setup_logging()
    args = _parse_args(argv)

    try:
        config = load_config(args.config).tracker if args.config else None
    except ConfigError as exc:
        logger.error("%s", exc)
        sys.exit(2)

    try:
        records = read_jsonl(args.events)
    except OSError as exc:
        logger.error("Cannot read events %s: %s", args.events, exc)
        sys.exit(1)

    # Replays run instantly, so the idle grace never elapses mid-stream.
    snapshots = replay_events(records, GenerationTracker(config=config))
    for snap in snapshots:
        print(json.dumps(snap.model_dump()))

    final = snapshots[-1] if snapshots else None
    if final is not None:
        logger.info(
            "✅ Replay complete — %d event(s), final step=%s, %.0f%%, status=%s",
            len(snapshots), final.step_key, final.percentage, final.status,
        )
    sys.exit(0 if final is None or final.terminal != "failed" else 1)


if __name__ == "__main__":
    main()
