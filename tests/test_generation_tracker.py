"""
pytest suite for the generation progress tracker.

Time is driven by a fake clock so the idle grace period and the stall
timeout are deterministic.
"""

import math
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from roadmap_explorer.config import TrackerConfig
from roadmap_explorer.generation_tracker import (
    STALL_ERROR,
    STEP_KEYS,
    GenerationTracker,
    main,
    replay_events,
    step_index,
)
from roadmap_explorer.utils import read_jsonl


# =========================================================================
# Helpers
# =========================================================================


class FakeClock:
    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def tracker(clock):
    return GenerationTracker(clock=clock)


# =========================================================================
# Test: Sessions
# =========================================================================


class TestSessions:
    def test_initial_snapshot_is_idle(self, tracker):
        snap = tracker.current_snapshot()
        assert snap.token == 0
        assert snap.status == "idle"
        assert snap.is_generating is False

    def test_tokens_increase(self, tracker):
        t1 = tracker.start_session()
        t2 = tracker.start_session()
        assert t2 > t1

    def test_start_resets_progress(self, tracker):
        t1 = tracker.start_session()
        tracker.apply_event(t1, "structuring", 60, "boom")
        t2 = tracker.start_session()
        snap = tracker.current_snapshot()
        assert snap.token == t2
        assert snap.step_pointer == 0
        assert snap.percentage == 0.0
        assert snap.error is None
        assert snap.terminal is None
        assert snap.is_generating is True

    def test_stale_token_discarded(self, tracker):
        t1 = tracker.start_session()
        t2 = tracker.start_session()
        tracker.apply_event(t2, "analyzing", 30)
        before = tracker.current_snapshot()

        assert tracker.apply_event(t1, "finalizing", 95) is False
        assert tracker.apply_event(t1, "failed", 10, "Generation timed out") is False
        assert tracker.current_snapshot() == before

    def test_reset_ignores_late_events(self, tracker):
        token = tracker.start_session()
        tracker.reset()
        assert tracker.apply_event(token, "analyzing", 30) is False
        assert tracker.current_snapshot().status == "idle"

    def test_fail_forces_failure(self, tracker):
        token = tracker.start_session()
        assert tracker.fail(token, "network down") is True
        snap = tracker.current_snapshot()
        assert snap.terminal == "failed"
        assert snap.error == "network down"
        assert tracker.fail(token, "again") is False


# =========================================================================
# Test: Step pointer
# =========================================================================


class TestStepPointer:
    def test_spec_sequence_completes(self, tracker):
        token = tracker.start_session()
        tracker.apply_event(token, "searching", 10)
        tracker.apply_event(token, "analyzing", 30)
        tracker.apply_event(token, "complete", 100)
        snap = tracker.current_snapshot()
        assert snap.step_key == "complete"
        assert snap.step_pointer == STEP_KEYS.index("complete")
        assert snap.percentage == 100.0
        assert snap.terminal == "complete"

    def test_pointer_never_moves_backward(self, tracker):
        token = tracker.start_session()
        tracker.apply_event(token, "structuring", 60)
        tracker.apply_event(token, "analyzing", 65, "Checking cache")
        snap = tracker.current_snapshot()
        assert snap.step_key == "structuring"
        assert snap.percentage == 65.0
        assert snap.error == "Checking cache"

    def test_unknown_step_keeps_pointer(self, tracker):
        token = tracker.start_session()
        tracker.apply_event(token, "researching", 40)
        assert tracker.apply_event(token, "warming-up", 42) is True
        snap = tracker.current_snapshot()
        assert snap.step_key == "researching"
        assert snap.percentage == 42.0

    @pytest.mark.parametrize("raw, expected", [(-5, 0.0), (250, 100.0), (37.5, 37.5)])
    def test_percentage_clamped(self, tracker, raw, expected):
        token = tracker.start_session()
        tracker.apply_event(token, "analyzing", raw)
        assert tracker.current_snapshot().percentage == expected

    def test_non_finite_percentage_keeps_previous(self, tracker):
        token = tracker.start_session()
        tracker.apply_event(token, "analyzing", 30)
        tracker.apply_event(token, "researching", math.nan)
        tracker.apply_event(token, "researching", "n/a")
        assert tracker.current_snapshot().percentage == 30.0

    def test_step_index(self):
        assert step_index("searching") == 0
        assert step_index("complete") == len(STEP_KEYS) - 1
        assert step_index("failed") is None


# =========================================================================
# Test: Errors
# =========================================================================


class TestErrors:
    def test_benign_error_does_not_fail(self, tracker):
        token = tracker.start_session()
        tracker.apply_event(token, "searching", 5, "Checking similarity...")
        snap = tracker.current_snapshot()
        assert snap.status == "running"
        assert snap.terminal is None

    def test_fatal_error_fails(self, tracker):
        token = tracker.start_session()
        tracker.apply_event(token, "generating", 70, "Generation timed out")
        snap = tracker.current_snapshot()
        assert snap.status == "failed"
        assert snap.terminal == "failed"
        assert snap.error == "Generation timed out"

    def test_failed_session_ignores_events(self, tracker):
        token = tracker.start_session()
        tracker.apply_event(token, "generating", 70, "Generation timed out")
        assert tracker.apply_event(token, "complete", 100) is False
        snap = tracker.current_snapshot()
        assert snap.terminal == "failed"
        assert snap.percentage == 70.0

    def test_new_session_recovers_from_failure(self, tracker):
        token = tracker.start_session()
        tracker.apply_event(token, "generating", 70, "Generation timed out")
        token = tracker.start_session()
        assert tracker.apply_event(token, "searching", 10) is True
        assert tracker.current_snapshot().status == "running"

    def test_error_cleared_by_later_event(self, tracker):
        token = tracker.start_session()
        tracker.apply_event(token, "searching", 5, "Searching library...")
        tracker.apply_event(token, "analyzing", 20)
        assert tracker.current_snapshot().error is None

    def test_severity_overrides_substrings(self, tracker):
        token = tracker.start_session()
        tracker.apply_event(token, "searching", 5, "Generation timed out", severity="warning")
        assert tracker.current_snapshot().status == "running"
        tracker.apply_event(token, "searching", 6, "Checking quota", severity="error")
        assert tracker.current_snapshot().status == "failed"

    def test_custom_benign_substrings(self, clock):
        tracker = GenerationTracker(
            TrackerConfig(benign_error_substrings=("retrying",)), clock=clock
        )
        token = tracker.start_session()
        tracker.apply_event(token, "analyzing", 20, "LLM busy, retrying")
        assert tracker.current_snapshot().status == "running"
        tracker.apply_event(token, "analyzing", 21, "Checking similarity...")
        assert tracker.current_snapshot().status == "failed"


# =========================================================================
# Test: Completion and timing
# =========================================================================


class TestTiming:
    def test_complete_then_idle_after_grace(self, tracker, clock):
        token = tracker.start_session()
        tracker.apply_event(token, "complete", 100)
        assert tracker.current_snapshot().status == "complete"

        clock.advance(0.5)
        assert tracker.current_snapshot().status == "complete"

        clock.advance(0.6)
        snap = tracker.current_snapshot()
        assert snap.status == "idle"
        assert snap.step_key == "complete"
        assert snap.percentage == 100.0

    def test_hundred_percent_completes(self, tracker):
        token = tracker.start_session()
        tracker.apply_event(token, "finalizing", 100)
        snap = tracker.current_snapshot()
        assert snap.terminal == "complete"
        assert snap.step_key == "finalizing"

    def test_old_deadline_does_not_clear_new_session(self, tracker, clock):
        token = tracker.start_session()
        tracker.apply_event(token, "complete", 100)
        token = tracker.start_session()
        clock.advance(5)
        assert tracker.current_snapshot().status == "running"

    def test_events_after_completion_ignored(self, tracker):
        token = tracker.start_session()
        tracker.apply_event(token, "complete", 100)
        assert tracker.apply_event(token, "generating", 80) is False
        assert tracker.current_snapshot().percentage == 100.0

    def test_stall_timeout(self, clock):
        tracker = GenerationTracker(
            TrackerConfig(stall_timeout_seconds=30), clock=clock
        )
        token = tracker.start_session()
        clock.advance(20)
        tracker.apply_event(token, "analyzing", 30)
        clock.advance(20)
        assert tracker.current_snapshot().status == "running"
        clock.advance(15)
        snap = tracker.current_snapshot()
        assert snap.status == "failed"
        assert snap.error == STALL_ERROR

    def test_no_stall_timeout_by_default(self, tracker, clock):
        tracker.start_session()
        clock.advance(10_000)
        assert tracker.current_snapshot().status == "running"


# =========================================================================
# Test: Channel messages and replay
# =========================================================================


class TestMessages:
    def test_valid_message(self, tracker):
        token = tracker.start_session()
        assert tracker.handle_message(token, {"step": "analyzing", "progress": 30}) is True
        assert tracker.current_snapshot().step_key == "analyzing"

    def test_malformed_message_dropped(self, tracker):
        token = tracker.start_session()
        assert tracker.handle_message(token, {"progress": 30}) is False
        assert tracker.handle_message(token, {"step": "x", "progress": "lots"}) is False
        assert tracker.handle_message(token, {"step": "x", "severity": "panic"}) is False
        assert tracker.current_snapshot().percentage == 0.0

    def test_replay_sample_stream(self):
        path = os.path.join(os.path.dirname(__file__), "sample_events.jsonl")
        snapshots = replay_events(read_jsonl(path))
        assert len(snapshots) == 7
        assert [s.step_key for s in snapshots] == list(STEP_KEYS)
        assert snapshots[-1].terminal == "complete"
        assert all(s.terminal != "failed" for s in snapshots)

    def test_replay_drops_stale_records(self):
        records = [
            {"step": "analyzing", "progress": 30},
            {"new_session": True},
            {"step": "searching", "progress": 5},
            {"token": 1, "step": "finalizing", "progress": 95},
        ]
        snapshots = replay_events(records)
        assert snapshots[-1].token == 2
        assert snapshots[-1].step_key == "searching"
        assert snapshots[-1].percentage == 5.0

    def test_cli_replay(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(
            "roadmap_explorer.generation_tracker.setup_logging", lambda: None
        )
        events = tmp_path / "events.jsonl"
        events.write_text(
            '{"step": "searching", "progress": 10}\n'
            '\n'
            '{"step": "generating", "progress": 70, "error": "Generation timed out"}\n',
            encoding="utf-8",
        )
        with pytest.raises(SystemExit) as exc:
            main(["--events", str(events)])
        assert exc.value.code == 1
        assert len(capsys.readouterr().out.strip().splitlines()) == 2
