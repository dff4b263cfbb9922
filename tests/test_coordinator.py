"""
pytest suite for the view coordinator and the progress channel.

The external generation pipeline is replaced by plain functions that
publish progress messages on the channel before returning a roadmap.
"""

import copy
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from roadmap_explorer import progress_store
from roadmap_explorer.channel import PROGRESS_TOPIC, ProgressChannel
from roadmap_explorer.coordinator import ViewCoordinator
from roadmap_explorer.errors import (
    GenerationFailedError,
    InvalidPromptError,
    RoadmapExplorerError,
)


# =========================================================================
# Fixtures
# =========================================================================


@pytest.fixture()
def sample_payload():
    path = os.path.join(os.path.dirname(__file__), "sample_roadmap.json")
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


@pytest.fixture()
def channel():
    return ProgressChannel()


@pytest.fixture()
def coordinator(channel):
    return ViewCoordinator(channel=channel)


@pytest.fixture()
def layouts(coordinator):
    received = []
    coordinator.on_layout(received.append)
    return received


@pytest.fixture()
def snapshots(coordinator):
    received = []
    coordinator.on_progress(received.append)
    return received


# =========================================================================
# Test: Channel
# =========================================================================


class TestChannel:
    def test_publish_in_subscription_order(self, channel):
        seen = []
        channel.subscribe("t", lambda m: seen.append(("a", m["n"])))
        channel.subscribe("t", lambda m: seen.append(("b", m["n"])))
        assert channel.publish("t", {"n": 1}) == 2
        assert seen == [("a", 1), ("b", 1)]

    def test_unsubscribe(self, channel):
        seen = []
        unsubscribe = channel.subscribe("t", seen.append)
        unsubscribe()
        unsubscribe()
        channel.publish("t", {"n": 1})
        assert seen == []
        assert channel.subscriber_count("t") == 0

    def test_failing_handler_does_not_block_others(self, channel):
        seen = []

        def _boom(message):
            raise RuntimeError("handler bug")

        channel.subscribe("t", _boom)
        channel.subscribe("t", seen.append)
        assert channel.publish("t", {"n": 1}) == 1
        assert seen == [{"n": 1}]


# =========================================================================
# Test: Layout intents
# =========================================================================


class TestLayoutIntents:
    def test_load_emits_layout(self, coordinator, layouts, sample_payload):
        coordinator.load_roadmap(sample_payload)
        assert len(layouts) == 1
        assert len(layouts[0].visual_nodes) == 8
        assert coordinator.roadmap.id == "rm-web"
        assert coordinator.last_layout is layouts[0]

    def test_toggle_relayouts(self, coordinator, layouts, sample_payload):
        coordinator.load_roadmap(sample_payload)
        coordinator.toggle("n-found")
        assert len(layouts) == 2
        assert "n-git" not in layouts[1].node_ids()

    def test_unknown_toggle_no_relayout(self, coordinator, layouts, sample_payload):
        coordinator.load_roadmap(sample_payload)
        coordinator.toggle("ghost")
        assert len(layouts) == 1

    def test_reentrant_toggle_is_queued(self, coordinator, sample_payload):
        depth = {"current": 0, "max": 0}
        passes = []

        def _listener(result):
            depth["current"] += 1
            depth["max"] = max(depth["max"], depth["current"])
            passes.append(result.node_ids())
            if len(passes) == 1:
                coordinator.toggle("n-front")
            depth["current"] -= 1

        coordinator.on_layout(_listener)
        coordinator.load_roadmap(sample_payload)
        assert depth["max"] == 1
        assert len(passes) == 2
        assert "n-react" not in passes[1]

    def test_expand_and_collapse_all(self, coordinator, layouts, sample_payload):
        coordinator.load_roadmap(sample_payload)
        coordinator.collapse_all()
        assert layouts[-1].node_ids() == ["n-front", "n-found", "n-cap"]
        coordinator.expand_all()
        assert len(layouts[-1].visual_nodes) == 8

    def test_new_roadmap_resets_expansion(self, coordinator, layouts, sample_payload):
        coordinator.load_roadmap(sample_payload)
        coordinator.toggle("n-found")
        other = copy.deepcopy(sample_payload)
        other["roadmap"]["_id"] = "rm-other"
        coordinator.load_roadmap(other)
        assert "n-git" in layouts[-1].node_ids()

    def test_reload_same_roadmap_keeps_expansion(self, coordinator, layouts, sample_payload):
        coordinator.load_roadmap(sample_payload)
        coordinator.toggle("n-found")
        coordinator.load_roadmap(copy.deepcopy(sample_payload))
        assert "n-git" not in layouts[-1].node_ids()

    def test_outline_follows_expansion(self, coordinator, sample_payload):
        coordinator.load_roadmap(sample_payload)
        coordinator.toggle("n-front")
        assert [r.id for r in coordinator.outline()][:2] == ["n-front", "n-found"]


# =========================================================================
# Test: Selection
# =========================================================================


class TestSelection:
    def test_select_emits_detail_request(self, coordinator, sample_payload):
        requests = []
        coordinator.on_select(requests.append)
        coordinator.load_roadmap(sample_payload)
        coordinator.select("n-html")
        assert len(requests) == 1
        assert requests[0].node_id == "n-html"
        snap = requests[0].snapshot
        assert snap["title"] == "HTML Basics"
        assert snap["resources"][0]["title"] == "MDN HTML"

    def test_select_unknown_is_ignored(self, coordinator, sample_payload):
        requests = []
        coordinator.on_select(requests.append)
        coordinator.load_roadmap(sample_payload)
        coordinator.select("ghost")
        assert requests == []


# =========================================================================
# Test: Generation
# =========================================================================


class TestGeneration:
    def test_generation_flow(self, coordinator, channel, layouts, snapshots, sample_payload):
        requests = []

        def _generate(request):
            requests.append(request.to_payload())
            channel.publish(PROGRESS_TOPIC, {"step": "searching", "progress": 10})
            channel.publish(PROGRESS_TOPIC, {"step": "analyzing", "progress": 30})
            channel.publish(PROGRESS_TOPIC, {"step": "complete", "progress": 100})
            return sample_payload

        result = coordinator.submit_generation("  learn web dev  ", _generate)

        assert result is sample_payload
        assert requests == [{"userPrompt": "learn web dev", "isCommunityContributed": False}]
        assert [s.step_key for s in snapshots] == [
            "searching", "searching", "analyzing", "complete",
        ]
        assert snapshots[-1].percentage == 100.0
        assert snapshots[-1].terminal == "complete"
        assert len(layouts) == 1

    def test_blank_prompt_rejected(self, coordinator):
        with pytest.raises(InvalidPromptError):
            coordinator.submit_generation("   ", lambda r: None)
        assert coordinator.tracker.token == 0

    def test_pipeline_failure(self, coordinator, snapshots):
        def _generate(request):
            raise ConnectionError("upstream unavailable")

        with pytest.raises(GenerationFailedError) as exc:
            coordinator.submit_generation("rust", _generate)
        assert exc.value.token == 1
        assert snapshots[-1].terminal == "failed"
        assert snapshots[-1].error == "upstream unavailable"

    def test_fatal_event_fails_session(self, coordinator, channel, snapshots):
        def _generate(request):
            channel.publish(PROGRESS_TOPIC, {"step": "searching", "progress": 5,
                                             "error": "Checking similarity..."})
            channel.publish(PROGRESS_TOPIC, {"step": "generating", "progress": 70,
                                             "error": "Generation timed out"})
            return None

        coordinator.submit_generation("go", _generate)
        assert snapshots[1].status == "running"
        assert snapshots[-1].status == "failed"

    def test_events_from_old_session_dropped(self, coordinator, channel, snapshots):
        def _first(request):
            channel.publish(PROGRESS_TOPIC, {"step": "analyzing", "progress": 30})
            return None

        coordinator.submit_generation("first", _first)
        coordinator.submit_generation("second", lambda r: None)
        before = coordinator.tracker.current_snapshot()

        # Only the second session's handler is still subscribed.
        assert channel.subscriber_count(PROGRESS_TOPIC) == 1
        # A message applied under the old token is discarded.
        assert coordinator.tracker.handle_message(
            1, {"step": "finalizing", "progress": 95}
        ) is False
        assert coordinator.tracker.current_snapshot() == before
        assert before.token == 2
        assert before.percentage == 0.0

    def test_dispose_unsubscribes(self, coordinator, channel, snapshots):
        coordinator.submit_generation("topic", lambda r: None)
        assert channel.subscriber_count(PROGRESS_TOPIC) == 1
        coordinator.dispose()
        assert channel.subscriber_count(PROGRESS_TOPIC) == 0

        count = len(snapshots)
        channel.publish(PROGRESS_TOPIC, {"step": "analyzing", "progress": 30})
        assert len(snapshots) == count
        assert coordinator.tracker.current_snapshot().status == "idle"

    def test_poll_reports_idle_transition(self, channel, sample_payload):
        now = {"t": 0.0}
        from roadmap_explorer.generation_tracker import GenerationTracker

        tracker = GenerationTracker(clock=lambda: now["t"])
        coordinator = ViewCoordinator(channel=channel, tracker=tracker)
        snapshots = []
        coordinator.on_progress(snapshots.append)

        def _generate(request):
            channel.publish(PROGRESS_TOPIC, {"step": "complete", "progress": 100})
            return None

        coordinator.submit_generation("x", _generate)
        count = len(snapshots)
        assert coordinator.poll().status == "complete"
        assert len(snapshots) == count

        now["t"] = 2.0
        assert coordinator.poll().status == "idle"
        assert snapshots[-1].status == "idle"


# =========================================================================
# Test: Learner progress
# =========================================================================


class TestLearnerProgress:
    @pytest.fixture()
    def conn(self, tmp_path):
        db_path = str(tmp_path / "progress.db")
        progress_store.migrate_progress(db_path)
        conn = progress_store.get_connection(db_path)
        yield conn
        conn.close()

    def test_statuses_flow_into_layout(self, channel, conn, sample_payload):
        progress_store.set_node_status(conn, "rm-web", "n-html", "completed")
        coordinator = ViewCoordinator(channel=channel, progress_conn=conn)
        layouts = []
        coordinator.on_layout(layouts.append)
        coordinator.load_roadmap(sample_payload)

        nodes = {n.id: n for n in layouts[-1].visual_nodes}
        assert nodes["n-html"].payload["status"] == "completed"

        coordinator.set_node_status("n-git", "in_progress")
        nodes = {n.id: n for n in layouts[-1].visual_nodes}
        assert nodes["n-git"].payload["status"] == "in_progress"
        assert progress_store.get_node_statuses(conn, "rm-web")["n-git"] == "in_progress"

    def test_status_without_store_raises(self, coordinator, sample_payload):
        coordinator.load_roadmap(sample_payload)
        with pytest.raises(RoadmapExplorerError):
            coordinator.set_node_status("n-git", "completed")
