"""
View coordinator: turns user intents into commands and runs them one at
a time.

State only flows one way. Expansion changes return a relayout command,
the coordinator runs the layout pass and hands the result to its
listeners. Commands issued by a listener while a command is running are
queued and run afterwards, so layout passes never interleave.
"""

import logging
import sqlite3
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import ValidationError

from roadmap_explorer import progress_store
from roadmap_explorer.channel import PROGRESS_TOPIC, ProgressChannel
from roadmap_explorer.config import ExplorerConfig
from roadmap_explorer.errors import (
    GenerationFailedError,
    InvalidPromptError,
    RoadmapExplorerError,
)
from roadmap_explorer.expansion import ExpansionStore, RelayoutRequested
from roadmap_explorer.generation_tracker import GenerationTracker
from roadmap_explorer.layout import layout, outline
from roadmap_explorer.models import (
    GenerationRequest,
    LayoutResult,
    NodeDetailRequest,
    OutlineRow,
    ProgressSnapshot,
    RoadmapSummary,
)
from roadmap_explorer.node_index import NodeIndex

logger = logging.getLogger(__name__)


# =========================================================================
# Commands
# =========================================================================


@dataclass(frozen=True)
class LoadRoadmap:
    payload: Any


@dataclass(frozen=True)
class ToggleNode:
    node_id: str


@dataclass(frozen=True)
class SelectNode:
    node_id: str


@dataclass(frozen=True)
class ExpandAll:
    pass


@dataclass(frozen=True)
class CollapseAll:
    pass


GenerateFn = Callable[[GenerationRequest], Any]


class ViewCoordinator:
    """Single owner of the command queue for one roadmap view."""

    def __init__(
        self,
        channel: Optional[ProgressChannel] = None,
        config: Optional[ExplorerConfig] = None,
        tracker: Optional[GenerationTracker] = None,
        progress_conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        self.config = config or ExplorerConfig()
        self.channel = channel or ProgressChannel()
        self.tracker = tracker or GenerationTracker(self.config.tracker)
        self.progress_conn = progress_conn

        self.index = NodeIndex()
        self.expansion = ExpansionStore(self.index, self.config.expansion)
        self.roadmap: Optional[RoadmapSummary] = None
        self.last_layout: Optional[LayoutResult] = None
        self._statuses: Dict[str, str] = {}

        self._queue: Deque[Any] = deque()
        self._draining = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._last_status: Optional[str] = None

        self._layout_listeners: List[Callable[[LayoutResult], None]] = []
        self._select_listeners: List[Callable[[NodeDetailRequest], None]] = []
        self._progress_listeners: List[Callable[[ProgressSnapshot], None]] = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_layout(self, callback: Callable[[LayoutResult], None]) -> None:
        self._layout_listeners.append(callback)

    def on_select(self, callback: Callable[[NodeDetailRequest], None]) -> None:
        self._select_listeners.append(callback)

    def on_progress(self, callback: Callable[[ProgressSnapshot], None]) -> None:
        self._progress_listeners.append(callback)

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    def load_roadmap(self, payload: Any) -> None:
        self.dispatch(LoadRoadmap(payload))

    def toggle(self, node_id: str) -> None:
        self.dispatch(ToggleNode(node_id))

    def select(self, node_id: str) -> None:
        self.dispatch(SelectNode(node_id))

    def expand_all(self) -> None:
        self.dispatch(ExpandAll())

    def collapse_all(self) -> None:
        self.dispatch(CollapseAll())

    def outline(self) -> List[OutlineRow]:
        return outline(self.index, self.expansion)

    def dispatch(self, command: Any) -> None:
        """Queue *command*; run the queue unless it is already running."""
        self._queue.append(command)
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                self._handle(self._queue.popleft())
        finally:
            self._draining = False

    def _handle(self, command: Any) -> None:
        if isinstance(command, LoadRoadmap):
            self._load(command.payload)
        elif isinstance(command, ToggleNode):
            request = self.expansion.toggle(command.node_id)
            if request is not None:
                self._queue.append(request)
        elif isinstance(command, ExpandAll):
            self._queue.append(self.expansion.expand_all())
        elif isinstance(command, CollapseAll):
            self._queue.append(self.expansion.collapse_all())
        elif isinstance(command, SelectNode):
            self._select(command.node_id)
        elif isinstance(command, RelayoutRequested):
            self._relayout()
        else:
            logger.warning("Ignoring unknown command %r.", command)

    def _load(self, payload: Any) -> None:
        self.index = NodeIndex.from_response(payload)
        header = payload.get("roadmap") if isinstance(payload, dict) else None
        self.roadmap = None
        if isinstance(header, dict):
            try:
                self.roadmap = RoadmapSummary.model_validate(header)
            except ValidationError:
                logger.warning("Roadmap header is malformed; ignoring it.")
        roadmap_id = self.roadmap.id if self.roadmap else None
        if self.expansion.bind_roadmap(roadmap_id, self.index):
            logger.info("Active roadmap is now %s.", roadmap_id)
        self._statuses = self._load_statuses(roadmap_id)
        self._queue.append(RelayoutRequested(reason="load"))

    def _select(self, node_id: str) -> None:
        node = self.index.get(node_id)
        if node is None:
            logger.warning("Selection ignored for unknown node %s.", node_id)
            return
        snapshot = node.snapshot()
        snapshot["resources"] = [r.model_dump(by_alias=True) for r in node.resources]
        if node_id in self._statuses:
            snapshot["status"] = self._statuses[node_id]
        request = NodeDetailRequest(node_id=node_id, snapshot=snapshot)
        for callback in self._select_listeners:
            callback(request)

    def _relayout(self) -> None:
        result = layout(
            self.index, self.expansion, config=self.config.layout,
            statuses=self._statuses,
        )
        self.last_layout = result
        for callback in self._layout_listeners:
            callback(result)

    # ------------------------------------------------------------------
    # Learner progress
    # ------------------------------------------------------------------

    def _load_statuses(self, roadmap_id: Optional[str]) -> Dict[str, str]:
        if self.progress_conn is None or roadmap_id is None:
            return {}
        return progress_store.get_node_statuses(self.progress_conn, roadmap_id)

    def set_node_status(self, node_id: str, status: str) -> None:
        """Record a learner status for *node_id* and relayout."""
        if self.progress_conn is None or self.roadmap is None:
            raise RoadmapExplorerError("No progress store or roadmap is attached.")
        progress_store.set_node_status(
            self.progress_conn, self.roadmap.id, node_id, status
        )
        self._statuses[node_id] = status
        self.dispatch(RelayoutRequested(reason="status", node_id=node_id))

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def submit_generation(
        self,
        prompt: str,
        generate: GenerateFn,
        is_community_contributed: bool = False,
    ) -> Any:
        """Start a generation session and call the external pipeline.

        Progress messages published on the channel while the pipeline runs
        are applied under the new session's token. The returned roadmap is
        loaded into the view if the session is still current.
        """
        if not prompt or not prompt.strip():
            raise InvalidPromptError(
                "Please enter a description of what you want to learn"
            )
        request = GenerationRequest(
            prompt=prompt.strip(),
            is_community_contributed=is_community_contributed,
        )

        token = self.tracker.start_session()
        self._subscribe(token)
        self._publish_snapshot()

        try:
            response = generate(request)
        except Exception as exc:
            logger.error("Generation request failed: %s", exc, exc_info=True)
            if self.tracker.fail(token, str(exc) or "Failed to generate roadmap"):
                self._publish_snapshot()
            raise GenerationFailedError(str(exc), token) from exc

        if token == self.tracker.token and response is not None:
            self.load_roadmap(response)
        return response

    def _subscribe(self, token: int) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()

        def _on_message(message: Dict[str, Any]) -> None:
            if self.tracker.handle_message(token, message):
                self._publish_snapshot()

        self._unsubscribe = self.channel.subscribe(PROGRESS_TOPIC, _on_message)

    def poll(self) -> ProgressSnapshot:
        """Apply due deferred transitions; notify listeners on change."""
        snapshot = self.tracker.current_snapshot()
        if snapshot.status != self._last_status:
            self._publish_snapshot(snapshot)
        return snapshot

    def _publish_snapshot(self, snapshot: Optional[ProgressSnapshot] = None) -> None:
        snapshot = snapshot or self.tracker.current_snapshot()
        self._last_status = snapshot.status
        for callback in self._progress_listeners:
            callback(snapshot)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        """Unsubscribe from the channel and drop the generation session."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.tracker.reset()
        self._queue.clear()
        logger.debug("View coordinator disposed.")
