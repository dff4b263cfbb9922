"""
Pydantic models for Roadmap Explorer.

Input: roadmap-detail payloads (nested nodes with cross-links).
Layout: visual nodes, visual edges, outline rows, layout results.
Generation: progress events, progress snapshots, generation requests.
Learner progress: per-node status records and aggregate stats.
"""

import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)


# =========================================================================
# Literals
# =========================================================================

NodeType = Literal["topic", "skill", "milestone", "project", "checkpoint", "group"]
NODE_TYPES = ("topic", "skill", "milestone", "project", "checkpoint", "group")

EdgeKind = Literal["hierarchy", "dependency", "prerequisite"]

Severity = Literal["info", "warning", "error"]

TerminalState = Literal["complete", "failed"]
TrackerStatus = Literal["idle", "running", "complete", "failed"]

ProgressStatus = Literal["not_started", "in_progress", "completed", "skipped"]
PROGRESS_STATUSES = ("not_started", "in_progress", "completed", "skipped")


class _WireModel(BaseModel):
    """Base for payloads coming off the wire (``_id`` keys, extra fields)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _LenientWireModel(_WireModel):
    """Wire model where an explicit ``null`` means "use the default"."""

    @model_validator(mode="before")
    @classmethod
    def _null_means_default(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        defaulted = set()
        for name, field in cls.model_fields.items():
            if not field.is_required():
                defaulted.add(name)
                if field.alias:
                    defaulted.add(field.alias)
        return {
            k: v for k, v in data.items()
            if not (v is None and k in defaulted)
        }


# =========================================================================
# Roadmap-detail input
# =========================================================================


class Duration(_WireModel):
    """An estimated duration such as ``3 weeks``."""

    value: float
    unit: str


class NodeRef(_LenientWireModel):
    """A ``{_id, title}`` cross-link to another node."""

    id: str = Field(alias="_id")
    title: str = ""


class NodeMetadata(_WireModel):
    difficulty: Optional[str] = None
    importance: Optional[str] = None


class Resource(_LenientWireModel):
    """A learning resource attached to a node. Only display fields are kept."""

    id: Optional[str] = Field(default=None, alias="_id")
    title: str = ""
    url: Optional[str] = None
    resource_type: Optional[str] = Field(default=None, alias="resourceType")
    difficulty: Optional[str] = None


def _coerce_refs(raw: Any, field_name: str) -> List[Any]:
    """Keep only reference entries that carry an id; bare strings are ids."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        logger.warning("Ignoring non-list %s value: %r", field_name, raw)
        return []
    refs: List[Any] = []
    for entry in raw:
        if isinstance(entry, str) and entry:
            refs.append({"_id": entry})
        elif isinstance(entry, NodeRef):
            refs.append(entry)
        elif isinstance(entry, dict) and (entry.get("_id") or entry.get("id")):
            refs.append(entry)
        else:
            logger.warning("Dropping malformed %s reference: %r", field_name, entry)
    return refs


class RoadmapNode(_LenientWireModel):
    """One node of the nested roadmap forest as delivered by the API."""

    id: str = Field(alias="_id")
    title: str = ""
    description: Optional[str] = None
    depth: Optional[int] = Field(default=None, ge=0)
    position: int = 0
    node_type: NodeType = Field(default="topic", alias="nodeType")
    is_optional: bool = Field(default=False, alias="isOptional")
    estimated_duration: Optional[Duration] = Field(
        default=None, alias="estimatedDuration"
    )
    resources: List[Resource] = Field(default_factory=list)
    dependencies: List[NodeRef] = Field(default_factory=list)
    prerequisites: List[NodeRef] = Field(default_factory=list)
    metadata: Optional[NodeMetadata] = None
    children: List["RoadmapNode"] = Field(default_factory=list)

    @field_validator("node_type", mode="before")
    @classmethod
    def _unknown_type_is_topic(cls, value: Any) -> Any:
        if value is None:
            return "topic"
        if value not in NODE_TYPES:
            logger.warning("Unknown nodeType %r treated as 'topic'.", value)
            return "topic"
        return value

    @field_validator("estimated_duration", mode="before")
    @classmethod
    def _incomplete_duration_is_none(cls, value: Any) -> Any:
        if isinstance(value, dict) and (
            value.get("value") is None or value.get("unit") is None
        ):
            logger.warning("Ignoring incomplete estimatedDuration: %r", value)
            return None
        return value

    @field_validator("dependencies", mode="before")
    @classmethod
    def _clean_dependencies(cls, value: Any) -> List[Any]:
        return _coerce_refs(value, "dependency")

    @field_validator("prerequisites", mode="before")
    @classmethod
    def _clean_prerequisites(cls, value: Any) -> List[Any]:
        return _coerce_refs(value, "prerequisite")

    @field_validator("resources", mode="before")
    @classmethod
    def _clean_resources(cls, value: Any) -> List[Any]:
        if value is None:
            return []
        if not isinstance(value, list):
            return []
        return [r for r in value if isinstance(r, (dict, Resource))]

    @field_validator("children", mode="before")
    @classmethod
    def _drop_invalid_children(cls, value: Any) -> List[Any]:
        """Validate children one by one so a bad child only loses itself."""
        if value is None:
            return []
        if not isinstance(value, list):
            logger.warning("Ignoring non-list children value: %r", value)
            return []
        children: List[Any] = []
        for raw in value:
            if isinstance(raw, RoadmapNode):
                children.append(raw)
                continue
            try:
                children.append(RoadmapNode.model_validate(raw))
            except ValidationError as exc:
                logger.warning(
                    "Skipping malformed child node: %s",
                    exc.errors()[0].get("msg") if exc.errors() else exc,
                )
        return children


class RoadmapSummary(_LenientWireModel):
    """The roadmap header that accompanies ``roadmapNodes``."""

    id: str = Field(alias="_id")
    title: str = ""
    slug: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    difficulty: Optional[str] = None
    estimated_duration: Optional[Duration] = Field(
        default=None, alias="estimatedDuration"
    )
    is_community_contributed: bool = Field(
        default=False, alias="isCommunityContributed"
    )


# =========================================================================
# Layout output
# =========================================================================


class EdgeStyle(BaseModel):
    """Rendering hints carried on a visual edge."""

    animated: bool = False
    dash_pattern: Optional[str] = None
    stroke: Optional[str] = None
    stroke_width: int = 2
    marker_end: str = "arrowclosed"

    @property
    def dashed(self) -> bool:
        return self.dash_pattern is not None


class VisualNode(BaseModel):
    id: str
    x: float
    y: float
    payload: Dict[str, Any] = Field(default_factory=dict)


class VisualEdge(BaseModel):
    id: str
    source: str
    target: str
    kind: EdgeKind
    style: EdgeStyle = Field(default_factory=EdgeStyle)


class LayoutResult(BaseModel):
    """Output of one layout pass."""

    visual_nodes: List[VisualNode] = Field(default_factory=list)
    visual_edges: List[VisualEdge] = Field(default_factory=list)
    subtree_height: float = 0.0
    visits: int = 0
    dropped_edges: int = 0

    def node_ids(self) -> List[str]:
        return [n.id for n in self.visual_nodes]


class OutlineRow(BaseModel):
    """One row of the indented list view."""

    id: str
    title: str
    level: int
    has_children: bool
    is_expanded: bool


class NodeDetailRequest(BaseModel):
    """Emitted when a node is selected; carries a snapshot for the dialog."""

    node_id: str
    snapshot: Dict[str, Any]


# =========================================================================
# Generation progress
# =========================================================================


class ProgressEvent(_WireModel):
    """A push message from the generation pipeline."""

    step: str
    progress: float = 0.0
    error: Optional[str] = None
    severity: Optional[Severity] = None


class ProgressSnapshot(BaseModel):
    """Read-only view of the tracker state."""

    model_config = ConfigDict(frozen=True)

    token: int
    step_pointer: int
    step_key: str
    step_label: str
    percentage: float
    error: Optional[str] = None
    terminal: Optional[TerminalState] = None
    status: TrackerStatus = "idle"

    @property
    def is_generating(self) -> bool:
        return self.status == "running"


class GenerationRequest(BaseModel):
    """Payload sent to the external generation pipeline."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(alias="userPrompt")
    is_community_contributed: bool = Field(
        default=False, alias="isCommunityContributed"
    )

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# =========================================================================
# Learner progress
# =========================================================================


class NodeProgressRecord(BaseModel):
    """Mirrors a single row of the ``NodeProgress`` table."""

    roadmap_id: str
    node_id: str
    status: ProgressStatus = "not_started"
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    notes: Optional[str] = None


class ProgressStats(BaseModel):
    total_nodes: int = 0
    completed_nodes: int = 0
    in_progress_nodes: int = 0
    skipped_nodes: int = 0
    completion_percentage: float = 0.0
