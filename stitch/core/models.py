"""Runtime records: flows, versions, runs, entities and journey events.

Uses Pydantic so records round-trip through SQLite JSON columns unchanged.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from stitch.core.graph_schema import AuthoredGraph, EdgeKind, EntityType, ExecutionArtifact


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class NodeRunStatus(str, Enum):
    """Status of one node inside one run."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING_FOR_USER = "waiting_for_user"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Status of a run, derived from its node states."""

    RUNNING = "running"
    WAITING = "waiting"  # Suspended on a ux node
    COMPLETED = "completed"
    FAILED = "failed"


class JourneyEventType(str, Enum):
    ENTERED_NODE = "entered_node"
    STARTED_EDGE = "started_edge"
    CONVERTED = "converted"
    CHURNED = "churned"


# --- Flows and versions ---


class Flow(BaseModel):
    id: str
    name: str
    current_version_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class FlowVersionMetadata(BaseModel):
    """Version summary without the graph blobs, for listings."""

    id: str
    flow_id: str
    commit_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class FlowVersion(FlowVersionMetadata):
    """Immutable snapshot pairing an authored graph with its compiled artifact."""

    authored_graph: AuthoredGraph
    execution_artifact: ExecutionArtifact


# --- Runs ---


class NodeState(BaseModel):
    status: NodeRunStatus = NodeRunStatus.PENDING
    output: Any = None
    error: str | None = None
    input: dict[str, Any] | None = None  # Explicit input kept for retries and split instances


class TriggerDescriptor(BaseModel):
    """What started a run."""

    type: Literal["manual", "webhook", "api", "cli"] = "manual"
    source: str | None = None
    event_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class Run(BaseModel):
    """One execution of a flow, pinned to a version for its whole life."""

    id: str
    flow_id: str
    version_id: str
    entity_id: str | None = None
    trigger: TriggerDescriptor = Field(default_factory=TriggerDescriptor)
    status: RunStatus = RunStatus.RUNNING
    node_states: dict[str, NodeState] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def status_of(self, node_id: str) -> NodeRunStatus:
        state = self.node_states.get(node_id)
        return state.status if state else NodeRunStatus.PENDING


# --- Entities ---


class AtNode(BaseModel):
    """Entity resting at a node."""

    kind: Literal["at_node"] = "at_node"
    node_id: str


class Traveling(BaseModel):
    """Entity in transit along an edge."""

    kind: Literal["traveling"] = "traveling"
    edge_id: str
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    destination_node_id: str


EntityPosition = Annotated[AtNode | Traveling, Field(discriminator="kind")]


class Entity(BaseModel):
    id: str
    canvas_id: str
    name: str
    email: str | None = None  # Natural key for webhook ingestion
    entity_type: EntityType = EntityType.LEAD
    metadata: dict[str, Any] = Field(default_factory=dict)
    position: EntityPosition
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class JourneyEvent(BaseModel):
    """Immutable entry of the journey log."""

    id: int | None = None
    entity_id: str
    event_type: JourneyEventType
    node_id: str | None = None
    edge_id: str | None = None
    progress: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


# --- Edge walking ---


class EdgeOutcome(BaseModel):
    """Result of firing one outbound edge, reported as data, never raised."""

    edge_id: str
    kind: EdgeKind
    source: str
    target: str
    success: bool
    action: str | None = None  # System action tag for system edges
    moved_entity: bool = False
    error: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
