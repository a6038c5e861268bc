"""Canvas graph schema definitions using Pydantic models.

Two shapes of the same graph live here:

- The authored graph (AuthoredGraph) as edited on the canvas. It carries UI
  metadata such as positions and styles that the runtime never looks at.
- The compiled execution artifact (ExecutionArtifact) produced by the
  compiler. It is frozen, keyed by node id, and indexed for O(1) lookups
  by the edge walker.
"""

from enum import Enum
from typing import Any

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class NodeKind(str, Enum):
    """Closed set of node kinds on a canvas"""

    WORKER = "worker"  # Delegates to a registered worker subtype
    UX = "ux"  # Waits for a human to complete it
    SPLITTER = "splitter"  # Fans an array out to downstream nodes
    COLLECTOR = "collector"  # Joins all upstream outputs into a list
    SECTION = "section"  # Structural grouping, no work
    ITEM = "item"  # Canvas item, no work

    @property
    def requires_worker_type(self) -> bool:
        return self is NodeKind.WORKER

    @property
    def waits_for_user(self) -> bool:
        return self is NodeKind.UX

    @property
    def completes_on_entry(self) -> bool:
        """Kinds with no work of their own complete as soon as they fire."""
        return self in (NodeKind.SECTION, NodeKind.ITEM)

    @property
    def runs_per_item(self) -> bool:
        """Kinds that run once per array element when a splitter feeds them."""
        return self not in (NodeKind.SPLITTER, NodeKind.COLLECTOR)


class EdgeKind(str, Enum):
    """Edge semantics at runtime"""

    JOURNEY = "journey"  # Entity physically moves along the edge
    SYSTEM = "system"  # Fires a side-effecting integration, no movement


class FieldType(str, Enum):
    """Declared types for node inputs and outputs"""

    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    ANY = "any"


class EntityType(str, Enum):
    """Business classification of an entity"""

    LEAD = "lead"
    CUSTOMER = "customer"
    CHURNED = "churned"


class InputField(BaseModel):
    """Declared node input"""

    type: FieldType = FieldType.ANY
    required: bool = False
    default: Any = None
    description: str | None = None


class OutputField(BaseModel):
    """Declared node output"""

    type: FieldType = FieldType.ANY
    description: str | None = None


class MovementAction(BaseModel):
    set_entity_type: EntityType


class EntityMovement(BaseModel):
    """How a node reclassifies its entity when it finishes."""

    on_success: MovementAction | None = None
    on_failure: MovementAction | None = None


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class AuthoredNode(BaseModel):
    """Node as authored on the canvas"""

    id: str
    kind: NodeKind
    worker_type: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: dict[str, InputField] = Field(default_factory=dict)
    outputs: dict[str, OutputField] = Field(default_factory=dict)
    entity_movement: EntityMovement | None = None

    # UI metadata for the canvas editor, never reaches the runtime
    position: Position | None = None
    style: dict[str, Any] | None = None
    label: str | None = None
    width: float | None = None
    height: float | None = None
    parent_id: str | None = None

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        if not v or not v.strip():
            raise ValueError("Node ID cannot be empty")
        return v


class AuthoredEdge(BaseModel):
    """Directed edge between two canvas nodes"""

    id: str
    source: str  # Source node ID
    target: str  # Target node ID
    kind: EdgeKind = EdgeKind.JOURNEY
    mapping: dict[str, str] | None = None  # target input name -> source output path
    system_action: str | None = None  # e.g. crm_sync, only meaningful on system edges
    config: dict[str, Any] = Field(default_factory=dict)

    # UI metadata
    label: str | None = None
    style: dict[str, Any] | None = None


class AuthoredGraph(BaseModel):
    """Complete canvas definition as edited by a user"""

    nodes: list[AuthoredNode] = Field(default_factory=list)
    edges: list[AuthoredEdge] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_ids(self) -> "AuthoredGraph":
        """Node and edge ids key every downstream lookup, so duplicates are rejected."""
        seen_nodes: set[str] = set()
        for node in self.nodes:
            if node.id in seen_nodes:
                raise ValueError(f"Duplicate node ID: '{node.id}'")
            seen_nodes.add(node.id)

        seen_edges: set[str] = set()
        for edge in self.edges:
            if edge.id in seen_edges:
                raise ValueError(f"Duplicate edge ID: '{edge.id}'")
            seen_edges.add(edge.id)
        return self

    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def get_node(self, node_id: str) -> AuthoredNode | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def to_networkx(self) -> nx.MultiDiGraph:
        """Convert to a NetworkX graph for analysis (parallel edges preserved)"""
        G = nx.MultiDiGraph()
        for node in self.nodes:
            G.add_node(node.id, kind=node.kind.value)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target, key=edge.id, kind=edge.kind.value)
        return G

    def analyze_levels(self) -> list[list[str]]:
        """Nodes grouped by topological generation, empty if the graph has a cycle"""
        try:
            return [sorted(level) for level in nx.topological_generations(self.to_networkx())]
        except nx.NetworkXUnfeasible:
            return []


# ========== Compiled Artifact ==========


class ExecutionNode(BaseModel):
    """Runtime view of a node: the authored node minus every UI field"""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: NodeKind
    worker_type: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: dict[str, InputField] = Field(default_factory=dict)
    outputs: dict[str, OutputField] = Field(default_factory=dict)
    entity_movement: EntityMovement | None = None


class CompactEdge(BaseModel):
    """Outbound edge as the walker sees it"""

    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    target: str
    kind: EdgeKind = EdgeKind.JOURNEY
    system_action: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)


def edge_key(source: str, target: str) -> str:
    return f"{source}->{target}"


class ExecutionArtifact(BaseModel):
    """Compiled, validated and indexed form of an authored graph.

    Every id referenced in adjacency, edge_data and outbound_edges is a key
    of nodes, and the node-id set equals the authored graph's node-id set.
    """

    model_config = ConfigDict(frozen=True)

    nodes: dict[str, ExecutionNode]
    adjacency: dict[str, list[str]]
    edge_data: dict[str, dict[str, str]] = Field(default_factory=dict)
    outbound_edges: dict[str, list[CompactEdge]] = Field(default_factory=dict)
    entry_nodes: list[str] = Field(default_factory=list)
    terminal_nodes: list[str] = Field(default_factory=list)

    def get_outbound(self, node_id: str) -> list[CompactEdge]:
        return list(self.outbound_edges.get(node_id, []))

    def get_mapping(self, source: str, target: str) -> dict[str, str] | None:
        return self.edge_data.get(edge_key(source, target))

    def upstream_of(self, node_id: str, kind: EdgeKind | None = None) -> list[str]:
        """Distinct source nodes with an edge into node_id, in adjacency order."""
        upstream: list[str] = []
        for source, edges in self.outbound_edges.items():
            for edge in edges:
                if edge.target != node_id or (kind is not None and edge.kind != kind):
                    continue
                if source not in upstream:
                    upstream.append(source)
        return upstream


# ========== Validation Errors ==========


class ValidationErrorKind(str, Enum):
    CYCLE = "cycle"
    MISSING_INPUT = "missing_input"
    INVALID_WORKER = "invalid_worker"
    INVALID_MAPPING = "invalid_mapping"


class GraphValidationError(BaseModel):
    """One structured compilation failure"""

    kind: ValidationErrorKind
    message: str
    node: str | None = None
    edge: str | None = None
    field: str | None = None

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"
