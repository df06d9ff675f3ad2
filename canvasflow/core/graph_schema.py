"""Graph schema definitions using Pydantic models.

Two shapes live here:
- the authored (visual) graph, as saved by the canvas editor, including
  presentation attributes and non-execution nodes such as sections
- the compiled ExecutionGraph, stripped of presentation data and indexed for
  O(1) dependency lookups while a run is walked

Node identifiers are used verbatim as dictionary keys everywhere. They are
never rewritten, slugified or looked up as attributes.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class NodeKind(str, Enum):
    """Node kinds in canvas graphs"""

    WORKER = "worker"  # External unit of work, completes via callback
    HUMAN_GATE = "human_gate"  # Waits for a person to complete it
    SPLITTER = "splitter"  # Fans an array out into parallel paths
    COLLECTOR = "collector"  # Fans parallel paths back into one ordered array
    SECTION = "section"  # Canvas section, target of entity movement only
    GROUP = "group"  # Visual grouping only


EXECUTION_KINDS = frozenset(
    {NodeKind.WORKER, NodeKind.HUMAN_GATE, NodeKind.SPLITTER, NodeKind.COLLECTOR}
)


class EdgeType(str, Enum):
    """Edge types"""

    JOURNEY = "journey"  # Creates an execution dependency
    SYSTEM = "system"  # Traversed by the walker, never gates on completion


class NodeStatus(str, Enum):
    """Execution status for nodes"""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING_FOR_USER = "waiting_for_user"


class CompleteAs(str, Enum):
    """How an entity's arrival is recorded after a movement"""

    SUCCESS = "success"
    FAILURE = "failure"
    NEUTRAL = "neutral"


class EntityType(str, Enum):
    """Entity types a movement may relabel an entity to"""

    CUSTOMER = "customer"
    CHURNED = "churned"
    LEAD = "lead"


class ErrorKind(str, Enum):
    """Typed error kinds reported by the compiler and the engine"""

    # Compile time
    CYCLE = "cycle"
    DUPLICATE_NODE = "duplicate_node"
    INVALID_EDGE = "invalid_edge"
    INVALID_ENTITY_MOVEMENT = "invalid_entity_movement"
    INVALID_WORKER = "invalid_worker"
    INVALID_NODE_CONFIG = "invalid_node_config"
    INVALID_MAPPING = "invalid_mapping"
    MISSING_INPUT = "missing_input"
    SPLITTER_COLLECTOR_MISMATCH = "splitter_collector_mismatch"

    # Run time
    FIRING_ERROR = "firing_error"
    UPSTREAM_FAILED = "upstream_failed"
    INVALID_TRANSITION = "invalid_transition"


# ========== Authored Graph ==========


class MovementAction(BaseModel):
    """
    Where an entity goes when a worker reaches a terminal status.

    Values are kept as plain strings so the compiler can report invalid
    references as typed errors instead of failing at parse time.
    """

    target_section_id: str | None = None
    complete_as: str | None = None
    set_entity_type: str | None = None


class EntityMovement(BaseModel):
    """Result-movement rule attached to a worker node"""

    on_success: MovementAction | None = None
    on_failure: MovementAction | None = None


class InputSpec(BaseModel):
    """Declared input on a node"""

    required: bool = False
    default: Any = None
    description: str | None = None

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set


class Node(BaseModel):
    """Authored graph node with kind-specific configuration"""

    id: str
    type: NodeKind
    worker_type: str | None = None  # Registered worker, otherwise webhook_url in config
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: dict[str, InputSpec] = Field(default_factory=dict)
    entity_movement: EntityMovement | None = None

    # Presentation only, stripped at compile time
    label: str | None = None
    position: dict[str, float] | None = None
    style: dict[str, Any] | None = None
    parent_id: str | None = None


class Edge(BaseModel):
    """Directed edge between nodes with optional data mapping"""

    id: str = ""
    source: str
    target: str
    type: EdgeType = EdgeType.JOURNEY
    mapping: dict[str, Any] | None = None  # target input -> dot path into source output

    @model_validator(mode="after")
    def default_id(self) -> "Edge":
        if not self.id:
            self.id = edge_key(self.source, self.target)
        return self


class VisualGraph(BaseModel):
    """Graph as authored on the canvas"""

    id: str
    name: str | None = None
    description: str | None = None
    nodes: list[Node]
    edges: list[Edge] = Field(default_factory=list)


def edge_key(source: str, target: str) -> str:
    """Key used to index edge-attached data."""
    return f"{source}->{target}"


# ========== Execution Graph ==========


class ExecutionNode(BaseModel):
    """Node stripped of presentation attributes"""

    id: str
    type: NodeKind
    worker_type: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: dict[str, InputSpec] = Field(default_factory=dict)
    entity_movement: EntityMovement | None = None


class OutboundEdge(BaseModel):
    """Entry in the adjacency index"""

    target: str
    type: EdgeType = EdgeType.JOURNEY


class ExecutionGraph(BaseModel):
    """
    Compiled, immutable-per-run graph.

    adjacency holds all outbound edges, inbound_edges only journey sources.
    Both keep authored edge order, which is the iteration order used when
    merging upstream outputs.

    parallel_regions maps each splitter to the template nodes instantiated
    once per parallel path: everything reachable over journey edges, up to
    but excluding collectors.
    """

    nodes: dict[str, ExecutionNode]
    adjacency: dict[str, list[OutboundEdge]]
    inbound_edges: dict[str, list[str]]
    edge_data: dict[str, dict[str, Any]] = Field(default_factory=dict)
    entry_nodes: list[str]
    terminal_nodes: list[str]
    parallel_regions: dict[str, list[str]] = Field(default_factory=dict)

    def mapping_for(self, source: str, target: str) -> dict[str, Any] | None:
        return self.edge_data.get(edge_key(source, target))

    def region_owner(self, node_id: str) -> str | None:
        """Splitter whose parallel region contains node_id."""
        for splitter_id, members in self.parallel_regions.items():
            if node_id in members:
                return splitter_id
        return None

    def is_parallel_source(self, node_id: str) -> bool:
        """True for splitters and region templates, whose outputs live on augmented ids."""
        if node_id in self.parallel_regions:
            return True
        return self.region_owner(node_id) is not None

    def region_collectors(self, splitter_id: str) -> list[str]:
        """Collectors that close the parallel region of splitter_id."""
        members = [splitter_id, *self.parallel_regions.get(splitter_id, [])]
        collectors: list[str] = []
        for member in members:
            for edge in self.adjacency.get(member, []):
                if edge.type != EdgeType.JOURNEY or edge.target in collectors:
                    continue
                if self.nodes[edge.target].type == NodeKind.COLLECTOR:
                    collectors.append(edge.target)
        return collectors


# ========== Runs ==========


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class NodeState(BaseModel):
    """State of one node (or augmented parallel instance) in a run"""

    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: str | None = None


class Run(BaseModel):
    """One execution of a compiled graph"""

    id: str
    graph_id: str
    entity_id: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)  # Merged input of entry nodes
    node_states: dict[str, NodeState] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def status_of(self, node_id: str) -> NodeStatus | None:
        state = self.node_states.get(node_id)
        return state.status if state else None


class WorkerCallback(BaseModel):
    """Completion report from a work unit"""

    status: Literal["completed", "failed"]
    output: Any = None
    error: str | None = None
