"""Graph schema definitions using Pydantic models.

Two shapes of the same workflow live here:

- The visual graph is what the canvas editor produces. It carries positions,
  styles and any other presentation data the UI wants to keep, and is never
  executed directly.
- The execution graph is the compiled, immutable form the engine runs. Nodes are
  indexed by id, children are looked up through an adjacency map and edge
  mappings are indexed by ``"source->target"``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator


class NodeType(str, Enum):
    """Supported node types on a canvas"""

    WORKER = "Worker"  # Delegates work to an external service
    UX = "UX"  # Waits for human input
    SPLITTER = "Splitter"  # Fans an array out into parallel instances
    COLLECTOR = "Collector"  # Fans parallel instances back in
    SECTION = "Section"  # Presentation only (canvas grouping box)
    SECTION_ITEM = "SectionItem"  # Presentation only (item inside a section)


# Node types that only exist for the canvas and never execute
PRESENTATION_NODE_TYPES = frozenset({NodeType.SECTION, NodeType.SECTION_ITEM})

SchemaType = Literal["string", "number", "object", "array", "boolean"]


class InputSchema(BaseModel):
    """Declared input of a node or worker type."""

    type: SchemaType = "string"
    required: bool = False
    description: str | None = None
    default: Any = None

    @property
    def has_default(self) -> bool:
        """True when a default was declared, even an explicit null."""
        return "default" in self.model_fields_set


class OutputSchema(BaseModel):
    """Declared output of a node or worker type."""

    type: SchemaType = "string"
    description: str | None = None


class EntityMovementAction(BaseModel):
    """Where to move the run's entity when a worker finishes."""

    model_config = ConfigDict(populate_by_name=True)

    target_section_id: str = Field(alias="targetSectionId")
    complete_as: Literal["success", "failure", "neutral"] = Field(alias="completeAs")
    set_entity_type: Literal["customer", "churned", "lead"] | None = Field(
        default=None, alias="setEntityType"
    )


class EntityMovementConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    on_success: EntityMovementAction | None = Field(default=None, alias="onSuccess")
    on_failure: EntityMovementAction | None = Field(default=None, alias="onFailure")


class NodeData(BaseModel):
    """Node payload. Unknown keys are presentation data and are kept verbatim."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    label: str | None = None
    worker_type: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: dict[str, InputSchema] | None = None
    outputs: dict[str, OutputSchema] | None = None
    entity_movement: EntityMovementConfig | None = Field(default=None, alias="entityMovement")


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class VisualNode(BaseModel):
    """Editable canvas node"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    type: NodeType
    position: Position = Field(default_factory=Position)
    data: NodeData = Field(default_factory=NodeData)

    # UI metadata (styling, sizing, nesting) for the visual editor
    style: dict[str, Any] | None = None
    width: float | None = None
    height: float | None = None
    parent_node: str | None = Field(default=None, alias="parentNode")

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        """Ids are kept byte-for-byte; only the empty id is rejected."""
        if not v:
            raise ValueError("Node id must be a non-empty string")
        return v


class EdgeData(BaseModel):
    model_config = ConfigDict(extra="allow")

    mapping: dict[str, str] | None = None  # target input name -> source output path


class VisualEdge(BaseModel):
    """Directed canvas edge with an optional data mapping"""

    model_config = ConfigDict(extra="allow")

    id: str
    source: str  # Source node ID
    target: str  # Target node ID
    data: EdgeData | None = None

    @property
    def mapping(self) -> dict[str, str]:
        if self.data and self.data.mapping:
            return self.data.mapping
        return {}


class VisualGraph(BaseModel):
    """Complete editable canvas graph"""

    nodes: list[VisualNode] = Field(default_factory=list)
    edges: list[VisualEdge] = Field(default_factory=list)

    def node_map(self) -> dict[str, VisualNode]:
        return {node.id: node for node in self.nodes}

    def canonical(self) -> Any:
        """JSON-compatible dump used for structural equality checks."""
        return self.model_dump(mode="json", exclude_none=True)


class ValidationError(BaseModel):
    """Structured validation problem reported by the validator."""

    type: Literal[
        "cycle",
        "missing_input",
        "invalid_worker",
        "invalid_mapping",
        "splitter_collector_mismatch",
        "invalid_entity_movement",
        "duplicate_node",
        "dangling_edge",
    ]
    message: str
    node: str | None = None
    edge: str | None = None
    field: str | None = None


# --- Execution graph ---


class ExecutionNode(BaseModel):
    """Node stripped of everything the runtime does not need"""

    model_config = ConfigDict(frozen=True)

    id: str
    type: NodeType
    worker_type: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: dict[str, InputSchema] | None = None
    outputs: dict[str, OutputSchema] | None = None
    entity_movement: EntityMovementConfig | None = None


class ExecutionGraph(BaseModel):
    """Compiled, immutable execution graph.

    ``adjacency`` has an entry (possibly empty) for every node. The reverse
    (upstream) index is derived once at construction and never persisted.
    """

    model_config = ConfigDict(frozen=True)

    nodes: dict[str, ExecutionNode]
    adjacency: dict[str, list[str]]
    edge_data: dict[str, dict[str, str]] = Field(default_factory=dict)
    entry_nodes: list[str] = Field(default_factory=list)
    terminal_nodes: list[str] = Field(default_factory=list)

    _upstream: dict[str, list[str]] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        upstream: dict[str, list[str]] = {node_id: [] for node_id in self.nodes}
        for source, targets in self.adjacency.items():
            for target in targets:
                upstream.setdefault(target, []).append(source)
        self._upstream = upstream

    @staticmethod
    def edge_key(source: str, target: str) -> str:
        return f"{source}->{target}"

    def children(self, node_id: str) -> list[str]:
        return self.adjacency.get(node_id, [])

    def parents(self, node_id: str) -> list[str]:
        """Upstream node ids in edge-iteration order."""
        return self._upstream.get(node_id, [])

    def mapping_for(self, source: str, target: str) -> dict[str, str]:
        return self.edge_data.get(self.edge_key(source, target), {})

    def is_terminal(self, node_id: str) -> bool:
        return not self.adjacency.get(node_id)

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        G.add_nodes_from(self.nodes)
        for source, targets in self.adjacency.items():
            for target in targets:
                G.add_edge(source, target)
        return G

    def parallel_levels(self) -> list[list[str]]:
        """Nodes grouped by topological generation (nodes in a level can run together)."""
        return [sorted(level) for level in nx.topological_generations(self._to_networkx())]

    def critical_path(self) -> list[str]:
        """Longest chain of dependent nodes"""
        return nx.dag_longest_path(self._to_networkx())
