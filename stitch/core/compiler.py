"""Visual graph -> execution graph compiler."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from stitch.core.graph_schema import ExecutionGraph, ExecutionNode, ValidationError, VisualGraph
from stitch.core.validation import declared_inputs, declared_outputs, is_executable, validate_graph
from stitch.core.workers import WorkerRegistry

logger = logging.getLogger(__name__)


class CompileResult(BaseModel):
    success: bool
    execution_graph: ExecutionGraph | None = None
    errors: list[ValidationError] = Field(default_factory=list)


def compile_graph(graph: VisualGraph, registry: WorkerRegistry) -> CompileResult:
    """Validate and compile a visual graph.

    Returns a failed result carrying every validation error when the graph is
    invalid; no partial execution graph is ever produced. Compilation is
    deterministic: the same visual graph always yields an equal execution graph.
    """
    errors = validate_graph(graph, registry)
    if errors:
        logger.debug(f"Compilation rejected: {len(errors)} validation error(s)")
        return CompileResult(success=False, errors=errors)

    nodes: dict[str, ExecutionNode] = {}
    for node in graph.nodes:
        if not is_executable(node):
            continue
        nodes[node.id] = ExecutionNode(
            id=node.id,
            type=node.type,
            worker_type=node.data.worker_type,
            config=dict(node.data.config),
            inputs=declared_inputs(node, registry),
            outputs=declared_outputs(node, registry),
            entity_movement=node.data.entity_movement,
        )

    adjacency: dict[str, list[str]] = {node_id: [] for node_id in nodes}
    edge_data: dict[str, dict[str, str]] = {}
    has_inbound: set[str] = set()
    for edge in graph.edges:
        if edge.source not in nodes or edge.target not in nodes:
            continue  # edge touches a presentation-only node
        if edge.target not in adjacency[edge.source]:
            adjacency[edge.source].append(edge.target)
        key = ExecutionGraph.edge_key(edge.source, edge.target)
        edge_data[key] = {**edge_data.get(key, {}), **edge.mapping}
        has_inbound.add(edge.target)

    execution_graph = ExecutionGraph(
        nodes=nodes,
        adjacency=adjacency,
        edge_data=edge_data,
        entry_nodes=[node_id for node_id in nodes if node_id not in has_inbound],
        terminal_nodes=[node_id for node_id in nodes if not adjacency[node_id]],
    )
    logger.debug(
        f"Compiled graph: {len(nodes)} node(s), "
        f"{len(execution_graph.entry_nodes)} entry, {len(execution_graph.terminal_nodes)} terminal"
    )
    return CompileResult(success=True, execution_graph=execution_graph)
