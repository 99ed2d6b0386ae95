"""Graph validation.

``validate_graph`` is a pure function over a visual graph and the worker
registry. Every check runs and all errors are collected, so one call reports
everything wrong with a canvas. Nothing here raises for invalid graphs; the
only exception is a ``TypeError`` when no graph is passed at all.
"""

from __future__ import annotations

from collections import Counter

import networkx as nx

from stitch.core.graph_schema import (
    PRESENTATION_NODE_TYPES,
    InputSchema,
    NodeType,
    OutputSchema,
    ValidationError,
    VisualGraph,
    VisualNode,
)
from stitch.core.workers import WorkerRegistry

WHITE, GREY, BLACK = 0, 1, 2


def validate_graph(graph: VisualGraph, registry: WorkerRegistry) -> list[ValidationError]:
    """Validate a visual graph. Returns an empty list when the graph is valid."""
    if graph is None:
        raise TypeError("validate_graph() requires a graph, got None")

    errors: list[ValidationError] = []
    errors.extend(validate_structure(graph))
    errors.extend(detect_cycles(graph))
    errors.extend(validate_worker_types(graph, registry))
    errors.extend(validate_required_inputs(graph, registry))
    errors.extend(validate_edge_mappings(graph, registry))
    errors.extend(validate_splitter_collector_pairs(graph))
    errors.extend(validate_entity_movement(graph))
    return errors


def is_executable(node: VisualNode) -> bool:
    return node.type not in PRESENTATION_NODE_TYPES


def declared_inputs(node: VisualNode, registry: WorkerRegistry) -> dict[str, InputSchema] | None:
    """Inputs declared on the node, falling back to the worker definition.

    Returns None when nothing is declared anywhere.
    """
    if node.data.inputs is not None:
        return node.data.inputs
    if node.type == NodeType.WORKER and node.data.worker_type:
        definition = registry.get(node.data.worker_type)
        if definition is not None:
            return definition.input
    return None


def declared_outputs(node: VisualNode, registry: WorkerRegistry) -> dict[str, OutputSchema] | None:
    if node.data.outputs is not None:
        return node.data.outputs
    if node.type == NodeType.WORKER and node.data.worker_type:
        definition = registry.get(node.data.worker_type)
        if definition is not None:
            return definition.output
    return None


def build_adjacency(graph: VisualGraph) -> dict[str, list[str]]:
    """Adjacency over executable nodes only. Edges touching unknown or
    presentation-only nodes are left out."""
    adjacency: dict[str, list[str]] = {}
    for node in graph.nodes:
        if is_executable(node):
            adjacency.setdefault(node.id, [])
    for edge in graph.edges:
        if edge.source in adjacency and edge.target in adjacency:
            adjacency[edge.source].append(edge.target)
    return adjacency


def validate_structure(graph: VisualGraph) -> list[ValidationError]:
    """Duplicate node ids and edges pointing at nodes that do not exist."""
    errors = []
    counts = Counter(node.id for node in graph.nodes)
    for node_id, count in counts.items():
        if count > 1:
            errors.append(
                ValidationError(
                    type="duplicate_node",
                    node=node_id,
                    message=f'Node id "{node_id}" is used by {count} nodes',
                )
            )

    for edge in graph.edges:
        for end, node_id in (("source", edge.source), ("target", edge.target)):
            if node_id not in counts:
                errors.append(
                    ValidationError(
                        type="dangling_edge",
                        edge=edge.id,
                        node=node_id,
                        message=f'Edge "{edge.id}": {end} "{node_id}" not found',
                    )
                )
    return errors


def detect_cycles(graph: VisualGraph) -> list[ValidationError]:
    """Three-colour depth-first search.

    WHITE = unvisited, GREY = on the current path, BLACK = fully explored. An
    edge into a GREY node is a back edge and closes a cycle. Every root is tried
    so cycles in disconnected components are found, and every back edge is
    reported.
    """
    adjacency = build_adjacency(graph)
    color = dict.fromkeys(adjacency, WHITE)
    errors = []

    for root in adjacency:
        if color[root] != WHITE:
            continue

        color[root] = GREY
        path = [root]
        stack = [iter(adjacency[root])]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                color[path.pop()] = BLACK
                continue

            if color[child] == GREY:
                cycle = path[path.index(child) :] + [child]
                errors.append(
                    ValidationError(
                        type="cycle",
                        node=child,
                        message=(
                            f"Graph contains a cycle: {' -> '.join(cycle)}. "
                            f"This would cause infinite loops during execution."
                        ),
                    )
                )
            elif color[child] == WHITE:
                color[child] = GREY
                path.append(child)
                stack.append(iter(adjacency[child]))

    return errors


def validate_worker_types(graph: VisualGraph, registry: WorkerRegistry) -> list[ValidationError]:
    errors = []
    for node in graph.nodes:
        if node.type != NodeType.WORKER:
            continue

        worker_type = node.data.worker_type
        if worker_type:
            if worker_type not in registry:
                errors.append(
                    ValidationError(
                        type="invalid_worker",
                        node=node.id,
                        field=worker_type,
                        message=(
                            f'Unknown worker type: "{worker_type}" on node "{node.id}". '
                            f"Valid types: {', '.join(registry.types()) or '(none)'}"
                        ),
                    )
                )
        elif not node.data.config.get("webhook_url"):
            errors.append(
                ValidationError(
                    type="invalid_worker",
                    node=node.id,
                    message=(
                        f'Worker node "{node.id}" has neither a worker_type nor a '
                        f"config.webhook_url to dispatch to"
                    ),
                )
            )
    return errors


def validate_required_inputs(graph: VisualGraph, registry: WorkerRegistry) -> list[ValidationError]:
    """Required inputs need an explicit edge mapping or a declared default.

    A bare edge does not satisfy a required input: the engine cannot know which
    upstream key would fill it, and a silent null at runtime is worse than a
    rejected save.
    """
    mapped: dict[str, set[str]] = {}
    for edge in graph.edges:
        mapped.setdefault(edge.target, set()).update(edge.mapping)

    errors = []
    for node in graph.nodes:
        if not is_executable(node):
            continue
        inputs = declared_inputs(node, registry) or {}
        connected = mapped.get(node.id, set())
        for name, schema in inputs.items():
            if schema.required and name not in connected and not schema.has_default:
                errors.append(
                    ValidationError(
                        type="missing_input",
                        node=node.id,
                        field=name,
                        message=(
                            f'Required input "{name}" on node "{node.id}" has no explicit '
                            f"mapping or default value. Add an edge with data.mapping or "
                            f"provide a default."
                        ),
                    )
                )
    return errors


def validate_edge_mappings(graph: VisualGraph, registry: WorkerRegistry) -> list[ValidationError]:
    """Mapping targets must be declared inputs; source paths must be well formed
    and start at a declared output of the source node."""
    nodes = graph.node_map()
    errors = []

    for edge in graph.edges:
        if not edge.mapping:
            continue
        source = nodes.get(edge.source)
        target = nodes.get(edge.target)
        if source is None or target is None:
            continue  # reported as dangling_edge

        target_inputs = declared_inputs(target, registry)
        source_outputs = declared_outputs(source, registry)

        for input_name, source_path in edge.mapping.items():
            if target_inputs is not None and input_name not in target_inputs:
                errors.append(
                    ValidationError(
                        type="invalid_mapping",
                        edge=edge.id,
                        field=input_name,
                        message=(
                            f'Edge "{edge.id}" maps to non-existent input "{input_name}" '
                            f'on target node "{target.id}"'
                        ),
                    )
                )

            if not isinstance(source_path, str) or not source_path.strip():
                errors.append(
                    ValidationError(
                        type="invalid_mapping",
                        edge=edge.id,
                        field=input_name,
                        message=(
                            f'Edge "{edge.id}" has invalid source path for input '
                            f'"{input_name}": must be a non-empty string'
                        ),
                    )
                )
                continue

            parts = source_path.strip().split(".")
            if any(not part for part in parts):
                errors.append(
                    ValidationError(
                        type="invalid_mapping",
                        edge=edge.id,
                        field=input_name,
                        message=f'Edge "{edge.id}" has malformed source path "{source_path}"',
                    )
                )
                continue

            if source_outputs is not None:
                if parts[0] == "output" and len(parts) > 1:
                    parts = parts[1:]
                if parts[0] not in source_outputs:
                    errors.append(
                        ValidationError(
                            type="invalid_mapping",
                            edge=edge.id,
                            field=input_name,
                            message=(
                                f'Edge "{edge.id}" reads "{source_path}" but node '
                                f'"{source.id}" declares no output "{parts[0]}"'
                            ),
                        )
                    )
    return errors


def to_networkx(graph: VisualGraph) -> nx.DiGraph:
    """Executable nodes and the edges between them, with node types attached."""
    G = nx.DiGraph()
    for node in graph.nodes:
        if is_executable(node):
            G.add_node(node.id, type=node.type)
    for source, targets in build_adjacency(graph).items():
        for target in targets:
            G.add_edge(source, target)
    return G


def validate_splitter_collector_pairs(graph: VisualGraph) -> list[ValidationError]:
    G = to_networkx(graph)
    collectors = {n for n, t in G.nodes(data="type") if t == NodeType.COLLECTOR}
    errors = []

    for node_id, node_type in G.nodes(data="type"):
        if node_type == NodeType.SPLITTER:
            if G.out_degree(node_id) == 0:
                errors.append(
                    ValidationError(
                        type="splitter_collector_mismatch",
                        node=node_id,
                        message=(
                            f'Splitter node "{node_id}" has no downstream connections. '
                            f"Splitters must connect to at least one node."
                        ),
                    )
                )
            elif not nx.descendants(G, node_id) & collectors:
                errors.append(
                    ValidationError(
                        type="splitter_collector_mismatch",
                        node=node_id,
                        message=(
                            f'Splitter node "{node_id}" does not connect to any Collector node. '
                            f"Splitters must eventually connect to a Collector to merge "
                            f"parallel paths."
                        ),
                    )
                )
        elif node_type == NodeType.COLLECTOR and G.in_degree(node_id) == 0:
            errors.append(
                ValidationError(
                    type="splitter_collector_mismatch",
                    node=node_id,
                    message=(
                        f'Collector node "{node_id}" has no upstream connections. '
                        f"Collectors must have at least one upstream node."
                    ),
                )
            )
    return errors


def validate_entity_movement(graph: VisualGraph) -> list[ValidationError]:
    sections = {node.id for node in graph.nodes if node.type == NodeType.SECTION}
    errors = []
    for node in graph.nodes:
        movement = node.data.entity_movement
        if movement is None:
            continue
        for outcome, action in (("on_success", movement.on_success), ("on_failure", movement.on_failure)):
            if action is not None and action.target_section_id not in sections:
                errors.append(
                    ValidationError(
                        type="invalid_entity_movement",
                        node=node.id,
                        field=outcome,
                        message=(
                            f'Node "{node.id}" moves entities to "{action.target_section_id}" '
                            f"{outcome}, which is not a Section node in this graph"
                        ),
                    )
                )
    return errors
