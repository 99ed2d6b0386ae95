"""Pure helpers over an execution graph and a run snapshot.

Nothing here touches the database; the engine passes in a freshly read run.
"""

from __future__ import annotations

from typing import Any

from stitch.core.graph_schema import ExecutionGraph, ExecutionNode, NodeType
from stitch.core.models import Run
from stitch.core.status import TERMINAL_STATUSES, NodeStatus


def upstream_node_ids(node_id: str, graph: ExecutionGraph) -> list[str]:
    """Direct upstream node ids, in edge order, from the graph's reverse index."""
    return graph.parents(node_id)


def is_source_satisfied(source_id: str, run: Run, accept_failed: bool = False) -> bool:
    """A fanned-out source is satisfied once every instance is terminal.

    A static source must be completed, or merely terminal when
    ``accept_failed`` is set (collectors treat a failed branch as finished).
    """
    if run.has_instances(source_id):
        return all(
            run.node_states[str(key)].status in TERMINAL_STATUSES
            for key in run.instance_keys(source_id)
        )

    state = run.state_of(source_id)
    if state is None:
        return False
    if state.status == NodeStatus.COMPLETED:
        return True
    return accept_failed and state.status == NodeStatus.FAILED


def are_dependencies_satisfied(node_id: str, graph: ExecutionGraph, run: Run) -> bool:
    """AND-join: every inbound source must be satisfied. No inbound edges = satisfied."""
    node = graph.nodes.get(node_id)
    accept_failed = node is not None and node.type == NodeType.COLLECTOR
    return all(
        is_source_satisfied(source, run, accept_failed)
        for source in upstream_node_ids(node_id, graph)
    )


def resolve_path(obj: Any, path: str) -> Any:
    """Follow a dotted path through dicts (and list indices). Missing -> None."""
    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current


def resolve_mapping_path(output: Any, path: str) -> Any:
    """Resolve an edge-mapping source path against a node's output.

    A leading ``output.`` segment names the output itself and is skipped,
    unless the output really has an ``output`` key.
    """
    if path.startswith("output.") and not (isinstance(output, dict) and "output" in output):
        path = path[len("output.") :]
    return resolve_path(output, path)


def apply_mapping(output: Any, mapping: dict[str, str]) -> dict[str, Any]:
    return {name: resolve_mapping_path(output, path) for name, path in mapping.items()}


def merge_upstream_outputs(node_id: str, graph: ExecutionGraph, run: Run) -> dict[str, Any]:
    """Build a node's input from its completed upstream sources.

    Per inbound edge, in edge order: a non-empty mapping picks values out of
    the source output; otherwise a dict output is shallow-merged and any other
    output is stored under the source id. Later sources overwrite earlier ones
    on key collisions. A fanned-out source contributes the list of its
    completed instance outputs. A ``None`` output is not a dict, so it lands
    under the source id too.
    """
    merged: dict[str, Any] = {}
    for source in upstream_node_ids(node_id, graph):
        mapping = graph.mapping_for(source, node_id)

        if run.has_instances(source):
            outputs = [
                run.node_states[str(key)].output
                for key in run.instance_keys(source)
                if run.node_states[str(key)].status == NodeStatus.COMPLETED
            ]
            if mapping:
                for name, path in mapping.items():
                    merged[name] = [resolve_mapping_path(o, path) for o in outputs]
            else:
                merged[source] = outputs
            continue

        state = run.state_of(source)
        if state is None or state.status != NodeStatus.COMPLETED:
            continue
        if mapping:
            merged.update(apply_mapping(state.output, mapping))
        elif isinstance(state.output, dict):
            merged.update(state.output)
        else:
            merged[source] = state.output
    return merged


def instance_input(seed: Any, mapping: dict[str, str]) -> Any:
    """Input for a parallel instance: its seeded element, mapped if the edge
    from the splitter carries a mapping."""
    if mapping:
        return apply_mapping(seed, mapping)
    return seed


def with_input_defaults(node: ExecutionNode, data: Any) -> Any:
    """Fill declared defaults for inputs the merge left unset."""
    if not node.inputs or not isinstance(data, dict):
        return data
    filled = dict(data)
    for name, schema in node.inputs.items():
        if name not in filled and schema.has_default:
            filled[name] = schema.default
    return filled
