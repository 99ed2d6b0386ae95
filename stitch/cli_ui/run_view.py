"""Rich rendering for execution graphs, runs, versions and validation errors.

All user-controlled strings (node ids, outputs, messages) are escaped to
prevent Rich markup injection.
"""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from stitch.core.graph_schema import ExecutionGraph, NodeType, ValidationError
from stitch.core.models import FlowVersionMetadata, Run
from stitch.core.state import Event
from stitch.core.status import NodeStatus

NODE_STYLES = {
    NodeType.WORKER: ("[W]", "cyan"),
    NodeType.UX: ("[U]", "red"),
    NodeType.SPLITTER: ("[S]", "green"),
    NodeType.COLLECTOR: ("[C]", "blue"),
}

STATUS_TEXT = {
    "pending": "[dim]○ Pending[/]",
    "running": "[blue]⟳ Running[/]",
    "completed": "[green]✓ Completed[/]",
    "failed": "[red]✗ Failed[/]",
    "waiting_for_user": "[yellow]… Waiting for user[/]",
}


def _short(value: Any, width: int = 40) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    text = escape(text)
    return text if len(text) <= width else text[: width - 3] + "..."


class GraphRenderer:
    """Renders a compiled execution graph as topological levels or a tree."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _label(self, graph: ExecutionGraph, node_id: str, status: str | None = None) -> str:
        node = graph.nodes[node_id]
        symbol, color = NODE_STYLES.get(node.type, ("[ ]", "white"))
        detail = f" ({escape(node.worker_type)})" if node.worker_type else ""
        if status and status != NodeStatus.PENDING.value:
            return f"{symbol} {escape(node_id)}{detail} {STATUS_TEXT.get(status, escape(status))}"
        return f"[{color}]{symbol} {escape(node_id)}{detail}[/]"

    def render_levels(self, graph: ExecutionGraph) -> Table:
        """Nodes grouped by topological generation; a level's nodes can run together."""
        table = Table(title="Execution levels")
        table.add_column("Level", justify="right", style="dim")
        table.add_column("Nodes")
        for index, level in enumerate(graph.parallel_levels()):
            table.add_row(str(index), "  |  ".join(self._label(graph, node_id) for node_id in level))
        return table

    def render_as_tree(
        self, graph: ExecutionGraph, statuses: dict[str, str] | None = None
    ) -> Tree:
        tree = Tree("[bold]Execution graph[/]")
        for entry in graph.entry_nodes:
            self._add_node(tree, graph, entry, statuses or {}, visited=set())
        return tree

    def _add_node(
        self,
        parent: Tree,
        graph: ExecutionGraph,
        node_id: str,
        statuses: dict[str, str],
        visited: set[str],
    ) -> None:
        if node_id in visited:
            parent.add(f"[dim]↩ {escape(node_id)} (already shown)[/]")
            return
        visited.add(node_id)
        branch = parent.add(self._label(graph, node_id, statuses.get(node_id)))
        for child in graph.children(node_id):
            self._add_node(branch, graph, child, statuses, visited)


def render_run(run: Run, graph: ExecutionGraph | None = None) -> Table:
    """Node state table. Parallel instances are listed under their template."""
    table = Table(title=f"Run {escape(run.id)}")
    table.add_column("Node", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Output / error", max_width=50)

    for key in run.effective_keys():
        state = run.node_states[key]
        template_id, instance = run.resolve_key(key)
        node_type = ""
        if graph is not None and template_id in graph.nodes:
            node_type = graph.nodes[template_id].type.value
        label = f"  └ {escape(key)}" if instance is not None else escape(key)
        detail = f"[red]{_short(state.error, 50)}[/]" if state.error else _short(state.output, 50)
        table.add_row(label, node_type, STATUS_TEXT.get(state.status.value, state.status.value), detail)
    return table


def render_validation_errors(errors: list[ValidationError]) -> Table:
    table = Table(title=f"{len(errors)} validation error(s)", title_style="red bold")
    table.add_column("Type", style="yellow")
    table.add_column("Node / edge")
    table.add_column("Field")
    table.add_column("Message")
    for error in errors:
        table.add_row(
            error.type,
            escape(error.node or error.edge or ""),
            escape(error.field or ""),
            escape(error.message),
        )
    return table


def render_versions(versions: list[FlowVersionMetadata]) -> Table:
    table = Table(title="Versions (newest first)")
    table.add_column("Version", style="cyan")
    table.add_column("Created")
    table.add_column("Message")
    for version in versions:
        table.add_row(
            escape(version.id),
            version.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            escape(version.commit_message or ""),
        )
    return table


def render_timeline(events: list[Event]) -> Table:
    table = Table(title="Run timeline")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Time")
    table.add_column("Event", style="magenta")
    table.add_column("Node", style="cyan")
    table.add_column("Status")
    table.add_column("Details", max_width=50)
    for event in events:
        table.add_row(
            str(event.id),
            event.timestamp.strftime("%H:%M:%S.%f")[:-3],
            event.event_type.value,
            escape(event.node_key or ""),
            STATUS_TEXT.get(event.status or "", escape(event.status or "")),
            _short(event.payload, 50) if event.payload else "",
        )
    return table
