"""Tests for rich rendering of graphs, runs, versions and events."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from rich.console import Console

from stitch.cli_ui.run_view import (
    GraphRenderer,
    render_run,
    render_timeline,
    render_validation_errors,
    render_versions,
)
from stitch.core.compiler import compile_graph
from stitch.core.graph_schema import ValidationError
from stitch.core.models import FlowVersionMetadata, NodeState, Run
from stitch.core.state import Event, EventType
from stitch.core.status import NodeStatus


@pytest.fixture
def console() -> Console:
    return Console(record=True, width=160)


def _text(console: Console, renderable) -> str:
    console.print(renderable)
    return console.export_text()


@pytest.fixture
def graph(builder, registry):
    return compile_graph(
        builder.splitter("S").worker("W").collector("C").chain("S", "W", "C").build(), registry
    ).execution_graph


class TestGraphRenderer:
    def test_levels(self, console, graph):
        text = _text(console, GraphRenderer(console).render_levels(graph))
        assert "[S] S" in text
        assert "[W] W (echo)" in text
        assert "[C] C" in text

    def test_tree_with_statuses(self, console, graph):
        tree = GraphRenderer(console).render_as_tree(graph, {"S": "completed"})
        text = _text(console, tree)
        assert "Completed" in text
        assert "W (echo)" in text


class TestTables:
    def test_run_lists_instances_under_template(self, console, graph):
        run = Run(
            id="run-1",
            flow_id="f",
            flow_version_id="v",
            node_states={
                "S": NodeState(status=NodeStatus.COMPLETED, output=[1, 2]),
                "W": NodeState(),
                "W_0": NodeState(status=NodeStatus.COMPLETED, output="[bold]x[/bold]"),
                "W_1": NodeState(status=NodeStatus.FAILED, error="boom"),
                "C": NodeState(),
            },
            parallel_instances={"W": [0, 1]},
        )
        text = _text(console, render_run(run, graph))
        assert "W_0" in text
        assert "W_1" in text
        assert "boom" in text
        assert "[bold]x[/bold]" in text  # user output is escaped, not styled

    def test_validation_errors(self, console):
        errors = [ValidationError(type="cycle", node="A", message="Graph contains a cycle: A -> A")]
        text = _text(console, render_validation_errors(errors))
        assert "1 validation error(s)" in text
        assert "cycle" in text

    def test_versions(self, console):
        versions = [
            FlowVersionMetadata(
                id="v-2", flow_id="f", commit_message="second", created_at=datetime(2026, 1, 2, tzinfo=UTC)
            )
        ]
        text = _text(console, render_versions(versions))
        assert "v-2" in text
        assert "2026-01-02" in text

    def test_timeline(self, console):
        events = [
            Event(id=1, event_type=EventType.RUN_STARTED, run_id="r"),
            Event(id=2, event_type=EventType.NODE_STATUS_CHANGED, run_id="r", node_key="A", status="running", payload={"from": "pending"}),
        ]
        text = _text(console, render_timeline(events))
        assert "run_started" in text
        assert "Running" in text
