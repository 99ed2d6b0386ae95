"""CLI entry point for the Stitch workflow engine.

Commands:
- stitch validate: Validate a visual graph file
- stitch compile: Compile a graph and show its execution structure
- stitch flow create: Create a flow
- stitch version create/list: Save and list flow versions
- stitch run start/status/callback/resume/retry/reconcile/timeline: Drive runs
- stitch watch: Time out workers that never call back
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler

from stitch import __version__
from stitch.cli_ui.run_view import (
    GraphRenderer,
    render_run,
    render_timeline,
    render_validation_errors,
    render_versions,
)
from stitch.core.compiler import compile_graph
from stitch.core.config import ConfigError, EngineConfig, load_config
from stitch.core.dispatch import WebhookDispatcher
from stitch.core.engine import RunOrchestrator
from stitch.core.graph_schema import VisualGraph
from stitch.core.models import TriggerMetadata, WorkerCallback
from stitch.core.state import Database, FlowNotFoundError, RunNotFoundError, VersionNotFoundError
from stitch.core.status import StatusTransitionError
from stitch.core.versions import GraphValidationFailure, VersionStore
from stitch.core.watchdog import RunWatchdog
from stitch.core.workers import WorkerRegistry, WorkerRegistryError

console = Console()

# Errors shown as a one-line message instead of a traceback
USER_ERRORS = (
    FlowNotFoundError,
    VersionNotFoundError,
    RunNotFoundError,
    StatusTransitionError,
    KeyError,
)


class _Services:
    """Components shared by every command, built lazily from the config."""

    def __init__(self, config: EngineConfig):
        self.config = config
        self._registry: WorkerRegistry | None = None
        self._db: Database | None = None

    @property
    def registry(self) -> WorkerRegistry:
        if self._registry is None:
            self._registry = self.config.load_registry()
        return self._registry

    @property
    def db(self) -> Database:
        if self._db is None:
            self._db = Database(self.config.db_path)
        return self._db

    @property
    def versions(self) -> VersionStore:
        return VersionStore(self.db, self.registry)

    def orchestrator(self) -> RunOrchestrator:
        dispatcher = WebhookDispatcher(self.registry, timeout=self.config.dispatch_timeout)
        return RunOrchestrator(self.db, self.versions, dispatcher, self.config)


def _fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


def _load_graph(path: str) -> VisualGraph:
    """Load a visual graph from a JSON or YAML file."""
    try:
        with open(path, encoding="utf-8") as f:
            if path.endswith(".json"):
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        console.print(f"[red]Error parsing graph file '{path}':[/red]")
        console.print(f"  {e}")
        sys.exit(1)

    if not isinstance(data, dict):
        _fail(f"Invalid graph file '{path}'. Expected a mapping, got {type(data).__name__}.")

    try:
        return VisualGraph.model_validate(data)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating graph schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {loc}: {err['msg']}")
        sys.exit(1)


def _parse_json(value: str | None, option: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint=option) from e


def _run_async(coro) -> Any:
    """Run an engine coroutine, turning expected failures into CLI errors."""
    try:
        return asyncio.run(coro)
    except USER_ERRORS as e:
        _fail(str(e))


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Config file (default: ./.stitch/config.yaml, then ~/.stitch/config.yaml)",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Stitch - visual workflow compiler and execution engine."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    try:
        config = load_config(config_path)
    except ConfigError as e:
        _fail(str(e))
    ctx.obj = _Services(config)


@main.command()
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def validate(services: _Services, graph_file: str) -> None:
    """Validate a visual graph against the worker registry."""
    graph = _load_graph(graph_file)
    try:
        result = compile_graph(graph, services.registry)
    except WorkerRegistryError as e:
        _fail(str(e))

    if not result.success:
        console.print(render_validation_errors(result.errors))
        sys.exit(1)
    console.print("[green]Graph is valid[/green]")
    console.print(f"  Nodes: {len(graph.nodes)}")
    console.print(f"  Edges: {len(graph.edges)}")


@main.command("compile")
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--levels", is_flag=True, help="Show parallel execution levels and critical path")
@click.option("--json", "as_json", is_flag=True, help="Print the execution graph as JSON")
@click.pass_obj
def compile_cmd(services: _Services, graph_file: str, levels: bool, as_json: bool) -> None:
    """Compile a visual graph into its execution graph."""
    result = compile_graph(_load_graph(graph_file), services.registry)
    if not result.success:
        console.print(render_validation_errors(result.errors))
        sys.exit(1)
    graph = result.execution_graph
    assert graph is not None

    if as_json:
        click.echo(graph.model_dump_json(indent=2))
        return

    renderer = GraphRenderer(console)
    console.print(renderer.render_as_tree(graph))
    console.print(f"Entry nodes: {', '.join(graph.entry_nodes)}")
    console.print(f"Terminal nodes: {', '.join(graph.terminal_nodes)}")
    if levels:
        console.print(renderer.render_levels(graph))
        console.print(f"Critical path: {' -> '.join(graph.critical_path())}")


# --- Flows & versions ---


@main.group()
def flow() -> None:
    """Manage flows."""
    pass


@flow.command("create")
@click.argument("name")
@click.option("--canvas-type", default="workflow", show_default=True)
@click.option("--parent", "parent_id", help="Parent flow ID")
@click.pass_obj
def flow_create(services: _Services, name: str, canvas_type: str, parent_id: str | None) -> None:
    """Create a flow."""
    created = services.versions.create_flow(name, canvas_type=canvas_type, parent_id=parent_id)
    console.print(f"[green]Created flow {created.id}[/green] ({name})")


@main.group()
def version() -> None:
    """Save and inspect flow versions."""
    pass


@version.command("create")
@click.argument("flow_id")
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--message", "-m", help="Commit message")
@click.pass_obj
def version_create(services: _Services, flow_id: str, graph_file: str, message: str | None) -> None:
    """Validate and save a graph as a new version of a flow."""
    graph = _load_graph(graph_file)
    try:
        version_id, _ = services.versions.create_version(flow_id, graph, message)
    except GraphValidationFailure as e:
        console.print(render_validation_errors(e.errors))
        sys.exit(1)
    except FlowNotFoundError as e:
        _fail(str(e))
    console.print(f"[green]Created version {version_id}[/green]")


@version.command("list")
@click.argument("flow_id")
@click.pass_obj
def version_list(services: _Services, flow_id: str) -> None:
    """List a flow's versions, newest first."""
    if services.versions.get_flow(flow_id) is None:
        _fail(f"Flow not found: {flow_id}")
    console.print(render_versions(services.versions.list_versions(flow_id)))


# --- Runs ---


@main.group()
def run() -> None:
    """Start and drive workflow runs."""
    pass


@run.command("start")
@click.argument("flow_id")
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--entity", "entity_id", help="Entity to attach to the run")
@click.option("--input", "input_json", help="Entry-node input as a JSON object")
@click.option(
    "--trigger",
    "trigger_type",
    type=click.Choice(["manual", "webhook", "api", "schedule"]),
    default="manual",
    show_default=True,
)
@click.pass_obj
def run_start(
    services: _Services,
    flow_id: str,
    graph_file: str,
    entity_id: str | None,
    input_json: str | None,
    trigger_type: str,
) -> None:
    """Run a graph, saving a new version first if it changed."""
    graph = _load_graph(graph_file)
    input_data = _parse_json(input_json, "--input")
    if input_data is not None and not isinstance(input_data, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--input")

    try:
        version_id = services.versions.auto_version_on_run(flow_id, graph)
    except GraphValidationFailure as e:
        console.print(render_validation_errors(e.errors))
        sys.exit(1)
    except FlowNotFoundError as e:
        _fail(str(e))

    orchestrator = services.orchestrator()
    started = _run_async(
        orchestrator.start_run(
            version_id,
            trigger=TriggerMetadata(type=trigger_type, source="cli"),
            entity_id=entity_id,
            input=input_data,
        )
    )
    console.print(f"[blue]Started run {started.id}[/blue] (version {version_id})")
    _print_run(services, started.id)


@run.command("status")
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, help="Print node statuses as JSON")
@click.pass_obj
def run_status(services: _Services, run_id: str, as_json: bool) -> None:
    """Show a run's node states."""
    if as_json:
        statuses = _run_async(services.orchestrator().get_run_status(run_id))
        click.echo(json.dumps(statuses, indent=2))
        return
    _print_run(services, run_id)


@run.command("callback")
@click.argument("run_id")
@click.argument("node_key")
@click.option("--status", type=click.Choice(["completed", "failed"]), required=True)
@click.option("--output", "output_json", help="Worker output as JSON")
@click.option("--error", help="Error message for a failed worker")
@click.pass_obj
def run_callback(
    services: _Services,
    run_id: str,
    node_key: str,
    status: str,
    output_json: str | None,
    error: str | None,
) -> None:
    """Report a worker result, as a worker's callback would."""
    callback = WorkerCallback(status=status, output=_parse_json(output_json, "--output"), error=error)
    _run_async(services.orchestrator().handle_callback(run_id, node_key, callback))
    _print_run(services, run_id)


@run.command("resume")
@click.argument("run_id")
@click.argument("node_key")
@click.option("--input", "input_json", required=True, help="User input as JSON")
@click.pass_obj
def run_resume(services: _Services, run_id: str, node_key: str, input_json: str) -> None:
    """Submit user input to a waiting UX node."""
    user_input = _parse_json(input_json, "--input")
    _run_async(services.orchestrator().submit_user_input(run_id, node_key, user_input))
    _print_run(services, run_id)


@run.command("retry")
@click.argument("run_id")
@click.argument("node_key")
@click.pass_obj
def run_retry(services: _Services, run_id: str, node_key: str) -> None:
    """Re-fire a failed node."""
    _run_async(services.orchestrator().retry_node(run_id, node_key))
    _print_run(services, run_id)


@run.command("reconcile")
@click.argument("run_id")
@click.pass_obj
def run_reconcile(services: _Services, run_id: str) -> None:
    """Fire nodes left ready by an interrupted run."""
    _run_async(services.orchestrator().reconcile_run(run_id))
    _print_run(services, run_id)


@run.command("timeline")
@click.argument("run_id")
@click.pass_obj
def run_timeline(services: _Services, run_id: str) -> None:
    """Show the run's event log."""
    if services.db.get_run(run_id) is None:
        _fail(f"Run not found: {run_id}")
    console.print(render_timeline(services.db.get_run_events(run_id)))


def _print_run(services: _Services, run_id: str) -> None:
    current = services.db.get_run(run_id)
    if current is None:
        _fail(f"Run not found: {run_id}")
    version_row = services.versions.get_version(current.flow_version_id)
    console.print(render_run(current, version_row.execution_graph if version_row else None))
    state = "finished" if current.is_finished else "in progress"
    console.print(f"Run {state}: {current.status_counts()}")


@main.command()
@click.option("--timeout", type=float, help="Seconds before a running worker is timed out")
@click.option("--interval", type=float, default=5.0, show_default=True, help="Poll interval")
@click.option("--once", is_flag=True, help="Sweep once and exit")
@click.pass_obj
def watch(services: _Services, timeout: float | None, interval: float, once: bool) -> None:
    """Fail workers that have been running longer than the timeout."""
    timeout = timeout or services.config.worker_timeout
    if not timeout:
        _fail("No timeout given (use --timeout or set worker_timeout in the config)")

    watchdog = RunWatchdog(services.orchestrator(), timeout, poll_interval=interval)
    if once:
        timed_out = asyncio.run(watchdog.sweep())
        console.print(f"Timed out {len(timed_out)} node(s)")
        for run_id, key in timed_out:
            console.print(f"  - {run_id}: {key}")
        return

    console.print(f"[blue]Watching for workers running longer than {timeout:g}s[/blue]")
    try:
        asyncio.run(watchdog.start_daemon())
    except KeyboardInterrupt:
        watchdog.stop()


if __name__ == "__main__":
    main()
