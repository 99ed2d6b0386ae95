"""Version store: immutable flow versions with validation on save."""

from __future__ import annotations

import logging
import uuid

from stitch.core.compiler import compile_graph
from stitch.core.graph_schema import ExecutionGraph, ValidationError, VisualGraph
from stitch.core.models import Flow, FlowVersion, FlowVersionMetadata
from stitch.core.state import Database, FlowNotFoundError
from stitch.core.workers import WorkerRegistry

logger = logging.getLogger(__name__)

INITIAL_AUTO_VERSION_MESSAGE = "Initial version (auto-created on run)"
AUTO_VERSION_MESSAGE = "Auto-versioned on run"


class GraphValidationFailure(Exception):
    """A graph failed validation; nothing was saved."""

    def __init__(self, errors: list[ValidationError]):
        self.errors = errors
        details = "; ".join(e.message for e in errors)
        super().__init__(f"Graph validation failed with {len(errors)} error(s): {details}")


class VersionStore:
    """Creates and reads flow versions.

    Versions are never mutated after insert. Only the flow's
    ``current_version_id`` pointer moves, in the same transaction as the insert.
    """

    def __init__(self, db: Database, registry: WorkerRegistry):
        self.db = db
        self.registry = registry

    def create_flow(
        self, name: str, canvas_type: str = "workflow", parent_id: str | None = None
    ) -> Flow:
        flow = Flow(id=str(uuid.uuid4()), name=name, canvas_type=canvas_type, parent_id=parent_id)
        return self.db.create_flow(flow)

    def get_flow(self, flow_id: str) -> Flow | None:
        return self.db.get_flow(flow_id)

    def create_version(
        self, flow_id: str, visual_graph: VisualGraph, commit_message: str | None = None
    ) -> tuple[str, ExecutionGraph]:
        """Validate, compile and save a new version.

        Raises:
            GraphValidationFailure: graph is invalid; no rows written and the
                flow's current version is unchanged.
            FlowNotFoundError: the flow does not exist.
        """
        result = compile_graph(visual_graph, self.registry)
        if not result.success:
            raise GraphValidationFailure(result.errors)
        assert result.execution_graph is not None

        version = FlowVersion(
            id=str(uuid.uuid4()),
            flow_id=flow_id,
            visual_graph=visual_graph,
            execution_graph=result.execution_graph,
            commit_message=commit_message,
        )
        self.db.insert_version(version)
        logger.info(f"Created version {version.id} for flow {flow_id}")
        return version.id, result.execution_graph

    def get_version(self, version_id: str) -> FlowVersion | None:
        return self.db.get_version(version_id)

    def list_versions(self, flow_id: str) -> list[FlowVersionMetadata]:
        """Version metadata, newest first. Graph payloads are not loaded."""
        return self.db.list_versions(flow_id)

    def auto_version_on_run(self, flow_id: str, visual_graph: VisualGraph) -> str:
        """Return the version id a run should use for ``visual_graph``.

        Reuses the flow's current version when the graph is structurally equal
        to it, otherwise saves a new version.
        """
        flow = self.db.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(f"Flow not found: {flow_id}")

        if flow.current_version_id is None:
            version_id, _ = self.create_version(
                flow_id, visual_graph, INITIAL_AUTO_VERSION_MESSAGE
            )
            return version_id

        current = self.db.get_version(flow.current_version_id)
        if current is not None and current.visual_graph.canonical() == visual_graph.canonical():
            logger.debug(f"Flow {flow_id} unchanged; reusing version {current.id}")
            return current.id

        version_id, _ = self.create_version(flow_id, visual_graph, AUTO_VERSION_MESSAGE)
        return version_id
