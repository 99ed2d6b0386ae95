# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Stitch test suite.

This module provides foundational fixtures used across all test modules:
- Test databases with the event log
- A worker registry built from the packaged definitions plus a test worker
- A fluent builder for visual graphs
- A recording dispatcher standing in for external workers

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from stitch.core.config import EngineConfig
from stitch.core.dispatch import WorkerDispatchError, WorkerRequest
from stitch.core.engine import RunOrchestrator
from stitch.core.graph_schema import VisualGraph
from stitch.core.state import Database
from stitch.core.versions import VersionStore
from stitch.core.workers import PACKAGE_DIR, WorkerDefinition, WorkerRegistry


# =============================================================================
# Database and Registry Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a temporary test database.

    Creates a fresh SQLite database in a temporary directory.
    Database is automatically cleaned up after the test.
    """
    return Database(tmp_path / "test.db")


@pytest.fixture
def registry() -> WorkerRegistry:
    """Registry with the packaged workers plus an ``echo`` worker.

    ``echo`` declares one optional input and one output, so most test graphs
    can chain echo nodes without satisfying required inputs.
    """
    reg = WorkerRegistry()
    reg.merge_file(PACKAGE_DIR / "config/workers.yaml")
    reg.register(
        WorkerDefinition.model_validate(
            {
                "id": "echo",
                "name": "Echo",
                "input": {"text": {"type": "string"}},
                "output": {"text": {"type": "string"}},
                "config": {"endpoint": "http://workers.test/echo"},
            }
        )
    )
    return reg


@pytest.fixture
def versions(test_db: Database, registry: WorkerRegistry) -> VersionStore:
    return VersionStore(test_db, registry)


# =============================================================================
# Graph Builder
# =============================================================================


class GraphBuilder:
    """Fluent builder for visual graphs in tests.

    Example:
        graph = builder.worker("A").worker("B").edge("A", "B").build()
    """

    def __init__(self) -> None:
        self.nodes: list[dict[str, Any]] = []
        self.edges: list[dict[str, Any]] = []

    def node(self, node_id: str, node_type: str, **data: Any) -> GraphBuilder:
        self.nodes.append(
            {
                "id": node_id,
                "type": node_type,
                "position": {"x": 100.0 * len(self.nodes), "y": 0.0},
                "data": {"label": node_id, **data},
            }
        )
        return self

    def worker(self, node_id: str, worker_type: str = "echo", **data: Any) -> GraphBuilder:
        return self.node(node_id, "Worker", worker_type=worker_type, **data)

    def ux(self, node_id: str, **data: Any) -> GraphBuilder:
        return self.node(node_id, "UX", **data)

    def splitter(self, node_id: str, array_path: str = "items", **data: Any) -> GraphBuilder:
        return self.node(node_id, "Splitter", config={"array_path": array_path}, **data)

    def collector(self, node_id: str, mode: str = "array", **data: Any) -> GraphBuilder:
        return self.node(node_id, "Collector", config={"mode": mode}, **data)

    def section(self, node_id: str) -> GraphBuilder:
        return self.node(node_id, "Section")

    def edge(
        self, source: str, target: str, mapping: dict[str, str] | None = None
    ) -> GraphBuilder:
        edge: dict[str, Any] = {
            "id": f"e-{source}-{target}-{len(self.edges)}",
            "source": source,
            "target": target,
        }
        if mapping is not None:
            edge["data"] = {"mapping": mapping}
        self.edges.append(edge)
        return self

    def chain(self, *node_ids: str) -> GraphBuilder:
        for source, target in zip(node_ids, node_ids[1:]):
            self.edge(source, target)
        return self

    def build(self) -> VisualGraph:
        return VisualGraph.model_validate({"nodes": self.nodes, "edges": self.edges})


@pytest.fixture
def builder() -> GraphBuilder:
    return GraphBuilder()


# =============================================================================
# Engine Fixtures
# =============================================================================


class RecordingDispatcher:
    """Dispatcher that records requests instead of calling workers.

    Node keys listed in ``unreachable`` raise WorkerDispatchError.
    """

    def __init__(self) -> None:
        self.requests: list[WorkerRequest] = []
        self.unreachable: set[str] = set()

    async def dispatch(self, request: WorkerRequest) -> None:
        if request.node_id in self.unreachable:
            raise WorkerDispatchError(f"connection refused for {request.node_id}")
        self.requests.append(request)

    def keys(self) -> list[str]:
        return [r.node_id for r in self.requests]

    def request_for(self, key: str) -> WorkerRequest:
        matches = [r for r in self.requests if r.node_id == key]
        assert matches, f"no request dispatched for {key}"
        return matches[-1]


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(db_path=tmp_path / "test.db", base_url="http://stitch.test/")


@pytest.fixture
def orchestrator(
    test_db: Database,
    versions: VersionStore,
    dispatcher: RecordingDispatcher,
    engine_config: EngineConfig,
) -> RunOrchestrator:
    return RunOrchestrator(test_db, versions, dispatcher, engine_config)


@pytest.fixture
def save_version(versions: VersionStore):
    """Save a graph as the first version of a new flow; returns the version id."""

    def _save(graph: VisualGraph, name: str = "test-flow") -> str:
        flow = versions.create_flow(name)
        version_id, _ = versions.create_version(flow.id, graph, "test version")
        return version_id

    return _save
