"""Edge-walking run engine.

This module implements a resumable run orchestrator that:
- Keeps all run state in the database (no in-memory continuations)
- Serializes "advance this run" steps per run id
- Processes each step as a FIFO queue of walk/fire messages, not recursion
- Dispatches external workers only after the step has released its lock

A step always re-reads the run row before deciding anything. Firing is a
compare-and-set on the node's status, which keeps it idempotent even across
processes sharing one database. If a process dies between committing a
completion and walking its edges, ``reconcile_run`` re-derives the ready
frontier from the persisted node states and fires it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from collections import OrderedDict, deque
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from stitch.core.config import EngineConfig
from stitch.core.dependencies import (
    are_dependencies_satisfied,
    instance_input,
    merge_upstream_outputs,
    with_input_defaults,
)
from stitch.core.dispatch import WorkerDispatcher, WorkerDispatchError, WorkerRequest
from stitch.core.graph_schema import ExecutionGraph, ExecutionNode, NodeType
from stitch.core.handlers import FireResult, NodeHandlers, record_entity_movement
from stitch.core.models import NodeState, Run, TriggerMetadata, WorkerCallback
from stitch.core.state import Database, NodeUpdate, RunNotFoundError, VersionNotFoundError
from stitch.core.status import NodeStatus, StatusTransitionError
from stitch.core.versions import VersionStore

logger = logging.getLogger(__name__)

GRAPH_CACHE_SIZE = 64


# --- Step messages ---


@dataclass(frozen=True)
class _Walk:
    key: str


@dataclass(frozen=True)
class _Fire:
    node_id: str
    from_statuses: tuple[NodeStatus, ...] = (NodeStatus.PENDING,)


@dataclass(frozen=True)
class _Callback:
    key: str
    callback: WorkerCallback


@dataclass(frozen=True)
class _Resume:
    key: str
    input: Any


@dataclass(frozen=True)
class _Retry:
    key: str


@dataclass(frozen=True)
class _Reconcile:
    pass


class RunOrchestrator:
    """
    Drives runs of compiled flow versions.

    Two kinds of events advance a run: synchronous fan-out (a node completes
    inside a step and its children become ready) and external calls
    (worker callbacks, user input, retries). Both go through ``_advance``.
    """

    def __init__(
        self,
        db: Database,
        versions: VersionStore,
        dispatcher: WorkerDispatcher,
        config: EngineConfig | None = None,
    ):
        self.db = db
        self.versions = versions
        self.dispatcher = dispatcher
        self.config = config or EngineConfig()
        self.handlers = NodeHandlers(db, self.config)
        # A run's lock lives only while some step holds or awaits it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        # version id -> graph (versions are immutable), least recently used first
        self._graphs: OrderedDict[str, ExecutionGraph] = OrderedDict()

    # ========== Public API ==========

    async def start_run(
        self,
        version_id: str,
        trigger: TriggerMetadata | None = None,
        entity_id: str | None = None,
        input: dict[str, Any] | None = None,
    ) -> Run:
        """
        Start a run of a flow version.

        Every compiled node starts pending, then every entry node fires.
        ``input`` becomes the trigger payload, which is the entry nodes' input.
        """
        version = await asyncio.to_thread(self.versions.get_version, version_id)
        if version is None:
            raise VersionNotFoundError(f"Version not found: {version_id}")

        trigger = trigger or TriggerMetadata()
        if input is not None:
            trigger = trigger.model_copy(update={"payload": input})

        graph = version.execution_graph
        self._cache_graph(version.id, graph)
        run = Run(
            id=str(uuid.uuid4()),
            flow_id=version.flow_id,
            flow_version_id=version.id,
            entity_id=entity_id,
            trigger=trigger,
            node_states={node_id: NodeState() for node_id in graph.nodes},
        )
        await asyncio.to_thread(self.db.create_run, run)
        logger.info(
            f"Started run {run.id} of version {version.id} "
            f"(entry nodes: {', '.join(graph.entry_nodes) or 'none'})"
        )

        await self._advance(run.id, [_Fire(node_id) for node_id in graph.entry_nodes])
        return await self.get_run(run.id)

    async def walk_edges(self, run_id: str, completed_key: str) -> None:
        """Fire every child of ``completed_key`` whose dependencies are now satisfied."""
        await self._advance(run_id, [_Walk(completed_key)])

    async def fire_node(self, run_id: str, node_id: str) -> None:
        """Fire a node (or all its pending parallel instances). No-op if not pending."""
        await self._advance(run_id, [_Fire(node_id)])

    async def handle_callback(self, run_id: str, node_key: str, callback: WorkerCallback) -> Run:
        """
        Record a worker's result and continue the run.

        Both outcomes walk onward: completed children fire normally, and a
        failure lets collectors waiting on parallel instances observe it.
        Callbacks for nodes that are not running are ignored.
        """
        await self._advance(run_id, [_Callback(node_key, callback)])
        return await self.get_run(run_id)

    async def submit_user_input(self, run_id: str, node_key: str, input: Any) -> Run:
        """Resume a UX node: waiting_for_user -> running -> completed with ``input``."""
        await self._advance(run_id, [_Resume(node_key, input)])
        return await self.get_run(run_id)

    async def retry_node(self, run_id: str, node_key: str) -> Run:
        """Re-fire a failed node or parallel instance (failed -> running)."""
        await self._advance(run_id, [_Retry(node_key)])
        return await self.get_run(run_id)

    async def reconcile_run(self, run_id: str) -> Run:
        """
        Fire every pending node whose upstream nodes are already done.

        Recovers runs whose edge walk was lost, for example when the process
        died right after a completion was committed. Already-fired nodes are
        left alone, so calling this on a healthy run changes nothing.
        """
        await self._advance(run_id, [_Reconcile()])
        return await self.get_run(run_id)

    async def get_run(self, run_id: str) -> Run:
        run = await asyncio.to_thread(self.db.get_run, run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return run

    async def get_run_status(self, run_id: str) -> dict[str, str]:
        run = await self.get_run(run_id)
        return {key: state.status.value for key, state in run.node_states.items()}

    # ========== Step execution ==========

    def _lock_for(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[run_id] = lock
        return lock

    async def _advance(self, run_id: str, messages: Iterable[Any]) -> None:
        """One serialized step for a run, then the dispatches it produced."""
        lock = self._lock_for(run_id)
        async with lock:
            dispatches = await asyncio.to_thread(self._drain, run_id, deque(messages))
        if dispatches:
            await asyncio.gather(*(self._dispatch(request) for request in dispatches))

    def _drain(self, run_id: str, queue: deque) -> list[WorkerRequest]:
        """Process messages until the queue is empty. Runs in a worker thread."""
        dispatches: list[WorkerRequest] = []
        while queue:
            message = queue.popleft()
            run = self.db.get_run(run_id)
            if run is None:
                raise RunNotFoundError(f"Run not found: {run_id}")
            graph = self._graph_for(run)

            if isinstance(message, _Walk):
                queue.extend(self._walk(graph, run, message.key))
                continue
            if isinstance(message, _Reconcile):
                queue.extend(self._ready_frontier(graph, run))
                continue

            if isinstance(message, _Fire):
                result = self._fire(graph, run, message.node_id, message.from_statuses)
            elif isinstance(message, _Callback):
                result = self._apply_callback(graph, run, message.key, message.callback)
            elif isinstance(message, _Resume):
                result = self._resume(run, message.key, message.input)
            elif isinstance(message, _Retry):
                result = self._retry(graph, run, message.key)
            else:
                raise TypeError(f"Unknown step message: {message!r}")

            queue.extend(_Walk(key) for key in result.walks)
            dispatches.extend(result.dispatches)

        final = self.db.get_run(run_id)
        if final is not None and final.is_finished:
            logger.info(f"Run {run_id} finished: {final.status_counts()}")
        return dispatches

    def _graph_for(self, run: Run) -> ExecutionGraph:
        graph = self._graphs.get(run.flow_version_id)
        if graph is None:
            version = self.versions.get_version(run.flow_version_id)
            if version is None:
                raise VersionNotFoundError(f"Version not found: {run.flow_version_id}")
            graph = version.execution_graph
        self._cache_graph(run.flow_version_id, graph)
        return graph

    def _cache_graph(self, version_id: str, graph: ExecutionGraph) -> None:
        self._graphs[version_id] = graph
        self._graphs.move_to_end(version_id)
        while len(self._graphs) > GRAPH_CACHE_SIZE:
            self._graphs.popitem(last=False)

    def _ready_frontier(self, graph: ExecutionGraph, run: Run) -> list[_Fire]:
        """Pending nodes (or templates with pending instances) whose
        dependencies are satisfied, in topological order."""
        fires = []
        for level in graph.parallel_levels():
            for node_id in level:
                if run.has_instances(node_id):
                    pending = any(
                        run.node_states[str(k)].status == NodeStatus.PENDING
                        for k in run.instance_keys(node_id)
                    )
                else:
                    state = run.state_of(node_id)
                    pending = state is not None and state.status == NodeStatus.PENDING
                if pending and are_dependencies_satisfied(node_id, graph, run):
                    fires.append(_Fire(node_id))
        if fires:
            logger.info(
                f"Run {run.id}: reconciling {len(fires)} ready node(s): "
                f"{', '.join(f.node_id for f in fires)}"
            )
        return fires

    def _walk(self, graph: ExecutionGraph, run: Run, completed_key: str) -> list[_Fire]:
        template_id, _ = run.resolve_key(completed_key)
        if template_id not in graph.nodes:
            logger.error(f"Run {run.id}: cannot walk from unknown node '{completed_key}'")
            return []
        if graph.is_terminal(template_id):
            return []

        fires = []
        for child in graph.children(template_id):
            if are_dependencies_satisfied(child, graph, run):
                fires.append(_Fire(child))
            else:
                logger.debug(f"Run {run.id}: {child} still waiting on upstream nodes")
        return fires

    def _fire(
        self,
        graph: ExecutionGraph,
        run: Run,
        node_id: str,
        from_statuses: tuple[NodeStatus, ...],
    ) -> FireResult:
        node = graph.nodes.get(node_id)
        if node is None:
            logger.error(f"Run {run.id}: node '{node_id}' not found in execution graph")
            return FireResult()

        if not run.has_instances(node_id):
            input_data = self._node_input(graph, run, node)
            return self._run_handler(graph, run, node, node_id, input_data, from_statuses)

        instances = run.instance_keys(node_id)
        if not instances:
            # Fanned out over an empty array; let downstream joins see it as done
            return FireResult(walks=[node_id])

        result = FireResult()
        mapping = self._splitter_mapping(graph, node_id)
        for instance in instances:
            key = str(instance)
            state = run.node_states[key]
            if state.status not in from_statuses:
                continue
            result.extend(
                self._run_handler(
                    graph, run, node, key, instance_input(state.output, mapping), from_statuses
                )
            )
        if result.claimed:
            logger.info(
                f"Run {run.id}: fired {len(result.claimed)} of {len(instances)} "
                f"parallel instance(s) of {node_id}"
            )
        return result

    def _run_handler(
        self,
        graph: ExecutionGraph,
        run: Run,
        node: ExecutionNode,
        key: str,
        input_data: Any,
        from_statuses: tuple[NodeStatus, ...],
    ) -> FireResult:
        """Run a handler, turning its exceptions into a failed node."""
        try:
            return self.handlers.fire(graph, run, node, key, input_data, from_statuses)
        except StatusTransitionError as e:
            logger.warning(f"Run {run.id}: stale firing decision for {key} ignored: {e}")
            return FireResult()
        except Exception as e:
            logger.exception(f"Run {run.id}: handler for {key} raised")
            try:
                return self.handlers.fail(run.id, key, str(e))
            except StatusTransitionError:
                return FireResult()

    def _node_input(self, graph: ExecutionGraph, run: Run, node: ExecutionNode) -> Any:
        if node.id in graph.entry_nodes:
            data: Any = dict(run.trigger.payload or {})
        else:
            data = merge_upstream_outputs(node.id, graph, run)
        return with_input_defaults(node, data)

    def _splitter_mapping(self, graph: ExecutionGraph, node_id: str) -> dict[str, str]:
        for parent in graph.parents(node_id):
            if graph.nodes[parent].type == NodeType.SPLITTER:
                return graph.mapping_for(parent, node_id)
        return {}

    def _apply_callback(
        self, graph: ExecutionGraph, run: Run, key: str, callback: WorkerCallback
    ) -> FireResult:
        state = run.state_of(key)
        if state is None:
            raise KeyError(f"Run {run.id} has no node '{key}'")
        if state.status != NodeStatus.RUNNING:
            logger.warning(
                f"Ignoring {callback.status} callback for {key} in run {run.id}: "
                f"node is {state.status.value}"
            )
            return FireResult()

        if callback.status == "completed":
            update = NodeUpdate(status=NodeStatus.COMPLETED, output=callback.output)
        else:
            update = NodeUpdate(
                status=NodeStatus.FAILED, error=callback.error or "Worker reported failure"
            )
        try:
            updated = self.db.update_node_states(run.id, {key: update})
        except StatusTransitionError as e:
            logger.warning(f"Ignoring callback for {key} in run {run.id}: {e}")
            return FireResult()
        logger.info(f"Run {run.id}: {key} {callback.status}")

        template_id, _ = run.resolve_key(key)
        node = graph.nodes.get(template_id)
        if node is not None and node.type == NodeType.WORKER:
            record_entity_movement(self.db, updated, node, callback.status == "completed")
        return FireResult(walks=[key])

    def _resume(self, run: Run, key: str, input: Any) -> FireResult:
        state = run.state_of(key)
        if state is None:
            raise KeyError(f"Run {run.id} has no node '{key}'")
        if state.status != NodeStatus.WAITING_FOR_USER:
            raise StatusTransitionError(state.status, NodeStatus.RUNNING)

        if self.db.claim_node(run.id, key, [NodeStatus.WAITING_FOR_USER]) is None:
            # Another process resumed it between our read and the claim
            current = self.db.get_run(run.id).node_states[key].status
            raise StatusTransitionError(current, NodeStatus.RUNNING)
        self.db.update_node_states(
            run.id, {key: NodeUpdate(status=NodeStatus.COMPLETED, output=input)}
        )
        logger.info(f"Run {run.id}: {key} resumed with user input")
        return FireResult(walks=[key])

    def _retry(self, graph: ExecutionGraph, run: Run, key: str) -> FireResult:
        state = run.state_of(key)
        if state is None:
            raise KeyError(f"Run {run.id} has no node '{key}'")
        if state.status != NodeStatus.FAILED:
            raise StatusTransitionError(state.status, NodeStatus.RUNNING)

        template_id, instance = run.resolve_key(key)
        node = graph.nodes.get(template_id)
        if node is None:
            logger.error(f"Run {run.id}: node '{template_id}' not found in execution graph")
            return FireResult()

        if instance is not None:
            input_data = instance_input(state.output, self._splitter_mapping(graph, template_id))
        else:
            input_data = self._node_input(graph, run, node)
        logger.info(f"Run {run.id}: retrying {key}")
        return self._run_handler(graph, run, node, key, input_data, (NodeStatus.FAILED,))

    # ========== Dispatch ==========

    async def _dispatch(self, request: WorkerRequest) -> None:
        """Send one worker request; an unreachable worker fails its node."""
        try:
            await self.dispatcher.dispatch(request)
        except WorkerDispatchError as e:
            logger.error(f"Dispatch of {request.node_id} in run {request.run_id} failed: {e}")
            await self.handle_callback(
                request.run_id, request.node_id, WorkerCallback(status="failed", error=str(e))
            )
