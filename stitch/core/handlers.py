"""Type-specific node firing logic.

Handlers run inside one serialized engine step for a run. They write state
through the database (every status change passes the transition table) and
report back what the engine should do next: which completed keys to walk from
and which worker requests to dispatch once the step has released its lock.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from stitch.core.config import EngineConfig
from stitch.core.dependencies import resolve_mapping_path
from stitch.core.dispatch import WorkerRequest
from stitch.core.graph_schema import ExecutionGraph, ExecutionNode, NodeType
from stitch.core.models import NodeState, Run
from stitch.core.state import Database, Event, EventType, NodeUpdate
from stitch.core.status import NodeStatus

logger = logging.getLogger(__name__)

COLLECTOR_MODES = ("array", "keyed", "first")


@dataclass
class FireResult:
    """Follow-up work produced by firing a node."""

    walks: list[str] = field(default_factory=list)
    dispatches: list[WorkerRequest] = field(default_factory=list)
    claimed: list[str] = field(default_factory=list)

    def extend(self, other: FireResult) -> None:
        self.walks.extend(other.walks)
        self.dispatches.extend(other.dispatches)
        self.claimed.extend(other.claimed)


class NodeHandlers:
    """Fires Worker, UX, Splitter and Collector nodes."""

    def __init__(self, db: Database, config: EngineConfig):
        self.db = db
        self.config = config

    def fire(
        self,
        graph: ExecutionGraph,
        run: Run,
        node: ExecutionNode,
        key: str,
        input_data: Any,
        from_statuses: Iterable[NodeStatus] = (NodeStatus.PENDING,),
    ) -> FireResult:
        """Claim ``key`` and run the handler for the node's type.

        A key whose status is not in ``from_statuses`` is left alone, which
        makes firing idempotent. Keys this call actually claimed are listed in
        the result's ``claimed``.
        """
        if node.type not in (NodeType.WORKER, NodeType.UX, NodeType.SPLITTER, NodeType.COLLECTOR):
            raise ValueError(f"Unknown node type: {node.type}")

        claimed = self.db.claim_node(run.id, key, from_statuses)
        if claimed is None:
            return FireResult()

        if node.type == NodeType.WORKER:
            result = self.fire_worker(claimed, node, key, input_data)
        elif node.type == NodeType.UX:
            result = self.fire_ux(claimed, key, input_data)
        elif node.type == NodeType.SPLITTER:
            result = self.fire_splitter(graph, claimed, node, key, input_data)
        else:
            result = self.fire_collector(graph, claimed, node, key)
        result.claimed.append(key)
        return result

    def fire_worker(
        self, run: Run, node: ExecutionNode, key: str, input_data: Any
    ) -> FireResult:
        logger.info(f"Worker {key} ({node.worker_type or 'webhook'}) running in run {run.id}")
        request = WorkerRequest(
            run_id=run.id,
            node_id=key,
            worker_type=node.worker_type,
            config=dict(node.config),
            input=input_data,
            callback_url=self.config.callback_url(run.id, key),
        )
        return FireResult(dispatches=[request])

    def fire_ux(self, run: Run, key: str, input_data: Any) -> FireResult:
        """Park the node until someone submits input. The merged input is kept
        as the node's output so the UI can show what the prompt is about."""
        self.db.update_node_states(
            run.id, {key: NodeUpdate(status=NodeStatus.WAITING_FOR_USER, output=input_data)}
        )
        logger.info(f"UX node {key} waiting for user input in run {run.id}")
        return FireResult()

    def fire_splitter(
        self,
        graph: ExecutionGraph,
        run: Run,
        node: ExecutionNode,
        key: str,
        input_data: Any,
    ) -> FireResult:
        """Fan an array out into one pending instance per element per downstream
        node. Each instance's output holds its element until the instance runs.

        Collectors are fan-in points and never get instances; they read the
        splitter's completed output like any other static source.
        """
        array_path = node.config.get("array_path") or node.config.get("arrayPath")
        if not array_path:
            return self.fail(run.id, key, f"Splitter '{key}' has no config.array_path")

        items = resolve_mapping_path(input_data, array_path)
        if items is None:
            return self.fail(run.id, key, f"Array path '{array_path}' not found in splitter input")
        if not isinstance(items, list):
            return self.fail(
                run.id,
                key,
                f"Value at '{array_path}' is {type(items).__name__}, expected an array",
            )

        targets = [t for t in graph.children(node.id) if graph.nodes[t].type != NodeType.COLLECTOR]
        completion = {key: NodeUpdate(status=NodeStatus.COMPLETED, output=items)}
        if targets:
            self.db.register_instances(
                run.id,
                {target: [NodeState(output=item) for item in items] for target in targets},
                updates=completion,
            )
        else:
            self.db.update_node_states(run.id, completion)

        logger.info(
            f"Splitter {key} split {len(items)} item(s) into {', '.join(targets) or '(no targets)'}"
        )
        return FireResult(walks=[key])

    def fire_collector(
        self,
        graph: ExecutionGraph,
        run: Run,
        node: ExecutionNode,
        key: str,
    ) -> FireResult:
        """Merge upstream results once every upstream branch is terminal.

        ``run`` is the snapshot returned by the claim. Instance outputs come in
        index order, static sources in edge order. Failed branches contribute
        nothing; if every branch failed the collector fails too.
        """
        mode = node.config.get("mode", "array")
        if mode not in COLLECTOR_MODES:
            return self.fail(
                run.id, key, f"Unknown collector mode '{mode}' (expected one of {COLLECTOR_MODES})"
            )

        branches: list[tuple[str, NodeState | None]] = []
        for source in graph.parents(node.id):
            if run.has_instances(source):
                branches.extend(
                    (str(k), run.node_states[str(k)]) for k in run.instance_keys(source)
                )
            else:
                branches.append((source, run.state_of(source)))

        outputs = [
            (branch_key, state.output)
            for branch_key, state in branches
            if state is not None and state.status == NodeStatus.COMPLETED
        ]
        if branches and not outputs:
            return self.fail(run.id, key, f"All {len(branches)} upstream branch(es) failed")

        if mode == "array":
            merged: Any = [output for _, output in outputs]
        elif mode == "keyed":
            merged = dict(outputs)
        else:
            merged = outputs[0][1] if outputs else None

        self.db.update_node_states(
            run.id, {key: NodeUpdate(status=NodeStatus.COMPLETED, output=merged)}
        )
        logger.info(
            f"Collector {key} merged {len(outputs)} of {len(branches)} branch(es) ({mode})"
        )
        return FireResult(walks=[key])

    def fail(self, run_id: str, key: str, error: str) -> FireResult:
        """Mark a running node failed and walk from it so joins can observe it."""
        logger.warning(f"Node {key} failed in run {run_id}: {error}")
        self.db.update_node_states(
            run_id, {key: NodeUpdate(status=NodeStatus.FAILED, error=error)}
        )
        return FireResult(walks=[key])


def record_entity_movement(db: Database, run: Run, node: ExecutionNode, succeeded: bool) -> None:
    """Log where the run's entity moves when a worker finishes.

    The entity store is external; the event log is the hand-off point.
    """
    if run.entity_id is None or node.entity_movement is None:
        return
    action = node.entity_movement.on_success if succeeded else node.entity_movement.on_failure
    if action is None:
        return

    db.append_event(
        Event(
            event_type=EventType.ENTITY_MOVED,
            flow_id=run.flow_id,
            run_id=run.id,
            node_key=node.id,
            payload={
                "entity_id": run.entity_id,
                "target_section_id": action.target_section_id,
                "complete_as": action.complete_as,
                "set_entity_type": action.set_entity_type,
                "worker_status": "completed" if succeeded else "failed",
            },
        )
    )
    logger.info(
        f"Entity {run.entity_id} moved to section {action.target_section_id} "
        f"({action.complete_as}) after {node.id}"
    )
