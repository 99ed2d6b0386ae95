"""Data models for flows, versions and runs.

Uses Pydantic so rows round-trip through SQLite JSON columns unchanged.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from stitch.core.graph_schema import ExecutionGraph, VisualGraph
from stitch.core.status import TERMINAL_STATUSES, NodeStatus


def _utc_now() -> datetime:
    return datetime.now(UTC)


# --- Flows & versions ---


class Flow(BaseModel):
    """Named, versioned container for a workflow's history."""

    id: str
    name: str
    canvas_type: str = "workflow"
    parent_id: str | None = None
    current_version_id: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class FlowVersion(BaseModel):
    """Immutable snapshot of a flow: the canvas plus its compiled form."""

    id: str
    flow_id: str
    visual_graph: VisualGraph
    execution_graph: ExecutionGraph
    commit_message: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)


class FlowVersionMetadata(BaseModel):
    """Version listing entry (no graph payloads)."""

    id: str
    flow_id: str
    commit_message: str | None = None
    created_at: datetime


# --- Runs ---


class InstanceKey(BaseModel):
    """Identity of the n-th parallel instance spawned from a template node.

    ``str(key)`` is the persisted ``node_states`` key.
    """

    model_config = ConfigDict(frozen=True)

    template_id: str
    index: int

    def __str__(self) -> str:
        return f"{self.template_id}_{self.index}"


class NodeState(BaseModel):
    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None


class TriggerMetadata(BaseModel):
    """What started a run."""

    type: Literal["manual", "webhook", "api", "schedule"] = "manual"
    source: str | None = None
    payload: dict[str, Any] | None = None


class Run(BaseModel):
    """One execution of a specific flow version.

    ``node_states`` is keyed by static node id, or by ``str(InstanceKey)`` for
    parallel instances. ``parallel_instances`` maps each template node id to the
    instance indices spawned for it, so instance keys are never parsed.
    """

    id: str
    flow_id: str
    flow_version_id: str
    entity_id: str | None = None
    trigger: TriggerMetadata = Field(default_factory=TriggerMetadata)
    node_states: dict[str, NodeState] = Field(default_factory=dict)
    parallel_instances: dict[str, list[int]] = Field(default_factory=dict)
    revision: int = 0
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def has_instances(self, template_id: str) -> bool:
        """True once a splitter has fanned out into this template, even when it
        spawned zero instances."""
        return template_id in self.parallel_instances

    def instance_keys(self, template_id: str) -> list[InstanceKey]:
        """Instance keys for a template, in index order."""
        return [
            InstanceKey(template_id=template_id, index=i)
            for i in sorted(self.parallel_instances.get(template_id, []))
        ]

    def resolve_key(self, key: str) -> tuple[str, InstanceKey | None]:
        """Map a ``node_states`` key to ``(template_id, instance)``.

        Static node ids resolve to ``(key, None)``.
        """
        for template_id, indices in self.parallel_instances.items():
            for index in indices:
                instance = InstanceKey(template_id=template_id, index=index)
                if str(instance) == key:
                    return template_id, instance
        return key, None

    def state_of(self, key: str) -> NodeState | None:
        return self.node_states.get(key)

    def effective_keys(self) -> list[str]:
        """Keys that represent real work: templates with instances are replaced
        by their instances."""
        instance_keys = {
            str(k) for template_id in self.parallel_instances for k in self.instance_keys(template_id)
        }
        keys = []
        for key in self.node_states:
            if key in instance_keys:
                continue
            if self.has_instances(key):
                keys.extend(str(k) for k in self.instance_keys(key))
            else:
                keys.append(key)
        return keys

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for key in self.effective_keys():
            status = self.node_states[key].status.value
            counts[status] = counts.get(status, 0) + 1
        return counts

    @property
    def is_finished(self) -> bool:
        """True when no effective node is pending, running or waiting for input."""
        return all(
            self.node_states[key].status in TERMINAL_STATUSES for key in self.effective_keys()
        )


class WorkerCallback(BaseModel):
    """Payload a worker posts back when its asynchronous work finishes."""

    status: Literal["completed", "failed"]
    output: Any = None
    error: str | None = None
