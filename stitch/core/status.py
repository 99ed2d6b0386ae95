"""Node status state machine.

Every status write goes through ``validate_transition``. Completed is terminal;
failed may be retried; waiting_for_user resumes through running.
"""

from __future__ import annotations

from enum import Enum


class NodeStatus(str, Enum):
    """Status of one node (or parallel instance) within a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING_FOR_USER = "waiting_for_user"


VALID_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.RUNNING}),
    NodeStatus.RUNNING: frozenset(
        {NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.WAITING_FOR_USER}
    ),
    NodeStatus.COMPLETED: frozenset(),
    NodeStatus.FAILED: frozenset({NodeStatus.RUNNING}),  # retry
    NodeStatus.WAITING_FOR_USER: frozenset({NodeStatus.RUNNING}),  # resume
}

# Statuses that count as finished for AND-join gating
TERMINAL_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED})


class StatusTransitionError(Exception):
    """Attempted status change is not allowed by the transition table."""

    def __init__(self, from_status: NodeStatus | str, to_status: NodeStatus | str):
        self.from_status = NodeStatus(from_status)
        self.to_status = NodeStatus(to_status)
        allowed = sorted(s.value for s in VALID_TRANSITIONS[self.from_status])
        super().__init__(
            f"Invalid status transition: {self.from_status.value} -> {self.to_status.value}. "
            f"Allowed from {self.from_status.value}: {', '.join(allowed) or '(none, terminal)'}"
        )


def is_valid_transition(from_status: NodeStatus | str, to_status: NodeStatus | str) -> bool:
    return NodeStatus(to_status) in VALID_TRANSITIONS[NodeStatus(from_status)]


def validate_transition(from_status: NodeStatus | str, to_status: NodeStatus | str) -> None:
    """Raise StatusTransitionError unless ``from_status -> to_status`` is allowed."""
    if not is_valid_transition(from_status, to_status):
        raise StatusTransitionError(from_status, to_status)
