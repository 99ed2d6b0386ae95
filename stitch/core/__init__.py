"""Core modules for the Stitch engine."""

from stitch.core.compiler import CompileResult, compile_graph
from stitch.core.engine import RunOrchestrator
from stitch.core.graph_schema import ExecutionGraph, NodeType, ValidationError, VisualGraph
from stitch.core.models import InstanceKey, NodeState, Run, TriggerMetadata, WorkerCallback
from stitch.core.state import Database, Event, EventType
from stitch.core.status import NodeStatus, StatusTransitionError
from stitch.core.validation import validate_graph
from stitch.core.versions import GraphValidationFailure, VersionStore
from stitch.core.workers import WorkerRegistry

__all__ = [
    "CompileResult",
    "Database",
    "Event",
    "EventType",
    "ExecutionGraph",
    "GraphValidationFailure",
    "InstanceKey",
    "NodeState",
    "NodeStatus",
    "NodeType",
    "Run",
    "RunOrchestrator",
    "StatusTransitionError",
    "TriggerMetadata",
    "ValidationError",
    "VersionStore",
    "VisualGraph",
    "WorkerCallback",
    "WorkerRegistry",
    "compile_graph",
    "validate_graph",
]
