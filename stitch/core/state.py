"""SQLite state management with an append-only event log.

The ``runs`` row is the single shared mutable resource per execution. Every
node status change is a read-validate-write sequence inside one
``BEGIN IMMEDIATE`` transaction, and each applied change appends an event in
that same transaction. Flow versions are append-only.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from stitch.core.graph_schema import ExecutionGraph, VisualGraph
from stitch.core.models import (
    Flow,
    FlowVersion,
    FlowVersionMetadata,
    InstanceKey,
    NodeState,
    Run,
    TriggerMetadata,
)
from stitch.core.status import NodeStatus, validate_transition

logger = logging.getLogger(__name__)


class FlowNotFoundError(LookupError):
    pass


class VersionNotFoundError(LookupError):
    pass


class RunNotFoundError(LookupError):
    pass


class ConcurrentUpdateError(Exception):
    """The run row changed since the caller read it."""

    def __init__(self, run_id: str, expected: int, actual: int):
        self.run_id = run_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Run {run_id} was modified concurrently (expected revision {expected}, found {actual})"
        )


class EventType(str, Enum):
    """Types of events in the event log."""

    FLOW_CREATED = "flow_created"
    VERSION_CREATED = "version_created"
    RUN_STARTED = "run_started"
    NODE_STATUS_CHANGED = "node_status_changed"
    INSTANCES_CREATED = "instances_created"
    ENTITY_MOVED = "entity_moved"


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=_SafeJSONEncoder)


class Event(BaseModel):
    """Immutable event in the event log."""

    id: int | None = None
    event_type: EventType
    flow_id: str | None = None
    run_id: str | None = None
    node_key: str | None = None
    status: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


class NodeUpdate(BaseModel):
    """One node's change inside an ``update_node_states`` batch.

    ``output`` and ``error`` are only written when explicitly passed, so an
    update can change status alone, output alone, or both.
    """

    status: NodeStatus | None = None
    output: Any = None
    error: str | None = None

    @property
    def sets_output(self) -> bool:
        return "output" in self.model_fields_set

    @property
    def sets_error(self) -> bool:
        return "error" in self.model_fields_set


class Database:
    """SQLite database holding flows, versions, runs and the event log."""

    SCHEMA = """
    -- Event log (append-only)
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        flow_id TEXT,
        run_id TEXT,
        node_key TEXT,
        status TEXT,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS flows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        canvas_type TEXT NOT NULL DEFAULT 'workflow',
        parent_id TEXT,
        current_version_id TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Versions are never updated once written
    CREATE TABLE IF NOT EXISTS flow_versions (
        id TEXT PRIMARY KEY,
        flow_id TEXT NOT NULL,
        visual_graph JSON NOT NULL,
        execution_graph JSON NOT NULL,
        commit_message TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (flow_id) REFERENCES flows(id)
    );

    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        flow_id TEXT NOT NULL,
        flow_version_id TEXT NOT NULL,
        entity_id TEXT,
        trigger JSON,
        node_states JSON NOT NULL,
        parallel_instances JSON NOT NULL,
        revision INTEGER NOT NULL DEFAULT 0,  -- Incremented on every write
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (flow_id) REFERENCES flows(id),
        FOREIGN KEY (flow_version_id) REFERENCES flow_versions(id)
    );

    CREATE INDEX IF NOT EXISTS idx_events_run ON events(run_id);
    CREATE INDEX IF NOT EXISTS idx_events_flow ON events(flow_id);
    CREATE INDEX IF NOT EXISTS idx_versions_flow ON flow_versions(flow_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_runs_flow ON runs(flow_id);
    """

    def __init__(self, db_path: str | Path = ".stitch/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Write transaction that takes the database write lock up front.

        Read-validate-write sequences must run in here so no other writer can
        interleave between the read and the write.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    # --- Event log ---

    def _insert_event(self, conn: sqlite3.Connection, event: Event) -> int:
        cursor = conn.execute(
            """
            INSERT INTO events (event_type, flow_id, run_id, node_key, status, payload, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_type.value,
                event.flow_id,
                event.run_id,
                event.node_key,
                event.status,
                _safe_json_dumps(event.payload),
                event.timestamp.isoformat(),
            ),
        )
        return cursor.lastrowid  # type: ignore

    def append_event(self, event: Event) -> int:
        with self._connect() as conn:
            return self._insert_event(conn, event)

    def get_events(
        self,
        flow_id: str | None = None,
        run_id: str | None = None,
        event_types: list[EventType] | None = None,
    ) -> list[Event]:
        """Events in append order, optionally filtered by flow, run and type."""
        query = "SELECT * FROM events WHERE 1=1"
        params: list[Any] = []
        if flow_id is not None:
            query += " AND flow_id = ?"
            params.append(flow_id)
        if run_id is not None:
            query += " AND run_id = ?"
            params.append(run_id)
        if event_types:
            query += f" AND event_type IN ({','.join('?' * len(event_types))})"
            params.extend(et.value for et in event_types)
        query += " ORDER BY id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    def get_run_events(self, run_id: str) -> list[Event]:
        return self.get_events(run_id=run_id)

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            event_type=EventType(row["event_type"]),
            flow_id=row["flow_id"],
            run_id=row["run_id"],
            node_key=row["node_key"],
            status=row["status"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    # --- Flows & versions ---

    def create_flow(self, flow: Flow) -> Flow:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO flows (id, name, canvas_type, parent_id, current_version_id,
                                   created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    flow.id,
                    flow.name,
                    flow.canvas_type,
                    flow.parent_id,
                    flow.current_version_id,
                    flow.created_at.isoformat(),
                    flow.updated_at.isoformat(),
                ),
            )
            self._insert_event(
                conn,
                Event(
                    event_type=EventType.FLOW_CREATED,
                    flow_id=flow.id,
                    payload={"name": flow.name, "canvas_type": flow.canvas_type},
                ),
            )
        return flow

    def get_flow(self, flow_id: str) -> Flow | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM flows WHERE id = ?", (flow_id,)).fetchone()
        if not row:
            return None
        return Flow(
            id=row["id"],
            name=row["name"],
            canvas_type=row["canvas_type"],
            parent_id=row["parent_id"],
            current_version_id=row["current_version_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def insert_version(self, version: FlowVersion) -> None:
        """Insert a version and point the flow at it, atomically.

        Raises FlowNotFoundError (nothing written) if the flow does not exist.
        """
        with self.transaction() as conn:
            exists = conn.execute("SELECT 1 FROM flows WHERE id = ?", (version.flow_id,)).fetchone()
            if not exists:
                raise FlowNotFoundError(f"Flow not found: {version.flow_id}")

            conn.execute(
                """
                INSERT INTO flow_versions (id, flow_id, visual_graph, execution_graph,
                                           commit_message, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    version.id,
                    version.flow_id,
                    _safe_json_dumps(
                        version.visual_graph.model_dump(mode="json", by_alias=True, exclude_unset=True)
                    ),
                    _safe_json_dumps(version.execution_graph.model_dump(mode="json", exclude_unset=True)),
                    version.commit_message,
                    version.created_at.isoformat(),
                ),
            )
            conn.execute(
                "UPDATE flows SET current_version_id = ?, updated_at = ? WHERE id = ?",
                (version.id, _utc_now().isoformat(), version.flow_id),
            )
            self._insert_event(
                conn,
                Event(
                    event_type=EventType.VERSION_CREATED,
                    flow_id=version.flow_id,
                    payload={"version_id": version.id, "commit_message": version.commit_message},
                ),
            )

    def get_version(self, version_id: str) -> FlowVersion | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM flow_versions WHERE id = ?", (version_id,)
            ).fetchone()
        if not row:
            return None
        return FlowVersion(
            id=row["id"],
            flow_id=row["flow_id"],
            visual_graph=VisualGraph.model_validate(json.loads(row["visual_graph"])),
            execution_graph=ExecutionGraph.model_validate(json.loads(row["execution_graph"])),
            commit_message=row["commit_message"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def list_versions(self, flow_id: str) -> list[FlowVersionMetadata]:
        """Version metadata for a flow, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, flow_id, commit_message, created_at FROM flow_versions
                WHERE flow_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (flow_id,),
            ).fetchall()
        return [
            FlowVersionMetadata(
                id=row["id"],
                flow_id=row["flow_id"],
                commit_message=row["commit_message"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # --- Runs ---

    def create_run(self, run: Run) -> Run:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO runs (id, flow_id, flow_version_id, entity_id, trigger,
                                  node_states, parallel_instances, revision,
                                  created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.flow_id,
                    run.flow_version_id,
                    run.entity_id,
                    _safe_json_dumps(run.trigger),
                    self._dump_states(run.node_states),
                    _safe_json_dumps(run.parallel_instances),
                    run.revision,
                    run.created_at.isoformat(),
                    run.updated_at.isoformat(),
                ),
            )
            self._insert_event(
                conn,
                Event(
                    event_type=EventType.RUN_STARTED,
                    flow_id=run.flow_id,
                    run_id=run.id,
                    payload={
                        "flow_version_id": run.flow_version_id,
                        "entity_id": run.entity_id,
                        "trigger": run.trigger.model_dump(mode="json"),
                    },
                ),
            )
        return run

    def get_run(self, run_id: str) -> Run | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, flow_id: str | None = None) -> list[Run]:
        with self._connect() as conn:
            if flow_id is None:
                rows = conn.execute("SELECT * FROM runs ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM runs WHERE flow_id = ? ORDER BY created_at", (flow_id,)
                ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def update_node_states(
        self,
        run_id: str,
        updates: dict[str, NodeUpdate],
        expected_revision: int | None = None,
    ) -> Run:
        """Apply a batch of node updates atomically.

        Every status change is checked against the transition table before
        anything is written. One invalid transition (StatusTransitionError) or
        an unknown key (KeyError) rolls back the whole batch.
        """
        with self.transaction() as conn:
            run = self._load_run(conn, run_id)
            if expected_revision is not None and run.revision != expected_revision:
                raise ConcurrentUpdateError(run_id, expected_revision, run.revision)
            self._apply_updates(conn, run, updates)
            return self._save_run(conn, run)

    def claim_node(
        self,
        run_id: str,
        key: str,
        from_statuses: Iterable[NodeStatus],
        to_status: NodeStatus = NodeStatus.RUNNING,
    ) -> Run | None:
        """Compare-and-set a node's status.

        Returns the updated run, or None when the node's current status is not
        one of ``from_statuses`` (someone else already claimed it).
        """
        with self.transaction() as conn:
            run = self._load_run(conn, run_id)
            state = run.node_states.get(key)
            if state is None:
                raise KeyError(f"Run {run_id} has no node state '{key}'")
            if state.status not in set(from_statuses):
                logger.debug(f"Claim of '{key}' in run {run_id} skipped: status is {state.status.value}")
                return None
            self._apply_updates(conn, run, {key: NodeUpdate(status=to_status)})
            return self._save_run(conn, run)

    def register_instances(
        self,
        run_id: str,
        instances: dict[str, list[NodeState]],
        updates: dict[str, NodeUpdate] | None = None,
    ) -> Run:
        """Add parallel instance states for one or more template nodes.

        ``instances[template_id][i]`` becomes instance ``template_id_i``.
        ``updates`` (for example completing the splitter that spawned them)
        commit in the same transaction.
        """
        with self.transaction() as conn:
            run = self._load_run(conn, run_id)
            for template_id, states in instances.items():
                if template_id not in run.node_states:
                    raise KeyError(f"Run {run_id} has no node state '{template_id}'")
                if run.has_instances(template_id):
                    raise ValueError(
                        f"Parallel instances for '{template_id}' already exist in run {run_id}"
                    )

                keys = []
                for index, state in enumerate(states):
                    key = str(InstanceKey(template_id=template_id, index=index))
                    if key in run.node_states:
                        raise ValueError(f"Instance key '{key}' collides with an existing node")
                    run.node_states[key] = state
                    keys.append(key)
                run.parallel_instances[template_id] = list(range(len(states)))

                self._insert_event(
                    conn,
                    Event(
                        event_type=EventType.INSTANCES_CREATED,
                        flow_id=run.flow_id,
                        run_id=run_id,
                        node_key=template_id,
                        payload={"instances": keys},
                    ),
                )
            self._apply_updates(conn, run, updates or {})
            return self._save_run(conn, run)

    def _apply_updates(
        self, conn: sqlite3.Connection, run: Run, updates: dict[str, NodeUpdate]
    ) -> None:
        """Validate every update, then mutate ``run`` and record events."""
        for key, update in updates.items():
            state = run.node_states.get(key)
            if state is None:
                raise KeyError(f"Run {run.id} has no node state '{key}'")
            if update.status is not None:
                validate_transition(state.status, update.status)

        now = _utc_now()
        for key, update in updates.items():
            state = run.node_states[key]
            previous = state.status
            if update.status is not None:
                state.status = update.status
                if update.status == NodeStatus.RUNNING:
                    state.started_at = now
            if update.sets_output:
                state.output = update.output
            if update.sets_error:
                state.error = update.error
            state.updated_at = now

            if update.status is not None:
                payload: dict[str, Any] = {"from": previous.value}
                if update.status == NodeStatus.FAILED:
                    payload["error"] = state.error
                self._insert_event(
                    conn,
                    Event(
                        event_type=EventType.NODE_STATUS_CHANGED,
                        flow_id=run.flow_id,
                        run_id=run.id,
                        node_key=key,
                        status=update.status.value,
                        payload=payload,
                        timestamp=now,
                    ),
                )

    def _load_run(self, conn: sqlite3.Connection, run_id: str) -> Run:
        row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        if not row:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return self._row_to_run(row)

    def _save_run(self, conn: sqlite3.Connection, run: Run) -> Run:
        """Write back node states; the revision guard catches lost updates."""
        run.updated_at = _utc_now()
        result = conn.execute(
            """
            UPDATE runs SET node_states = ?, parallel_instances = ?, revision = revision + 1,
                            updated_at = ?
            WHERE id = ? AND revision = ?
            """,
            (
                self._dump_states(run.node_states),
                _safe_json_dumps(run.parallel_instances),
                run.updated_at.isoformat(),
                run.id,
                run.revision,
            ),
        )
        if result.rowcount == 0:
            row = conn.execute("SELECT revision FROM runs WHERE id = ?", (run.id,)).fetchone()
            raise ConcurrentUpdateError(run.id, run.revision, row["revision"] if row else -1)
        run.revision += 1
        return run

    def _dump_states(self, states: dict[str, NodeState]) -> str:
        return _safe_json_dumps({key: s.model_dump(mode="json") for key, s in states.items()})

    def _row_to_run(self, row: sqlite3.Row) -> Run:
        return Run(
            id=row["id"],
            flow_id=row["flow_id"],
            flow_version_id=row["flow_version_id"],
            entity_id=row["entity_id"],
            trigger=TriggerMetadata.model_validate(json.loads(row["trigger"]))
            if row["trigger"]
            else TriggerMetadata(),
            node_states={
                key: NodeState.model_validate(value)
                for key, value in json.loads(row["node_states"]).items()
            },
            parallel_instances=json.loads(row["parallel_instances"]),
            revision=row["revision"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
