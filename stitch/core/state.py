"""SQLite persistence for flows, versions, runs and entities.

Versions and journey events are append-only: rows are inserted and never
updated or deleted. Mutable state (current version pointer, node states,
entity positions) only changes through guarded compare-and-set updates that
report whether they won.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel

from stitch.core.graph_schema import AuthoredGraph, EntityType, ExecutionArtifact
from stitch.core.models import (
    AtNode,
    Entity,
    EntityPosition,
    Flow,
    FlowVersion,
    FlowVersionMetadata,
    JourneyEvent,
    JourneyEventType,
    NodeRunStatus,
    NodeState,
    Run,
    RunStatus,
    Traveling,
    TriggerDescriptor,
    utc_now,
)
from stitch.core.status import validate_transition

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Path and Pydantic models."""

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


def _json_or_none(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


def _position_columns(position: EntityPosition) -> tuple[str | None, str | None, float | None, str | None]:
    """(current_node_id, current_edge_id, edge_progress, destination_node_id)"""
    if isinstance(position, AtNode):
        return position.node_id, None, None, None
    return None, position.edge_id, position.progress, position.destination_node_id


class Database:
    """SQLite store backing the version store, edge walker and travel state machine."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS flows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        current_version_id TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    -- Immutable snapshots, never updated or deleted
    CREATE TABLE IF NOT EXISTS flow_versions (
        id TEXT PRIMARY KEY,
        flow_id TEXT NOT NULL,
        authored_graph JSON NOT NULL,
        execution_artifact JSON NOT NULL,
        commit_message TEXT,
        created_at TIMESTAMP NOT NULL,
        FOREIGN KEY (flow_id) REFERENCES flows(id)
    );

    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        flow_id TEXT NOT NULL,
        version_id TEXT NOT NULL,
        entity_id TEXT,
        trigger JSON,
        status TEXT NOT NULL CHECK(status IN ('running', 'waiting', 'completed', 'failed')),
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        FOREIGN KEY (flow_id) REFERENCES flows(id),
        FOREIGN KEY (version_id) REFERENCES flow_versions(id)
    );

    CREATE TABLE IF NOT EXISTS node_states (
        run_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN
            ('pending', 'running', 'waiting_for_user', 'completed', 'failed')),
        output JSON,
        error TEXT,
        input JSON,
        version INTEGER DEFAULT 0,  -- Incremented on every status change
        updated_at TIMESTAMP,
        PRIMARY KEY (run_id, node_id),
        FOREIGN KEY (run_id) REFERENCES runs(id)
    );

    -- Position is either at a node or on an edge, never both and never neither
    CREATE TABLE IF NOT EXISTS entities (
        id TEXT PRIMARY KEY,
        canvas_id TEXT NOT NULL,
        name TEXT NOT NULL,
        email TEXT,
        entity_type TEXT NOT NULL,
        metadata JSON,
        current_node_id TEXT,
        current_edge_id TEXT,
        edge_progress REAL,
        destination_node_id TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        UNIQUE (canvas_id, email),
        CHECK (
            (current_node_id IS NOT NULL AND current_edge_id IS NULL
                AND edge_progress IS NULL AND destination_node_id IS NULL)
            OR
            (current_node_id IS NULL AND current_edge_id IS NOT NULL
                AND edge_progress BETWEEN 0 AND 1 AND destination_node_id IS NOT NULL)
        )
    );

    -- Append-only journey log
    CREATE TABLE IF NOT EXISTS journey_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entity_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        node_id TEXT,
        edge_id TEXT,
        progress REAL,
        metadata JSON,
        timestamp TIMESTAMP NOT NULL,
        FOREIGN KEY (entity_id) REFERENCES entities(id)
    );

    CREATE INDEX IF NOT EXISTS idx_versions_flow ON flow_versions(flow_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_runs_flow ON runs(flow_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_entities_canvas ON entities(canvas_id);
    CREATE INDEX IF NOT EXISTS idx_journey_entity ON journey_events(entity_id);
    """

    def __init__(self, db_path: str | Path = ".stitch/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize schema and enable WAL mode for concurrent readers."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout so concurrent writers wait instead of
        failing immediately with "database is locked".
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

    def run_in_transaction(self, func: Callable[..., T], *args: Any) -> T:
        """Execute func(conn, *args) inside a BEGIN IMMEDIATE transaction.

        IMMEDIATE takes the write lock up front, so read-then-write sequences
        inside func are atomic with respect to other writers.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                result = func(conn, *args)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    # --- Flows ---

    def create_flow(self, flow_id: str, name: str | None = None) -> Flow:
        """Create a flow if it does not exist yet and return it."""
        now = utc_now().isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO flows (id, name, current_version_id, created_at, updated_at)
                VALUES (?, ?, NULL, ?, ?)
                """,
                (flow_id, name or flow_id, now, now),
            )
        flow = self.get_flow(flow_id)
        if flow is None:
            raise sqlite3.IntegrityError(f"Flow {flow_id} missing right after insert")
        return flow

    def get_flow(self, flow_id: str) -> Flow | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM flows WHERE id = ?", (flow_id,)).fetchone()
        if not row:
            return None
        return Flow(
            id=row["id"],
            name=row["name"],
            current_version_id=row["current_version_id"],
            created_at=row["created_at"],
        )

    def list_flows(self) -> list[Flow]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id FROM flows ORDER BY created_at DESC").fetchall()
        return [f for f in (self.get_flow(r["id"]) for r in rows) if f is not None]

    def get_current_version_id(self, flow_id: str) -> str | None:
        """Current version pointer, None when the flow has no version yet."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT current_version_id FROM flows WHERE id = ?", (flow_id,)
            ).fetchone()
        return row["current_version_id"] if row else None

    # --- Versions ---

    def insert_version(
        self,
        version: FlowVersion,
        expected_current_id: str | None = None,
        guarded: bool = False,
    ) -> bool:
        """Persist an immutable version and repoint the flow's current pointer.

        With guarded=True the pointer only moves if it still equals
        expected_current_id. A lost race inserts nothing and returns False.
        """

        def persist(conn: sqlite3.Connection) -> bool:
            if guarded:
                row = conn.execute(
                    "SELECT current_version_id FROM flows WHERE id = ?", (version.flow_id,)
                ).fetchone()
                if row is None or row["current_version_id"] != expected_current_id:
                    return False

            conn.execute(
                """
                INSERT INTO flow_versions (id, flow_id, authored_graph, execution_artifact,
                                           commit_message, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    version.id,
                    version.flow_id,
                    version.authored_graph.model_dump_json(),
                    version.execution_artifact.model_dump_json(),
                    version.commit_message,
                    version.created_at.isoformat(),
                ),
            )
            if guarded:
                result = conn.execute(
                    """
                    UPDATE flows SET current_version_id = ?, updated_at = ?
                    WHERE id = ? AND current_version_id IS ?
                    """,
                    (version.id, utc_now().isoformat(), version.flow_id, expected_current_id),
                )
            else:
                result = conn.execute(
                    "UPDATE flows SET current_version_id = ?, updated_at = ? WHERE id = ?",
                    (version.id, utc_now().isoformat(), version.flow_id),
                )
            if result.rowcount == 0:
                raise sqlite3.IntegrityError(f"Flow '{version.flow_id}' vanished during repoint")
            return True

        return self.run_in_transaction(persist)

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
            commit_message=row["commit_message"],
            created_at=row["created_at"],
            authored_graph=AuthoredGraph.model_validate_json(row["authored_graph"]),
            execution_artifact=ExecutionArtifact.model_validate_json(row["execution_artifact"]),
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
                id=r["id"],
                flow_id=r["flow_id"],
                commit_message=r["commit_message"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # --- Runs ---

    def create_run(self, run: Run) -> None:
        """Insert a run together with its initial node states."""

        def persist(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO runs (id, flow_id, version_id, entity_id, trigger, status,
                                  created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.flow_id,
                    run.version_id,
                    run.entity_id,
                    run.trigger.model_dump_json(),
                    run.status.value,
                    run.created_at.isoformat(),
                    run.updated_at.isoformat(),
                ),
            )
            conn.executemany(
                """
                INSERT INTO node_states (run_id, node_id, status, output, error, input, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        run.id,
                        node_id,
                        state.status.value,
                        _safe_json_dumps(state.output) if state.output is not None else None,
                        state.error,
                        _safe_json_dumps(state.input) if state.input is not None else None,
                        run.created_at.isoformat(),
                    )
                    for node_id, state in run.node_states.items()
                ],
            )

        self.run_in_transaction(persist)

    def get_run(self, run_id: str) -> Run | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
            if not row:
                return None
            state_rows = conn.execute(
                "SELECT * FROM node_states WHERE run_id = ? ORDER BY rowid", (run_id,)
            ).fetchall()
        return Run(
            id=row["id"],
            flow_id=row["flow_id"],
            version_id=row["version_id"],
            entity_id=row["entity_id"],
            trigger=TriggerDescriptor.model_validate_json(row["trigger"])
            if row["trigger"]
            else TriggerDescriptor(),
            status=RunStatus(row["status"]),
            node_states={r["node_id"]: self._row_to_node_state(r) for r in state_rows},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def list_runs(self, flow_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        """Run summaries, newest first."""
        query = "SELECT id, flow_id, version_id, entity_id, status, created_at FROM runs"
        params: list[Any] = []
        if flow_id:
            query += " WHERE flow_id = ?"
            params.append(flow_id)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            return [dict(r) for r in conn.execute(query, params).fetchall()]

    def _row_to_node_state(self, row: sqlite3.Row) -> NodeState:
        return NodeState(
            status=NodeRunStatus(row["status"]),
            output=_json_or_none(row["output"]),
            error=row["error"],
            input=_json_or_none(row["input"]),
        )

    def get_node_state(self, run_id: str, node_id: str) -> NodeState | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM node_states WHERE run_id = ? AND node_id = ?", (run_id, node_id)
            ).fetchone()
        return self._row_to_node_state(row) if row else None

    def seed_node_states(self, run_id: str, states: dict[str, NodeState]) -> int:
        """Add node states to an existing run. Rows that already exist are left alone.

        Returns the number of rows inserted.
        """
        now = utc_now().isoformat()

        def persist(conn: sqlite3.Connection) -> int:
            inserted = 0
            for node_id, state in states.items():
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO node_states
                        (run_id, node_id, status, output, error, input, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        node_id,
                        state.status.value,
                        _safe_json_dumps(state.output) if state.output is not None else None,
                        state.error,
                        _safe_json_dumps(state.input) if state.input is not None else None,
                        now,
                    ),
                )
                inserted += cursor.rowcount
            return inserted

        return self.run_in_transaction(persist)

    def transition_node_state(
        self,
        run_id: str,
        node_id: str,
        expected: NodeRunStatus,
        new: NodeRunStatus,
        output: Any = None,
        error: str | None = None,
    ) -> bool:
        """Atomically move a node from expected to new status.

        Returns False when the node is no longer in the expected status
        (another writer got there first).

        Raises:
            StatusTransitionError: if expected -> new is not a legal transition
        """
        validate_transition(expected, new)
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE node_states
                SET status = ?,
                    output = COALESCE(?, output),
                    error = ?,
                    version = version + 1,
                    updated_at = ?
                WHERE run_id = ? AND node_id = ? AND status = ?
                """,
                (
                    new.value,
                    _safe_json_dumps(output) if output is not None else None,
                    error,
                    utc_now().isoformat(),
                    run_id,
                    node_id,
                    expected.value,
                ),
            )
            return result.rowcount > 0

    def update_run_status(self, run_id: str, status: RunStatus) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE runs SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, utc_now().isoformat(), run_id),
            )

    # --- Entities ---

    def create_entity(self, entity: Entity, event: JourneyEvent | None = None) -> None:
        """Insert an entity, optionally with its first journey event in the same transaction."""

        def persist(conn: sqlite3.Connection) -> None:
            node_id, edge_id, progress, destination = _position_columns(entity.position)
            conn.execute(
                """
                INSERT INTO entities (id, canvas_id, name, email, entity_type, metadata,
                                      current_node_id, current_edge_id, edge_progress,
                                      destination_node_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entity.id,
                    entity.canvas_id,
                    entity.name,
                    entity.email,
                    entity.entity_type.value,
                    _safe_json_dumps(entity.metadata),
                    node_id,
                    edge_id,
                    progress,
                    destination,
                    entity.created_at.isoformat(),
                    entity.updated_at.isoformat(),
                ),
            )
            if event is not None:
                self._insert_journey_event(conn, event)

        self.run_in_transaction(persist)

    def _row_to_entity(self, row: sqlite3.Row) -> Entity:
        position: EntityPosition
        if row["current_node_id"] is not None:
            position = AtNode(node_id=row["current_node_id"])
        else:
            position = Traveling(
                edge_id=row["current_edge_id"],
                progress=row["edge_progress"],
                destination_node_id=row["destination_node_id"],
            )
        return Entity(
            id=row["id"],
            canvas_id=row["canvas_id"],
            name=row["name"],
            email=row["email"],
            entity_type=EntityType(row["entity_type"]),
            metadata=_json_or_none(row["metadata"]) or {},
            position=position,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_entity(self, entity_id: str) -> Entity | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        return self._row_to_entity(row) if row else None

    def find_entity_by_email(self, canvas_id: str, email: str) -> Entity | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM entities WHERE canvas_id = ? AND email = ?", (canvas_id, email)
            ).fetchone()
        return self._row_to_entity(row) if row else None

    def list_entities(self, canvas_id: str) -> list[Entity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM entities WHERE canvas_id = ? ORDER BY created_at", (canvas_id,)
            ).fetchall()
        return [self._row_to_entity(r) for r in rows]

    def update_entity_position(
        self,
        entity_id: str,
        expected: EntityPosition,
        new: EntityPosition,
        event: JourneyEvent | None = None,
    ) -> bool:
        """Compare-and-set an entity's position, appending event atomically with it.

        Progress along one edge may only grow. Returns False if the stored
        position no longer matches expected.
        """
        exp_node, exp_edge, _, exp_dest = _position_columns(expected)
        new_node, new_edge, new_progress, new_dest = _position_columns(new)

        where = (
            "id = ? AND current_node_id IS ? AND current_edge_id IS ? "
            "AND destination_node_id IS ?"
        )
        where_params: list[Any] = [entity_id, exp_node, exp_edge, exp_dest]
        if isinstance(expected, Traveling) and isinstance(new, Traveling):
            where += " AND edge_progress <= ?"
            where_params.append(new_progress)

        def apply(conn: sqlite3.Connection) -> bool:
            result = conn.execute(
                f"""
                UPDATE entities
                SET current_node_id = ?, current_edge_id = ?, edge_progress = ?,
                    destination_node_id = ?, updated_at = ?
                WHERE {where}
                """,
                (new_node, new_edge, new_progress, new_dest, utc_now().isoformat(), *where_params),
            )
            if result.rowcount == 0:
                return False
            if event is not None:
                self._insert_journey_event(conn, event)
            return True

        return self.run_in_transaction(apply)

    def update_entity_type(
        self, entity_id: str, entity_type: EntityType, event: JourneyEvent | None = None
    ) -> bool:
        def apply(conn: sqlite3.Connection) -> bool:
            result = conn.execute(
                "UPDATE entities SET entity_type = ?, updated_at = ? WHERE id = ?",
                (entity_type.value, utc_now().isoformat(), entity_id),
            )
            if result.rowcount == 0:
                return False
            if event is not None:
                self._insert_journey_event(conn, event)
            return True

        return self.run_in_transaction(apply)

    # --- Journey events ---

    def _insert_journey_event(self, conn: sqlite3.Connection, event: JourneyEvent) -> int:
        cursor = conn.execute(
            """
            INSERT INTO journey_events (entity_id, event_type, node_id, edge_id, progress,
                                        metadata, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.entity_id,
                event.event_type.value,
                event.node_id,
                event.edge_id,
                event.progress,
                _safe_json_dumps(event.metadata),
                event.timestamp.isoformat(),
            ),
        )
        return cursor.lastrowid  # type: ignore

    def append_journey_event(self, event: JourneyEvent) -> int:
        with self._connect() as conn:
            return self._insert_journey_event(conn, event)

    def get_journey_events(self, entity_id: str) -> list[JourneyEvent]:
        """Journey log for an entity in insertion order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM journey_events WHERE entity_id = ? ORDER BY id", (entity_id,)
            ).fetchall()
        return [
            JourneyEvent(
                id=r["id"],
                entity_id=r["entity_id"],
                event_type=JourneyEventType(r["event_type"]),
                node_id=r["node_id"],
                edge_id=r["edge_id"],
                progress=r["progress"],
                metadata=_json_or_none(r["metadata"]) or {},
                timestamp=r["timestamp"],
            )
            for r in rows
        ]
