"""SQLite persistence for graphs, runs, node states and entities.

Node states are stored one row per (run, node) key, augmented parallel
entries included. Every node state write goes through a single
BEGIN IMMEDIATE transaction that re-reads the current rows, validates each
transition and writes all entries or none.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from canvasflow.core.graph_schema import (
    EntityType,
    ExecutionGraph,
    NodeState,
    NodeStatus,
    Run,
    VisualGraph,
)
from canvasflow.core.transitions import validate_transition

logger = logging.getLogger(__name__)


class RunNotFoundError(Exception):
    """Raised when a run id does not exist."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' not found")


class NodeNotFoundError(Exception):
    """Raised when a node id is not part of a run's graph."""

    def __init__(self, run_id: str, node_id: str):
        self.run_id = run_id
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' not found in run '{run_id}'")


class EntityNotFoundError(Exception):
    """Raised when an entity id does not exist."""

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"Entity '{entity_id}' not found")


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
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class Entity(BaseModel):
    """A tracked entity (customer, lead...) moving across canvas sections"""

    id: str
    name: str | None = None
    entity_type: EntityType = EntityType.LEAD
    current_node_id: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class JourneyEvent(BaseModel):
    """Append-only record of an entity arriving somewhere"""

    id: int | None = None
    entity_id: str
    event_type: str
    node_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


class Database:
    """SQLite database holding graphs, runs and their node states."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS graphs (
        id TEXT PRIMARY KEY,
        name TEXT,
        definition TEXT NOT NULL,
        execution_graph TEXT,
        updated_at TIMESTAMP NOT NULL
    );

    -- execution_graph is a snapshot; later graph edits never affect a run
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        graph_id TEXT NOT NULL,
        entity_id TEXT,
        input TEXT,
        execution_graph TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    -- JSON payloads are TEXT so scalar outputs like 42 read back as JSON text
    CREATE TABLE IF NOT EXISTS node_states (
        run_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        status TEXT NOT NULL,
        output TEXT,
        error TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (run_id, node_id),
        FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS entities (
        id TEXT PRIMARY KEY,
        name TEXT,
        entity_type TEXT NOT NULL,
        current_node_id TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    CREATE TABLE IF NOT EXISTS journey_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entity_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        node_id TEXT,
        metadata TEXT,
        timestamp TIMESTAMP NOT NULL,
        FOREIGN KEY (entity_id) REFERENCES entities(id)
    );

    CREATE INDEX IF NOT EXISTS idx_runs_graph ON runs(graph_id);
    CREATE INDEX IF NOT EXISTS idx_journey_entity ON journey_events(entity_id);
    """

    def __init__(self, db_path: str | Path = ".canvasflow/state.db"):
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
        """Explicit write transaction, taken with BEGIN IMMEDIATE."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    # ========== Graphs ==========

    def save_graph(
        self, graph: VisualGraph, execution_graph: ExecutionGraph | None = None
    ) -> None:
        """Insert or update an authored graph and, when given, its compiled form."""
        compiled = execution_graph.model_dump_json() if execution_graph else None
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO graphs (id, name, definition, execution_graph, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    definition = excluded.definition,
                    execution_graph = excluded.execution_graph,
                    updated_at = excluded.updated_at
                """,
                (graph.id, graph.name, graph.model_dump_json(), compiled, _utc_now().isoformat()),
            )

    def get_graph(self, graph_id: str) -> VisualGraph | None:
        with self._connect() as conn:
            row = conn.execute("SELECT definition FROM graphs WHERE id = ?", (graph_id,)).fetchone()
        if row is None:
            return None
        return VisualGraph.model_validate_json(row["definition"])

    # ========== Runs ==========

    def create_run(
        self,
        graph_id: str,
        execution_graph: ExecutionGraph,
        entity_id: str | None = None,
        input: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> Run:
        """Create a run with every execution node pending."""
        run_id = run_id or str(uuid.uuid4())
        now = _utc_now().isoformat()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO runs (
                    id, graph_id, entity_id, input, execution_graph, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    graph_id,
                    entity_id,
                    _safe_json_dumps(input or {}),
                    execution_graph.model_dump_json(),
                    now,
                    now,
                ),
            )
            conn.executemany(
                "INSERT INTO node_states (run_id, node_id, status) VALUES (?, ?, ?)",
                [(run_id, node_id, NodeStatus.PENDING.value) for node_id in execution_graph.nodes],
            )
        logger.info(f"Created run {run_id} for graph '{graph_id}'")
        run = self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def _load_run(self, conn: sqlite3.Connection, run_id: str) -> Run | None:
        row = conn.execute(
            "SELECT id, graph_id, entity_id, input, created_at, updated_at FROM runs WHERE id = ?",
            (run_id,),
        ).fetchone()
        if row is None:
            return None
        return Run(
            id=row["id"],
            graph_id=row["graph_id"],
            entity_id=row["entity_id"],
            input=json.loads(row["input"]) if row["input"] else {},
            node_states=self._load_node_states(conn, run_id),
            created_at=_parse_timestamp(row["created_at"]),
            updated_at=_parse_timestamp(row["updated_at"]),
        )

    def _load_node_states(self, conn: sqlite3.Connection, run_id: str) -> dict[str, NodeState]:
        rows = conn.execute(
            "SELECT node_id, status, output, error FROM node_states WHERE run_id = ? ORDER BY rowid",
            (run_id,),
        ).fetchall()
        return {
            row["node_id"]: NodeState(
                status=NodeStatus(row["status"]),
                output=json.loads(row["output"]) if row["output"] is not None else None,
                error=row["error"],
            )
            for row in rows
        }

    def get_run(self, run_id: str) -> Run | None:
        with self._connect() as conn:
            return self._load_run(conn, run_id)

    def get_execution_graph(self, run_id: str) -> ExecutionGraph:
        """The graph snapshot a run was created from."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT execution_graph FROM runs WHERE id = ?", (run_id,)
            ).fetchone()
        if row is None:
            raise RunNotFoundError(run_id)
        return ExecutionGraph.model_validate_json(row["execution_graph"])

    def list_runs(self, graph_id: str | None = None) -> list[Run]:
        """Runs newest first, optionally filtered by graph."""
        with self._connect() as conn:
            if graph_id is None:
                rows = conn.execute("SELECT id FROM runs ORDER BY created_at DESC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT id FROM runs WHERE graph_id = ? ORDER BY created_at DESC",
                    (graph_id,),
                ).fetchall()
            runs = [self._load_run(conn, row["id"]) for row in rows]
        return [run for run in runs if run is not None]

    def delete_run(self, run_id: str) -> bool:
        """Delete a run and its node states. Returns False if it did not exist."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM node_states WHERE run_id = ?", (run_id,))
            cursor = conn.execute("DELETE FROM runs WHERE id = ?", (run_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted run {run_id}")
        return deleted

    # ========== Node States ==========

    def _write_node_states(
        self, conn: sqlite3.Connection, run_id: str, updates: dict[str, NodeState]
    ) -> None:
        """Validate and write updates inside an open transaction."""
        exists = conn.execute("SELECT 1 FROM runs WHERE id = ?", (run_id,)).fetchone()
        if exists is None:
            raise RunNotFoundError(run_id)

        current = {
            row["node_id"]: NodeStatus(row["status"])
            for row in conn.execute(
                "SELECT node_id, status FROM node_states WHERE run_id = ?", (run_id,)
            )
        }

        # Validate everything before the first write
        for node_id, state in updates.items():
            if node_id in current:
                validate_transition(current[node_id], state.status, node_id)

        for node_id, state in updates.items():
            output = _safe_json_dumps(state.output) if state.output is not None else None
            if node_id in current:
                conn.execute(
                    """
                    UPDATE node_states
                    SET status = ?, output = ?, error = ?, version = version + 1
                    WHERE run_id = ? AND node_id = ?
                    """,
                    (state.status.value, output, state.error, run_id, node_id),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO node_states (run_id, node_id, status, output, error)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (run_id, node_id, state.status.value, output, state.error),
                )

        conn.execute(
            "UPDATE runs SET updated_at = ? WHERE id = ?", (_utc_now().isoformat(), run_id)
        )

    def update_node_states(self, run_id: str, updates: dict[str, NodeState]) -> Run:
        """
        Atomically apply several node state writes.

        Existing entries must pass the transition table; unknown keys (the
        augmented entries of a fan-out) are inserted. Either every entry is
        written or none is.

        Raises:
            RunNotFoundError: if the run does not exist
            InvalidTransitionError: if any entry would break the transition table
        """
        with self.transaction() as conn:
            self._write_node_states(conn, run_id, updates)
            run = self._load_run(conn, run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def claim_node_state(
        self, run_id: str, node_id: str, expected: NodeStatus, state: NodeState
    ) -> bool:
        """
        Write state only if node_id currently has the expected status.

        Returns False without writing when another walker got there first.
        """
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT status FROM node_states WHERE run_id = ? AND node_id = ?",
                (run_id, node_id),
            ).fetchone()
            if row is None or row["status"] != expected.value:
                return False
            self._write_node_states(conn, run_id, {node_id: state})
        return True

    # ========== Entities ==========

    def _row_to_entity(self, row: sqlite3.Row) -> Entity:
        return Entity(
            id=row["id"],
            name=row["name"],
            entity_type=EntityType(row["entity_type"]),
            current_node_id=row["current_node_id"],
            created_at=_parse_timestamp(row["created_at"]),
            updated_at=_parse_timestamp(row["updated_at"]),
        )

    def create_entity(
        self,
        name: str | None = None,
        entity_type: EntityType = EntityType.LEAD,
        entity_id: str | None = None,
    ) -> Entity:
        entity = Entity(id=entity_id or str(uuid.uuid4()), name=name, entity_type=entity_type)
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO entities (id, name, entity_type, current_node_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entity.id,
                    entity.name,
                    entity.entity_type.value,
                    None,
                    entity.created_at.isoformat(),
                    entity.updated_at.isoformat(),
                ),
            )
        return entity

    def get_entity(self, entity_id: str) -> Entity | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        return self._row_to_entity(row) if row else None

    def move_entity(
        self,
        entity_id: str,
        node_id: str,
        complete_as: str = "neutral",
        metadata: dict[str, Any] | None = None,
        set_entity_type: EntityType | str | None = None,
    ) -> Entity:
        """
        Place an entity on a node and record a journey event for the arrival.

        Raises:
            EntityNotFoundError: if the entity does not exist
        """
        now = _utc_now().isoformat()
        event_metadata = {"complete_as": complete_as, **(metadata or {})}
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
            if row is None:
                raise EntityNotFoundError(entity_id)
            entity_type = (
                EntityType(set_entity_type).value if set_entity_type else row["entity_type"]
            )
            conn.execute(
                """
                UPDATE entities
                SET current_node_id = ?, entity_type = ?, updated_at = ?
                WHERE id = ?
                """,
                (node_id, entity_type, now, entity_id),
            )
            conn.execute(
                """
                INSERT INTO journey_events (entity_id, event_type, node_id, metadata, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (entity_id, "node_arrival", node_id, _safe_json_dumps(event_metadata), now),
            )
            updated = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        return self._row_to_entity(updated)

    def get_journey_events(self, entity_id: str) -> list[JourneyEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM journey_events WHERE entity_id = ? ORDER BY id", (entity_id,)
            ).fetchall()
        return [
            JourneyEvent(
                id=row["id"],
                entity_id=row["entity_id"],
                event_type=row["event_type"],
                node_id=row["node_id"],
                metadata=json.loads(row["metadata"]) if row["metadata"] else {},
                timestamp=_parse_timestamp(row["timestamp"]),
            )
            for row in rows
        ]
