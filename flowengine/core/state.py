"""SQLite workflow store.

Holds workflow definitions, execution rows, delay suspensions, and the
append-only audit trail (action/condition/goal records). Also holds the
split-test counters and per-workflow analytics.

All timestamps are stored as UTC ISO-8601 strings with fixed microsecond
precision so that lexical comparison in SQL matches chronological order.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from flowengine.core.graph_schema import WorkflowDefinition
from flowengine.core.models import (
    ActionRecord,
    ConditionRecord,
    DelaySuspension,
    ExecutedNode,
    Execution,
    ExecutionContext,
    ExecutionStatus,
    GoalRecord,
    SplitTestState,
    SuspensionKind,
    SuspensionStatus,
    TriggerContext,
    Variant,
    utc_now,
)


class StateError(Exception):
    """Illegal operation against the workflow store."""

    pass


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


def _json_or(value: str | None, default: Any) -> Any:
    return json.loads(value) if value else default


def to_db_timestamp(dt: datetime) -> str:
    """Normalize to the fixed-width UTC format used in every table."""
    if dt.tzinfo is None:
        raise StateError(f"Naive datetime not allowed in the store: {dt!r}")
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    """SQLite database for workflow execution state."""

    SCHEMA = """
    -- Workflow definitions (owned by the authoring layer, read by the engine)
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        definition JSON NOT NULL,
        version TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- One row per workflow run
    CREATE TABLE IF NOT EXISTS executions (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN
            ('pending', 'running', 'waiting', 'completed', 'failed', 'stopped')),
        contact_id TEXT,
        lead_id TEXT,
        opportunity_id TEXT,
        email_address TEXT,
        phone_number TEXT,
        trigger_payload JSON,
        executed_nodes JSON,
        variables JSON,
        current_node_id TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        failed_at TEXT,
        error_message TEXT,
        version INTEGER DEFAULT 0,  -- Incremented on each status change
        FOREIGN KEY (workflow_id) REFERENCES workflows(id)
    );

    -- Action audit trail (append-only)
    CREATE TABLE IF NOT EXISTS action_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        action_type TEXT NOT NULL,
        config JSON,
        status TEXT NOT NULL CHECK(status IN ('success', 'failed', 'stopped')),
        result JSON,
        error_message TEXT,
        executed_at TEXT NOT NULL,
        FOREIGN KEY (execution_id) REFERENCES executions(id)
    );

    -- Condition results and the path taken
    CREATE TABLE IF NOT EXISTS condition_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        condition_type TEXT,
        config JSON,
        result BOOLEAN NOT NULL,
        path_taken TEXT NOT NULL,
        evaluated_at TEXT NOT NULL,
        FOREIGN KEY (execution_id) REFERENCES executions(id)
    );

    -- Goals registered by goal nodes
    CREATE TABLE IF NOT EXISTS goals (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workflow_id TEXT NOT NULL,
        execution_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        goal_type TEXT,
        goal_config JSON,
        skip_to_node_id TEXT,
        created_at TEXT NOT NULL,
        achieved_at TEXT,
        FOREIGN KEY (execution_id) REFERENCES executions(id)
    );

    -- Split-test weights and visit counters
    CREATE TABLE IF NOT EXISTS split_tests (
        workflow_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        name TEXT,
        variant_a_weight REAL DEFAULT 0,
        variant_b_weight REAL DEFAULT 0,
        variant_c_weight REAL DEFAULT 0,
        variant_d_weight REAL DEFAULT 0,
        variant_a_count INTEGER DEFAULT 0,
        variant_b_count INTEGER DEFAULT 0,
        variant_c_count INTEGER DEFAULT 0,
        variant_d_count INTEGER DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (workflow_id, node_id)
    );

    -- Suspension points (delays and wait-for-event)
    CREATE TABLE IF NOT EXISTS delay_suspensions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id TEXT NOT NULL,
        workflow_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        kind TEXT NOT NULL CHECK(kind IN ('TIME_DELAY', 'WAIT_UNTIL', 'WAIT_FOR_EVENT')),
        resume_at TEXT,
        wait_event_type TEXT,
        timeout_at TEXT,
        config JSON,
        status TEXT NOT NULL CHECK(status IN ('waiting', 'completed')),
        created_at TEXT NOT NULL,
        resumed_at TEXT,
        FOREIGN KEY (execution_id) REFERENCES executions(id)
    );

    -- Per-workflow daily counters
    CREATE TABLE IF NOT EXISTS workflow_analytics (
        workflow_id TEXT NOT NULL,
        day TEXT NOT NULL,
        metric TEXT NOT NULL,
        value INTEGER DEFAULT 0,
        PRIMARY KEY (workflow_id, day, metric)
    );

    CREATE INDEX IF NOT EXISTS idx_exec_status ON executions(status, created_at);
    CREATE INDEX IF NOT EXISTS idx_exec_workflow ON executions(workflow_id);
    CREATE INDEX IF NOT EXISTS idx_actions_exec ON action_records(execution_id);
    CREATE INDEX IF NOT EXISTS idx_conditions_exec ON condition_records(execution_id);
    CREATE INDEX IF NOT EXISTS idx_goals_exec ON goals(execution_id);
    CREATE INDEX IF NOT EXISTS idx_susp_waiting ON delay_suspensions(status, resume_at);
    CREATE INDEX IF NOT EXISTS idx_susp_exec ON delay_suspensions(execution_id);
    """

    def __init__(self, db_path: str | Path = ".flowengine/state.db"):
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
        conn.execute("PRAGMA synchronous = NORMAL")
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
        """Explicit write transaction (BEGIN IMMEDIATE) for atomic read-modify-write."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    # --- Workflows ---

    def save_workflow(self, workflow: WorkflowDefinition) -> None:
        """Insert or update a workflow definition.

        Uses ON CONFLICT DO UPDATE instead of REPLACE to preserve FK references
        from executions that reference this workflow.
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflows (id, name, definition, version, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    definition = excluded.definition,
                    version = excluded.version,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    workflow.id,
                    workflow.name,
                    workflow.model_dump_json(by_alias=True),
                    workflow.version,
                ),
            )

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM workflows WHERE id=?", (workflow_id,)
            ).fetchone()
            return WorkflowDefinition.model_validate_json(row[0]) if row else None

    def list_workflows(self) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name, version, updated_at FROM workflows ORDER BY id"
            ).fetchall()
            return [dict(row) for row in rows]

    # --- Executions ---

    def enqueue_execution(
        self, workflow_id: str, trigger: TriggerContext | None = None
    ) -> str:
        """Create a new pending execution. Sole entry point into the engine."""
        trigger = trigger or TriggerContext()
        execution_id = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO executions (
                    id, workflow_id, status, contact_id, lead_id, opportunity_id,
                    email_address, phone_number, trigger_payload, executed_nodes,
                    variables, created_at
                ) VALUES (?, ?, 'pending', ?, ?, ?, ?, ?, ?, '[]', '{}', ?)
                """,
                (
                    execution_id,
                    workflow_id,
                    trigger.contact_id,
                    trigger.lead_id,
                    trigger.opportunity_id,
                    trigger.email_address,
                    trigger.phone_number,
                    _safe_json_dumps(trigger.payload),
                    to_db_timestamp(utc_now()),
                ),
            )
        return execution_id

    def _row_to_execution(self, row: sqlite3.Row) -> Execution:
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=ExecutionStatus(row["status"]),
            contact_id=row["contact_id"],
            lead_id=row["lead_id"],
            opportunity_id=row["opportunity_id"],
            email_address=row["email_address"],
            phone_number=row["phone_number"],
            trigger_payload=_json_or(row["trigger_payload"], {}),
            executed_nodes=[
                ExecutedNode.model_validate(n) for n in _json_or(row["executed_nodes"], [])
            ],
            variables=_json_or(row["variables"], {}),
            current_node_id=row["current_node_id"],
            created_at=from_db_timestamp(row["created_at"]),
            started_at=from_db_timestamp(row["started_at"]),
            completed_at=from_db_timestamp(row["completed_at"]),
            failed_at=from_db_timestamp(row["failed_at"]),
            error_message=row["error_message"],
        )

    def get_execution(self, execution_id: str) -> Execution | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM executions WHERE id=?", (execution_id,)
            ).fetchone()
            return self._row_to_execution(row) if row else None

    def list_executions(
        self,
        status: ExecutionStatus | None = None,
        workflow_id: str | None = None,
        limit: int = 50,
    ) -> list[Execution]:
        query = "SELECT * FROM executions WHERE 1=1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if workflow_id:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            return [self._row_to_execution(r) for r in conn.execute(query, params).fetchall()]

    def claim_pending_executions(self, limit: int) -> list[Execution]:
        """
        Atomically claim pending executions (pending -> running).

        The guarded UPDATE means only one worker can win each execution, even
        with several engine processes polling the same database.
        """
        claimed: list[Execution] = []
        now = to_db_timestamp(utc_now())
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM executions WHERE status='pending' "
                "ORDER BY created_at ASC LIMIT ?",
                (limit,),
            ).fetchall()
            for (execution_id,) in rows:
                result = conn.execute(
                    "UPDATE executions SET status='running', started_at=?, version=version+1 "
                    "WHERE id=? AND status='pending'",
                    (now, execution_id),
                )
                if result.rowcount > 0:
                    row = conn.execute(
                        "SELECT * FROM executions WHERE id=?", (execution_id,)
                    ).fetchone()
                    claimed.append(self._row_to_execution(row))
        return claimed

    def transition_execution(
        self,
        execution_id: str,
        new_status: ExecutionStatus,
        expected_status: ExecutionStatus,
    ) -> bool:
        """
        Set execution status only if current status matches expected.
        Returns True if update was applied, False if status had changed.
        """
        started_at = (
            to_db_timestamp(utc_now()) if new_status == ExecutionStatus.RUNNING else None
        )
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE executions
                SET status=?, started_at=COALESCE(started_at, ?), version=version+1
                WHERE id=? AND status=?
                """,
                (new_status.value, started_at, execution_id, expected_status.value),
            )
            return result.rowcount > 0

    def save_progress(self, context: ExecutionContext, current_node_id: str | None) -> None:
        """Flush the durable part of the context: executed nodes, variables, entity refs."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE executions SET
                    executed_nodes=?, variables=?, current_node_id=?,
                    contact_id=?, lead_id=?, opportunity_id=?,
                    email_address=?, phone_number=?
                WHERE id=?
                """,
                (
                    _safe_json_dumps([n.model_dump(mode="json") for n in context.executed_nodes]),
                    _safe_json_dumps(context.variables),
                    current_node_id,
                    context.contact_id,
                    context.lead_id,
                    context.opportunity_id,
                    context.email_address,
                    context.phone_number,
                    context.execution_id,
                ),
            )

    def mark_waiting(self, execution_id: str, node_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE executions SET status='waiting', current_node_id=?, version=version+1 "
                "WHERE id=?",
                (node_id, execution_id),
            )

    def mark_completed(self, execution_id: str, status: ExecutionStatus = ExecutionStatus.COMPLETED) -> None:
        """Terminal success-side states: completed or stopped."""
        if status not in (ExecutionStatus.COMPLETED, ExecutionStatus.STOPPED):
            raise StateError(f"mark_completed does not accept status '{status.value}'")
        with self._connect() as conn:
            conn.execute(
                "UPDATE executions SET status=?, completed_at=?, version=version+1 WHERE id=?",
                (status.value, to_db_timestamp(utc_now()), execution_id),
            )

    def mark_failed(self, execution_id: str, error_message: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE executions
                SET status='failed', failed_at=?, error_message=?, version=version+1
                WHERE id=?
                """,
                (to_db_timestamp(utc_now()), error_message, execution_id),
            )

    # --- Audit trail ---

    def insert_action_record(self, record: ActionRecord) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO action_records (
                    execution_id, node_id, action_type, config, status,
                    result, error_message, executed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.execution_id,
                    record.node_id,
                    record.action_type,
                    _safe_json_dumps(record.config),
                    record.status.value,
                    _safe_json_dumps(record.result),
                    record.error_message,
                    to_db_timestamp(record.executed_at),
                ),
            )
            return cursor.lastrowid  # type: ignore

    def get_action_records(self, execution_id: str) -> list[ActionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM action_records WHERE execution_id=? ORDER BY id",
                (execution_id,),
            ).fetchall()
            return [
                ActionRecord(
                    id=r["id"],
                    execution_id=r["execution_id"],
                    node_id=r["node_id"],
                    action_type=r["action_type"],
                    config=_json_or(r["config"], {}),
                    status=r["status"],
                    result=_json_or(r["result"], None),
                    error_message=r["error_message"],
                    executed_at=from_db_timestamp(r["executed_at"]),
                )
                for r in rows
            ]

    def insert_condition_record(self, record: ConditionRecord) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO condition_records (
                    execution_id, node_id, condition_type, config, result,
                    path_taken, evaluated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.execution_id,
                    record.node_id,
                    record.condition_type,
                    _safe_json_dumps(record.config),
                    record.result,
                    record.path_taken,
                    to_db_timestamp(record.evaluated_at),
                ),
            )
            return cursor.lastrowid  # type: ignore

    def get_condition_records(self, execution_id: str) -> list[ConditionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM condition_records WHERE execution_id=? ORDER BY id",
                (execution_id,),
            ).fetchall()
            return [
                ConditionRecord(
                    id=r["id"],
                    execution_id=r["execution_id"],
                    node_id=r["node_id"],
                    condition_type=r["condition_type"],
                    config=_json_or(r["config"], {}),
                    result=bool(r["result"]),
                    path_taken=r["path_taken"],
                    evaluated_at=from_db_timestamp(r["evaluated_at"]),
                )
                for r in rows
            ]

    def insert_goal(self, record: GoalRecord) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO goals (
                    workflow_id, execution_id, node_id, goal_type, goal_config,
                    skip_to_node_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.workflow_id,
                    record.execution_id,
                    record.node_id,
                    record.goal_type,
                    _safe_json_dumps(record.config),
                    record.skip_to_node_id,
                    to_db_timestamp(record.created_at),
                ),
            )
            return cursor.lastrowid  # type: ignore

    def get_goals(self, execution_id: str | None = None, pending_only: bool = False) -> list[GoalRecord]:
        query = "SELECT * FROM goals WHERE 1=1"
        params: list[Any] = []
        if execution_id:
            query += " AND execution_id = ?"
            params.append(execution_id)
        if pending_only:
            query += " AND achieved_at IS NULL"
        query += " ORDER BY id"
        with self._connect() as conn:
            return [
                GoalRecord(
                    id=r["id"],
                    workflow_id=r["workflow_id"],
                    execution_id=r["execution_id"],
                    node_id=r["node_id"],
                    goal_type=r["goal_type"],
                    config=_json_or(r["goal_config"], {}),
                    skip_to_node_id=r["skip_to_node_id"],
                    created_at=from_db_timestamp(r["created_at"]),
                    achieved_at=from_db_timestamp(r["achieved_at"]),
                )
                for r in conn.execute(query, params).fetchall()
            ]

    # --- Split tests ---

    def ensure_split_test(
        self,
        workflow_id: str,
        node_id: str,
        name: str,
        weights: dict[Variant, float],
    ) -> SplitTestState:
        """Lazily create the split-test row on first visit, then return it."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO split_tests (
                    workflow_id, node_id, name,
                    variant_a_weight, variant_b_weight, variant_c_weight, variant_d_weight
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(workflow_id, node_id) DO NOTHING
                """,
                (
                    workflow_id,
                    node_id,
                    name,
                    *(weights.get(v, 0) for v in Variant),
                ),
            )
        state = self.get_split_test(workflow_id, node_id)
        if state is None:
            raise StateError(f"Split test for workflow '{workflow_id}' node '{node_id}' was not created")
        return state

    def increment_split_variant(self, workflow_id: str, node_id: str, variant: Variant) -> int:
        """Atomic counter increment; returns the new count."""
        column = f"variant_{variant.value.lower()}_count"
        with self._connect() as conn:
            result = conn.execute(
                f"UPDATE split_tests SET {column} = {column} + 1 "
                "WHERE workflow_id=? AND node_id=?",
                (workflow_id, node_id),
            )
            if result.rowcount == 0:
                raise StateError(f"No split test for workflow '{workflow_id}' node '{node_id}'")
            row = conn.execute(
                f"SELECT {column} FROM split_tests WHERE workflow_id=? AND node_id=?",
                (workflow_id, node_id),
            ).fetchone()
            return row[0]

    def get_split_test(self, workflow_id: str, node_id: str) -> SplitTestState | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM split_tests WHERE workflow_id=? AND node_id=?",
                (workflow_id, node_id),
            ).fetchone()
            if not row:
                return None
            return SplitTestState(
                workflow_id=row["workflow_id"],
                node_id=row["node_id"],
                name=row["name"] or "Split Test",
                variant_weights={
                    v: row[f"variant_{v.value.lower()}_weight"] for v in Variant
                },
                variant_counts={v: row[f"variant_{v.value.lower()}_count"] for v in Variant},
            )

    # --- Suspensions ---

    def insert_suspension(self, suspension: DelaySuspension) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO delay_suspensions (
                    execution_id, workflow_id, node_id, kind, resume_at,
                    wait_event_type, timeout_at, config, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    suspension.execution_id,
                    suspension.workflow_id,
                    suspension.node_id,
                    suspension.kind.value,
                    to_db_timestamp(suspension.resume_at) if suspension.resume_at else None,
                    suspension.wait_event_type,
                    to_db_timestamp(suspension.timeout_at) if suspension.timeout_at else None,
                    _safe_json_dumps(suspension.config),
                    suspension.status.value,
                    to_db_timestamp(suspension.created_at),
                ),
            )
            return cursor.lastrowid  # type: ignore

    def _row_to_suspension(self, row: sqlite3.Row) -> DelaySuspension:
        return DelaySuspension(
            id=row["id"],
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            node_id=row["node_id"],
            kind=SuspensionKind(row["kind"]),
            resume_at=from_db_timestamp(row["resume_at"]),
            wait_event_type=row["wait_event_type"],
            timeout_at=from_db_timestamp(row["timeout_at"]),
            config=_json_or(row["config"], {}),
            status=SuspensionStatus(row["status"]),
            created_at=from_db_timestamp(row["created_at"]),
            resumed_at=from_db_timestamp(row["resumed_at"]),
        )

    def get_due_suspensions(self, now: datetime, limit: int = 100) -> list[DelaySuspension]:
        """Waiting suspensions whose resume time or timeout has passed."""
        ts = to_db_timestamp(now)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM delay_suspensions
                WHERE status='waiting'
                  AND ((resume_at IS NOT NULL AND resume_at <= ?)
                       OR (timeout_at IS NOT NULL AND timeout_at <= ?))
                ORDER BY COALESCE(resume_at, timeout_at) ASC, id ASC
                LIMIT ?
                """,
                (ts, ts, limit),
            ).fetchall()
            return [self._row_to_suspension(r) for r in rows]

    def get_suspensions(self, execution_id: str) -> list[DelaySuspension]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM delay_suspensions WHERE execution_id=? ORDER BY id",
                (execution_id,),
            ).fetchall()
            return [self._row_to_suspension(r) for r in rows]

    def count_waiting_suspensions(self, execution_id: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM delay_suspensions WHERE execution_id=? AND status='waiting'",
                (execution_id,),
            ).fetchone()[0]

    def complete_suspension(self, suspension_id: int, resumed_at: datetime) -> bool:
        """Guarded waiting -> completed. Only one resumer wins."""
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE delay_suspensions SET status='completed', resumed_at=? "
                "WHERE id=? AND status='waiting'",
                (to_db_timestamp(resumed_at), suspension_id),
            )
            return result.rowcount > 0

    def make_event_due(self, execution_id: str, event_type: str, now: datetime) -> int:
        """Pull a waiting wait-for-event suspension forward to ``now``."""
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE delay_suspensions SET resume_at=?
                WHERE execution_id=? AND kind='WAIT_FOR_EVENT'
                  AND status='waiting' AND wait_event_type=?
                """,
                (to_db_timestamp(now), execution_id, event_type),
            )
            return result.rowcount

    # --- Analytics ---

    def increment_metric(
        self, workflow_id: str, metric: str, value: int = 1, day: date | None = None
    ) -> None:
        day = day or utc_now().date()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_analytics (workflow_id, day, metric, value)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(workflow_id, day, metric)
                DO UPDATE SET value = value + excluded.value
                """,
                (workflow_id, day.isoformat(), metric, value),
            )

    def get_metrics(self, workflow_id: str, day: date | None = None) -> dict[str, int]:
        """Metric totals for a workflow, for one day or all time."""
        query = "SELECT metric, SUM(value) FROM workflow_analytics WHERE workflow_id=?"
        params: list[Any] = [workflow_id]
        if day:
            query += " AND day=?"
            params.append(day.isoformat())
        query += " GROUP BY metric"
        with self._connect() as conn:
            return {row[0]: row[1] for row in conn.execute(query, params).fetchall()}
