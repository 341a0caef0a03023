"""SQLite-backed CRM entity store.

The engine only needs document-style access to leads, contacts,
opportunities, tasks and notifications, plus a log of email events for the
email-status condition. Records are stored as JSON blobs keyed by id.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any

from flowengine.core.models import utc_now


class EntityType(str, Enum):
    LEAD = "lead"
    CONTACT = "contact"
    OPPORTUNITY = "opportunity"
    TASK = "task"
    NOTIFICATION = "notification"


class SqliteCrmStore:
    """CRM records in the same SQLite file as the workflow store (or a separate one)."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS crm_records (
        id TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        data JSON NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS email_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email_address TEXT NOT NULL,
        event_type TEXT NOT NULL,
        occurred_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_crm_type ON crm_records(entity_type);
    CREATE INDEX IF NOT EXISTS idx_email_events ON email_events(email_address, event_type);
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, data FROM crm_records WHERE id=? AND entity_type=?",
                (entity_id, entity_type.value),
            ).fetchone()
            if not row:
                return None
            return {**json.loads(row["data"]), "id": row["id"]}

    def create(
        self, entity_type: EntityType, data: dict[str, Any], entity_id: str | None = None
    ) -> dict[str, Any]:
        entity_id = entity_id or str(uuid.uuid4())
        now = utc_now().isoformat()
        record = {k: v for k, v in data.items() if k != "id"}
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO crm_records (id, entity_type, data, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (entity_id, entity_type.value, json.dumps(record, default=str), now, now),
            )
        return {**record, "id": entity_id}

    def update(
        self, entity_type: EntityType, entity_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Shallow-merge ``changes`` into the stored record. Last write wins."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM crm_records WHERE id=? AND entity_type=?",
                (entity_id, entity_type.value),
            ).fetchone()
            if not row:
                return None
            merged = {**json.loads(row["data"]), **changes}
            merged.pop("id", None)
            conn.execute(
                "UPDATE crm_records SET data=?, updated_at=? WHERE id=?",
                (json.dumps(merged, default=str), utc_now().isoformat(), entity_id),
            )
        return {**merged, "id": entity_id}

    def list(self, entity_type: EntityType) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, data FROM crm_records WHERE entity_type=? ORDER BY created_at",
                (entity_type.value,),
            ).fetchall()
            return [{**json.loads(r["data"]), "id": r["id"]} for r in rows]

    def record_email_event(self, email_address: str, event_type: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO email_events (email_address, event_type, occurred_at) "
                "VALUES (?, ?, ?)",
                (email_address, event_type.lower(), utc_now().isoformat()),
            )

    def has_email_event(self, email_address: str, event_type: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM email_events WHERE email_address=? AND event_type=? LIMIT 1",
                (email_address, event_type.lower()),
            ).fetchone()
            return row is not None
