"""PostgreSQL task ledger for async generation tasks.

Beginner terms:
- Ledger: durable record of task status keyed by an opaque id.
- Migration: creating/updating database tables before normal reads/writes.
- JSONB: PostgreSQL JSON type used for the terminal result payload.
- Upsert: INSERT ... ON CONFLICT DO UPDATE, so repeated writes are idempotent.
- Row factory: returns query rows as dict-like objects instead of tuples.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol

from .models import Task

logger = logging.getLogger(__name__)


class TaskLedger(Protocol):
    def create(self) -> str: ...

    def set_pending(self, task_id: str) -> None: ...

    def complete(self, task_id: str, result: dict[str, Any]) -> None: ...

    def fail(self, task_id: str, error: str) -> None: ...

    def get(self, task_id: str) -> Task | None: ...


class PostgresTaskLedger:
    """Thread-safe PostgreSQL-backed ledger for Task records."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        # Lock guards DB operations done through this ledger instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = load_psycopg()
        self.migrate()

    def migrate(self) -> None:
        """Create the tasks table and indexes if they do not already exist."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id UUID PRIMARY KEY,
                    status TEXT NOT NULL,
                    result JSONB,
                    error TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_status
                ON tasks(status)
                """)
            conn.commit()

    def create(self) -> str:
        """Insert a new pending task row and return its UUID string."""
        task_id = str(uuid.uuid4())
        self.set_pending(task_id)
        return task_id

    def set_pending(self, task_id: str) -> None:
        """Admit a task as pending. A terminal task is never moved back."""
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks (task_id, status, result, error, created_at, updated_at)
                VALUES (%s, 'pending', NULL, NULL, %s, %s)
                ON CONFLICT (task_id) DO NOTHING
                """,
                (task_id, now, now),
            )
            conn.commit()

    def complete(self, task_id: str, result: dict[str, Any]) -> None:
        self._write_terminal(task_id, status="done", result=result, error=None)

    def fail(self, task_id: str, error: str) -> None:
        self._write_terminal(task_id, status="failed", result=None, error=error)

    def get(self, task_id: str) -> Task | None:
        """Read one task by id; unknown ids return None instead of raising."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id::text = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def _write_terminal(
        self,
        task_id: str,
        *,
        status: str,
        result: dict[str, Any] | None,
        error: str | None,
    ) -> None:
        """Upsert a terminal status; last write wins."""
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks (task_id, status, result, error, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (task_id) DO UPDATE
                SET status = EXCLUDED.status,
                    result = EXCLUDED.result,
                    error = EXCLUDED.error,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    task_id,
                    status,
                    self._json_wrapper(result) if result is not None else None,
                    error,
                    now,
                    now,
                ),
            )
            conn.commit()
        logger.info("task_ledger event=terminal task_id=%s status=%s", task_id, status)

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
        """Parse optional JSON-like value into dict or None."""
        if raw is None:
            return None
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, dict):
            return parsed
        return None

    @classmethod
    def _row_to_task(cls, row: Any) -> Task:
        return Task(
            task_id=str(row["task_id"]),
            status=row["status"],
            result=cls._parse_json_optional(row["result"]),
            error=row["error"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )


def load_psycopg() -> tuple[Any, Any, Any]:
    """Import psycopg and helpers with a friendly install hint on failure."""
    try:
        import psycopg
        from psycopg.rows import dict_row
        from psycopg.types.json import Json
    except ImportError as exc:  # pragma: no cover - exercised only without dependency
        raise RuntimeError(
            "PostgreSQL backend requires psycopg. Install with: "
            'python -m pip install "psycopg[binary]>=3.2,<4.0"'
        ) from exc
    return psycopg, dict_row, Json


def parse_datetime(raw: Any) -> datetime:
    """Parse datetime value from database driver output."""
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str):
        return datetime.fromisoformat(raw)
    raise TypeError(f"Unsupported datetime value: {type(raw)!r}")
