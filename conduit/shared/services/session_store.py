"""Persisted session metadata (``<data_dir>/conduit.db``).

One row per session tab. Rows are written on start, when the backend
announces its session id, after every completed turn, and on close.
The store is what ``resume_session`` reads to reattach a backend
conversation; it is never written while replaying.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_ABANDONED = "abandoned"
_STATUSES = (STATUS_ACTIVE, STATUS_COMPLETED, STATUS_FAILED, STATUS_ABANDONED)

_UPDATABLE = {
    "agent_session_id",
    "model",
    "total_tokens",
    "turn_count",
    "status",
    "tab_index",
}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SessionRecord:
    id: str
    tab_index: int
    agent_type: str
    working_dir: str
    model: str | None
    agent_session_id: str | None
    created_at: str
    last_active: str
    total_tokens: int = 0
    turn_count: int = 0
    status: str = STATUS_ACTIVE

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SessionRecord:
        return cls(**{k: row[k] for k in row.keys()})

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tab_index": self.tab_index,
            "agent_type": self.agent_type,
            "working_dir": self.working_dir,
            "model": self.model,
            "agent_session_id": self.agent_session_id,
            "created_at": self.created_at,
            "last_active": self.last_active,
            "total_tokens": self.total_tokens,
            "turn_count": self.turn_count,
            "status": self.status,
        }


class SessionStore:
    """sqlite-backed session metadata."""

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS session_tabs (
                    id TEXT PRIMARY KEY,
                    tab_index INTEGER NOT NULL DEFAULT 0,
                    agent_type TEXT NOT NULL,
                    working_dir TEXT NOT NULL,
                    model TEXT,
                    agent_session_id TEXT,
                    created_at TEXT NOT NULL,
                    last_active TEXT NOT NULL,
                    total_tokens INTEGER NOT NULL DEFAULT 0,
                    turn_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'active'
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_session_tabs_active ON session_tabs(last_active)"
            )
            conn.commit()
        conn.close()

    def create(
        self,
        session_id: str,
        agent_type: str,
        working_dir: str,
        model: str | None = None,
        tab_index: int = 0,
        agent_session_id: str | None = None,
    ) -> SessionRecord:
        """Insert a row, or reactivate the existing one for this id."""
        now = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO session_tabs(
                    id, tab_index, agent_type, working_dir, model,
                    agent_session_id, created_at, last_active, status
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    last_active = excluded.last_active,
                    status = excluded.status,
                    model = COALESCE(excluded.model, session_tabs.model)
                """,
                (
                    session_id, tab_index, agent_type, working_dir, model,
                    agent_session_id, now, now, STATUS_ACTIVE,
                ),
            )
            conn.commit()
        conn.close()
        record = self.get(session_id)
        assert record is not None
        return record

    def update(self, session_id: str, touch: bool = False, **fields: Any) -> None:
        """Update selected columns. ``touch`` also bumps last_active."""
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")
        if "status" in fields and fields["status"] not in _STATUSES:
            raise ValueError(f"Invalid session status: {fields['status']}")
        assignments = [f"{name} = ?" for name in fields]
        values = list(fields.values())
        if touch:
            assignments.append("last_active = ?")
            values.append(_utc_now())
        if not assignments:
            return
        values.append(session_id)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE session_tabs SET {', '.join(assignments)} WHERE id = ?",
                values,
            )
            conn.commit()
        conn.close()

    def delete(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM session_tabs WHERE id = ?", (session_id,))
            conn.commit()
        conn.close()

    def get(self, session_id: str) -> SessionRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM session_tabs WHERE id = ?", (session_id,),
            ).fetchone()
        conn.close()
        return SessionRecord.from_row(row) if row is not None else None

    def list(self, status: str | None = None) -> list[SessionRecord]:
        """All sessions, most recently active first."""
        query = "SELECT * FROM session_tabs"
        params: tuple = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status,)
        query += " ORDER BY last_active DESC, tab_index ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        conn.close()
        return [SessionRecord.from_row(r) for r in rows]

    def mark_abandoned(self) -> int:
        """Mark rows left active by a previous process as abandoned."""
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE session_tabs SET status = ? WHERE status = ?",
                (STATUS_ABANDONED, STATUS_ACTIVE),
            )
            conn.commit()
        conn.close()
        return cur.rowcount

    def next_tab_index(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(tab_index), -1) + 1 AS next FROM session_tabs"
            ).fetchone()
        conn.close()
        return int(row["next"])
