"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from butler.models import ScheduledJob

SCHEMA_VERSION = 1


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS chats (
                chat_id TEXT PRIMARY KEY,
                source TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id TEXT NOT NULL,
                summary TEXT,
                through_id INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(chat_id) REFERENCES chats(chat_id)
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id TEXT NOT NULL,
                role TEXT NOT NULL,
                sender_id TEXT,
                source TEXT,
                content TEXT NOT NULL,
                parts_json TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(chat_id) REFERENCES chats(chat_id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id, id);

            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS scheduled_jobs (
                name TEXT PRIMARY KEY,
                trigger_kind TEXT NOT NULL,
                trigger_spec TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                next_run_at TEXT NOT NULL,
                expires_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS facts (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS aliases (
                alias TEXT PRIMARY KEY,
                target TEXT NOT NULL,
                notes TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS usage_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_usage_created ON usage_log(created_at);
            """
        )

    def upsert_chat(self, chat_id: str, source: str | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chats(chat_id, source, created_at)
                VALUES(?, ?, ?)
                ON CONFLICT(chat_id) DO UPDATE SET source=COALESCE(excluded.source, chats.source)
                """,
                (chat_id, source, _utc_now_iso()),
            )

    def add_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        parts: Any = None,
        sender_id: str | None = None,
        source: str | None = None,
    ) -> int:
        """Append one turn to a chat's log and return its row id."""

        parts_json = json.dumps(parts) if parts is not None else None
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO messages(chat_id, role, sender_id, source, content, parts_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (chat_id, role, sender_id, source, content, parts_json, _utc_now_iso()),
            )
            return int(cur.lastrowid)

    def get_recent_messages(self, chat_id: str, limit: int) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, role, content, parts_json
                FROM messages
                WHERE chat_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (chat_id, limit),
            ).fetchall()
        ordered = list(reversed(rows))
        return [_message_row(row) for row in ordered]

    def delete_messages_from(self, chat_id: str, first_id: int) -> int:
        """Delete a chat's turns with id >= first_id. Used for turn rollback."""

        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM messages WHERE chat_id = ? AND id >= ?",
                (chat_id, first_id),
            )
            return cur.rowcount

    def search_messages(self, query: str, limit: int = 10) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT chat_id, role, content, created_at
                FROM messages
                WHERE role IN ('user', 'assistant') AND content LIKE ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (f"%{query}%", limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_messages_after(self, chat_id: str, after_id: int) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, role, content, parts_json FROM messages WHERE chat_id = ? AND id > ? ORDER BY id",
                (chat_id, after_id),
            ).fetchall()
        return [_message_row(row) for row in rows]

    def save_summary(self, chat_id: str, summary: str, through_id: int = 0) -> None:
        """Store the rolling summary covering messages up to ``through_id``."""

        now = _utc_now_iso()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id FROM conversations WHERE chat_id = ? ORDER BY id DESC LIMIT 1", (chat_id,)
            ).fetchone()
            if row:
                conn.execute(
                    "UPDATE conversations SET summary = ?, through_id = ?, updated_at = ? WHERE id = ?",
                    (summary, through_id, now, row["id"]),
                )
            else:
                conn.execute(
                    "INSERT INTO conversations(chat_id, summary, through_id, updated_at) VALUES (?, ?, ?, ?)",
                    (chat_id, summary, through_id, now),
                )

    def get_summary(self, chat_id: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT summary FROM conversations WHERE chat_id = ? ORDER BY id DESC LIMIT 1",
                (chat_id,),
            ).fetchone()
        return row["summary"] if row else None

    def get_summary_through(self, chat_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT through_id FROM conversations WHERE chat_id = ? ORDER BY id DESC LIMIT 1",
                (chat_id,),
            ).fetchone()
        return int(row["through_id"]) if row else 0

    def clear_history(self, chat_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))
            conn.execute("DELETE FROM conversations WHERE chat_id = ?", (chat_id,))

    def log_tool_execution(
        self,
        chat_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: Any,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(chat_id, tool_name, input_json, output_json, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    chat_id,
                    tool_name,
                    json.dumps(tool_input, default=str),
                    json.dumps(tool_output, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_tool_executions(self, chat_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT tool_name, succeeded FROM tool_executions WHERE chat_id = ? ORDER BY id",
                (chat_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def set_fact(self, key: str, value: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO facts(key, value_json, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value_json=excluded.value_json, updated_at=excluded.updated_at
                """,
                (key, json.dumps(value), _utc_now_iso()),
            )

    def get_facts(self, query: str | None = None) -> dict[str, Any]:
        sql = "SELECT key, value_json FROM facts"
        params: tuple[Any, ...] = ()
        if query:
            sql += " WHERE key LIKE ? OR value_json LIKE ?"
            params = (f"%{query}%", f"%{query}%")
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY key", params).fetchall()
        return {row["key"]: json.loads(row["value_json"]) for row in rows}

    def save_alias(self, alias: str, target: str, notes: str | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO aliases(alias, target, notes, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(alias) DO UPDATE SET target=excluded.target, notes=excluded.notes,
                    updated_at=excluded.updated_at
                """,
                (alias.lower(), target, notes, _utc_now_iso()),
            )

    def find_aliases(self, query: str) -> list[dict[str, Any]]:
        like = f"%{query.lower()}%"
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT alias, target, notes FROM aliases
                WHERE alias LIKE ? OR LOWER(target) LIKE ? OR LOWER(COALESCE(notes, '')) LIKE ?
                ORDER BY alias
                """,
                (like, like, like),
            ).fetchall()
        return [dict(row) for row in rows]

    def save_job(self, job: ScheduledJob) -> None:
        """Insert or replace a job by name."""

        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO scheduled_jobs(
                    name, trigger_kind, trigger_spec, payload_json, retry_count,
                    next_run_at, expires_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    trigger_kind=excluded.trigger_kind,
                    trigger_spec=excluded.trigger_spec,
                    payload_json=excluded.payload_json,
                    retry_count=excluded.retry_count,
                    next_run_at=excluded.next_run_at,
                    expires_at=excluded.expires_at,
                    updated_at=excluded.updated_at
                """,
                (
                    job.name,
                    job.trigger_kind,
                    job.trigger,
                    json.dumps(job.payload),
                    job.retry_count,
                    _to_iso(job.next_run_at),
                    _to_iso(job.expires_at) if job.expires_at else None,
                    now,
                    now,
                ),
            )

    def get_job(self, name: str) -> ScheduledJob | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM scheduled_jobs WHERE name = ?", (name,)).fetchone()
        return _job_row(row) if row else None

    def delete_job(self, name: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM scheduled_jobs WHERE name = ?", (name,))
            return cur.rowcount > 0

    def list_jobs(self) -> list[ScheduledJob]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM scheduled_jobs ORDER BY next_run_at ASC").fetchall()
        return [_job_row(row) for row in rows]

    def get_due_jobs(self, now: datetime) -> list[ScheduledJob]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM scheduled_jobs WHERE next_run_at <= ? ORDER BY next_run_at ASC",
                (_to_iso(now),),
            ).fetchall()
        return [_job_row(row) for row in rows]

    def log_usage(self, chat_id: str | None = None, at: datetime | None = None) -> None:
        """Record one accepted turn for rate limiting."""

        with self._connect() as conn:
            conn.execute(
                "INSERT INTO usage_log(chat_id, created_at) VALUES (?, ?)",
                (chat_id, _to_iso(at) if at else _utc_now_iso()),
            )

    def count_usage_since(self, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM usage_log WHERE created_at >= ?",
                (_to_iso(since),),
            ).fetchone()
        return int(row["n"])


def _message_row(row: sqlite3.Row) -> dict[str, Any]:
    parts = json.loads(row["parts_json"]) if row["parts_json"] else None
    return {"id": row["id"], "role": row["role"], "content": row["content"], "parts": parts}


def _job_row(row: sqlite3.Row) -> ScheduledJob:
    return ScheduledJob(
        name=row["name"],
        trigger_kind=row["trigger_kind"],
        trigger=row["trigger_spec"],
        payload=json.loads(row["payload_json"]),
        retry_count=int(row["retry_count"]),
        next_run_at=datetime.fromisoformat(row["next_run_at"]),
        expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
        persisted=True,
    )


def _to_iso(value: datetime) -> str:
    # Fixed-width UTC timestamps so string comparison in SQL orders correctly.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _utc_now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))
