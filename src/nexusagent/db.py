from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from textwrap import dedent
from typing import Any, TypeVar

from pydantic import BaseModel

from nexusagent.models import (
    Conversation,
    Message,
    ScheduledTask,
    TaskRunLog,
    ToolCall,
)


class ThreadSafeConnection:
    """Thin wrapper around :class:`sqlite3.Connection` that serialises access
    with a :class:`threading.Lock`.

    The event loop is single-threaded, but CLI helpers and tests may touch
    the same connection from worker threads, so every call goes through the
    lock.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def execute(self, sql: str, parameters: Any = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, parameters)

    def executescript(self, sql_script: str) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executescript(sql_script)

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock for a multi-statement transaction.

        Commits on success and rolls back if the body raises.
        """
        self._lock.acquire()
        try:
            yield self._conn
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


DbConnection = sqlite3.Connection | ThreadSafeConnection

ModelT = TypeVar("ModelT", bound=BaseModel)


def _rows_to(model: type[ModelT], rows: list[sqlite3.Row]) -> list[ModelT]:
    return [model(**row) for row in rows]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def init_db(db_path: Path) -> ThreadSafeConnection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    raw = sqlite3.connect(str(db_path), check_same_thread=False)
    raw.row_factory = sqlite3.Row
    db = ThreadSafeConnection(raw)

    db.execute("PRAGMA journal_mode=WAL")
    db.executescript(
        dedent("""\
        CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY,
            title TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            conversation_id TEXT NOT NULL,
            role TEXT NOT NULL,
            content TEXT,
            tool_calls TEXT,
            tool_call_id TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (conversation_id) REFERENCES conversations(id)
        );

        CREATE TABLE IF NOT EXISTS scheduled_tasks (
            id TEXT PRIMARY KEY,
            conversation_id TEXT,
            prompt TEXT NOT NULL,
            schedule_type TEXT NOT NULL,
            schedule_value TEXT NOT NULL,
            status TEXT DEFAULT 'active',
            notify INTEGER DEFAULT 1,
            next_run TEXT,
            last_run TEXT,
            last_result TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS task_run_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            duration_ms INTEGER NOT NULL,
            status TEXT NOT NULL,
            result TEXT,
            error TEXT,
            FOREIGN KEY (task_id) REFERENCES scheduled_tasks(id)
        );

        CREATE INDEX IF NOT EXISTS idx_messages_conversation
            ON messages(conversation_id, id);
        CREATE INDEX IF NOT EXISTS idx_next_run ON scheduled_tasks(next_run);
        CREATE INDEX IF NOT EXISTS idx_status ON scheduled_tasks(status);
        CREATE INDEX IF NOT EXISTS idx_task_run_logs ON task_run_logs(task_id, run_at);
    """)
    )

    db.commit()
    return db


# --- conversations ---------------------------------------------------------


def create_conversation(db: DbConnection, conversation_id: str, title: str) -> None:
    now = _now()
    db.execute(
        "INSERT INTO conversations (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
        (conversation_id, title, now, now),
    )
    db.commit()


def get_conversation(db: DbConnection, conversation_id: str) -> Conversation | None:
    row = db.execute(
        "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
    ).fetchone()
    return Conversation(**row) if row else None


def ensure_conversation(db: DbConnection, conversation_id: str, title: str) -> None:
    """Create the conversation unless it already exists."""
    if get_conversation(db, conversation_id) is None:
        create_conversation(db, conversation_id, title)


def list_conversations(db: DbConnection) -> list[Conversation]:
    rows = db.execute("SELECT * FROM conversations ORDER BY updated_at DESC").fetchall()
    return _rows_to(Conversation, rows)


# --- messages --------------------------------------------------------------


def add_message(
    db: DbConnection,
    conversation_id: str,
    role: str,
    content: str | None,
    tool_calls: list[ToolCall] | None = None,
    tool_call_id: str | None = None,
) -> int:
    now = _now()
    encoded = (
        json.dumps([tc.model_dump() for tc in tool_calls]) if tool_calls else None
    )
    cursor = db.execute(
        dedent("""\
        INSERT INTO messages
            (conversation_id, role, content, tool_calls, tool_call_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
    """),
        (conversation_id, role, content, encoded, tool_call_id, now),
    )
    db.execute(
        "UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id)
    )
    db.commit()
    return int(cursor.lastrowid)


def _row_to_message(row: sqlite3.Row) -> Message:
    data = dict(row)
    raw_calls = data.pop("tool_calls")
    tool_calls = (
        [ToolCall.model_validate(tc) for tc in json.loads(raw_calls)]
        if raw_calls
        else None
    )
    return Message(**data, tool_calls=tool_calls)


def get_messages(db: DbConnection, conversation_id: str) -> list[Message]:
    rows = db.execute(
        "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id",
        (conversation_id,),
    ).fetchall()
    return [_row_to_message(row) for row in rows]


def get_recent_messages(
    db: DbConnection, conversation_id: str, limit: int
) -> list[Message]:
    """Return the newest *limit* messages, oldest first.

    Tool results at the head of the window are dropped: the assistant
    message that requested them fell outside the window, and a tool message
    without its request is rejected by chat-completion endpoints.
    """
    rows = db.execute(
        "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id DESC LIMIT ?",
        (conversation_id, limit),
    ).fetchall()
    messages = [_row_to_message(row) for row in reversed(rows)]
    while messages and messages[0].role == "tool":
        messages.pop(0)
    return messages


# --- scheduled tasks -------------------------------------------------------


def create_task(
    db: DbConnection,
    *,
    task_id: str,
    conversation_id: str | None,
    prompt: str,
    schedule_type: str,
    schedule_value: str,
    next_run: str | None,
    notify: bool = True,
) -> None:
    db.execute(
        dedent("""\
        INSERT INTO scheduled_tasks
            (id, conversation_id, prompt, schedule_type, schedule_value,
             status, notify, next_run, created_at)
        VALUES (?, ?, ?, ?, ?, 'active', ?, ?, ?)
    """),
        (
            task_id,
            conversation_id,
            prompt,
            schedule_type,
            schedule_value,
            int(notify),
            next_run,
            _now(),
        ),
    )
    db.commit()


def get_task(db: DbConnection, task_id: str) -> ScheduledTask | None:
    row = db.execute(
        "SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)
    ).fetchone()
    return ScheduledTask(**row) if row else None


def get_tasks_for_conversation(
    db: DbConnection, conversation_id: str
) -> list[ScheduledTask]:
    rows = db.execute(
        "SELECT * FROM scheduled_tasks WHERE conversation_id = ? ORDER BY created_at DESC",
        (conversation_id,),
    ).fetchall()
    return _rows_to(ScheduledTask, rows)


def get_all_tasks(db: DbConnection) -> list[ScheduledTask]:
    rows = db.execute(
        "SELECT * FROM scheduled_tasks ORDER BY created_at DESC"
    ).fetchall()
    return _rows_to(ScheduledTask, rows)


_UPDATABLE_TASK_FIELDS = (
    "prompt",
    "schedule_type",
    "schedule_value",
    "status",
    "next_run",
    "last_run",
    "last_result",
)


def update_task(db: DbConnection, task_id: str, **updates: object) -> None:
    fields = []
    values = []

    for key in _UPDATABLE_TASK_FIELDS:
        if key in updates:
            fields.append(f"{key} = ?")
            values.append(updates[key])

    if not fields:
        return

    values.append(task_id)
    db.execute(f"UPDATE scheduled_tasks SET {', '.join(fields)} WHERE id = ?", values)
    db.commit()


def delete_task(db: DbConnection, task_id: str) -> None:
    if isinstance(db, ThreadSafeConnection):
        with db.transaction() as conn:
            conn.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
            conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
    else:
        db.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
        db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
        db.commit()


def get_due_tasks(db: DbConnection, now: datetime | None = None) -> list[ScheduledTask]:
    """Active tasks whose next run is at or before *now*.

    Paused, completed and errored tasks are never returned, whatever their
    stored ``next_run``.
    """
    cutoff = (now or datetime.now(timezone.utc)).isoformat()
    rows = db.execute(
        dedent("""\
        SELECT * FROM scheduled_tasks
        WHERE status = 'active' AND next_run IS NOT NULL AND next_run <= ?
        ORDER BY next_run
    """),
        (cutoff,),
    ).fetchall()
    return _rows_to(ScheduledTask, rows)


def update_task_after_run(
    db: DbConnection,
    task_id: str,
    *,
    next_run: str | None,
    last_result: str,
    status: str | None = None,
) -> None:
    """Record a finished run.

    Without an explicit *status*, a task with no next run becomes
    ``completed`` and any other task keeps its current status.
    """
    db.execute(
        dedent("""\
        UPDATE scheduled_tasks
        SET next_run = ?, last_run = ?, last_result = ?,
            status = COALESCE(?, CASE WHEN ? IS NULL THEN 'completed' ELSE status END)
        WHERE id = ?
    """),
        (next_run, _now(), last_result, status, next_run, task_id),
    )
    db.commit()


def log_task_run(
    db: DbConnection,
    *,
    task_id: str,
    run_at: str,
    duration_ms: int,
    status: str,
    result: str | None = None,
    error: str | None = None,
) -> int:
    cursor = db.execute(
        dedent("""\
        INSERT INTO task_run_logs (task_id, run_at, duration_ms, status, result, error)
        VALUES (?, ?, ?, ?, ?, ?)
    """),
        (task_id, run_at, duration_ms, status, result, error),
    )
    db.commit()
    return int(cursor.lastrowid)


def get_task_runs(db: DbConnection, task_id: str) -> list[TaskRunLog]:
    rows = db.execute(
        "SELECT * FROM task_run_logs WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return _rows_to(TaskRunLog, rows)
