from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

BASE_DIR = Path(__file__).resolve().parent
DB_DIR = BASE_DIR / "data"
DB_PATH = DB_DIR / "meta.db"


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS threads (
        id TEXT PRIMARY KEY,
        title TEXT,
        total_cost REAL NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        memory_checked_at TEXT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        thread_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        model_id TEXT NULL,
        thinking_level TEXT NULL,
        duration_ms INTEGER NULL,
        prompt_tokens INTEGER NULL,
        completion_tokens INTEGER NULL,
        cost REAL NULL,
        trace_json TEXT NULL,
        sources_json TEXT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (thread_id) REFERENCES threads(id) ON DELETE CASCADE
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_thread_created
    ON messages (thread_id, created_at);
    """,
    """
    CREATE TABLE IF NOT EXISTS attachments (
        id TEXT PRIMARY KEY,
        thread_id TEXT NOT NULL,
        message_id TEXT NULL,
        filename TEXT NOT NULL,
        mime_type TEXT NOT NULL,
        size INTEGER NOT NULL,
        storage_path TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (thread_id) REFERENCES threads(id) ON DELETE CASCADE,
        FOREIGN KEY (message_id) REFERENCES messages(id) ON DELETE SET NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS models (
        id TEXT PRIMARY KEY,
        label TEXT NOT NULL,
        input_cost_per_token REAL NOT NULL DEFAULT 0,
        output_cost_per_token REAL NOT NULL DEFAULT 0,
        supports_vision INTEGER NOT NULL DEFAULT 0,
        supports_tools INTEGER NOT NULL DEFAULT 1,
        supports_thinking_levels INTEGER NOT NULL DEFAULT 0,
        sort_order INTEGER NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS settings (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        system_prompt TEXT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS active_streams (
        id TEXT PRIMARY KEY,
        thread_id TEXT NOT NULL,
        user_message_id TEXT NOT NULL,
        assistant_message_id TEXT NULL,
        status TEXT NOT NULL,
        partial_content TEXT NOT NULL DEFAULT '',
        partial_trace_json TEXT NULL,
        partial_sources_json TEXT NULL,
        model_id TEXT NOT NULL,
        thinking_level TEXT NULL,
        started_at TEXT NOT NULL,
        last_activity_at TEXT NOT NULL,
        completed_at TEXT NULL,
        FOREIGN KEY (thread_id) REFERENCES threads(id) ON DELETE CASCADE
    );
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_active_streams_one_open_per_thread
    ON active_streams (thread_id)
    WHERE status IN ('active', 'pending');
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_active_streams_status_activity
    ON active_streams (status, last_activity_at);
    """,
)


def new_id(prefix: str) -> str:
    """
    Generate a new id given a prefix
    """
    return f"{prefix}_{uuid4().hex}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    # Fixed-width UTC strings so that SQL comparisons order correctly.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@contextmanager
def get_conn() -> Iterator[sqlite3.Connection]:
    DB_DIR.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")

    try:
        yield conn
    finally:
        conn.close()


def init_meta_db() -> None:
    with get_conn() as conn:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)
        conn.execute(
            "INSERT OR IGNORE INTO settings (id, system_prompt, updated_at) VALUES (1, NULL, ?)",
            (to_iso(utc_now()),),
        )
        conn.commit()


def paginate_by_cursor(
    items: list[dict[str, Any]],
    *,
    cursor: str | None,
    limit: int,
    id_key: str = "id",
) -> tuple[list[dict[str, Any]], str | None]:
    if cursor:
        idx = next((i for i, item in enumerate(items) if item[id_key] == cursor), None)
        if idx is None:
            raise ValueError("invalid cursor")
        items = items[idx + 1 :]

    page = items[:limit]
    next_cursor = page[-1][id_key] if len(items) > limit else None
    return page, next_cursor
