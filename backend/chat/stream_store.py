from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any

from chat.trace import (
    MessageSource,
    TraceEvent,
    sources_from_json,
    sources_to_json,
    trace_from_json,
    trace_to_json,
)
from meta import get_conn

STREAM_STATUS_ACTIVE = "active"
STREAM_STATUS_PENDING = "pending"
STREAM_STATUS_COMPLETED = "completed"
STREAM_STATUS_FAILED = "failed"
STREAM_STATUS_CANCELLED = "cancelled"

OPEN_STREAM_STATUSES = (STREAM_STATUS_ACTIVE, STREAM_STATUS_PENDING)
TERMINAL_STREAM_STATUSES = (
    STREAM_STATUS_COMPLETED,
    STREAM_STATUS_FAILED,
    STREAM_STATUS_CANCELLED,
)

STREAM_TRANSITIONS: dict[str, set[str]] = {
    STREAM_STATUS_ACTIVE: {
        STREAM_STATUS_PENDING,
        STREAM_STATUS_COMPLETED,
        STREAM_STATUS_FAILED,
        STREAM_STATUS_CANCELLED,
    },
    STREAM_STATUS_PENDING: {
        STREAM_STATUS_ACTIVE,
        STREAM_STATUS_FAILED,
        STREAM_STATUS_CANCELLED,
    },
    STREAM_STATUS_COMPLETED: set(),
    STREAM_STATUS_FAILED: set(),
    STREAM_STATUS_CANCELLED: set(),
}


def statuses_that_can_reach(target: str) -> tuple[str, ...]:
    return tuple(
        status for status, targets in STREAM_TRANSITIONS.items() if target in targets
    )


@dataclass
class ActiveStream:
    id: str
    thread_id: str
    user_message_id: str
    status: str
    model_id: str
    started_at: str
    last_activity_at: str
    assistant_message_id: str | None = None
    partial_content: str = ""
    partial_trace: list[TraceEvent] = field(default_factory=list)
    partial_sources: list[MessageSource] = field(default_factory=list)
    thinking_level: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "threadId": self.thread_id,
            "userMessageId": self.user_message_id,
            "assistantMessageId": self.assistant_message_id,
            "status": self.status,
            "partialContent": self.partial_content,
            "partialTrace": [event.to_dict() for event in self.partial_trace],
            "partialSources": [source.to_dict() for source in self.partial_sources],
            "modelId": self.model_id,
            "thinkingLevel": self.thinking_level,
            "startedAt": self.started_at,
            "lastActivityAt": self.last_activity_at,
            "completedAt": self.completed_at,
        }


_STREAM_COLUMNS = """
    id,
    thread_id,
    user_message_id,
    assistant_message_id,
    status,
    partial_content,
    partial_trace_json,
    partial_sources_json,
    model_id,
    thinking_level,
    started_at,
    last_activity_at,
    completed_at
"""


def _row_to_stream(row: sqlite3.Row) -> ActiveStream:
    return ActiveStream(
        id=row["id"],
        thread_id=row["thread_id"],
        user_message_id=row["user_message_id"],
        assistant_message_id=row["assistant_message_id"],
        status=row["status"],
        partial_content=row["partial_content"] or "",
        partial_trace=trace_from_json(row["partial_trace_json"]),
        partial_sources=sources_from_json(row["partial_sources_json"]),
        model_id=row["model_id"],
        thinking_level=row["thinking_level"],
        started_at=row["started_at"],
        last_activity_at=row["last_activity_at"],
        completed_at=row["completed_at"],
    )


def _placeholders(values: tuple[str, ...]) -> str:
    return ",".join(["?"] * len(values))


def create_stream(stream: ActiveStream) -> None:
    """Insert a new stream row.

    Raises ``sqlite3.IntegrityError`` when the thread already has an open stream.
    """
    with get_conn() as conn:
        conn.execute(
            f"""
            INSERT INTO active_streams ({_STREAM_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stream.id,
                stream.thread_id,
                stream.user_message_id,
                stream.assistant_message_id,
                stream.status,
                stream.partial_content,
                trace_to_json(stream.partial_trace),
                sources_to_json(stream.partial_sources),
                stream.model_id,
                stream.thinking_level,
                stream.started_at,
                stream.last_activity_at,
                stream.completed_at,
            ),
        )
        conn.commit()


def load_stream(stream_id: str) -> ActiveStream | None:
    with get_conn() as conn:
        row = conn.execute(
            f"SELECT {_STREAM_COLUMNS} FROM active_streams WHERE id = ?",
            (stream_id,),
        ).fetchone()
    return _row_to_stream(row) if row is not None else None


def open_streams_for_thread(thread_id: str) -> list[ActiveStream]:
    with get_conn() as conn:
        rows = conn.execute(
            f"""
            SELECT {_STREAM_COLUMNS}
            FROM active_streams
            WHERE thread_id = ? AND status IN ({_placeholders(OPEN_STREAM_STATUSES)})
            ORDER BY started_at DESC
            """,
            (thread_id, *OPEN_STREAM_STATUSES),
        ).fetchall()
    return [_row_to_stream(row) for row in rows]


def latest_stream_for_thread(thread_id: str) -> ActiveStream | None:
    with get_conn() as conn:
        row = conn.execute(
            f"""
            SELECT {_STREAM_COLUMNS}
            FROM active_streams
            WHERE thread_id = ?
            ORDER BY started_at DESC, rowid DESC
            LIMIT 1
            """,
            (thread_id,),
        ).fetchone()
    return _row_to_stream(row) if row is not None else None


def save_progress(
    stream_id: str,
    *,
    partial_content: str,
    partial_trace: list[TraceEvent] | None,
    last_activity_at: str,
    partial_sources: list[MessageSource] | None = None,
) -> bool:
    """Persist partial output; a no-op once the stream has left the open states."""
    assignments = ["partial_content = ?", "last_activity_at = ?"]
    params: list[Any] = [partial_content, last_activity_at]
    if partial_trace is not None:
        assignments.append("partial_trace_json = ?")
        params.append(trace_to_json(partial_trace))
    if partial_sources is not None:
        assignments.append("partial_sources_json = ?")
        params.append(sources_to_json(partial_sources))

    with get_conn() as conn:
        cursor = conn.execute(
            f"""
            UPDATE active_streams
            SET {", ".join(assignments)}
            WHERE id = ? AND status IN ({_placeholders(OPEN_STREAM_STATUSES)})
            """,
            (*params, stream_id, *OPEN_STREAM_STATUSES),
        )
        conn.commit()
        return cursor.rowcount > 0


def transition_stream(stream_id: str, *, to_status: str, at: str) -> bool:
    """Compare-and-swap the status along an allowed edge of the state machine."""
    from_statuses = statuses_that_can_reach(to_status)
    if not from_statuses:
        return False
    completed_at = at if to_status in TERMINAL_STREAM_STATUSES else None

    with get_conn() as conn:
        cursor = conn.execute(
            f"""
            UPDATE active_streams
            SET status = ?, last_activity_at = ?, completed_at = ?
            WHERE id = ? AND status IN ({_placeholders(from_statuses)})
            """,
            (to_status, at, completed_at, stream_id, *from_statuses),
        )
        conn.commit()
        return cursor.rowcount > 0


def claim_for_completion(stream_id: str, message_id: str, *, at: str) -> bool:
    """Record the assistant message id, but only on a stream that is still active.

    A stream cancelled by a newer turn, or failed by the reaper, is left alone and
    ``False`` is returned, so its result must not be stored.
    """
    with get_conn() as conn:
        cursor = conn.execute(
            """
            UPDATE active_streams
            SET assistant_message_id = ?, last_activity_at = ?
            WHERE id = ? AND status = ?
            """,
            (message_id, at, stream_id, STREAM_STATUS_ACTIVE),
        )
        conn.commit()
        return cursor.rowcount > 0


def stale_open_streams(cutoff: str) -> list[str]:
    with get_conn() as conn:
        rows = conn.execute(
            f"""
            SELECT id
            FROM active_streams
            WHERE status IN ({_placeholders(OPEN_STREAM_STATUSES)})
              AND last_activity_at < ?
            """,
            (*OPEN_STREAM_STATUSES, cutoff),
        ).fetchall()
    return [row["id"] for row in rows]


def delete_terminal_streams_before(cutoff: str) -> int:
    with get_conn() as conn:
        cursor = conn.execute(
            f"""
            DELETE FROM active_streams
            WHERE status IN ({_placeholders(TERMINAL_STREAM_STATUSES)})
              AND completed_at IS NOT NULL
              AND completed_at < ?
            """,
            (*TERMINAL_STREAM_STATUSES, cutoff),
        )
        conn.commit()
        return cursor.rowcount
