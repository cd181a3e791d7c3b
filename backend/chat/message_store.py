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
from meta import get_conn, new_id, to_iso, utc_now


@dataclass(frozen=True)
class ThreadRecord:
    id: str
    title: str | None
    total_cost: float
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "totalCost": self.total_cost,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class ModelRecord:
    id: str
    label: str
    input_cost_per_token: float
    output_cost_per_token: float
    supports_vision: bool = False
    supports_tools: bool = True
    supports_thinking_levels: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "inputCostPerToken": self.input_cost_per_token,
            "outputCostPerToken": self.output_cost_per_token,
            "supportsVision": self.supports_vision,
            "supportsTools": self.supports_tools,
            "supportsThinkingLevels": self.supports_thinking_levels,
        }


@dataclass(frozen=True)
class AttachmentRecord:
    id: str
    thread_id: str
    message_id: str | None
    filename: str
    mime_type: str
    size: int
    storage_path: str
    created_at: str

    @property
    def kind(self) -> str:
        return "image" if self.mime_type.startswith("image/") else "file"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "threadId": self.thread_id,
            "messageId": self.message_id,
            "filename": self.filename,
            "mimeType": self.mime_type,
            "size": self.size,
            "kind": self.kind,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class MessageRecord:
    id: str
    thread_id: str
    role: str
    content: str
    created_at: str
    model_id: str | None = None
    thinking_level: str | None = None
    duration_ms: int | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    cost: float | None = None
    trace: list[TraceEvent] = field(default_factory=list)
    sources: list[MessageSource] = field(default_factory=list)
    attachments: list[AttachmentRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "threadId": self.thread_id,
            "role": self.role,
            "content": self.content,
            "modelId": self.model_id,
            "thinkingLevel": self.thinking_level,
            "durationMs": self.duration_ms,
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "cost": self.cost,
            "trace": [event.to_dict() for event in self.trace],
            "sources": [source.to_dict() for source in self.sources],
            "attachments": [attachment.to_dict() for attachment in self.attachments],
            "createdAt": self.created_at,
        }


# ---- threads ----------------------------------------------------------------


def _row_to_thread(row: sqlite3.Row) -> ThreadRecord:
    return ThreadRecord(
        id=row["id"],
        title=row["title"],
        total_cost=float(row["total_cost"] or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def create_thread(title: str | None = None) -> ThreadRecord:
    thread_id = new_id("thread")
    now = to_iso(utc_now())
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO threads (id, title, total_cost, created_at, updated_at)
            VALUES (?, ?, 0, ?, ?)
            """,
            (thread_id, title, now, now),
        )
        conn.commit()
    return ThreadRecord(
        id=thread_id, title=title, total_cost=0.0, created_at=now, updated_at=now
    )


def load_thread(thread_id: str) -> ThreadRecord | None:
    with get_conn() as conn:
        row = conn.execute(
            """
            SELECT id, title, total_cost, created_at, updated_at
            FROM threads
            WHERE id = ?
            """,
            (thread_id,),
        ).fetchone()
    return _row_to_thread(row) if row is not None else None


def list_threads() -> list[ThreadRecord]:
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT id, title, total_cost, created_at, updated_at
            FROM threads
            ORDER BY updated_at DESC, id DESC
            """
        ).fetchall()
    return [_row_to_thread(row) for row in rows]


def list_threads_for_memory_extraction() -> list[ThreadRecord]:
    """Threads with messages that were never scanned for memories or changed since."""
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT id, title, total_cost, created_at, updated_at
            FROM threads
            WHERE EXISTS (SELECT 1 FROM messages WHERE messages.thread_id = threads.id)
              AND (memory_checked_at IS NULL OR updated_at > memory_checked_at)
            ORDER BY updated_at DESC, id DESC
            """
        ).fetchall()
    return [_row_to_thread(row) for row in rows]


def mark_thread_memory_checked(thread_id: str) -> None:
    with get_conn() as conn:
        conn.execute(
            "UPDATE threads SET memory_checked_at = ? WHERE id = ?",
            (to_iso(utc_now()), thread_id),
        )
        conn.commit()


def update_thread_title(thread_id: str, title: str) -> None:
    with get_conn() as conn:
        conn.execute(
            "UPDATE threads SET title = ?, updated_at = ? WHERE id = ?",
            (title, to_iso(utc_now()), thread_id),
        )
        conn.commit()


def increment_thread_cost(thread_id: str, amount: float) -> float:
    """Add ``amount`` to the thread's running cost and return the new total."""
    with get_conn() as conn:
        conn.execute(
            """
            UPDATE threads
            SET total_cost = ROUND(total_cost + ?, 8), updated_at = ?
            WHERE id = ?
            """,
            (amount, to_iso(utc_now()), thread_id),
        )
        row = conn.execute(
            "SELECT total_cost FROM threads WHERE id = ?", (thread_id,)
        ).fetchone()
        conn.commit()
    return float(row["total_cost"] or 0) if row is not None else 0.0


def delete_thread(thread_id: str) -> bool:
    with get_conn() as conn:
        cursor = conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
        conn.commit()
        return cursor.rowcount > 0


# ---- models & settings ------------------------------------------------------


def _row_to_model(row: sqlite3.Row) -> ModelRecord:
    return ModelRecord(
        id=row["id"],
        label=row["label"],
        input_cost_per_token=float(row["input_cost_per_token"]),
        output_cost_per_token=float(row["output_cost_per_token"]),
        supports_vision=bool(row["supports_vision"]),
        supports_tools=bool(row["supports_tools"]),
        supports_thinking_levels=bool(row["supports_thinking_levels"]),
    )


_MODEL_COLUMNS = """
    id,
    label,
    input_cost_per_token,
    output_cost_per_token,
    supports_vision,
    supports_tools,
    supports_thinking_levels
"""


def load_model(model_id: str) -> ModelRecord | None:
    with get_conn() as conn:
        row = conn.execute(
            f"SELECT {_MODEL_COLUMNS} FROM models WHERE id = ?", (model_id,)
        ).fetchone()
    return _row_to_model(row) if row is not None else None


def list_models() -> list[ModelRecord]:
    with get_conn() as conn:
        rows = conn.execute(
            f"SELECT {_MODEL_COLUMNS} FROM models ORDER BY sort_order ASC, id ASC"
        ).fetchall()
    return [_row_to_model(row) for row in rows]


def upsert_models(models: list[ModelRecord]) -> None:
    with get_conn() as conn:
        for index, model in enumerate(models):
            conn.execute(
                """
                INSERT INTO models (
                    id,
                    label,
                    input_cost_per_token,
                    output_cost_per_token,
                    supports_vision,
                    supports_tools,
                    supports_thinking_levels,
                    sort_order
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    label = excluded.label,
                    input_cost_per_token = excluded.input_cost_per_token,
                    output_cost_per_token = excluded.output_cost_per_token,
                    supports_vision = excluded.supports_vision,
                    supports_tools = excluded.supports_tools,
                    supports_thinking_levels = excluded.supports_thinking_levels,
                    sort_order = excluded.sort_order
                """,
                (
                    model.id,
                    model.label,
                    model.input_cost_per_token,
                    model.output_cost_per_token,
                    int(model.supports_vision),
                    int(model.supports_tools),
                    int(model.supports_thinking_levels),
                    index,
                ),
            )
        conn.commit()


def load_system_prompt() -> str | None:
    with get_conn() as conn:
        row = conn.execute("SELECT system_prompt FROM settings WHERE id = 1").fetchone()
    if row is None:
        return None
    prompt = row["system_prompt"]
    return prompt if prompt and prompt.strip() else None


def save_system_prompt(system_prompt: str | None) -> None:
    now = to_iso(utc_now())
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO settings (id, system_prompt, updated_at)
            VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                system_prompt = excluded.system_prompt,
                updated_at = excluded.updated_at
            """,
            (system_prompt, now),
        )
        conn.commit()


# ---- attachments ------------------------------------------------------------


_ATTACHMENT_COLUMNS = """
    id,
    thread_id,
    message_id,
    filename,
    mime_type,
    size,
    storage_path,
    created_at
"""


def _row_to_attachment(row: sqlite3.Row) -> AttachmentRecord:
    return AttachmentRecord(
        id=row["id"],
        thread_id=row["thread_id"],
        message_id=row["message_id"],
        filename=row["filename"],
        mime_type=row["mime_type"],
        size=int(row["size"]),
        storage_path=row["storage_path"],
        created_at=row["created_at"],
    )


def create_attachment(
    *,
    thread_id: str,
    filename: str,
    mime_type: str,
    size: int,
    storage_path: str,
) -> AttachmentRecord:
    record = AttachmentRecord(
        id=new_id("attachment"),
        thread_id=thread_id,
        message_id=None,
        filename=filename,
        mime_type=mime_type,
        size=size,
        storage_path=storage_path,
        created_at=to_iso(utc_now()),
    )
    with get_conn() as conn:
        conn.execute(
            f"""
            INSERT INTO attachments ({_ATTACHMENT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.thread_id,
                record.message_id,
                record.filename,
                record.mime_type,
                record.size,
                record.storage_path,
                record.created_at,
            ),
        )
        conn.commit()
    return record


def load_attachments(attachment_ids: list[str]) -> list[AttachmentRecord]:
    if not attachment_ids:
        return []
    placeholders = ",".join(["?"] * len(attachment_ids))
    with get_conn() as conn:
        rows = conn.execute(
            f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE id IN ({placeholders})",
            tuple(attachment_ids),
        ).fetchall()
    by_id = {row["id"]: _row_to_attachment(row) for row in rows}
    return [by_id[attachment_id] for attachment_id in attachment_ids if attachment_id in by_id]


def attach_attachments_to_message(attachment_ids: list[str], message_id: str) -> None:
    if not attachment_ids:
        return
    placeholders = ",".join(["?"] * len(attachment_ids))
    with get_conn() as conn:
        conn.execute(
            f"UPDATE attachments SET message_id = ? WHERE id IN ({placeholders})",
            (message_id, *attachment_ids),
        )
        conn.commit()


def _attachments_by_message(
    conn: sqlite3.Connection, message_ids: list[str]
) -> dict[str, list[AttachmentRecord]]:
    if not message_ids:
        return {}
    placeholders = ",".join(["?"] * len(message_ids))
    rows = conn.execute(
        f"""
        SELECT {_ATTACHMENT_COLUMNS}
        FROM attachments
        WHERE message_id IN ({placeholders})
        ORDER BY created_at ASC
        """,
        tuple(message_ids),
    ).fetchall()
    grouped: dict[str, list[AttachmentRecord]] = {}
    for row in rows:
        grouped.setdefault(row["message_id"], []).append(_row_to_attachment(row))
    return grouped


# ---- messages ---------------------------------------------------------------


_MESSAGE_COLUMNS = """
    id,
    thread_id,
    role,
    content,
    model_id,
    thinking_level,
    duration_ms,
    prompt_tokens,
    completion_tokens,
    cost,
    trace_json,
    sources_json,
    created_at
"""


def _row_to_message(
    row: sqlite3.Row, attachments: list[AttachmentRecord] | None = None
) -> MessageRecord:
    return MessageRecord(
        id=row["id"],
        thread_id=row["thread_id"],
        role=row["role"],
        content=row["content"],
        created_at=row["created_at"],
        model_id=row["model_id"],
        thinking_level=row["thinking_level"],
        duration_ms=row["duration_ms"],
        prompt_tokens=row["prompt_tokens"],
        completion_tokens=row["completion_tokens"],
        cost=row["cost"],
        trace=trace_from_json(row["trace_json"]),
        sources=sources_from_json(row["sources_json"]),
        attachments=attachments or [],
    )


def create_message(
    *,
    thread_id: str,
    role: str,
    content: str,
    message_id: str | None = None,
    model_id: str | None = None,
    thinking_level: str | None = None,
    duration_ms: int | None = None,
    prompt_tokens: int | None = None,
    completion_tokens: int | None = None,
    cost: float | None = None,
    trace: list[TraceEvent] | None = None,
    sources: list[MessageSource] | None = None,
) -> MessageRecord:
    record = MessageRecord(
        id=message_id or new_id("message"),
        thread_id=thread_id,
        role=role,
        content=content,
        created_at=to_iso(utc_now()),
        model_id=model_id,
        thinking_level=thinking_level,
        duration_ms=duration_ms,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        cost=cost,
        trace=list(trace or []),
        sources=list(sources or []),
    )
    with get_conn() as conn:
        conn.execute(
            f"""
            INSERT INTO messages ({_MESSAGE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.thread_id,
                record.role,
                record.content,
                record.model_id,
                record.thinking_level,
                record.duration_ms,
                record.prompt_tokens,
                record.completion_tokens,
                record.cost,
                trace_to_json(record.trace) if record.trace else None,
                sources_to_json(record.sources) if record.sources else None,
                record.created_at,
            ),
        )
        conn.execute(
            "UPDATE threads SET updated_at = ? WHERE id = ?",
            (record.created_at, thread_id),
        )
        conn.commit()
    return record


def load_message(message_id: str) -> MessageRecord | None:
    with get_conn() as conn:
        row = conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
        ).fetchone()
        if row is None:
            return None
        attachments = _attachments_by_message(conn, [message_id]).get(message_id)
    return _row_to_message(row, attachments)


def list_thread_messages(thread_id: str) -> list[MessageRecord]:
    with get_conn() as conn:
        rows = conn.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages
            WHERE thread_id = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (thread_id,),
        ).fetchall()
        attachments = _attachments_by_message(conn, [row["id"] for row in rows])
    return [_row_to_message(row, attachments.get(row["id"])) for row in rows]


def count_thread_messages(thread_id: str) -> int:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT COUNT(*) AS message_count FROM messages WHERE thread_id = ?",
            (thread_id,),
        ).fetchone()
    return int(row["message_count"])


def prune_message_artifacts(cutoff: str) -> int:
    """Drop trace and sources from messages created before ``cutoff``."""
    with get_conn() as conn:
        cursor = conn.execute(
            """
            UPDATE messages
            SET trace_json = NULL, sources_json = NULL
            WHERE created_at < ?
              AND (trace_json IS NOT NULL OR sources_json IS NOT NULL)
            """,
            (cutoff,),
        )
        conn.commit()
        return cursor.rowcount
