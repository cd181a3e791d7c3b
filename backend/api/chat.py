"""
API routes for chat operations.
Thin route layer - runtime logic lives in services/chat_runtime.py
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any, Literal

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from chat.engine import TurnRequest
from chat.errors import StreamNotResumable
from chat.events import StreamEvent
from chat.message_builder import ClientContext
from chat.message_store import load_thread
from services.chat_runtime import get_chat_stream_service, get_stream_tracker

router = APIRouter(prefix="/api", tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ClientContextPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    iso: str = Field(min_length=1)
    local: str = Field(min_length=1)
    time_zone: str | None = Field(default=None, alias="timeZone")
    offset_minutes: int | None = Field(default=None, alias="offsetMinutes")


class ChatStreamRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(alias="threadId", min_length=1)
    content: str = Field(min_length=1)
    model_id: str = Field(alias="modelId", min_length=1)
    thinking_level: Literal["low", "medium", "high", "xhigh"] | None = Field(
        default=None, alias="thinkingLevel"
    )
    attachment_ids: list[str] = Field(default_factory=list, alias="attachmentIds")
    client_context: ClientContextPayload | None = Field(default=None, alias="clientContext")

    def to_turn_request(self) -> TurnRequest:
        context = None
        if self.client_context is not None:
            context = ClientContext(
                iso=self.client_context.iso,
                local=self.client_context.local,
                time_zone=self.client_context.time_zone,
                offset_minutes=self.client_context.offset_minutes,
            )
        return TurnRequest(
            thread_id=self.thread_id,
            content=self.content,
            model_id=self.model_id,
            thinking_level=self.thinking_level,
            attachment_ids=tuple(self.attachment_ids),
            client_context=context,
        )


class ChatResumeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stream_id: str = Field(alias="streamId", min_length=1)


def _encode_sse_frame(
    payload: dict[str, Any],
    *,
    event: str = "event",
    event_id: int | None = None,
) -> str:
    lines: list[str] = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(
        "data: "
        + json.dumps(payload, ensure_ascii=True, default=str, separators=(",", ":"))
    )
    return "\n".join(lines) + "\n\n"


async def _sse_frames(events: AsyncGenerator[StreamEvent, None]) -> AsyncIterator[str]:
    seq = 0
    try:
        async for event in events:
            seq += 1
            yield _encode_sse_frame(event.data, event=event.event, event_id=seq)
    finally:
        await events.aclose()


def _sse_response(events: AsyncGenerator[StreamEvent, None]) -> StreamingResponse:
    return StreamingResponse(
        _sse_frames(events),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/chat/stream")
async def chat_stream(body: ChatStreamRequest):
    service = get_chat_stream_service()
    return _sse_response(service.start(body.to_turn_request()))


@router.post("/chat/resume")
async def chat_resume(body: ChatResumeRequest):
    service = get_chat_stream_service()
    return _sse_response(service.resume(body.stream_id))


@router.post("/chat/streams/{stream_id}/stop")
async def stop_chat_stream(stream_id: str):
    service = get_chat_stream_service()
    try:
        cancelled = await service.stop(stream_id)
    except StreamNotResumable as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"streamId": stream_id, "cancelled": cancelled}


@router.get("/threads/{thread_id}/resumable-stream")
async def get_resumable_stream(thread_id: str):
    if load_thread(thread_id) is None:
        raise HTTPException(status_code=404, detail="thread not found")

    stream = get_stream_tracker().find_resumable_stream(thread_id)
    return {"stream": stream.to_dict() if stream is not None else None}
