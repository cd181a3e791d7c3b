from datetime import timedelta

from fastapi import APIRouter, HTTPException, Query, Response
from pydantic import BaseModel, ConfigDict, Field

from chat.message_store import (
    create_thread as store_create_thread,
    delete_thread as store_delete_thread,
    list_models as store_list_models,
    list_thread_messages,
    list_threads as store_list_threads,
    load_system_prompt,
    load_thread,
    prune_message_artifacts,
    save_system_prompt,
)
from chat.trace import TracePolicy
from meta import paginate_by_cursor, to_iso, utc_now
from services.chat_runtime import get_memory_extractor, get_memory_store


router = APIRouter(prefix="/api", tags=["threads"])


class CreateThreadRequest(BaseModel):
    title: str | None = None


class SettingsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    system_prompt: str | None = Field(default=None, alias="systemPrompt")


class MemoryRequest(BaseModel):
    content: str


@router.get("/health")
async def health():
    return {"ok": True}


@router.post("/threads", status_code=201)
async def create_thread(body: CreateThreadRequest | None = None):
    title = body.title if body and body.title else None
    return store_create_thread(title).to_dict()


@router.get("/threads")
async def list_threads(
    limit: int = Query(default=100, ge=1, le=500),
    cursor: str | None = None,
):
    threads = [thread.to_dict() for thread in store_list_threads()]
    try:
        page, next_cursor = paginate_by_cursor(threads, cursor=cursor, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return {"threads": page, "next_cursor": next_cursor}


@router.delete("/threads/{thread_id}", status_code=204)
async def delete_thread(thread_id: str):
    if not store_delete_thread(thread_id):
        raise HTTPException(status_code=404, detail="thread not found")
    return Response(status_code=204)


@router.get("/threads/{thread_id}/messages")
async def get_thread_messages(thread_id: str):
    if load_thread(thread_id) is None:
        raise HTTPException(status_code=404, detail="thread not found")

    retention_days = TracePolicy.from_env().retention_days
    if retention_days > 0:
        prune_message_artifacts(to_iso(utc_now() - timedelta(days=retention_days)))

    return {"messages": [message.to_dict() for message in list_thread_messages(thread_id)]}


@router.get("/models")
async def list_models():
    return {"models": [model.to_dict() for model in store_list_models()]}


@router.get("/settings")
async def get_settings():
    return {"systemPrompt": load_system_prompt()}


@router.put("/settings")
async def update_settings(body: SettingsRequest):
    save_system_prompt(body.system_prompt)
    return {"systemPrompt": load_system_prompt()}


@router.get("/memory")
async def get_memory():
    return {"content": get_memory_store().read() or ""}


@router.put("/memory")
async def update_memory(body: MemoryRequest):
    get_memory_store().write(body.content)
    return {"content": body.content}


@router.post("/memory/extract")
async def extract_memory():
    extractor = get_memory_extractor()
    if extractor is None:
        raise HTTPException(status_code=503, detail="Memory extractor not configured")
    summary = await extractor.extract_from_unchecked_threads()
    return summary.to_dict()
