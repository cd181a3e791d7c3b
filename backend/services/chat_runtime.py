"""
Chat runtime services - stream tracking, tool dispatch and turn streaming.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from pathlib import Path

import meta
from chat import build_llm_client
from chat.engine import DEFAULT_MAX_TOOL_ITERATIONS, ChatEngine
from chat.runtime.tool_dispatcher import RegisteredTool, ToolDispatcher
from chat.stream_tracker import StreamTracker
from chat.tooling import (
    MEMORY_APPEND_TOOL,
    MEMORY_WRITE_TOOL,
    PYTHON_TOOL,
    SEARCH_TOOL,
    WEB_FETCH_TOOL,
)
from chat.trace import TracePolicy
from env_loader import env_csv, env_float, env_int, env_str, load_env_once
from services.chat_streams import ChatStreamService
from services.memory_extractor import DEFAULT_EXTRACTION_MODEL, MemoryExtractor
from services.memory_tool import MemoryStore, MemoryTool
from services.python_tool import PythonTool
from services.search_tool import BraveSearchProvider, SearchTool
from services.web_fetch_tool import WebFetchTool


@dataclass(frozen=True)
class ChatRuntime:
    tracker: StreamTracker
    dispatcher: ToolDispatcher
    engine: ChatEngine
    streams: ChatStreamService
    memory_store: MemoryStore
    memory_extractor: MemoryExtractor | None = None


def storage_root() -> Path:
    raw = env_str("STORAGE_PATH")
    if not raw:
        return meta.DB_DIR / "uploads"
    path = Path(raw)
    return path if path.is_absolute() else meta.BASE_DIR / path


def build_memory_store() -> MemoryStore:
    raw = env_str("MEMORY_PATH")
    if not raw:
        return MemoryStore(storage_root() / "memory")
    path = Path(raw)
    return MemoryStore(path if path.is_absolute() else meta.BASE_DIR / path)


def build_memory_extractor(memory_store: MemoryStore) -> MemoryExtractor | None:
    if not (env_str("OPENROUTER_API_KEY") or env_str("OPENROUTER_KEY")):
        return None
    model = env_str("MEMORY_EXTRACTION_MODEL", DEFAULT_EXTRACTION_MODEL)
    return MemoryExtractor(
        memory_store=memory_store, llm_client=build_llm_client(model=model)
    )


def build_tool_dispatcher(memory_store: MemoryStore) -> ToolDispatcher:
    dispatcher = ToolDispatcher()

    brave_key = env_str("BRAVE_SEARCH_API_KEY")
    if brave_key:
        provider = BraveSearchProvider(
            api_key=brave_key,
            min_interval_s=env_float("BRAVE_SEARCH_MIN_INTERVAL_SECONDS", 1.0, minimum=0.0),
        )
        dispatcher.register(RegisteredTool(SEARCH_TOOL, SearchTool(provider)))

    dispatcher.register(
        RegisteredTool(
            WEB_FETCH_TOOL,
            WebFetchTool(
                timeout_s=env_float("WEB_FETCH_TIMEOUT_SECONDS", 8.0, minimum=1.0),
                max_redirects=env_int("WEB_FETCH_MAX_REDIRECTS", 5, minimum=0),
                allowed_domains=env_csv("WEB_FETCH_ALLOW_DOMAINS"),
                blocked_domains=env_csv("WEB_FETCH_DENY_DOMAINS"),
            ),
        )
    )
    dispatcher.register(
        RegisteredTool(
            PYTHON_TOOL,
            PythonTool(
                timeout_s=env_float("PYTHON_TOOL_TIMEOUT_SECONDS", 5.0, minimum=0.1),
                python_executable=env_str("PYTHON_TOOL_EXECUTABLE"),
            ),
        )
    )

    memory_tool = MemoryTool(memory_store)
    dispatcher.register(RegisteredTool(MEMORY_APPEND_TOOL, memory_tool))
    dispatcher.register(RegisteredTool(MEMORY_WRITE_TOOL, memory_tool))
    return dispatcher


def build_chat_runtime() -> ChatRuntime:
    load_env_once()
    tracker = StreamTracker.from_env()
    memory_store = build_memory_store()
    dispatcher = build_tool_dispatcher(memory_store)
    engine = ChatEngine(
        llm_client_factory=lambda model_id: build_llm_client(model=model_id),
        tracker=tracker,
        dispatcher=dispatcher,
        trace_policy=TracePolicy.from_env(),
        max_tool_iterations=env_int(
            "MAX_TOOL_ITERATIONS", DEFAULT_MAX_TOOL_ITERATIONS, minimum=0
        ),
        memory_store=memory_store,
        storage_root=storage_root(),
    )
    streams = ChatStreamService(engine=engine, tracker=tracker)
    return ChatRuntime(
        tracker=tracker,
        dispatcher=dispatcher,
        engine=engine,
        streams=streams,
        memory_store=memory_store,
        memory_extractor=build_memory_extractor(memory_store),
    )


_runtime_lock = threading.Lock()
_runtime_loop: asyncio.AbstractEventLoop | None = None
_chat_runtime: ChatRuntime | None = None


def _ensure_chat_runtime() -> ChatRuntime:
    global _runtime_loop, _chat_runtime

    loop = asyncio.get_running_loop()
    with _runtime_lock:
        if _runtime_loop is loop and _chat_runtime is not None:
            return _chat_runtime

        _runtime_loop = loop
        _chat_runtime = build_chat_runtime()
        return _chat_runtime


def get_chat_runtime() -> ChatRuntime:
    return _ensure_chat_runtime()


def get_stream_tracker() -> StreamTracker:
    return _ensure_chat_runtime().tracker


def get_chat_stream_service() -> ChatStreamService:
    return _ensure_chat_runtime().streams


def get_memory_store() -> MemoryStore:
    return _ensure_chat_runtime().memory_store


def get_memory_extractor() -> MemoryExtractor | None:
    return _ensure_chat_runtime().memory_extractor


async def start_chat_runtime() -> ChatRuntime:
    runtime = _ensure_chat_runtime()
    runtime.memory_store.ensure_exists()
    return runtime


async def shutdown_chat_runtime() -> None:
    global _runtime_loop, _chat_runtime

    with _runtime_lock:
        runtime = _chat_runtime
        _chat_runtime = None
        _runtime_loop = None
    if runtime is not None:
        await runtime.streams.shutdown()
