from __future__ import annotations

import logging
import threading
from pathlib import Path

from chat.llm_client import ToolCall
from chat.tool_results import MemoryResult, ToolError, ToolResult
from chat.tooling import (
    MEMORY_APPEND_TOOL_NAME,
    MEMORY_WRITE_TOOL_NAME,
    arguments_are_malformed,
    string_arg,
)

logger = logging.getLogger(__name__)


class MemoryStore:
    """Plain-text memory file shared by every conversation, one fact per line."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def ensure_exists(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("", encoding="utf-8")

    def read(self) -> str | None:
        try:
            content = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            self.ensure_exists()
            return None
        return content or None

    def write(self, content: str) -> None:
        with self._lock:
            self.ensure_exists()
            self.path.write_text(content, encoding="utf-8")

    def append(self, content: str) -> None:
        with self._lock:
            self.ensure_exists()
            existing = self.read()
            updated = f"{existing}\n{content}" if existing else content
            self.path.write_text(updated, encoding="utf-8")


class MemoryTool:
    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def append(self, content: str) -> MemoryResult:
        trimmed = content.strip()
        if not trimmed:
            return MemoryResult(
                success=False,
                message="No content provided to append.",
                current_memory=self.store.read() or "",
            )
        self.store.append(trimmed)
        return MemoryResult(
            success=True,
            message=f'Successfully appended to memory: "{trimmed}"',
            current_memory=self.store.read() or "",
        )

    def write(self, content: str) -> MemoryResult:
        trimmed = content.strip()
        self.store.write(trimmed)
        return MemoryResult(
            success=True,
            message="Successfully replaced memory with new content."
            if trimmed
            else "Successfully cleared memory.",
            current_memory=self.store.read() or "",
        )

    async def __call__(self, tool_call: ToolCall) -> ToolResult:
        if arguments_are_malformed(tool_call.arguments):
            return ToolError(
                tool=tool_call.name,
                error="Invalid tool arguments. Expected JSON with a content string.",
                error_code="invalid_arguments",
            )
        content = string_arg(tool_call.arguments, "content")

        if tool_call.name == MEMORY_APPEND_TOOL_NAME:
            result = self.append(content)
        elif tool_call.name == MEMORY_WRITE_TOOL_NAME:
            result = self.write(content)
        else:
            return ToolError(
                tool=tool_call.name,
                error=f"Unknown memory tool: {tool_call.name}",
                error_code="unsupported_tool",
            )
        logger.info("%s: %s", tool_call.name, result.message)
        return result
