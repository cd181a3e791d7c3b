"""Closed set of tool result variants.

Every tool returns one of these; the dispatcher serializes them into the JSON
string handed back to the model, and :func:`decode_tool_result` is the single
place where that JSON is parsed again (for source extraction).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

from chat.tooling import (
    MEMORY_APPEND_TOOL_NAME,
    MEMORY_WRITE_TOOL_NAME,
    PYTHON_TOOL_NAME,
    SEARCH_TOOL_NAME,
    WEB_FETCH_TOOL_NAME,
)


@dataclass(frozen=True)
class SearchHit:
    title: str
    url: str
    snippet: str = ""


@dataclass(frozen=True)
class SearchResults:
    results: list[SearchHit] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "results": [
                {"title": hit.title, "url": hit.url, "snippet": hit.snippet}
                for hit in self.results
            ]
        }


@dataclass(frozen=True)
class FetchResult:
    url: str
    status: int
    content_type: str | None = None
    title: str | None = None
    text: str = ""
    truncated: bool = False
    redirects: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "status": self.status,
            "contentType": self.content_type,
            "title": self.title,
            "text": self.text,
            "truncated": self.truncated,
            "redirects": list(self.redirects),
        }


@dataclass(frozen=True)
class CodeExecutionResult:
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool = False
    truncated: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
            "truncated": self.truncated,
        }


@dataclass(frozen=True)
class MemoryResult:
    success: bool
    message: str
    current_memory: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "currentMemory": self.current_memory,
        }


@dataclass(frozen=True)
class ToolError:
    tool: str
    error: str
    error_code: str = "tool_error"

    def to_payload(self) -> dict[str, Any]:
        return {"tool": self.tool, "error": self.error, "error_code": self.error_code}


ToolResult = Union[SearchResults, FetchResult, CodeExecutionResult, MemoryResult, ToolError]


def serialize_tool_result(result: ToolResult) -> str:
    return json.dumps(result.to_payload(), ensure_ascii=False, default=str)


def _as_str(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _decode_search(payload: dict[str, Any]) -> SearchResults:
    hits: list[SearchHit] = []
    raw_results = payload.get("results")
    if isinstance(raw_results, list):
        for item in raw_results:
            if not isinstance(item, dict):
                continue
            url = _as_str(item.get("url")).strip()
            if not url:
                continue
            hits.append(
                SearchHit(
                    title=_as_str(item.get("title")).strip() or url,
                    url=url,
                    snippet=_as_str(item.get("snippet")).strip(),
                )
            )
    return SearchResults(results=hits)


def _decode_fetch(payload: dict[str, Any]) -> FetchResult:
    status = payload.get("status")
    redirects = payload.get("redirects")
    return FetchResult(
        url=_as_str(payload.get("url")),
        status=status if isinstance(status, int) else 0,
        content_type=_as_str(payload.get("contentType")) or None,
        title=_as_str(payload.get("title")) or None,
        text=_as_str(payload.get("text")),
        truncated=bool(payload.get("truncated")),
        redirects=[r for r in redirects if isinstance(r, str)]
        if isinstance(redirects, list)
        else [],
    )


def _decode_code(payload: dict[str, Any]) -> CodeExecutionResult:
    exit_code = payload.get("exitCode")
    return CodeExecutionResult(
        stdout=_as_str(payload.get("stdout")),
        stderr=_as_str(payload.get("stderr")),
        exit_code=exit_code if isinstance(exit_code, int) else None,
        timed_out=bool(payload.get("timedOut")),
        truncated=bool(payload.get("truncated")),
    )


def _decode_memory(payload: dict[str, Any]) -> MemoryResult:
    return MemoryResult(
        success=bool(payload.get("success")),
        message=_as_str(payload.get("message")),
        current_memory=_as_str(payload.get("currentMemory")),
    )


_DECODERS = {
    SEARCH_TOOL_NAME: _decode_search,
    WEB_FETCH_TOOL_NAME: _decode_fetch,
    PYTHON_TOOL_NAME: _decode_code,
    MEMORY_APPEND_TOOL_NAME: _decode_memory,
    MEMORY_WRITE_TOOL_NAME: _decode_memory,
}


def decode_tool_result(tool_name: str, raw_result: str) -> ToolResult:
    try:
        payload = json.loads(raw_result)
    except (TypeError, ValueError):
        return ToolError(
            tool=tool_name, error="malformed tool result", error_code="malformed_result"
        )

    if not isinstance(payload, dict):
        return ToolError(
            tool=tool_name, error="malformed tool result", error_code="malformed_result"
        )

    error = payload.get("error")
    if isinstance(error, str) and error:
        return ToolError(
            tool=tool_name,
            error=error,
            error_code=_as_str(payload.get("error_code"), "tool_error"),
        )

    decoder = _DECODERS.get(tool_name)
    if decoder is None:
        return ToolError(
            tool=tool_name,
            error=f"unknown tool '{tool_name}'",
            error_code="unsupported_tool",
        )
    return decoder(payload)
