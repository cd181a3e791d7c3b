from __future__ import annotations

import math
from typing import Any

from chat.llm_client import ToolDefinition

SEARCH_TOOL_NAME = "search"
WEB_FETCH_TOOL_NAME = "web_fetch"
PYTHON_TOOL_NAME = "python"
MEMORY_APPEND_TOOL_NAME = "memory_append"
MEMORY_WRITE_TOOL_NAME = "memory_write"

SEARCH_TOOL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "description": "The search query."},
        "limit": {
            "type": "integer",
            "minimum": 1,
            "maximum": 10,
            "description": "Maximum number of results to return.",
        },
    },
    "required": ["query"],
}

WEB_FETCH_TOOL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "url": {"type": "string", "description": "The http(s) URL to fetch."},
        "maxBytes": {
            "type": "integer",
            "description": "Optional maximum response size in bytes.",
        },
        "truncate": {
            "type": "boolean",
            "description": (
                "Set to false to attempt a full response (may still be capped for safety)."
            ),
        },
    },
    "required": ["url"],
}

PYTHON_TOOL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "code": {"type": "string", "description": "The Python source code to execute."},
    },
    "required": ["code"],
}

MEMORY_TOOL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "content": {"type": "string"},
    },
    "required": ["content"],
}


SEARCH_TOOL = ToolDefinition(
    name=SEARCH_TOOL_NAME,
    description=(
        "Search the web for up-to-date information and return a list of relevant results."
    ),
    input_schema=SEARCH_TOOL_SCHEMA,
)

WEB_FETCH_TOOL = ToolDefinition(
    name=WEB_FETCH_TOOL_NAME,
    description="Fetch a web page by URL and return readable text.",
    input_schema=WEB_FETCH_TOOL_SCHEMA,
)

PYTHON_TOOL = ToolDefinition(
    name=PYTHON_TOOL_NAME,
    description=(
        "Execute a short Python 3 script in an isolated process and return stdout, "
        "stderr and the exit code. Only the standard library is available; print "
        "anything you need to see."
    ),
    input_schema=PYTHON_TOOL_SCHEMA,
)

MEMORY_APPEND_TOOL = ToolDefinition(
    name=MEMORY_APPEND_TOOL_NAME,
    description=(
        "Append new information to the user's memory file. Use this to save important "
        "facts, preferences, or context about the user that should be remembered across "
        "conversations. Each entry should be a concise, standalone fact."
    ),
    input_schema=MEMORY_TOOL_SCHEMA,
)

MEMORY_WRITE_TOOL = ToolDefinition(
    name=MEMORY_WRITE_TOOL_NAME,
    description=(
        "Completely replace the user's memory file with new content. Use this sparingly, "
        "only when the memory needs to be reorganized or cleaned up. For adding new "
        "information, prefer memory_append instead."
    ),
    input_schema=MEMORY_TOOL_SCHEMA,
)


def coerce_int_arg(
    raw_value: Any,
    *,
    default: int,
    minimum: int,
    maximum: int,
) -> int:
    if isinstance(raw_value, bool):
        return default
    if isinstance(raw_value, float):
        if not math.isfinite(raw_value):
            return default
        raw_value = round(raw_value)
    if isinstance(raw_value, str):
        try:
            raw_value = int(raw_value.strip())
        except ValueError:
            return default
    if not isinstance(raw_value, int):
        return default
    return max(minimum, min(maximum, raw_value))


def string_arg(arguments: dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    return value if isinstance(value, str) else ""


def describe_tool_call(name: str, arguments: dict[str, Any]) -> str:
    """Short human-readable label stored in the turn trace."""
    if name == SEARCH_TOOL_NAME:
        return f"Searching: {string_arg(arguments, 'query').strip()}"
    if name == WEB_FETCH_TOOL_NAME:
        return f"Fetching: {string_arg(arguments, 'url').strip()}"
    if name == PYTHON_TOOL_NAME:
        return "Running Python"
    if name in (MEMORY_APPEND_TOOL_NAME, MEMORY_WRITE_TOOL_NAME):
        return "Updating memory"
    return f"Calling tool: {name}"


def arguments_are_malformed(arguments: dict[str, Any]) -> bool:
    """True when the provider's argument JSON could not be parsed."""
    return "_raw" in arguments and len(arguments) == 1
