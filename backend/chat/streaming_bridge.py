from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from chat.llm_client import (
    ChatMessage,
    LlmClient,
    LlmResponse,
    ReasoningConfig,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)

logger = logging.getLogger(__name__)


async def stream_llm_response(
    *,
    llm_client: LlmClient,
    messages: list[ChatMessage],
    tools: list[ToolDefinition],
    max_output_tokens: int | None,
    on_text: Callable[[str], Awaitable[None]],
    on_reasoning: Callable[[str], Awaitable[None]],
    reasoning: ReasoningConfig | None = None,
) -> LlmResponse:
    """Drive one streaming generation call and fold its chunks into a response.

    Text and reasoning deltas are forwarded in arrival order. Tool-call argument
    fragments are accumulated per call id; fragments whose id does not match a
    started call are attributed to the most recently started one.
    """
    text_buffer: list[str] = []
    reasoning_buffer: list[str] = []
    tool_call_accum: dict[str, dict[str, Any]] = {}
    tool_call_id_aliases: dict[str, str] = {}
    last_tool_call_id: str | None = None
    usage: TokenUsage | None = None

    def resolve_call_id(raw_call_id: str | None) -> str:
        nonlocal last_tool_call_id
        raw = (raw_call_id or "").strip()
        call_id = tool_call_id_aliases.get(raw, raw)
        if not call_id:
            call_id = last_tool_call_id or ""
        if (
            call_id
            and call_id not in tool_call_accum
            and last_tool_call_id
            and last_tool_call_id in tool_call_accum
        ):
            tool_call_id_aliases[call_id] = last_tool_call_id
            call_id = last_tool_call_id
        return call_id

    stream = llm_client.generate_stream(
        messages=messages,
        tools=tools,
        tool_choice="auto" if tools else None,
        max_output_tokens=max_output_tokens,
        reasoning=reasoning,
    )

    async for chunk in stream:
        if chunk.type == "text":
            delta_text = chunk.text or ""
            if delta_text:
                text_buffer.append(delta_text)
                await on_text(delta_text)
            continue

        if chunk.type == "reasoning":
            delta_text = chunk.text or ""
            if delta_text:
                reasoning_buffer.append(delta_text)
                await on_reasoning(delta_text)
            continue

        if chunk.type == "tool_call_start":
            call_id = chunk.tool_call_id or f"call_{len(tool_call_accum) + 1}"
            last_tool_call_id = call_id
            tool_name = chunk.tool_name or ""
            if call_id in tool_call_accum:
                if not tool_call_accum[call_id]["name"] and tool_name:
                    tool_call_accum[call_id]["name"] = tool_name
            else:
                tool_call_accum[call_id] = {"name": tool_name, "args_parts": []}
            continue

        if chunk.type == "tool_call_delta":
            call_id = resolve_call_id(chunk.tool_call_id)
            if call_id:
                accum = tool_call_accum.setdefault(
                    call_id, {"name": "", "args_parts": []}
                )
                accum["args_parts"].append(chunk.arguments_delta or "")
            continue

        if chunk.type == "tool_call_done":
            continue

        if chunk.type == "usage" and chunk.usage is not None:
            usage = chunk.usage
            continue

    tool_calls: list[ToolCall] = []
    for call_id, accum in tool_call_accum.items():
        if not accum["name"]:
            continue
        raw_json = "".join(accum["args_parts"])
        try:
            arguments = json.loads(raw_json) if raw_json.strip() else {}
        except json.JSONDecodeError:
            logger.warning("Unparseable tool arguments for %s", accum["name"])
            arguments = {"_raw": raw_json}
        if not isinstance(arguments, dict):
            arguments = {"_raw": raw_json}
        tool_calls.append(
            ToolCall(
                id=call_id,
                name=accum["name"],
                arguments=arguments,
                raw_arguments=raw_json or "{}",
            )
        )

    return LlmResponse(
        text="".join(text_buffer) or None,
        tool_calls=tool_calls,
        reasoning="".join(reasoning_buffer) or None,
        usage=usage,
    )
