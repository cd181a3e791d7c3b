from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI, OpenAI, OpenAIError

from chat.errors import ProviderError
from chat.llm_client import (
    ChatMessage,
    LlmResponse,
    ReasoningConfig,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)

logger = logging.getLogger(__name__)


def extract_reasoning_text(detail: Any) -> str | None:
    if not detail:
        return None
    if isinstance(detail, str):
        return detail
    if not isinstance(detail, dict):
        detail = getattr(detail, "__dict__", None) or {}
    for key in ("text", "reasoning"):
        value = detail.get(key)
        if isinstance(value, str):
            return value
    summary = detail.get("summary")
    if isinstance(summary, str):
        return summary
    if isinstance(summary, list):
        return "\n".join(item for item in summary if isinstance(item, str))
    content = detail.get("content")
    if isinstance(content, str):
        return content
    return None


def _usage_from(raw_usage: Any) -> TokenUsage | None:
    if raw_usage is None:
        return None
    return TokenUsage(
        prompt_tokens=int(getattr(raw_usage, "prompt_tokens", 0) or 0),
        completion_tokens=int(getattr(raw_usage, "completion_tokens", 0) or 0),
    )


@dataclass(frozen=True)
class OpenRouterAdapter:
    model: str
    api_key: str | None = None
    base_url: str = "https://openrouter.ai/api/v1"
    app_name: str = "Pro Chat"
    http_referer: str | None = None
    timeout_s: float = 120.0

    def _headers(self) -> dict[str, str]:
        extra_headers: dict[str, str] = {"X-Title": self.app_name}
        if self.http_referer:
            extra_headers["HTTP-Referer"] = self.http_referer
        return extra_headers

    def _request_kwargs(
        self,
        *,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        tool_choice: str | None,
        max_output_tokens: int | None,
        reasoning: ReasoningConfig | None,
    ) -> dict[str, Any]:
        if not self.api_key:
            raise ProviderError("OpenRouter API key is missing. Set OPENROUTER_API_KEY.")

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self._messages_to_api(messages),
        }
        if tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.input_schema,
                    },
                }
                for t in tools
            ]
            kwargs["tool_choice"] = tool_choice or "auto"
        if max_output_tokens:
            kwargs["max_tokens"] = max_output_tokens
        if reasoning is not None:
            kwargs["extra_body"] = {"reasoning": reasoning.to_payload()}
        return kwargs

    # ---- non-streaming ------------------------------------------------------

    async def generate(
        self,
        *,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        tool_choice: str | None = None,
        max_output_tokens: int | None = None,
        reasoning: ReasoningConfig | None = None,
    ) -> LlmResponse:
        kwargs = self._request_kwargs(
            messages=messages,
            tools=tools,
            tool_choice=tool_choice,
            max_output_tokens=max_output_tokens,
            reasoning=reasoning,
        )
        return await asyncio.to_thread(self._generate_sync, kwargs)

    def _generate_sync(self, kwargs: dict[str, Any]) -> LlmResponse:
        client = OpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            default_headers=self._headers(),
            timeout=self.timeout_s,
        )
        try:
            response = client.chat.completions.create(**kwargs)
        except OpenAIError as exc:
            raise ProviderError(f"OpenRouter request failed: {exc}") from exc
        finally:
            client.close()
        return self._parse_response(response)

    # ---- streaming ----------------------------------------------------------

    async def generate_stream(
        self,
        *,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        tool_choice: str | None = None,
        max_output_tokens: int | None = None,
        reasoning: ReasoningConfig | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream tokens from OpenRouter via the async OpenAI Chat Completions API.

        Each ``ChatCompletionChunk`` delta may carry:
          - ``.content`` – text token
          - ``.reasoning`` – reasoning token (``.reasoning_details`` as fallback)
          - ``.tool_calls`` – incremental tool-call info (index, id, function name/arguments)
        The last chunk carries ``usage`` because ``include_usage`` is requested.
        Cancelling the consuming task closes the underlying HTTP response.
        """
        kwargs = self._request_kwargs(
            messages=messages,
            tools=tools,
            tool_choice=tool_choice,
            max_output_tokens=max_output_tokens,
            reasoning=reasoning,
        )
        client = AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            default_headers=self._headers(),
            timeout=self.timeout_s,
        )

        try:
            stream = await client.chat.completions.create(
                **kwargs,
                stream=True,
                stream_options={"include_usage": True},
            )
        except OpenAIError as exc:
            await client.close()
            raise ProviderError(f"OpenRouter request failed: {exc}") from exc
        except BaseException:
            await client.close()
            raise

        # Track which tool-call indices we've already sent a "start" for.
        started_tool_calls: dict[int, str] = {}  # index -> call_id
        usage: TokenUsage | None = None

        try:
            async for chunk in stream:
                chunk_usage = _usage_from(getattr(chunk, "usage", None))
                if chunk_usage is not None:
                    usage = chunk_usage

                choices = getattr(chunk, "choices", []) or []
                if not choices:
                    continue
                delta = getattr(choices[0], "delta", None)
                if delta is None:
                    continue

                content = getattr(delta, "content", None)
                if content:
                    yield StreamChunk(type="text", text=content)

                reasoning_delta = getattr(delta, "reasoning", None)
                if isinstance(reasoning_delta, str) and reasoning_delta:
                    yield StreamChunk(type="reasoning", text=reasoning_delta)
                else:
                    for detail in getattr(delta, "reasoning_details", None) or []:
                        text = extract_reasoning_text(detail)
                        if text:
                            yield StreamChunk(type="reasoning", text=text)

                raw_tool_calls = getattr(delta, "tool_calls", None) or []
                for tc in raw_tool_calls:
                    index = getattr(tc, "index", None)
                    if index is None:
                        index = len(started_tool_calls)
                    call_id = getattr(tc, "id", None)
                    function = getattr(tc, "function", None)
                    fn_name = getattr(function, "name", None) if function else None
                    fn_args = getattr(function, "arguments", None) if function else None

                    if index not in started_tool_calls:
                        resolved_id = call_id or f"call_{index + 1}"
                        started_tool_calls[index] = resolved_id
                        yield StreamChunk(
                            type="tool_call_start",
                            tool_call_id=resolved_id,
                            tool_name=fn_name or "",
                        )
                    elif fn_name:
                        yield StreamChunk(
                            type="tool_call_start",
                            tool_call_id=started_tool_calls[index],
                            tool_name=fn_name,
                        )

                    if fn_args:
                        yield StreamChunk(
                            type="tool_call_delta",
                            tool_call_id=started_tool_calls[index],
                            arguments_delta=fn_args,
                        )
        except OpenAIError as exc:
            raise ProviderError(f"OpenRouter stream failed: {exc}") from exc
        finally:
            await stream.close()
            await client.close()

        for call_id in started_tool_calls.values():
            yield StreamChunk(type="tool_call_done", tool_call_id=call_id)

        if usage is not None:
            yield StreamChunk(type="usage", usage=usage)

    # ---- shared helpers -----------------------------------------------------

    def _messages_to_api(self, messages: list[ChatMessage]) -> list[dict[str, Any]]:
        """Convert ChatMessages to OpenAI/OpenRouter API format."""
        result: list[dict[str, Any]] = []
        for m in messages:
            msg: dict[str, Any] = {"role": m.role, "content": m.content or ""}
            if m.role == "tool" and m.tool_call_id:
                msg["tool_call_id"] = m.tool_call_id
            if m.role == "assistant" and m.tool_calls:
                msg["tool_calls"] = m.tool_calls
                if not m.content:
                    msg["content"] = None
            result.append(msg)
        return result

    def _parse_response(self, response: Any) -> LlmResponse:
        usage = _usage_from(getattr(response, "usage", None))
        choices = getattr(response, "choices", []) or []
        if not choices:
            return LlmResponse(text=None, tool_calls=[], usage=usage, raw=response)

        message = getattr(choices[0], "message", None)
        if message is None:
            return LlmResponse(text=None, tool_calls=[], usage=usage, raw=response)

        text = getattr(message, "content", None)
        if isinstance(text, list):
            text = "".join(str(part) for part in text if part is not None)

        tool_calls: list[ToolCall] = []
        raw_tool_calls = getattr(message, "tool_calls", []) or []
        for raw_call in raw_tool_calls:
            function = getattr(raw_call, "function", None)
            name = getattr(function, "name", "") if function is not None else ""
            arguments_raw = (
                getattr(function, "arguments", "{}") if function is not None else "{}"
            )
            try:
                arguments = json.loads(arguments_raw) if arguments_raw else {}
            except json.JSONDecodeError:
                logger.warning("Unparseable tool arguments for %s", name)
                arguments = {"_raw": str(arguments_raw)}

            call_id = getattr(raw_call, "id", None) or f"call_{len(tool_calls) + 1}"
            tool_calls.append(
                ToolCall(
                    id=call_id,
                    name=name,
                    arguments=arguments if isinstance(arguments, dict) else {},
                    raw_arguments=str(arguments_raw or ""),
                )
            )

        reasoning = getattr(message, "reasoning", None)
        normalized_text = str(text).strip() if text else None
        return LlmResponse(
            text=normalized_text or None,
            tool_calls=tool_calls,
            reasoning=reasoning if isinstance(reasoning, str) else None,
            usage=usage,
            raw=response,
        )
