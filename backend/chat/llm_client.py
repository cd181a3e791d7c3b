from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(frozen=True)
class ChatMessage:
    """One transcript entry.

    ``content`` is either plain text or a list of OpenAI-style content parts
    (used for image attachments). Assistant turns that requested tools carry the
    raw ``tool_calls`` list; tool-role turns carry the ``tool_call_id`` they answer.
    """

    role: str
    content: str | list[dict[str, Any]]
    tool_call_id: str | None = None
    tool_calls: list[dict[str, Any]] | None = None


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]
    raw_arguments: str = ""


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


@dataclass(frozen=True)
class ReasoningConfig:
    """Provider reasoning request: either an effort level or a token budget."""

    effort: str | None = None
    max_tokens: int | None = None

    def to_payload(self) -> dict[str, Any]:
        if self.max_tokens is not None:
            return {"max_tokens": self.max_tokens}
        return {"effort": self.effort}


@dataclass(frozen=True)
class LlmResponse:
    text: str | None
    tool_calls: list[ToolCall]
    reasoning: str | None = None
    usage: TokenUsage | None = None
    raw: Any | None = None


@dataclass(frozen=True)
class StreamChunk:
    """A single incremental piece from an LLM streaming response.

    Chunk types:
      - ``"text"``              – a text token (``text`` field carries the delta)
      - ``"reasoning"``         – a reasoning token (``text`` field carries the delta)
      - ``"tool_call_start"``   – signals a new tool call (``tool_call_id``, ``tool_name``)
      - ``"tool_call_delta"``   – an incremental piece of tool-call arguments JSON
      - ``"tool_call_done"``    – the tool call's argument stream is finished
      - ``"usage"``             – token usage for the whole call (``usage``)
    """

    type: str
    text: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments_delta: str | None = None
    usage: TokenUsage | None = None


class LlmClient(Protocol):
    async def generate(
        self,
        *,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        tool_choice: str | None = None,
        max_output_tokens: int | None = None,
        reasoning: ReasoningConfig | None = None,
    ) -> LlmResponse: ...

    def generate_stream(
        self,
        *,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        tool_choice: str | None = None,
        max_output_tokens: int | None = None,
        reasoning: ReasoningConfig | None = None,
    ) -> AsyncIterator[StreamChunk]: ...
