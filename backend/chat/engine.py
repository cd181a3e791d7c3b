from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import meta
from chat.attachments import build_user_content
from chat.cost import calculate_cost
from chat.errors import (
    ChatError,
    InvalidInput,
    ProviderError,
    StreamNotResumable,
    StreamSuperseded,
    ToolIterationLimitExceeded,
    TurnAborted,
)
from chat.events import (
    EVENT_CATCHUP,
    EVENT_DELTA,
    EVENT_DONE,
    EVENT_REASONING,
    EVENT_STREAM_ID,
    EVENT_TOOL,
    EventChannel,
)
from chat.llm_client import ChatMessage, LlmClient, TokenUsage, ToolCall
from chat.message_builder import ClientContext, build_transcript
from chat.message_store import (
    AttachmentRecord,
    MessageRecord,
    ModelRecord,
    attach_attachments_to_message,
    create_message,
    increment_thread_cost,
    list_thread_messages,
    load_attachments,
    load_message,
    load_model,
    load_system_prompt,
    load_thread,
)
from chat.runtime.tool_dispatcher import ToolDispatcher
from chat.stream_store import STREAM_STATUS_COMPLETED, ActiveStream
from chat.stream_tracker import StreamTracker
from chat.streaming_bridge import stream_llm_response
from chat.thinking import resolve_thinking_config
from chat.title_generator import generate_thread_title
from chat.tooling import describe_tool_call
from chat.trace import (
    TRACE_TYPE_REASONING,
    TRACE_TYPE_TOOL,
    MessageSource,
    TraceEvent,
    TracePolicy,
    append_sources,
    append_trace_event,
    extract_sources_from_tool_result,
)
from meta import new_id, parse_iso, utc_now
from services.memory_tool import MemoryStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ITERATIONS = 30

T = TypeVar("T")


@dataclass(frozen=True)
class TurnRequest:
    thread_id: str
    content: str
    model_id: str
    thinking_level: str | None = None
    attachment_ids: tuple[str, ...] = ()
    client_context: ClientContext | None = None


@dataclass(frozen=True)
class TurnResult:
    user_message: MessageRecord
    assistant_message: MessageRecord
    total_cost: float
    prompt_tokens: int
    completion_tokens: int
    duration_ms: int
    final_text: str

    def to_done_payload(self) -> dict[str, Any]:
        return {
            "userMessage": self.user_message.to_dict(),
            "assistantMessage": self.assistant_message.to_dict(),
            "totalCost": self.total_cost,
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "durationMs": self.duration_ms,
        }


@dataclass
class _TurnContext:
    stream_id: str
    thread_id: str
    model: ModelRecord
    llm_client: LlmClient
    user_message: MessageRecord
    thinking_level: str | None
    transcript: list[ChatMessage]
    started_at: datetime
    content: str = ""
    trace: list[TraceEvent] = field(default_factory=list)
    sources: list[MessageSource] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)


def _tool_call_payload(tool_call: ToolCall) -> dict[str, Any]:
    return {
        "id": tool_call.id,
        "type": "function",
        "function": {"name": tool_call.name, "arguments": tool_call.raw_arguments or "{}"},
    }


def _catchup_payload(
    stream: ActiveStream,
    *,
    content: str,
    trace: list[TraceEvent],
    sources: list[MessageSource],
) -> dict[str, Any]:
    return {
        "streamId": stream.id,
        "userMessageId": stream.user_message_id,
        "assistantMessageId": stream.assistant_message_id,
        "partialContent": content,
        "partialTrace": [event.to_dict() for event in trace],
        "partialSources": [source.to_dict() for source in sources],
    }


async def _cancel_when_set(signal: asyncio.Event, task: asyncio.Task[Any]) -> None:
    await signal.wait()
    task.cancel()


@dataclass
class ChatEngine:
    """Runs one tool-augmented assistant turn against a resumable stream record.

    Output is pushed to an :class:`EventChannel` in generation order. Partial
    content and trace are persisted through the :class:`StreamTracker` while the
    turn runs, so a disconnected client can come back through
    :meth:`resume_turn` and continue from what was already generated.
    """

    llm_client_factory: Callable[[str], LlmClient]
    tracker: StreamTracker
    dispatcher: ToolDispatcher
    trace_policy: TracePolicy = field(default_factory=TracePolicy)
    max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS
    memory_store: MemoryStore | None = None
    storage_root: Path | None = None
    _background_tasks: set[asyncio.Task[Any]] = field(default_factory=set, repr=False)

    # ---- entry points -------------------------------------------------------

    async def run_turn(
        self,
        request: TurnRequest,
        channel: EventChannel,
        cancel_signal: asyncio.Event | None = None,
    ) -> TurnResult:
        if not request.content or not request.content.strip():
            raise InvalidInput("Message content required")
        if not request.thread_id:
            raise InvalidInput("Thread ID required")

        thread = load_thread(request.thread_id)
        if thread is None:
            raise InvalidInput("Thread not found")
        model = load_model(request.model_id)
        if model is None:
            raise InvalidInput("Model not found")
        attachments = self._resolve_attachments(request)
        llm_client = self._client_for(model)

        history = list_thread_messages(thread.id)
        is_first_turn = not history

        user_message = create_message(
            thread_id=thread.id,
            role="user",
            content=request.content,
            model_id=model.id,
            thinking_level=request.thinking_level,
        )
        if attachments:
            attach_attachments_to_message([a.id for a in attachments], user_message.id)
            user_message = load_message(user_message.id) or user_message

        stream = await self.tracker.start_stream(
            thread_id=thread.id,
            user_message_id=user_message.id,
            model_id=model.id,
            thinking_level=request.thinking_level,
        )
        channel.send(EVENT_STREAM_ID, {"streamId": stream.id})

        if is_first_turn and not thread.title:
            self._schedule_title(llm_client, thread.id, request.content)

        user_content = build_user_content(
            request.content,
            attachments,
            supports_vision=model.supports_vision,
            storage_root=self._storage_root(),
        )
        transcript = build_transcript(
            system_prompt=load_system_prompt(),
            is_first_turn=is_first_turn,
            client_context=request.client_context,
            memory=self._read_memory(),
            history=history,
            user_content=user_content,
            now=utc_now(),
        )

        turn = _TurnContext(
            stream_id=stream.id,
            thread_id=thread.id,
            model=model,
            llm_client=llm_client,
            user_message=user_message,
            thinking_level=request.thinking_level,
            transcript=transcript,
            started_at=parse_iso(stream.started_at),
        )
        return await self._guard_stream(turn, cancel_signal, self._run_loop(turn, channel))

    async def resume_turn(
        self,
        stream_id: str,
        channel: EventChannel,
        cancel_signal: asyncio.Event | None = None,
    ) -> TurnResult:
        stream = self.tracker.get_stream(stream_id)
        if stream is None:
            raise StreamNotResumable("Stream not found")
        user_message = load_message(stream.user_message_id)
        if user_message is None:
            raise StreamNotResumable("Stream has no user message")

        if stream.status == STREAM_STATUS_COMPLETED:
            return self._replay_completed(stream, user_message, channel)

        resumable = self.tracker.find_resumable_stream(stream.thread_id)
        if resumable is None or resumable.id != stream.id:
            raise StreamNotResumable("Stream is no longer resumable")

        model = load_model(resumable.model_id)
        if model is None:
            raise InvalidInput("Model not found")
        llm_client = self._client_for(model)

        thread_messages = list_thread_messages(resumable.thread_id)
        history: list[MessageRecord] = []
        for record in thread_messages:
            if record.id == user_message.id:
                break
            history.append(record)

        if not self.tracker.reactivate_stream(resumable.id):
            raise StreamNotResumable("Stream is no longer resumable")

        channel.send(
            EVENT_CATCHUP,
            _catchup_payload(
                resumable,
                content=resumable.partial_content,
                trace=resumable.partial_trace,
                sources=resumable.partial_sources,
            ),
        )

        user_content = build_user_content(
            user_message.content,
            user_message.attachments,
            supports_vision=model.supports_vision,
            storage_root=self._storage_root(),
        )
        transcript = build_transcript(
            system_prompt=load_system_prompt(),
            is_first_turn=not history,
            client_context=None,
            memory=self._read_memory(),
            history=history,
            user_content=user_content,
            now=utc_now(),
        )
        if resumable.partial_content:
            # Prefill so the model continues exactly where the stream stopped.
            transcript.append(ChatMessage(role="assistant", content=resumable.partial_content))

        turn = _TurnContext(
            stream_id=resumable.id,
            thread_id=resumable.thread_id,
            model=model,
            llm_client=llm_client,
            user_message=user_message,
            thinking_level=resumable.thinking_level,
            transcript=transcript,
            started_at=parse_iso(resumable.started_at),
            content=resumable.partial_content,
            trace=list(resumable.partial_trace),
            sources=list(resumable.partial_sources),
        )
        return await self._guard_stream(turn, cancel_signal, self._run_loop(turn, channel))

    # ---- validation & setup -------------------------------------------------

    def _resolve_attachments(self, request: TurnRequest) -> list[AttachmentRecord]:
        requested = list(dict.fromkeys(request.attachment_ids))
        if not requested:
            return []
        attachments = load_attachments(requested)
        if len(attachments) != len(requested) or any(
            attachment.thread_id != request.thread_id for attachment in attachments
        ):
            raise InvalidInput("Invalid attachment selection")
        return attachments

    def _client_for(self, model: ModelRecord) -> LlmClient:
        try:
            return self.llm_client_factory(model.id)
        except ValueError as exc:
            raise ProviderError(str(exc)) from exc

    def _storage_root(self) -> Path:
        return self.storage_root or (meta.DB_DIR / "uploads")

    def _read_memory(self) -> str | None:
        if self.memory_store is None:
            return None
        try:
            return self.memory_store.read()
        except OSError:
            logger.warning("Failed to read memory file", exc_info=True)
            return None

    def _schedule_title(self, llm_client: LlmClient, thread_id: str, content: str) -> None:
        task = asyncio.create_task(
            generate_thread_title(llm_client=llm_client, thread_id=thread_id, content=content)
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def drain_background_tasks(self) -> None:
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ---- the loop -----------------------------------------------------------

    async def _guard_stream(
        self,
        turn: _TurnContext,
        cancel_signal: asyncio.Event | None,
        body: Awaitable[T],
    ) -> T:
        """Await ``body`` and settle the stream record if it does not finish.

        Caller cancellation leaves the stream ``pending`` for a later resume;
        any other failure marks it ``failed``.
        """
        current = asyncio.current_task()
        watcher: asyncio.Task[None] | None = None
        if cancel_signal is not None and current is not None:
            watcher = asyncio.create_task(_cancel_when_set(cancel_signal, current))

        try:
            return await body
        except asyncio.CancelledError:
            self.tracker.mark_pending(turn.stream_id)
            if (
                cancel_signal is not None
                and cancel_signal.is_set()
                and current is not None
                and current.uncancel() == 0
            ):
                raise TurnAborted("Turn aborted by caller") from None
            raise
        except ChatError:
            self.tracker.fail_stream(turn.stream_id)
            raise
        except Exception:
            logger.exception("Turn failed for stream %s", turn.stream_id)
            self.tracker.fail_stream(turn.stream_id)
            raise
        finally:
            if watcher is not None:
                watcher.cancel()

    async def _run_loop(self, turn: _TurnContext, channel: EventChannel) -> TurnResult:
        policy = self.trace_policy
        tools = self.dispatcher.definitions() if turn.model.supports_tools else []
        thinking = resolve_thinking_config(
            model_id=turn.model.id,
            supports_thinking_levels=turn.model.supports_thinking_levels,
            thinking_level=turn.thinking_level,
        )

        async def on_text(delta: str) -> None:
            turn.content += delta
            channel.send(EVENT_DELTA, {"content": delta})
            self.tracker.update_progress(
                turn.stream_id, turn.content, turn.trace, turn.sources
            )

        async def on_reasoning(delta: str) -> None:
            turn.trace = append_trace_event(
                turn.trace, TraceEvent(type=TRACE_TYPE_REASONING, content=delta), policy
            )
            channel.send(EVENT_REASONING, {"delta": delta})
            self.tracker.update_progress(
                turn.stream_id, turn.content, turn.trace, turn.sources
            )

        iterations = 0
        while True:
            response = await stream_llm_response(
                llm_client=turn.llm_client,
                messages=turn.transcript,
                tools=tools,
                max_output_tokens=thinking.max_output_tokens,
                on_text=on_text,
                on_reasoning=on_reasoning,
                reasoning=thinking.reasoning,
            )
            if response.usage is not None:
                turn.usage = turn.usage + response.usage

            if not response.tool_calls:
                break
            if iterations >= self.max_tool_iterations:
                raise ToolIterationLimitExceeded(self.max_tool_iterations)

            turn.transcript.append(
                ChatMessage(
                    role="assistant",
                    content=response.text or "",
                    tool_calls=[_tool_call_payload(call) for call in response.tool_calls],
                )
            )
            for tool_call in response.tool_calls:
                await self._run_tool_call(turn, tool_call, channel)
            iterations += 1

        logger.info(
            "Stream %s finished after %d tool iterations", turn.stream_id, iterations
        )
        return self._finalize(turn, channel)

    async def _run_tool_call(
        self, turn: _TurnContext, tool_call: ToolCall, channel: EventChannel
    ) -> None:
        policy = self.trace_policy
        channel.send(EVENT_TOOL, {"name": tool_call.name})
        turn.trace = append_trace_event(
            turn.trace,
            TraceEvent(
                type=TRACE_TYPE_TOOL,
                content=describe_tool_call(tool_call.name, tool_call.arguments),
            ),
            policy,
        )
        self.tracker.update_progress(turn.stream_id, turn.content, turn.trace, turn.sources)

        raw_result = await self.dispatcher.dispatch(tool_call)

        found = extract_sources_from_tool_result(
            tool_call.name, raw_result, policy.max_source_snippet_chars
        )
        if found:
            turn.sources = append_sources(turn.sources, found, policy)
            self.tracker.update_progress(
                turn.stream_id, turn.content, turn.trace, turn.sources
            )
        turn.transcript.append(
            ChatMessage(role="tool", content=raw_result, tool_call_id=tool_call.id)
        )

    def _finalize(self, turn: _TurnContext, channel: EventChannel) -> TurnResult:
        usage = turn.usage
        cost = calculate_cost(
            usage.prompt_tokens,
            usage.completion_tokens,
            turn.model.input_cost_per_token,
            turn.model.output_cost_per_token,
        )
        duration_ms = max(0, int((utc_now() - turn.started_at).total_seconds() * 1000))

        assistant_message_id = new_id("message")
        if not self.tracker.set_assistant_message_id(turn.stream_id, assistant_message_id):
            # Cancelled by a newer turn on the thread, or failed by the reaper.
            logger.info(
                "Stream %s was settled before completion; result dropped", turn.stream_id
            )
            raise StreamSuperseded("Stream is no longer active")
        assistant_message = create_message(
            thread_id=turn.thread_id,
            role="assistant",
            content=turn.content,
            message_id=assistant_message_id,
            model_id=turn.model.id,
            thinking_level=turn.thinking_level,
            duration_ms=duration_ms,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            cost=cost,
            trace=turn.trace,
            sources=turn.sources,
        )
        total_cost = increment_thread_cost(turn.thread_id, cost)
        self.tracker.complete_stream(turn.stream_id)

        result = TurnResult(
            user_message=turn.user_message,
            assistant_message=assistant_message,
            total_cost=total_cost,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            duration_ms=duration_ms,
            final_text=turn.content,
        )
        channel.send(EVENT_DONE, result.to_done_payload())
        return result

    def _replay_completed(
        self, stream: ActiveStream, user_message: MessageRecord, channel: EventChannel
    ) -> TurnResult:
        assistant_message = (
            load_message(stream.assistant_message_id)
            if stream.assistant_message_id
            else None
        )
        if assistant_message is None:
            raise StreamNotResumable("Stream has no stored result")

        thread = load_thread(stream.thread_id)
        channel.send(
            EVENT_CATCHUP,
            _catchup_payload(
                stream,
                content=assistant_message.content,
                trace=assistant_message.trace,
                sources=assistant_message.sources,
            ),
        )
        result = TurnResult(
            user_message=user_message,
            assistant_message=assistant_message,
            total_cost=thread.total_cost if thread is not None else 0.0,
            prompt_tokens=assistant_message.prompt_tokens or 0,
            completion_tokens=assistant_message.completion_tokens or 0,
            duration_ms=assistant_message.duration_ms or 0,
            final_text=assistant_message.content,
        )
        channel.send(EVENT_DONE, result.to_done_payload())
        return result
