import asyncio
import json
import tempfile
import unittest
from pathlib import Path

import meta
from chat.engine import ChatEngine, TurnRequest
from chat.errors import (
    InvalidInput,
    ProviderError,
    StreamNotResumable,
    StreamSuperseded,
    ToolIterationLimitExceeded,
    TurnAborted,
)
from chat.events import EventChannel, StreamEvent
from chat.llm_client import (
    ChatMessage,
    LlmResponse,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)
from chat.message_store import (
    ModelRecord,
    create_attachment,
    create_thread,
    list_thread_messages,
    load_thread,
    upsert_models,
)
from chat.runtime.tool_dispatcher import RegisteredTool, ToolDispatcher
from chat.stream_store import load_stream
from chat.stream_tracker import StreamTracker
from chat.tool_results import FetchResult, SearchHit, SearchResults

MODEL_ID = "test/model"


def _text(value: str) -> StreamChunk:
    return StreamChunk(type="text", text=value)


def _usage(prompt: int, completion: int) -> StreamChunk:
    return StreamChunk(
        type="usage", usage=TokenUsage(prompt_tokens=prompt, completion_tokens=completion)
    )


def _tool_call(call_id: str, name: str, arguments: dict) -> list[StreamChunk]:
    return [
        StreamChunk(type="tool_call_start", tool_call_id=call_id, tool_name=name),
        StreamChunk(
            type="tool_call_delta", tool_call_id=call_id, arguments_delta=json.dumps(arguments)
        ),
        StreamChunk(type="tool_call_done", tool_call_id=call_id),
    ]


class ScriptedLlmClient:
    """Plays back one list of chunks per streaming call.

    A round may contain the marker ``"block"``; the stream then parks until the
    surrounding task is cancelled. ``"gate"`` parks it until ``released`` is set.
    """

    def __init__(self, rounds: list[list], *, title: str = "Generated Title") -> None:
        self.rounds = list(rounds)
        self.stream_calls: list[list[ChatMessage]] = []
        self.generate_calls = 0
        self.title = title
        self.blocked = asyncio.Event()
        self.released = asyncio.Event()

    async def generate(self, **kwargs) -> LlmResponse:
        self.generate_calls += 1
        return LlmResponse(text=self.title, tool_calls=[])

    async def generate_stream(self, **kwargs):
        self.stream_calls.append(list(kwargs["messages"]))
        if not self.rounds:
            raise AssertionError("unexpected extra provider call")
        for item in self.rounds.pop(0):
            if item == "block":
                self.blocked.set()
                await asyncio.Event().wait()
            elif item == "gate":
                self.blocked.set()
                await self.released.wait()
            elif isinstance(item, Exception):
                raise item
            else:
                yield item


class EngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        temp_root = Path(self.temp_dir.name)

        meta.DB_DIR = temp_root / "data"
        meta.DB_PATH = meta.DB_DIR / "meta.db"
        meta.init_meta_db()
        upsert_models(
            [
                ModelRecord(
                    id=MODEL_ID,
                    label="Test Model",
                    input_cost_per_token=0.000002,
                    output_cost_per_token=0.00001,
                )
            ]
        )

        self.tool_calls: list[ToolCall] = []
        self.dispatcher = ToolDispatcher()
        self.dispatcher.register(
            RegisteredTool(
                definition=ToolDefinition(
                    name="search", description="search", input_schema={"type": "object"}
                ),
                executor=self._fake_search,
            )
        )
        self.dispatcher.register(
            RegisteredTool(
                definition=ToolDefinition(
                    name="web_fetch", description="fetch", input_schema={"type": "object"}
                ),
                executor=self._fake_fetch,
            )
        )
        self.tracker = StreamTracker(debounce_s=60)
        self.thread = create_thread("Existing title")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    async def _fake_search(self, tool_call: ToolCall):
        self.tool_calls.append(tool_call)
        return SearchResults(
            results=[
                SearchHit(
                    title="Learn Rust",
                    url="https://www.rust-lang.org/learn",
                    snippet="Get started with Rust",
                )
            ]
        )

    async def _fake_fetch(self, tool_call: ToolCall):
        self.tool_calls.append(tool_call)
        return FetchResult(
            url=tool_call.arguments["url"],
            status=200,
            content_type="text/html",
            title="The Rust Book",
            text="Ownership is Rust's most unique feature.",
        )

    def _engine(self, client: ScriptedLlmClient, **kwargs) -> ChatEngine:
        return ChatEngine(
            llm_client_factory=lambda model_id: client,
            tracker=self.tracker,
            dispatcher=self.dispatcher,
            **kwargs,
        )

    def _request(self, content: str = "What is Rust?", **kwargs) -> TurnRequest:
        return TurnRequest(
            thread_id=kwargs.pop("thread_id", self.thread.id),
            content=content,
            model_id=kwargs.pop("model_id", MODEL_ID),
            **kwargs,
        )

    @staticmethod
    async def _drain(channel: EventChannel) -> list[StreamEvent]:
        channel.close()
        return [event async for event in channel]

    async def test_tool_rounds_run_in_order_and_finish_with_text(self) -> None:
        client = ScriptedLlmClient(
            [
                [*_tool_call("c1", "search", {"query": "rust"}), _usage(100, 20)],
                [
                    *_tool_call("c2", "web_fetch", {"url": "https://doc.rust-lang.org/book"}),
                    _usage(100, 20),
                ],
                [_text("Rust is "), _text("fast."), _usage(100, 20)],
            ]
        )
        channel = EventChannel()

        result = await self._engine(client).run_turn(self._request(), channel)
        events = await self._drain(channel)

        self.assertEqual([call.name for call in self.tool_calls], ["search", "web_fetch"])
        self.assertEqual(result.final_text, "Rust is fast.")
        self.assertEqual(result.prompt_tokens, 300)
        self.assertEqual(result.completion_tokens, 60)
        self.assertAlmostEqual(result.total_cost, 0.0012)

        names = [event.event for event in events]
        self.assertEqual(names[0], "streamId")
        self.assertEqual(names[-1], "done")
        self.assertEqual(
            [event.data["name"] for event in events if event.event == "tool"],
            ["search", "web_fetch"],
        )
        self.assertEqual(
            "".join(event.data["content"] for event in events if event.event == "delta"),
            "Rust is fast.",
        )
        done = events[-1].data
        self.assertEqual(done["assistantMessage"]["content"], "Rust is fast.")
        self.assertEqual(done["promptTokens"], 300)

        assistant = result.assistant_message
        self.assertEqual(
            [event.content for event in assistant.trace],
            ["Searching: rust", "Fetching: https://doc.rust-lang.org/book"],
        )
        self.assertEqual(
            [source.url for source in assistant.sources],
            ["https://www.rust-lang.org/learn", "https://doc.rust-lang.org/book"],
        )

        # Tool results are fed back with their call ids before the final round.
        final_transcript = client.stream_calls[-1]
        tool_messages = [m for m in final_transcript if m.role == "tool"]
        self.assertEqual([m.tool_call_id for m in tool_messages], ["c1", "c2"])

        stream = load_stream(events[0].data["streamId"])
        self.assertEqual(stream.status, "completed")
        self.assertEqual(stream.assistant_message_id, assistant.id)
        self.assertAlmostEqual(load_thread(self.thread.id).total_cost, 0.0012)
        self.assertEqual(
            [m.role for m in list_thread_messages(self.thread.id)], ["user", "assistant"]
        )

    async def test_iteration_limit_stops_before_running_tools(self) -> None:
        client = ScriptedLlmClient([[*_tool_call("c1", "search", {"query": "rust"})]])
        channel = EventChannel()

        with self.assertRaises(ToolIterationLimitExceeded):
            await self._engine(client, max_tool_iterations=0).run_turn(
                self._request(), channel
            )

        events = await self._drain(channel)
        self.assertEqual(self.tool_calls, [])
        self.assertEqual(load_stream(events[0].data["streamId"]).status, "failed")

    async def test_foreign_attachment_is_rejected_before_any_side_effect(self) -> None:
        other = create_thread("other")
        attachment = create_attachment(
            thread_id=other.id,
            filename="notes.txt",
            mime_type="text/plain",
            size=4,
            storage_path="notes.txt",
        )
        client = ScriptedLlmClient([])

        with self.assertRaises(InvalidInput) as ctx:
            await self._engine(client).run_turn(
                self._request(attachment_ids=(attachment.id,)), EventChannel()
            )

        self.assertEqual(str(ctx.exception), "Invalid attachment selection")
        self.assertEqual(client.stream_calls, [])
        self.assertEqual(list_thread_messages(self.thread.id), [])

    async def test_invalid_requests_are_rejected(self) -> None:
        engine = self._engine(ScriptedLlmClient([]))
        cases = [
            (self._request(content="   "), "Message content required"),
            (self._request(thread_id="thread_missing"), "Thread not found"),
            (self._request(model_id="nope/model"), "Model not found"),
        ]
        for request, message in cases:
            with self.assertRaises(InvalidInput) as ctx:
                await engine.run_turn(request, EventChannel())
            self.assertEqual(str(ctx.exception), message)

    async def test_provider_failure_marks_stream_failed(self) -> None:
        client = ScriptedLlmClient([[_text("par"), ProviderError("upstream 502")]])
        channel = EventChannel()

        with self.assertRaises(ProviderError):
            await self._engine(client).run_turn(self._request(), channel)

        events = await self._drain(channel)
        stream = load_stream(events[0].data["streamId"])
        self.assertEqual(stream.status, "failed")
        self.assertEqual(stream.partial_content, "par")

    async def test_reasoning_is_streamed_and_kept_in_trace(self) -> None:
        client = ScriptedLlmClient(
            [
                [
                    StreamChunk(type="reasoning", text="Thinking "),
                    StreamChunk(type="reasoning", text="hard"),
                    _text("Answer"),
                ]
            ]
        )
        channel = EventChannel()

        result = await self._engine(client).run_turn(self._request(), channel)
        events = await self._drain(channel)

        self.assertEqual(
            [event.data["delta"] for event in events if event.event == "reasoning"],
            ["Thinking ", "hard"],
        )
        self.assertEqual(len(result.assistant_message.trace), 1)
        self.assertEqual(result.assistant_message.trace[0].content, "Thinking hard")

    async def test_untitled_thread_gets_a_generated_title(self) -> None:
        untitled = create_thread()
        client = ScriptedLlmClient([[_text("Hi")]], title="Rust Basics")
        engine = self._engine(client)

        await engine.run_turn(self._request(thread_id=untitled.id), EventChannel())
        await engine.drain_background_tasks()

        self.assertEqual(client.generate_calls, 1)
        self.assertEqual(load_thread(untitled.id).title, "Rust Basics")

    async def test_disconnect_then_resume_continues_partial_output(self) -> None:
        client = ScriptedLlmClient(
            [
                [_text("Rust is "), "block"],
                [_text("a systems language."), _usage(10, 5)],
            ]
        )
        engine = self._engine(client)
        first_channel = EventChannel()
        cancel_signal = asyncio.Event()

        task = asyncio.create_task(
            engine.run_turn(self._request(), first_channel, cancel_signal)
        )
        await asyncio.wait_for(client.blocked.wait(), timeout=1)
        cancel_signal.set()
        with self.assertRaises(TurnAborted):
            await task

        first_events = await self._drain(first_channel)
        stream_id = first_events[0].data["streamId"]
        pending = load_stream(stream_id)
        self.assertEqual(pending.status, "pending")
        self.assertEqual(pending.partial_content, "Rust is ")
        self.assertEqual(self.tracker.find_resumable_stream(self.thread.id).id, stream_id)

        resume_channel = EventChannel()
        result = await engine.resume_turn(stream_id, resume_channel)
        resume_events = await self._drain(resume_channel)

        self.assertEqual(resume_events[0].event, "catchup")
        self.assertEqual(resume_events[0].data["streamId"], stream_id)
        self.assertEqual(resume_events[0].data["partialContent"], "Rust is ")
        self.assertEqual(resume_events[-1].event, "done")
        self.assertEqual(result.final_text, "Rust is a systems language.")
        self.assertTrue(result.final_text.startswith(pending.partial_content))

        resumed_transcript = client.stream_calls[-1]
        self.assertEqual(resumed_transcript[-1].role, "assistant")
        self.assertEqual(resumed_transcript[-1].content, "Rust is ")
        self.assertEqual(load_stream(stream_id).status, "completed")

        # A finished stream replays its stored result instead of running again.
        replay_channel = EventChannel()
        replayed = await engine.resume_turn(stream_id, replay_channel)
        replay_events = await self._drain(replay_channel)
        self.assertEqual([event.event for event in replay_events], ["catchup", "done"])
        self.assertEqual(replayed.assistant_message.id, result.assistant_message.id)

    async def test_resume_keeps_sources_found_before_disconnect(self) -> None:
        client = ScriptedLlmClient(
            [
                [*_tool_call("c1", "search", {"query": "rust"})],
                [_text("According to rust-lang.org, "), "block"],
                [_text("Rust is fast."), _usage(10, 5)],
            ]
        )
        engine = self._engine(client)
        cancel_signal = asyncio.Event()
        first_channel = EventChannel()

        task = asyncio.create_task(
            engine.run_turn(self._request(), first_channel, cancel_signal)
        )
        await asyncio.wait_for(client.blocked.wait(), timeout=1)
        cancel_signal.set()
        with self.assertRaises(TurnAborted):
            await task

        stream_id = (await self._drain(first_channel))[0].data["streamId"]
        pending = load_stream(stream_id)
        self.assertEqual(
            [source.url for source in pending.partial_sources],
            ["https://www.rust-lang.org/learn"],
        )

        resume_channel = EventChannel()
        result = await engine.resume_turn(stream_id, resume_channel)
        catchup = (await self._drain(resume_channel))[0]

        self.assertEqual(
            [source["url"] for source in catchup.data["partialSources"]],
            ["https://www.rust-lang.org/learn"],
        )
        self.assertEqual(result.final_text, "According to rust-lang.org, Rust is fast.")
        self.assertEqual(
            [source.url for source in result.assistant_message.sources],
            ["https://www.rust-lang.org/learn"],
        )

    async def test_turn_replaced_by_newer_turn_stores_nothing(self) -> None:
        client = ScriptedLlmClient(
            [
                ["gate", _text("old answer"), _usage(100, 20)],
                [_text("new answer"), _usage(10, 5)],
            ]
        )
        engine = self._engine(client)
        first_channel = EventChannel()

        first = asyncio.create_task(engine.run_turn(self._request("q1"), first_channel))
        await asyncio.wait_for(client.blocked.wait(), timeout=1)
        second = await engine.run_turn(self._request("q2"), EventChannel())
        client.released.set()

        with self.assertRaises(StreamSuperseded):
            await first

        self.assertEqual(
            [(m.role, m.content) for m in list_thread_messages(self.thread.id)],
            [("user", "q1"), ("user", "q2"), ("assistant", "new answer")],
        )
        self.assertAlmostEqual(load_thread(self.thread.id).total_cost, second.total_cost)

        first_events = await self._drain(first_channel)
        replaced = load_stream(first_events[0].data["streamId"])
        self.assertEqual(replaced.status, "cancelled")
        self.assertIsNone(replaced.assistant_message_id)
        self.assertNotIn("done", [event.event for event in first_events])

    async def test_resume_of_unknown_stream_is_rejected(self) -> None:
        with self.assertRaises(StreamNotResumable):
            await self._engine(ScriptedLlmClient([])).resume_turn(
                "stream_missing", EventChannel()
            )


if __name__ == "__main__":
    unittest.main()
