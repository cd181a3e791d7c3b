import asyncio
import unittest
from collections.abc import AsyncIterator

from chat.llm_client import ChatMessage, StreamChunk, TokenUsage, ToolDefinition
from chat.streaming_bridge import stream_llm_response


class _FakeStreamingClient:
    def __init__(self, chunks: list[StreamChunk]) -> None:
        self._chunks = chunks
        self.kwargs: dict | None = None

    async def generate(self, **kwargs):  # pragma: no cover - not used in these tests
        raise AssertionError("generate() should not be used in streaming bridge tests")

    async def generate_stream(self, **kwargs) -> AsyncIterator[StreamChunk]:
        self.kwargs = kwargs
        for chunk in self._chunks:
            yield chunk


SEARCH_DEFINITION = ToolDefinition(
    name="search", description="search", input_schema={"type": "object"}
)


class StreamingBridgeTests(unittest.TestCase):
    def _run(self, coro):
        return asyncio.run(coro)

    def _collect(self, client, tools=None):
        texts: list[str] = []
        reasoning: list[str] = []

        async def on_text(delta: str) -> None:
            texts.append(delta)

        async def on_reasoning(delta: str) -> None:
            reasoning.append(delta)

        response = self._run(
            stream_llm_response(
                llm_client=client,
                messages=[ChatMessage(role="user", content="hello")],
                tools=tools or [],
                max_output_tokens=500,
                on_text=on_text,
                on_reasoning=on_reasoning,
            )
        )
        return response, texts, reasoning

    def test_maps_mismatched_delta_call_id_to_started_tool_call(self) -> None:
        client = _FakeStreamingClient(
            [
                StreamChunk(type="tool_call_start", tool_call_id="call_1", tool_name="search"),
                StreamChunk(
                    type="tool_call_delta",
                    tool_call_id="item_abc",
                    arguments_delta='{"query":"python",',
                ),
                StreamChunk(
                    type="tool_call_delta",
                    tool_call_id="item_abc",
                    arguments_delta='"limit":3}',
                ),
                StreamChunk(type="tool_call_done", tool_call_id="item_abc"),
            ]
        )

        response, _, _ = self._collect(client, tools=[SEARCH_DEFINITION])

        self.assertEqual(len(response.tool_calls), 1)
        self.assertEqual(response.tool_calls[0].id, "call_1")
        self.assertEqual(response.tool_calls[0].arguments, {"query": "python", "limit": 3})
        self.assertEqual(client.kwargs["tool_choice"], "auto")

    def test_forwards_text_and_reasoning_in_order(self) -> None:
        client = _FakeStreamingClient(
            [
                StreamChunk(type="reasoning", text="Think"),
                StreamChunk(type="reasoning", text="ing"),
                StreamChunk(type="text", text="Hel"),
                StreamChunk(type="text", text="lo "),
                StreamChunk(type="text", text="world"),
                StreamChunk(
                    type="usage",
                    usage=TokenUsage(prompt_tokens=10, completion_tokens=4),
                ),
            ]
        )

        response, texts, reasoning = self._collect(client)

        self.assertEqual(texts, ["Hel", "lo ", "world"])
        self.assertEqual(reasoning, ["Think", "ing"])
        self.assertEqual(response.text, "Hello world")
        self.assertEqual(response.reasoning, "Thinking")
        self.assertEqual(response.usage, TokenUsage(prompt_tokens=10, completion_tokens=4))
        self.assertEqual(response.tool_calls, [])
        self.assertIsNone(client.kwargs["tool_choice"])

    def test_unparseable_arguments_are_kept_raw(self) -> None:
        client = _FakeStreamingClient(
            [
                StreamChunk(type="tool_call_start", tool_call_id="c1", tool_name="search"),
                StreamChunk(type="tool_call_delta", tool_call_id="c1", arguments_delta="{bad"),
            ]
        )

        response, _, _ = self._collect(client, tools=[SEARCH_DEFINITION])

        self.assertEqual(response.tool_calls[0].arguments, {"_raw": "{bad"})
        self.assertEqual(response.tool_calls[0].raw_arguments, "{bad")

    def test_calls_without_a_name_are_dropped(self) -> None:
        client = _FakeStreamingClient(
            [
                StreamChunk(type="tool_call_start", tool_call_id="c1", tool_name=""),
                StreamChunk(type="tool_call_delta", tool_call_id="c1", arguments_delta="{}"),
            ]
        )

        response, _, _ = self._collect(client, tools=[SEARCH_DEFINITION])

        self.assertEqual(response.tool_calls, [])


if __name__ == "__main__":
    unittest.main()
