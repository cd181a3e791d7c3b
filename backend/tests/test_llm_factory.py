import unittest
from types import SimpleNamespace
from unittest.mock import patch

from openai import OpenAIError

from chat.adapters.openrouter_adapter import OpenRouterAdapter, extract_reasoning_text
from chat.errors import ProviderError
from chat.factory import DEFAULT_MODEL, build_llm_client
from chat.llm_client import ChatMessage, ReasoningConfig, ToolDefinition


class LlmFactoryTests(unittest.TestCase):
    def test_build_openrouter_adapter(self) -> None:
        client = build_llm_client(model="openrouter/auto", api_key="k3")
        self.assertIsInstance(client, OpenRouterAdapter)
        self.assertEqual(client.model, "openrouter/auto")
        self.assertEqual(client.api_key, "k3")

    def test_build_reads_environment(self) -> None:
        with patch.dict(
            "os.environ",
            {
                "OPENROUTER_API_KEY": "env-key",
                "OPENROUTER_MODEL": "",
                "OPENROUTER_APP_NAME": "Test App",
                "OPENROUTER_HTTP_REFERER": "https://example.test",
                "OPENROUTER_TIMEOUT_SECONDS": "30",
            },
            clear=False,
        ):
            client = build_llm_client()

        self.assertEqual(client.model, DEFAULT_MODEL)
        self.assertEqual(client.api_key, "env-key")
        self.assertEqual(client.app_name, "Test App")
        self.assertEqual(client.http_referer, "https://example.test")
        self.assertEqual(client.timeout_s, 30.0)

    def test_legacy_key_name_is_accepted(self) -> None:
        with patch.dict(
            "os.environ",
            {"OPENROUTER_API_KEY": "", "OPENROUTER_KEY": "legacy"},
            clear=False,
        ):
            client = build_llm_client(model="m")
        self.assertEqual(client.api_key, "legacy")


class OpenRouterAdapterTests(unittest.TestCase):
    def test_request_kwargs_include_tools_and_reasoning(self) -> None:
        adapter = OpenRouterAdapter(model="anthropic/claude-sonnet-4.5", api_key="k")
        kwargs = adapter._request_kwargs(
            messages=[ChatMessage(role="user", content="hi")],
            tools=[
                ToolDefinition(
                    name="search", description="web search", input_schema={"type": "object"}
                )
            ],
            tool_choice="auto",
            max_output_tokens=9216,
            reasoning=ReasoningConfig(max_tokens=8192),
        )

        self.assertEqual(kwargs["tool_choice"], "auto")
        self.assertEqual(kwargs["tools"][0]["function"]["name"], "search")
        self.assertEqual(kwargs["max_tokens"], 9216)
        self.assertEqual(kwargs["extra_body"], {"reasoning": {"max_tokens": 8192}})

    def test_request_kwargs_omit_tools_when_none_declared(self) -> None:
        adapter = OpenRouterAdapter(model="m", api_key="k")
        kwargs = adapter._request_kwargs(
            messages=[ChatMessage(role="user", content="hi")],
            tools=[],
            tool_choice=None,
            max_output_tokens=None,
            reasoning=ReasoningConfig(effort="high"),
        )
        self.assertNotIn("tools", kwargs)
        self.assertNotIn("tool_choice", kwargs)
        self.assertNotIn("max_tokens", kwargs)
        self.assertEqual(kwargs["extra_body"], {"reasoning": {"effort": "high"}})

    def test_missing_api_key_is_a_provider_error(self) -> None:
        adapter = OpenRouterAdapter(model="m", api_key=None)
        with self.assertRaises(ProviderError):
            adapter._request_kwargs(
                messages=[],
                tools=[],
                tool_choice=None,
                max_output_tokens=None,
                reasoning=None,
            )

    def test_messages_to_api_keeps_tool_call_linkage(self) -> None:
        adapter = OpenRouterAdapter(model="m", api_key="k")
        tool_calls = [
            {
                "id": "call_1",
                "type": "function",
                "function": {"name": "search", "arguments": "{}"},
            }
        ]
        payload = adapter._messages_to_api(
            [
                ChatMessage(role="assistant", content="", tool_calls=tool_calls),
                ChatMessage(role="tool", content='{"results":[]}', tool_call_id="call_1"),
            ]
        )
        self.assertIsNone(payload[0]["content"])
        self.assertEqual(payload[0]["tool_calls"], tool_calls)
        self.assertEqual(payload[1]["tool_call_id"], "call_1")

    def test_parse_response_reads_tool_calls_and_usage(self) -> None:
        adapter = OpenRouterAdapter(model="m", api_key="k")
        response = SimpleNamespace(
            usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
            choices=[
                SimpleNamespace(
                    message=SimpleNamespace(
                        content="  Title here  ",
                        reasoning=None,
                        tool_calls=[
                            SimpleNamespace(
                                id="call_9",
                                function=SimpleNamespace(
                                    name="web_fetch", arguments='{"url":"https://a.test"}'
                                ),
                            )
                        ],
                    )
                )
            ],
        )

        parsed = adapter._parse_response(response)
        self.assertEqual(parsed.text, "Title here")
        self.assertEqual(parsed.tool_calls[0].id, "call_9")
        self.assertEqual(parsed.tool_calls[0].arguments, {"url": "https://a.test"})
        self.assertEqual(parsed.usage.prompt_tokens, 12)
        self.assertEqual(parsed.usage.completion_tokens, 3)

    def test_extract_reasoning_text_handles_detail_shapes(self) -> None:
        self.assertEqual(extract_reasoning_text("plain"), "plain")
        self.assertEqual(extract_reasoning_text({"text": "t"}), "t")
        self.assertEqual(extract_reasoning_text({"summary": ["a", "b"]}), "a\nb")
        self.assertIsNone(extract_reasoning_text({"type": "reasoning.encrypted"}))
        self.assertIsNone(extract_reasoning_text(None))


class _FakeChunkStream:
    def __init__(self, chunks: list[object]) -> None:
        self._chunks = iter(chunks)
        self.closed = False

    def __aiter__(self) -> "_FakeChunkStream":
        return self

    async def __anext__(self) -> object:
        try:
            return next(self._chunks)
        except StopIteration:
            raise StopAsyncIteration from None

    async def close(self) -> None:
        self.closed = True


class _FakeAsyncOpenAI:
    instances: list["_FakeAsyncOpenAI"] = []

    def __init__(self, *, fail: bool = False, **_kwargs: object) -> None:
        self.fail = fail
        self.closed = False
        self.stream: _FakeChunkStream | None = None
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))
        _FakeAsyncOpenAI.instances.append(self)

    async def _create(self, **_kwargs: object) -> _FakeChunkStream:
        if self.fail:
            raise OpenAIError("upstream unavailable")
        delta = SimpleNamespace(
            content="Hello", reasoning=None, reasoning_details=None, tool_calls=None
        )
        self.stream = _FakeChunkStream(
            [
                SimpleNamespace(usage=None, choices=[SimpleNamespace(delta=delta)]),
                SimpleNamespace(
                    usage=SimpleNamespace(prompt_tokens=4, completion_tokens=1), choices=[]
                ),
            ]
        )
        return self.stream

    async def close(self) -> None:
        self.closed = True


class OpenRouterStreamTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        _FakeAsyncOpenAI.instances = []

    async def _collect(self, adapter: OpenRouterAdapter) -> list:
        chunks = []
        async for chunk in adapter.generate_stream(
            messages=[ChatMessage(role="user", content="hi")], tools=[]
        ):
            chunks.append(chunk)
        return chunks

    async def test_stream_closes_client_after_last_chunk(self) -> None:
        adapter = OpenRouterAdapter(model="m", api_key="k")
        with patch("chat.adapters.openrouter_adapter.AsyncOpenAI", _FakeAsyncOpenAI):
            chunks = await self._collect(adapter)

        self.assertEqual([c.type for c in chunks], ["text", "usage"])
        client = _FakeAsyncOpenAI.instances[0]
        self.assertTrue(client.stream.closed)
        self.assertTrue(client.closed)

    async def test_failed_request_still_closes_client(self) -> None:
        adapter = OpenRouterAdapter(model="m", api_key="k")
        with patch(
            "chat.adapters.openrouter_adapter.AsyncOpenAI",
            lambda **kwargs: _FakeAsyncOpenAI(fail=True, **kwargs),
        ):
            with self.assertRaises(ProviderError):
                await self._collect(adapter)

        self.assertTrue(_FakeAsyncOpenAI.instances[0].closed)



if __name__ == "__main__":
    unittest.main()
