import asyncio
import json
import unittest

from chat.errors import UnsupportedTool
from chat.llm_client import ToolCall, ToolDefinition
from chat.runtime.tool_dispatcher import RegisteredTool, ToolDispatcher
from chat.tool_results import SearchHit, SearchResults, ToolError


def _definition(name: str) -> ToolDefinition:
    return ToolDefinition(name=name, description=name, input_schema={"type": "object"})


class ToolDispatcherTests(unittest.TestCase):
    def _run(self, coro):
        return asyncio.run(coro)

    def setUp(self) -> None:
        self.calls: list[ToolCall] = []

        async def search(tool_call: ToolCall):
            self.calls.append(tool_call)
            return SearchResults(
                results=[SearchHit(title="Rust", url="https://rust-lang.org", snippet="lang")]
            )

        async def explode(tool_call: ToolCall):
            raise RuntimeError("disk on fire")

        self.dispatcher = ToolDispatcher()
        self.dispatcher.register(RegisteredTool(definition=_definition("search"), executor=search))
        self.dispatcher.register(RegisteredTool(definition=_definition("broken"), executor=explode))

    def test_definitions_follow_registration_order(self) -> None:
        self.assertEqual(
            [definition.name for definition in self.dispatcher.definitions()],
            ["search", "broken"],
        )

    def test_dispatch_routes_by_name_and_serializes(self) -> None:
        raw = self._run(
            self.dispatcher.dispatch(
                ToolCall(id="c1", name="search", arguments={"query": "rust"})
            )
        )

        self.assertEqual(len(self.calls), 1)
        self.assertEqual(self.calls[0].arguments, {"query": "rust"})
        self.assertEqual(json.loads(raw)["results"][0]["url"], "https://rust-lang.org")

    def test_unknown_tool_becomes_error_payload(self) -> None:
        result = self._run(
            self.dispatcher.execute(ToolCall(id="c2", name="teleport", arguments={}))
        )
        self.assertIsInstance(result, ToolError)
        self.assertEqual(result.error_code, "unsupported_tool")

        with self.assertRaises(UnsupportedTool):
            self.dispatcher.lookup("teleport")

    def test_executor_exception_becomes_error_payload(self) -> None:
        with self.assertLogs("chat.runtime.tool_dispatcher", level="ERROR"):
            raw = self._run(
                self.dispatcher.dispatch(ToolCall(id="c3", name="broken", arguments={}))
            )

        payload = json.loads(raw)
        self.assertEqual(payload["tool"], "broken")
        self.assertEqual(payload["error"], "disk on fire")
        self.assertEqual(payload["error_code"], "tool_execution_failed")

    def test_cancellation_propagates(self) -> None:
        async def never_returns(tool_call: ToolCall):
            await asyncio.sleep(60)

        self.dispatcher.register(
            RegisteredTool(definition=_definition("slow"), executor=never_returns)
        )

        async def scenario():
            task = asyncio.create_task(
                self.dispatcher.execute(ToolCall(id="c4", name="slow", arguments={}))
            )
            await asyncio.sleep(0.01)
            task.cancel()
            await task

        with self.assertRaises(asyncio.CancelledError):
            self._run(scenario())


if __name__ == "__main__":
    unittest.main()
