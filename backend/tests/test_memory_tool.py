import asyncio
import tempfile
import unittest
from pathlib import Path

from chat.llm_client import ToolCall
from chat.tool_results import MemoryResult, ToolError
from services.memory_tool import MemoryStore, MemoryTool


class MemoryToolTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = MemoryStore(Path(self.temp_dir.name) / "nested" / "memory")
        self.tool = MemoryTool(self.store)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _run(self, coro):
        return asyncio.run(coro)

    def _call(self, name: str, arguments: dict):
        return self._run(self.tool(ToolCall(id="call_mem", name=name, arguments=arguments)))

    def test_missing_file_reads_as_empty_and_is_created(self) -> None:
        self.assertIsNone(self.store.read())
        self.assertTrue(self.store.path.exists())

    def test_append_adds_one_line_per_fact(self) -> None:
        self._call("memory_append", {"content": "Prefers metric units"})
        result = self._call("memory_append", {"content": "  Lives in Oslo  "})

        self.assertIsInstance(result, MemoryResult)
        self.assertTrue(result.success)
        self.assertEqual(result.current_memory, "Prefers metric units\nLives in Oslo")

    def test_append_without_content_fails_softly(self) -> None:
        result = self._call("memory_append", {"content": "  "})

        self.assertIsInstance(result, MemoryResult)
        self.assertFalse(result.success)
        self.assertEqual(result.message, "No content provided to append.")

    def test_write_replaces_and_can_clear(self) -> None:
        self._call("memory_append", {"content": "old"})

        replaced = self._call("memory_write", {"content": "new"})
        self.assertEqual(replaced.current_memory, "new")

        cleared = self._call("memory_write", {"content": ""})
        self.assertTrue(cleared.success)
        self.assertEqual(cleared.message, "Successfully cleared memory.")
        self.assertEqual(cleared.current_memory, "")
        self.assertIsNone(self.store.read())

    def test_unknown_tool_name_is_an_error(self) -> None:
        result = self._call("memory_delete", {"content": "x"})
        self.assertIsInstance(result, ToolError)
        self.assertEqual(result.error_code, "unsupported_tool")

    def test_malformed_arguments_are_an_error(self) -> None:
        result = self._call("memory_append", {"_raw": "not json"})
        self.assertIsInstance(result, ToolError)
        self.assertEqual(result.error_code, "invalid_arguments")


if __name__ == "__main__":
    unittest.main()
