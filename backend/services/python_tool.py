from __future__ import annotations

import asyncio
import logging
import os
import sys
import tempfile
from pathlib import Path

from chat.llm_client import ToolCall
from chat.tool_results import CodeExecutionResult, ToolError, ToolResult
from chat.tooling import PYTHON_TOOL_NAME, arguments_are_malformed, string_arg

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_MAX_OUTPUT_BYTES = 200_000
_READ_CHUNK = 8192


async def _read_capped(stream: asyncio.StreamReader, limit: int) -> tuple[bytes, bool]:
    """Read a pipe to EOF, keeping at most ``limit`` bytes."""
    kept = bytearray()
    truncated = False
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        room = limit - len(kept)
        if room > 0:
            kept.extend(chunk[:room])
        if len(chunk) > room:
            truncated = True
    return bytes(kept), truncated


class PythonTool:
    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_SECONDS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        python_executable: str | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self.max_output_bytes = max_output_bytes
        self.python_executable = python_executable or sys.executable or "python3"

    async def __call__(self, tool_call: ToolCall) -> ToolResult:
        if arguments_are_malformed(tool_call.arguments):
            return ToolError(
                tool=PYTHON_TOOL_NAME,
                error="Invalid tool arguments. Expected JSON with a code string.",
                error_code="invalid_arguments",
            )
        code = string_arg(tool_call.arguments, "code").strip()
        if not code:
            return ToolError(
                tool=PYTHON_TOOL_NAME, error="No code provided.", error_code="invalid_arguments"
            )
        try:
            return await self.execute(code)
        except OSError as exc:
            logger.warning("python tool failed to start: %s", exc)
            return ToolError(
                tool=PYTHON_TOOL_NAME, error=str(exc), error_code="execution_failed"
            )

    def _child_env(self) -> dict[str, str]:
        return {
            "PATH": os.environ.get("PATH", ""),
            "PYTHONIOENCODING": "utf-8",
            "PYTHONNOUSERSITE": "1",
            "PYTHONDONTWRITEBYTECODE": "1",
        }

    async def execute(self, code: str) -> CodeExecutionResult:
        with tempfile.TemporaryDirectory(prefix="pro-chat-python-") as temp_dir:
            script_path = Path(temp_dir) / "main.py"
            script_path.write_text(code, encoding="utf-8")

            proc = await asyncio.create_subprocess_exec(
                self.python_executable,
                "-I",
                "-S",
                "-B",
                str(script_path),
                cwd=temp_dir,
                env=self._child_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            assert proc.stdout is not None and proc.stderr is not None
            readers = asyncio.gather(
                _read_capped(proc.stdout, self.max_output_bytes),
                _read_capped(proc.stderr, self.max_output_bytes),
            )

            timed_out = False
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.timeout_s)
            except asyncio.TimeoutError:
                timed_out = True
                proc.kill()
                await proc.wait()
            except asyncio.CancelledError:
                proc.kill()
                await proc.wait()
                readers.cancel()
                raise

            (stdout, out_truncated), (stderr, err_truncated) = await readers

        return CodeExecutionResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=None if timed_out else proc.returncode,
            timed_out=timed_out,
            truncated=out_truncated or err_truncated,
        )
