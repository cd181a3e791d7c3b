from __future__ import annotations


class ChatError(RuntimeError):
    """Base class for failures surfaced to the streaming client as ``error`` events."""


class InvalidInput(ChatError):
    """Bad thread, model, content or attachment references; raised before any side effect."""


class StreamNotResumable(InvalidInput):
    pass


class ToolIterationLimitExceeded(ChatError):
    def __init__(self, max_iterations: int) -> None:
        super().__init__(
            f"Tool iteration limit reached ({max_iterations}) before a final answer"
        )
        self.max_iterations = max_iterations


class ProviderError(ChatError):
    """Upstream model provider failure."""


class TurnAborted(ChatError):
    """The caller cancelled the turn; the stream was left resumable."""


class UnsupportedTool(ChatError):
    def __init__(self, tool_name: str) -> None:
        super().__init__(f"unknown tool '{tool_name}'")
        self.tool_name = tool_name


class StreamSuperseded(ChatError):
    """The stream was settled elsewhere (a newer turn or the reaper) before it finished."""
