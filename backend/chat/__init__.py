from .llm_client import (
    ChatMessage,
    LlmClient,
    LlmResponse,
    ReasoningConfig,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)
from .factory import build_llm_client

__all__ = [
    "ChatMessage",
    "LlmClient",
    "LlmResponse",
    "ReasoningConfig",
    "StreamChunk",
    "TokenUsage",
    "ToolCall",
    "ToolDefinition",
    "build_llm_client",
]
