from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from chat.errors import ChatError
from chat.llm_client import ChatMessage, LlmClient
from chat.message_store import (
    MessageRecord,
    list_thread_messages,
    list_threads_for_memory_extraction,
    mark_thread_memory_checked,
)
from services.memory_tool import MemoryStore

logger = logging.getLogger(__name__)

DEFAULT_EXTRACTION_MODEL = "anthropic/claude-sonnet-4.5"
NO_NEW_MEMORIES = "NO_NEW_MEMORIES"

EXTRACTION_PROMPT = """You are a memory extraction assistant. Your job is to analyze conversations and extract useful information about the user that should be remembered for future conversations.

Review the conversation below and identify any important facts, preferences, or context about the user. Focus on:
- Personal preferences (coding style, tools, frameworks)
- Project details and tech stack
- Communication style preferences
- Important deadlines or constraints mentioned
- Professional background or expertise
- Any explicit requests to remember something

Output ONLY the new memories to add, one per line. Each line should be a concise, standalone fact.
- Do NOT include anything the memory file already contains
- Do NOT include greetings, pleasantries, or transient information
- Do NOT include information about the current task that won't be relevant later
- If there's nothing worth remembering, output exactly: NO_NEW_MEMORIES

Current memory file contents:
<memory>
{current_memory}
</memory>

Conversation to analyze:
<conversation>
{conversation}
</conversation>

New memories to add (one per line, or NO_NEW_MEMORIES):"""

_ROLE_LABELS = {"user": "User", "assistant": "Assistant"}


@dataclass
class MemoryExtractionResult:
    thread_id: str
    extracted: list[str] = field(default_factory=list)
    skipped: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "threadId": self.thread_id,
            "extracted": list(self.extracted),
            "skipped": self.skipped,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class MemoryExtractionSummary:
    processed: int = 0
    memories_added: int = 0
    skipped: int = 0
    errors: int = 0
    results: list[MemoryExtractionResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "memoriesAdded": self.memories_added,
            "skipped": self.skipped,
            "errors": self.errors,
            "results": [result.to_dict() for result in self.results],
        }


def format_conversation(messages: list[MessageRecord]) -> str:
    return "\n\n".join(
        f"{_ROLE_LABELS.get(message.role, 'System')}: {message.content}"
        for message in messages
    )


def parse_memories(response_text: str | None) -> list[str]:
    lines = (line.strip() for line in (response_text or "").splitlines())
    return [line for line in lines if line and line != NO_NEW_MEMORIES]


class MemoryExtractor:
    """Scans finished conversations for durable facts about the user.

    New facts are appended to the shared memory file one per line, and each
    scanned thread is stamped so that it is only revisited after it changes.
    """

    def __init__(self, *, memory_store: MemoryStore, llm_client: LlmClient) -> None:
        self.memory_store = memory_store
        self.llm_client = llm_client

    async def extract_from_thread(self, thread_id: str) -> MemoryExtractionResult:
        try:
            messages = list_thread_messages(thread_id)
            if not messages:
                return MemoryExtractionResult(thread_id=thread_id, skipped=True)

            prompt = EXTRACTION_PROMPT.format(
                current_memory=self.memory_store.read() or "(empty)",
                conversation=format_conversation(messages),
            )
            response = await self.llm_client.generate(
                messages=[ChatMessage(role="user", content=prompt)],
                tools=[],
            )
            memories = parse_memories(response.text)
            for memory in memories:
                self.memory_store.append(memory)
            mark_thread_memory_checked(thread_id)
        except (ChatError, OSError) as exc:
            logger.warning("Memory extraction failed for thread %s: %s", thread_id, exc)
            return MemoryExtractionResult(thread_id=thread_id, error=str(exc) or "Unknown error")

        if not memories:
            return MemoryExtractionResult(thread_id=thread_id, skipped=True)
        logger.info("Extracted %d memories from thread %s", len(memories), thread_id)
        return MemoryExtractionResult(thread_id=thread_id, extracted=memories)

    async def extract_from_unchecked_threads(self) -> MemoryExtractionSummary:
        threads = list_threads_for_memory_extraction()
        summary = MemoryExtractionSummary(processed=len(threads))
        for thread in threads:
            result = await self.extract_from_thread(thread.id)
            summary.results.append(result)
            if result.error is not None:
                summary.errors += 1
            elif result.skipped:
                summary.skipped += 1
            else:
                summary.memories_added += len(result.extracted)
        return summary
