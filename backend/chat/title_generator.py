from __future__ import annotations

import logging

from chat.llm_client import ChatMessage, LlmClient
from chat.message_store import update_thread_title

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 60

TITLE_PROMPT = (
    "Write a short title (at most 6 words) for a conversation that starts with the "
    "user message below. Reply with the title only, without quotes or punctuation "
    "at the end."
)


def fallback_title(content: str) -> str:
    return " ".join(content.split())[:MAX_TITLE_CHARS]


def clean_title(raw: str | None) -> str:
    if not raw:
        return ""
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    title = title.strip().strip("\"'`*#").strip()
    if title.lower().startswith("title:"):
        title = title[len("title:") :].strip()
    return title.rstrip(".").strip()[:MAX_TITLE_CHARS]


async def generate_thread_title(
    *, llm_client: LlmClient, thread_id: str, content: str
) -> str:
    """Name a thread from its first message. Never raises.

    Falls back to the leading characters of the message when the provider call
    fails or returns nothing usable.
    """
    title = ""
    try:
        response = await llm_client.generate(
            messages=[
                ChatMessage(role="system", content=TITLE_PROMPT),
                ChatMessage(role="user", content=content[:2000]),
            ],
            tools=[],
            max_output_tokens=32,
        )
        title = clean_title(response.text)
    except Exception:
        logger.warning("Title generation failed for thread %s", thread_id, exc_info=True)

    if not title:
        title = fallback_title(content)
    if not title:
        return ""

    try:
        update_thread_title(thread_id, title)
    except Exception:
        logger.warning("Failed to store title for thread %s", thread_id, exc_info=True)
    return title
