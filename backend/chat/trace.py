"""Bounded reasoning/tool trace and cited-source accumulation for one assistant turn.

All functions here are pure: inputs are never mutated and a fresh list is
returned. A zero count or character budget collapses the collection to empty.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any

from chat.tool_results import FetchResult, SearchResults, decode_tool_result
from env_loader import env_int
from meta import new_id, to_iso, utc_now

TRACE_TYPE_REASONING = "reasoning"
TRACE_TYPE_TOOL = "tool"

SOURCE_KIND_SEARCH = "search"
SOURCE_KIND_WEB = "web"


@dataclass(frozen=True)
class TracePolicy:
    max_events: int = 50
    max_chars: int = 20_000
    max_sources: int = 20
    max_source_chars: int = 8_000
    max_source_snippet_chars: int = 500
    retention_days: int = 30

    @classmethod
    def from_env(cls) -> TracePolicy:
        defaults = cls()
        return cls(
            max_events=env_int("TRACE_MAX_EVENTS", defaults.max_events, minimum=0),
            max_chars=env_int("TRACE_MAX_CHARS", defaults.max_chars, minimum=0),
            max_sources=env_int("TRACE_MAX_SOURCES", defaults.max_sources, minimum=0),
            max_source_chars=env_int(
                "TRACE_MAX_SOURCE_CHARS", defaults.max_source_chars, minimum=0
            ),
            max_source_snippet_chars=env_int(
                "TRACE_MAX_SOURCE_SNIPPET_CHARS",
                defaults.max_source_snippet_chars,
                minimum=0,
            ),
            retention_days=env_int(
                "TRACE_RETENTION_DAYS", defaults.retention_days, minimum=0
            ),
        )


@dataclass(frozen=True)
class TraceEvent:
    type: str
    content: str
    id: str = field(default_factory=lambda: new_id("trace"))
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "content": self.content,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TraceEvent | None:
        event_type = payload.get("type")
        content = payload.get("content")
        if event_type not in (TRACE_TYPE_REASONING, TRACE_TYPE_TOOL):
            return None
        if not isinstance(content, str):
            return None
        event_id = payload.get("id")
        created_at = payload.get("createdAt")
        return cls(
            type=event_type,
            content=content,
            id=event_id if isinstance(event_id, str) and event_id else new_id("trace"),
            created_at=(
                created_at
                if isinstance(created_at, str) and created_at
                else to_iso(utc_now())
            ),
        )


@dataclass(frozen=True)
class MessageSource:
    kind: str
    title: str
    url: str
    snippet: str | None = None
    status: int | None = None
    content_type: str | None = None
    id: str = field(default_factory=lambda: new_id("source"))
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind,
            "title": self.title,
            "url": self.url,
            "createdAt": self.created_at,
        }
        if self.snippet is not None:
            payload["snippet"] = self.snippet
        if self.status is not None:
            payload["status"] = self.status
        if self.content_type is not None:
            payload["contentType"] = self.content_type
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> MessageSource | None:
        url = payload.get("url")
        kind = payload.get("kind")
        if not isinstance(url, str) or not url:
            return None
        if kind not in (SOURCE_KIND_SEARCH, SOURCE_KIND_WEB):
            return None
        title = payload.get("title")
        snippet = payload.get("snippet")
        status = payload.get("status")
        content_type = payload.get("contentType")
        source_id = payload.get("id")
        created_at = payload.get("createdAt")
        return cls(
            kind=kind,
            title=title if isinstance(title, str) else url,
            url=url,
            snippet=snippet if isinstance(snippet, str) else None,
            status=status if isinstance(status, int) else None,
            content_type=content_type if isinstance(content_type, str) else None,
            id=source_id if isinstance(source_id, str) and source_id else new_id("source"),
            created_at=(
                created_at
                if isinstance(created_at, str) and created_at
                else to_iso(utc_now())
            ),
        )

    def char_count(self) -> int:
        return len(self.title) + len(self.snippet or "")


def _trace_chars(trace: list[TraceEvent]) -> int:
    return sum(len(event.content) for event in trace)


def trim_trace(trace: list[TraceEvent], policy: TracePolicy) -> list[TraceEvent]:
    if policy.max_events <= 0 or policy.max_chars <= 0:
        return []

    trimmed = list(trace)
    if len(trimmed) > policy.max_events:
        trimmed = trimmed[-policy.max_events :]

    total = _trace_chars(trimmed)
    while len(trimmed) > 1 and total > policy.max_chars:
        total -= len(trimmed[0].content)
        trimmed = trimmed[1:]

    if trimmed and total > policy.max_chars:
        # Keep the newest characters of the sole survivor.
        survivor = trimmed[0]
        trimmed = [replace(survivor, content=survivor.content[-policy.max_chars :])]

    return trimmed


def append_trace_event(
    trace: list[TraceEvent], next_event: TraceEvent, policy: TracePolicy
) -> list[TraceEvent]:
    if policy.max_events <= 0 or policy.max_chars <= 0:
        return []

    merged = list(trace)
    if (
        next_event.type == TRACE_TYPE_REASONING
        and merged
        and merged[-1].type == TRACE_TYPE_REASONING
    ):
        last = merged[-1]
        merged[-1] = replace(last, content=last.content + next_event.content)
    else:
        merged.append(next_event)

    return trim_trace(merged, policy)


def append_sources(
    existing: list[MessageSource],
    incoming: list[MessageSource],
    policy: TracePolicy,
) -> list[MessageSource]:
    if policy.max_sources <= 0 or policy.max_source_chars <= 0:
        return []

    merged: list[MessageSource] = []
    seen_urls: set[str] = set()
    for source in [*existing, *incoming]:
        if source.url in seen_urls:
            continue
        seen_urls.add(source.url)
        merged.append(source)

    if len(merged) > policy.max_sources:
        merged = merged[-policy.max_sources :]

    total = sum(source.char_count() for source in merged)
    while len(merged) > 1 and total > policy.max_source_chars:
        total -= merged[0].char_count()
        merged = merged[1:]

    if merged and total > policy.max_source_chars:
        last = merged[-1]
        budget = policy.max_source_chars
        if len(last.title) >= budget:
            merged[-1] = replace(last, title=last.title[:budget], snippet=None)
        else:
            snippet = (last.snippet or "")[: budget - len(last.title)]
            merged[-1] = replace(last, snippet=snippet or None)

    return merged


def _clip_snippet(text: str, max_chars: int) -> str | None:
    cleaned = " ".join(text.split())
    if not cleaned or max_chars <= 0:
        return None
    return cleaned[:max_chars]


def extract_sources_from_tool_result(
    tool_name: str, raw_result: str, max_snippet_chars: int
) -> list[MessageSource]:
    result = decode_tool_result(tool_name, raw_result)

    if isinstance(result, SearchResults):
        return [
            MessageSource(
                kind=SOURCE_KIND_SEARCH,
                title=hit.title,
                url=hit.url,
                snippet=_clip_snippet(hit.snippet, max_snippet_chars),
            )
            for hit in result.results
        ]

    if isinstance(result, FetchResult) and result.url:
        return [
            MessageSource(
                kind=SOURCE_KIND_WEB,
                title=(result.title or "").strip() or result.url,
                url=result.url,
                snippet=_clip_snippet(result.text, max_snippet_chars),
                status=result.status or None,
                content_type=result.content_type,
            )
        ]

    return []


def trace_to_json(trace: list[TraceEvent]) -> str:
    return json.dumps([event.to_dict() for event in trace], ensure_ascii=False)


def trace_from_json(raw: str | None) -> list[TraceEvent]:
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(payload, list):
        return []
    events = (TraceEvent.from_dict(item) for item in payload if isinstance(item, dict))
    return [event for event in events if event is not None]


def sources_to_json(sources: list[MessageSource]) -> str:
    return json.dumps([source.to_dict() for source in sources], ensure_ascii=False)


def sources_from_json(raw: str | None) -> list[MessageSource]:
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(payload, list):
        return []
    sources = (MessageSource.from_dict(item) for item in payload if isinstance(item, dict))
    return [source for source in sources if source is not None]
