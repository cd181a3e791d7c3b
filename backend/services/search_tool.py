from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

import httpx

from chat.llm_client import ToolCall
from chat.tool_results import SearchHit, SearchResults, ToolError, ToolResult
from chat.tooling import (
    SEARCH_TOOL_NAME,
    arguments_are_malformed,
    coerce_int_arg,
    string_arg,
)
from services.http_retry import (
    backoff_delay,
    is_retryable_status,
    parse_retry_after,
    sleep_before_retry,
)

logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
DEFAULT_RESULT_LIMIT = 5
MAX_RESULT_LIMIT = 10


class SearchProviderError(RuntimeError):
    pass


class SearchProvider(Protocol):
    async def search(self, query: str, *, limit: int) -> list[SearchHit]: ...


class BraveSearchProvider:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = BRAVE_SEARCH_URL,
        max_results: int = MAX_RESULT_LIMIT,
        min_interval_s: float = 1.0,
        timeout_s: float = 8.0,
        retry_max: int = 2,
        retry_base_delay_s: float = 0.3,
        retry_max_delay_s: float = 1.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.max_results = max_results
        self.min_interval_s = min_interval_s
        self.timeout_s = timeout_s
        self.retry_max = max(0, retry_max)
        self.retry_base_delay_s = max(0.0, retry_base_delay_s)
        self.retry_max_delay_s = max(self.retry_base_delay_s, retry_max_delay_s)
        self._transport = transport
        # Requests are serialized and spaced to respect the API rate limit.
        self._lock = asyncio.Lock()
        self._last_request_at = 0.0

    async def search(self, query: str, *, limit: int) -> list[SearchHit]:
        async with self._lock:
            wait_for = self._last_request_at + self.min_interval_s - time.monotonic()
            if wait_for > 0:
                await asyncio.sleep(wait_for)
            self._last_request_at = time.monotonic()
            return await self._perform_search(query, limit)

    async def _perform_search(self, query: str, limit: int) -> list[SearchHit]:
        count = max(1, min(self.max_results, limit))
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip",
            "X-Subscription-Token": self.api_key,
        }
        params = {"q": query, "count": str(count)}

        async with httpx.AsyncClient(
            timeout=self.timeout_s, transport=self._transport
        ) as client:
            attempt = 0
            while True:
                try:
                    response = await client.get(
                        self.base_url, params=params, headers=headers
                    )
                except httpx.TransportError as exc:
                    if attempt < self.retry_max:
                        await sleep_before_retry(
                            backoff_delay(
                                attempt, self.retry_base_delay_s, self.retry_max_delay_s
                            )
                        )
                        attempt += 1
                        continue
                    raise SearchProviderError(f"Brave Search request failed: {exc}") from exc

                if response.status_code >= 400:
                    if is_retryable_status(response.status_code) and attempt < self.retry_max:
                        delay = parse_retry_after(response.headers.get("retry-after"))
                        if delay is None:
                            delay = backoff_delay(
                                attempt, self.retry_base_delay_s, self.retry_max_delay_s
                            )
                        await sleep_before_retry(delay)
                        attempt += 1
                        continue
                    raise SearchProviderError(
                        f"Brave Search error {response.status_code}: {response.text[:500]}"
                    )

                return self._parse_results(response.json(), count)

    @staticmethod
    def _parse_results(payload: Any, count: int) -> list[SearchHit]:
        web = payload.get("web") if isinstance(payload, dict) else None
        raw_results = web.get("results") if isinstance(web, dict) else None
        hits: list[SearchHit] = []
        for item in raw_results or []:
            if not isinstance(item, dict):
                continue
            title = item.get("title")
            url = item.get("url")
            if not title or not url:
                continue
            snippet = item.get("description") or item.get("snippet") or item.get("text") or ""
            hits.append(SearchHit(title=str(title), url=str(url), snippet=str(snippet)))
        return hits[:count]


class SearchTool:
    def __init__(self, provider: SearchProvider) -> None:
        self.provider = provider

    async def __call__(self, tool_call: ToolCall) -> ToolResult:
        arguments = tool_call.arguments
        if arguments_are_malformed(arguments):
            return ToolError(
                tool=SEARCH_TOOL_NAME,
                error="Invalid tool arguments. Expected JSON with a query string.",
                error_code="invalid_arguments",
            )

        query = string_arg(arguments, "query").strip()
        if not query:
            return ToolError(
                tool=SEARCH_TOOL_NAME,
                error="Search query is required.",
                error_code="invalid_arguments",
            )
        limit = coerce_int_arg(
            arguments.get("limit"),
            default=DEFAULT_RESULT_LIMIT,
            minimum=1,
            maximum=MAX_RESULT_LIMIT,
        )

        try:
            hits = await self.provider.search(query, limit=limit)
        except (SearchProviderError, httpx.HTTPError, ValueError) as exc:
            logger.warning("Search failed for %r: %s", query, exc)
            return ToolError(
                tool=SEARCH_TOOL_NAME, error=str(exc) or "Search failed.", error_code="search_failed"
            )
        return SearchResults(results=hits[:limit])
