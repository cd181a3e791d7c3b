"""Backoff helpers shared by the outbound HTTP tools."""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

MAX_RETRY_AFTER_SECONDS = 30.0


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def parse_retry_after(header: str | None) -> float | None:
    if not header:
        return None
    try:
        seconds = float(header)
    except ValueError:
        seconds = None
    if seconds is not None:
        if seconds < 0:
            return None
        return min(seconds, MAX_RETRY_AFTER_SECONDS)

    try:
        when = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - datetime.now(timezone.utc)).total_seconds()
    if delta <= 0:
        return None
    return min(delta, MAX_RETRY_AFTER_SECONDS)


def backoff_delay(attempt: int, base_s: float, max_s: float) -> float:
    jitter = random.random() * 0.3 + 0.85
    return max(0.0, min(max_s, base_s * 2**attempt) * jitter)


async def sleep_before_retry(delay_s: float) -> None:
    if delay_s > 0:
        await asyncio.sleep(delay_s)
