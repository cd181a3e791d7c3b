"""Lifecycle of the per-thread active stream record.

One tracker instance owns all debounce timers and unflushed progress for the
streams it drives; nothing here is module-global, so independent trackers
(for example in tests) never share timers.

Concurrency notes:
  * ``start_stream`` is serialized per thread with an ``asyncio.Lock``. Later
    callers win: each start cancels whatever open stream the previous one left.
    The partial unique index on ``active_streams(thread_id)`` backs this up
    across processes; a collision there cancels the open row and retries once.
  * Every status change is a conditional UPDATE on the current status, and
    progress writes only land while the row is still open, so a late debounce
    timer can never write into a terminal record.
  * When a threshold-crossing update arrives while a debounce timer is armed,
    the immediate flush wins and the timer is cancelled.
  * Updates that keep arriving re-arm the debounce timer, so progress is also
    flushed once it has waited ``max_wait_s`` (reasoning-only stretches never
    reach the character threshold).
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from chat.stream_store import (
    STREAM_STATUS_ACTIVE,
    STREAM_STATUS_CANCELLED,
    STREAM_STATUS_COMPLETED,
    STREAM_STATUS_FAILED,
    STREAM_STATUS_PENDING,
    ActiveStream,
    claim_for_completion,
    create_stream,
    delete_terminal_streams_before,
    latest_stream_for_thread,
    load_stream,
    open_streams_for_thread,
    save_progress,
    stale_open_streams,
    transition_stream,
)
from chat.trace import MessageSource, TraceEvent
from env_loader import env_float, env_int
from meta import new_id, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_STREAM_TIMEOUT_SECONDS = 120.0
DEFAULT_UPDATE_DEBOUNCE_SECONDS = 2.0
DEFAULT_UPDATE_CHAR_THRESHOLD = 500
DEFAULT_UPDATE_MAX_WAIT_SECONDS = 10.0
DEFAULT_STREAM_MAX_AGE_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class _ProgressUpdate:
    content: str
    trace: list[TraceEvent] | None
    sources: list[MessageSource] | None = None


class StreamTracker:
    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_STREAM_TIMEOUT_SECONDS,
        debounce_s: float = DEFAULT_UPDATE_DEBOUNCE_SECONDS,
        char_threshold: int = DEFAULT_UPDATE_CHAR_THRESHOLD,
        max_wait_s: float = DEFAULT_UPDATE_MAX_WAIT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.timeout_s = timeout_s
        self.debounce_s = debounce_s
        self.char_threshold = char_threshold
        self.max_wait_s = max_wait_s
        self._clock = clock
        self._pending_updates: dict[str, _ProgressUpdate] = {}
        self._update_timers: dict[str, asyncio.TimerHandle] = {}
        self._last_flushed_chars: dict[str, int] = {}
        self._unflushed_since: dict[str, datetime] = {}
        self._thread_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @classmethod
    def from_env(cls) -> StreamTracker:
        return cls(
            timeout_s=env_float(
                "STREAM_TIMEOUT_SECONDS", DEFAULT_STREAM_TIMEOUT_SECONDS, minimum=1.0
            ),
            debounce_s=env_float(
                "STREAM_UPDATE_DEBOUNCE_SECONDS",
                DEFAULT_UPDATE_DEBOUNCE_SECONDS,
                minimum=0.0,
            ),
            char_threshold=env_int(
                "STREAM_UPDATE_CHAR_THRESHOLD", DEFAULT_UPDATE_CHAR_THRESHOLD, minimum=1
            ),
            max_wait_s=env_float(
                "STREAM_UPDATE_MAX_WAIT_SECONDS",
                DEFAULT_UPDATE_MAX_WAIT_SECONDS,
                minimum=0.0,
            ),
        )

    def _now(self) -> str:
        return to_iso(self._clock())

    def _thread_lock(self, thread_id: str) -> asyncio.Lock:
        lock = self._thread_locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._thread_locks[thread_id] = lock
        return lock

    # ---- creation -----------------------------------------------------------

    async def start_stream(
        self,
        *,
        thread_id: str,
        user_message_id: str,
        model_id: str,
        thinking_level: str | None = None,
    ) -> ActiveStream:
        async with self._thread_lock(thread_id):
            for attempt in range(2):
                self._cancel_open_streams(thread_id)
                now = self._now()
                stream = ActiveStream(
                    id=new_id("stream"),
                    thread_id=thread_id,
                    user_message_id=user_message_id,
                    status=STREAM_STATUS_ACTIVE,
                    model_id=model_id,
                    thinking_level=thinking_level,
                    started_at=now,
                    last_activity_at=now,
                )
                try:
                    create_stream(stream)
                except sqlite3.IntegrityError:
                    if attempt == 1:
                        raise
                    logger.warning(
                        "Concurrent stream start for thread %s; retrying", thread_id
                    )
                    continue

                self._last_flushed_chars[stream.id] = 0
                return stream

        raise RuntimeError("unreachable")  # pragma: no cover

    def _cancel_open_streams(self, thread_id: str) -> None:
        for existing in open_streams_for_thread(thread_id):
            self.cancel_stream(existing.id)

    # ---- progress -----------------------------------------------------------

    def update_progress(
        self,
        stream_id: str,
        content: str,
        trace: list[TraceEvent] | None = None,
        sources: list[MessageSource] | None = None,
    ) -> None:
        previous = self._pending_updates.get(stream_id)
        if previous is not None:
            if trace is None:
                trace = previous.trace
            if sources is None:
                sources = previous.sources
        self._pending_updates[stream_id] = _ProgressUpdate(
            content=content,
            trace=list(trace) if trace is not None else None,
            sources=list(sources) if sources is not None else None,
        )

        now = self._clock()
        waiting_since = self._unflushed_since.setdefault(stream_id, now)
        unflushed = len(content) - self._last_flushed_chars.get(stream_id, 0)
        if unflushed >= self.char_threshold or (
            now - waiting_since >= timedelta(seconds=self.max_wait_s)
        ):
            self.flush_progress(stream_id)
            return

        self._clear_timer(stream_id)
        loop = asyncio.get_running_loop()
        self._update_timers[stream_id] = loop.call_later(
            self.debounce_s, self._flush_from_timer, stream_id
        )

    def _flush_from_timer(self, stream_id: str) -> None:
        self._update_timers.pop(stream_id, None)
        self.flush_progress(stream_id)

    def flush_progress(self, stream_id: str) -> None:
        self._clear_timer(stream_id)
        self._unflushed_since.pop(stream_id, None)
        update = self._pending_updates.pop(stream_id, None)
        if update is None:
            return

        try:
            written = save_progress(
                stream_id,
                partial_content=update.content,
                partial_trace=update.trace,
                partial_sources=update.sources,
                last_activity_at=self._now(),
            )
        except sqlite3.Error:
            logger.warning("Failed to persist progress for stream %s", stream_id, exc_info=True)
            return

        if written:
            self._last_flushed_chars[stream_id] = len(update.content)

    def _clear_timer(self, stream_id: str) -> None:
        timer = self._update_timers.pop(stream_id, None)
        if timer is not None:
            timer.cancel()

    def _discard_progress(self, stream_id: str) -> None:
        self._clear_timer(stream_id)
        self._pending_updates.pop(stream_id, None)
        self._last_flushed_chars.pop(stream_id, None)
        self._unflushed_since.pop(stream_id, None)

    def has_pending_update(self, stream_id: str) -> bool:
        return stream_id in self._pending_updates

    # ---- transitions --------------------------------------------------------

    def _transition(self, stream_id: str, status: str) -> bool:
        try:
            changed = transition_stream(stream_id, to_status=status, at=self._now())
        except sqlite3.Error:
            logger.warning(
                "Failed to mark stream %s as %s", stream_id, status, exc_info=True
            )
            return False
        if not changed:
            logger.debug("Stream %s not moved to %s (already settled)", stream_id, status)
        return changed

    def mark_pending(self, stream_id: str) -> bool:
        self.flush_progress(stream_id)
        return self._transition(stream_id, STREAM_STATUS_PENDING)

    def reactivate_stream(self, stream_id: str) -> bool:
        stream = load_stream(stream_id)
        if stream is not None:
            self._last_flushed_chars[stream_id] = len(stream.partial_content)
        return self._transition(stream_id, STREAM_STATUS_ACTIVE)

    def set_assistant_message_id(self, stream_id: str, message_id: str) -> bool:
        """Claim an active stream for its final message; False once it was settled."""
        return claim_for_completion(stream_id, message_id, at=self._now())

    def complete_stream(self, stream_id: str) -> bool:
        self._discard_progress(stream_id)
        return self._transition(stream_id, STREAM_STATUS_COMPLETED)

    def fail_stream(self, stream_id: str) -> bool:
        self.flush_progress(stream_id)
        self._discard_progress(stream_id)
        return self._transition(stream_id, STREAM_STATUS_FAILED)

    def cancel_stream(self, stream_id: str) -> bool:
        self._discard_progress(stream_id)
        return self._transition(stream_id, STREAM_STATUS_CANCELLED)

    # ---- lookup & maintenance -----------------------------------------------

    def get_stream(self, stream_id: str) -> ActiveStream | None:
        return load_stream(stream_id)

    def _is_expired(self, stream: ActiveStream) -> bool:
        age = self._clock() - parse_iso(stream.last_activity_at)
        return age > timedelta(seconds=self.timeout_s)

    def find_resumable_stream(self, thread_id: str) -> ActiveStream | None:
        stream = latest_stream_for_thread(thread_id)
        if stream is None or stream.status != STREAM_STATUS_PENDING:
            return None
        if self._is_expired(stream):
            self.fail_stream(stream.id)
            return None
        return stream

    def cleanup_stale_streams(self) -> int:
        cutoff = to_iso(self._clock() - timedelta(seconds=self.timeout_s))
        failed = 0
        for stream_id in stale_open_streams(cutoff):
            self._discard_progress(stream_id)
            if self._transition(stream_id, STREAM_STATUS_FAILED):
                failed += 1
        return failed

    def delete_old_streams(self, max_age_s: float = DEFAULT_STREAM_MAX_AGE_SECONDS) -> int:
        cutoff = to_iso(self._clock() - timedelta(seconds=max_age_s))
        return delete_terminal_streams_before(cutoff)
