from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

from chat.message_store import prune_message_artifacts
from chat.stream_tracker import DEFAULT_STREAM_MAX_AGE_SECONDS, StreamTracker
from meta import to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_REAPER_INTERVAL_SECONDS = 30.0


@dataclass(frozen=True)
class MaintenanceReport:
    stale_failed: int = 0
    deleted: int = 0
    pruned_messages: int = 0


def run_stream_maintenance(
    tracker: StreamTracker,
    *,
    max_age_s: float = DEFAULT_STREAM_MAX_AGE_SECONDS,
    trace_retention_days: int = 0,
) -> MaintenanceReport:
    """One sweep: fail stale open streams, drop old terminal ones, prune traces."""
    stale_failed = tracker.cleanup_stale_streams()
    deleted = tracker.delete_old_streams(max_age_s)
    pruned = 0
    if trace_retention_days > 0:
        cutoff = to_iso(utc_now() - timedelta(days=trace_retention_days))
        pruned = prune_message_artifacts(cutoff)

    if stale_failed:
        logger.info("Marked %d stale streams as failed", stale_failed)
    if deleted:
        logger.info("Deleted %d old stream records", deleted)
    if pruned:
        logger.info("Pruned trace data from %d messages", pruned)
    return MaintenanceReport(stale_failed=stale_failed, deleted=deleted, pruned_messages=pruned)


async def stream_reaper_loop(
    tracker: StreamTracker,
    stop_event: asyncio.Event,
    *,
    interval_s: float = DEFAULT_REAPER_INTERVAL_SECONDS,
    max_age_s: float = DEFAULT_STREAM_MAX_AGE_SECONDS,
    trace_retention_days: int = 0,
) -> None:
    while not stop_event.is_set():
        try:
            run_stream_maintenance(
                tracker, max_age_s=max_age_s, trace_retention_days=trace_retention_days
            )
        except Exception:
            logger.exception("Stream maintenance sweep failed")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
        except asyncio.TimeoutError:
            continue
