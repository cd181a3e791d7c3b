from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

EVENT_META = "meta"
EVENT_STREAM_ID = "streamId"
EVENT_CATCHUP = "catchup"
EVENT_DELTA = "delta"
EVENT_REASONING = "reasoning"
EVENT_TOOL = "tool"
EVENT_DONE = "done"
EVENT_ERROR = "error"

TERMINAL_EVENTS = {EVENT_DONE, EVENT_ERROR}


@dataclass(frozen=True)
class StreamEvent:
    event: str
    data: dict[str, Any]


class EventChannel:
    """Ordered, unbounded single-consumer channel of :class:`StreamEvent`.

    The producer never blocks, so a slow consumer cannot stall generation.
    Iteration ends once the producer calls :meth:`close`.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: str, data: dict[str, Any]) -> None:
        if self._closed:
            return
        self._queue.put_nowait(StreamEvent(event=event, data=data))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item
