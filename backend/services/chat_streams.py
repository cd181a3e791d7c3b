"""Bridges engine turns to transport-agnostic event streams.

Each ``start``/``resume`` runs its turn in a dedicated task that writes into an
:class:`EventChannel`; the returned async iterator relays those events. When
the consumer goes away before a terminal event, the iterator's cleanup raises
the turn's cancel signal so the engine parks the stream as ``pending``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from chat.engine import ChatEngine, TurnRequest, TurnResult
from chat.errors import ChatError, StreamNotResumable, TurnAborted
from chat.events import (
    EVENT_CATCHUP,
    EVENT_ERROR,
    EVENT_META,
    EVENT_STREAM_ID,
    EventChannel,
    StreamEvent,
)
from chat.stream_tracker import StreamTracker

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Unexpected error while generating a response"

TurnRunner = Callable[[EventChannel, asyncio.Event], Awaitable[TurnResult]]


@dataclass(eq=False)
class _LiveTurn:
    cancel_signal: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None


class ChatStreamService:
    def __init__(self, *, engine: ChatEngine, tracker: StreamTracker) -> None:
        self.engine = engine
        self.tracker = tracker
        self._live: dict[str, _LiveTurn] = {}
        self._turns: set[_LiveTurn] = set()

    def start(self, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        return self._stream(
            lambda channel, signal: self.engine.run_turn(request, channel, signal),
            meta={"threadId": request.thread_id, "modelId": request.model_id},
        )

    def resume(self, stream_id: str) -> AsyncIterator[StreamEvent]:
        return self._stream(
            lambda channel, signal: self.engine.resume_turn(stream_id, channel, signal)
        )

    def is_live(self, stream_id: str) -> bool:
        return stream_id in self._live

    async def stop(self, stream_id: str) -> bool:
        """Abort a running turn, if any, and cancel its stream record."""
        if self.tracker.get_stream(stream_id) is None:
            raise StreamNotResumable("Stream not found")

        live = self._live.get(stream_id)
        if live is not None and live.task is not None:
            live.cancel_signal.set()
            await asyncio.gather(live.task, return_exceptions=True)
        return self.tracker.cancel_stream(stream_id)

    async def shutdown(self) -> None:
        tasks = []
        for live in list(self._turns):
            live.cancel_signal.set()
            if live.task is not None:
                tasks.append(live.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.engine.drain_background_tasks()

    async def _stream(
        self, runner: TurnRunner, *, meta: dict[str, Any] | None = None
    ) -> AsyncIterator[StreamEvent]:
        channel = EventChannel()
        if meta is not None:
            channel.send(EVENT_META, meta)

        live = _LiveTurn()
        live.task = asyncio.create_task(
            self._drive(runner(channel, live.cancel_signal), channel)
        )
        self._turns.add(live)
        stream_id: str | None = None
        try:
            async for event in channel:
                if stream_id is None and event.event in (EVENT_STREAM_ID, EVENT_CATCHUP):
                    stream_id = event.data.get("streamId")
                    if stream_id:
                        self._live[stream_id] = live
                yield event
        finally:
            if not live.task.done():
                # Consumer left early: park the stream for a later resume.
                live.cancel_signal.set()
                await asyncio.gather(live.task, return_exceptions=True)
            self._turns.discard(live)
            if stream_id and self._live.get(stream_id) is live:
                del self._live[stream_id]

    async def _drive(self, turn: Awaitable[TurnResult], channel: EventChannel) -> None:
        try:
            await turn
        except TurnAborted:
            logger.info("Chat turn aborted by the client")
        except ChatError as exc:
            channel.send(EVENT_ERROR, {"message": str(exc)})
        except Exception:
            logger.exception("Unexpected chat stream failure")
            channel.send(EVENT_ERROR, {"message": GENERIC_ERROR_MESSAGE})
        finally:
            channel.close()
