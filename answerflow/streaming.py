from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal

logger = logging.getLogger(__name__)

EventKind = Literal["sources", "images", "answer", "related", "done"]


class StreamCancelled(RuntimeError):
    """The consumer went away; producers should stop emitting and unwind."""


class StreamClosed(RuntimeError):
    """An event was emitted after the terminal ``done`` marker."""


@dataclass(frozen=True, slots=True)
class StreamEvent:
    kind: EventKind
    payload: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.kind == "done"

    def to_sse(self) -> str:
        if self.is_terminal:
            return ""
        return f"data: {json.dumps({self.kind: self.payload}, ensure_ascii=False)} \n\n"


DONE = StreamEvent("done")


class StreamEmitter:
    """Ordered channel between the answer pipeline and a transport.

    Events come out in exactly the order they were emitted. Iteration ends
    after the terminal ``done`` event; a consumer that stops early calls
    :meth:`cancel` so the producer's next :meth:`emit` raises
    :class:`StreamCancelled`.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._closed = False
        self._cancelled = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def emit(self, kind: EventKind, payload: Any) -> None:
        if self._cancelled:
            raise StreamCancelled("stream consumer has disconnected")
        if self._closed:
            raise StreamClosed(f"cannot emit {kind!r} after done")
        await self._queue.put(StreamEvent(kind, payload))

    async def close(self) -> None:
        if self._closed or self._cancelled:
            return
        self._closed = True
        await self._queue.put(DONE)

    def cancel(self) -> None:
        if not self._cancelled:
            logger.info("Stream cancelled by consumer")
        self._cancelled = True

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                return
