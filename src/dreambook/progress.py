"""Ordered progress channel between a running job and its caller."""

import asyncio
import logging
from typing import AsyncIterator, List

from dreambook.models import ProgressEvent


logger = logging.getLogger(__name__)

_CLOSED = None


class ProgressChannel:
    """Bounded FIFO of progress events for one job.

    Guarantees:
        - events come out in push order
        - ``percent`` never decreases (lower values are raised to the last one)
        - at most one terminal event; nothing is accepted after ``close``
        - once the caller detaches, pushes are silently dropped
    """

    def __init__(self, maxsize: int = 64):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._opened = False
        self._closed = False
        self._detached = False
        self._terminal_sent = False
        self._last_percent = 0
        self.last_event: ProgressEvent | None = None
        self.history: List[ProgressEvent] = []

    def open(self) -> "ProgressChannel":
        self._opened = True
        return self

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def terminal_sent(self) -> bool:
        return self._terminal_sent

    async def push(self, event: ProgressEvent) -> bool:
        """Queue ``event``; returns False when it was not accepted or not delivered."""
        if self._closed or self._terminal_sent:
            logger.debug("Dropping progress event after close: %s", event.message)
            return False

        if event.percent < self._last_percent:
            event = event.model_copy(update={"percent": self._last_percent})
        self._last_percent = event.percent

        if event.terminal:
            self._terminal_sent = True
        self.last_event = event
        self.history.append(event)

        if self._detached:
            return False

        await self._queue.put(event)
        return True

    async def close(self) -> None:
        """Mark the end of the stream; later pushes are rejected."""
        if self._closed:
            return
        self._closed = True
        if not self._detached:
            await self._queue.put(_CLOSED)

    def detach(self) -> None:
        """Caller went away: drop queued events and stop delivering new ones."""
        if self._detached:
            return
        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()
        logger.info("Progress channel detached; further events are dropped")

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events in order until the channel is closed."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                break
            yield item


def encode_sse(event: ProgressEvent) -> str:
    """Encode one event as a server-sent events frame."""
    return f"data: {event.model_dump_json(exclude_none=True)}\n\n"
