"""The normalized event stream handed back by ``chat_completion``."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from llmbridge.errors import InternalError
from llmbridge.models import EventType, TextStreamEvent

if TYPE_CHECKING:
    from types import TracebackType

log = logging.getLogger(__name__)


class EventStream:
    """Single-producer queue carrying exactly one terminal event.

    The queue holds at most one event, so a slow consumer stalls the producer
    instead of letting events pile up.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[TextStreamEvent] = asyncio.Queue(maxsize=1)
        self._terminated = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    async def send(self, event: TextStreamEvent) -> None:
        """Enqueue *event*, waiting while the consumer is behind."""
        if self._terminated:
            raise InternalError(f"{event.type.value} event sent after terminal event")
        if event.is_terminal:
            self._terminated = True
        await self._queue.put(event)

    def terminate(self, event: TextStreamEvent) -> None:
        """Enqueue a terminal event without waiting.

        Used on the cancellation path, where the consumer may have stopped
        reading: an undelivered pending event is dropped to make room.
        """
        if not event.is_terminal:
            raise InternalError(f"terminate() needs a terminal event, got {event.type.value}")
        if self._terminated:
            return
        self._terminated = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(event)

    async def receive(self) -> TextStreamEvent:
        return await self._queue.get()


class TextStreamResult:
    """Async iterator over one completion's events.

    Iteration stops after the terminal ``END`` or ``ERROR`` event. Closing
    early (``aclose`` or leaving ``async with``) cancels the producer, which
    closes the vendor connection.

    Example:
        async with await provider.chat_completion(request) as stream:
            async for event in stream:
                if event.type is EventType.TEXT:
                    print(event.value, end="")
    """

    def __init__(self, stream: EventStream, producer: asyncio.Task[None]) -> None:
        self._stream = stream
        self._producer = producer
        self._done = False

    def __aiter__(self) -> TextStreamResult:
        return self

    async def __anext__(self) -> TextStreamEvent:
        if self._done:
            raise StopAsyncIteration
        event = await self._stream.receive()
        if event.is_terminal:
            self._done = True
        return event

    async def read_all(self) -> str:
        """Drain the stream and return the concatenated answer text.

        Raises the error carried by an ``ERROR`` event.
        """
        parts: list[str] = []
        async for event in self:
            if event.type is EventType.TEXT:
                parts.append(event.value)
            elif event.type is EventType.ERROR:
                raise event.value
        return "".join(parts)

    async def aclose(self) -> None:
        """Stop consuming and cancel the producer if it is still running."""
        self._done = True
        producer = self._producer
        if producer.done():
            return
        producer.cancel()
        try:
            await producer
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            log.debug("Completion producer cancelled by caller")

    async def __aenter__(self) -> TextStreamResult:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
