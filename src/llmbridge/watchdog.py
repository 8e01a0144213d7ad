"""Idle-timeout watchdog for vendor streams."""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
import logging
from typing import TYPE_CHECKING

from llmbridge.errors import StreamTimeoutError

if TYPE_CHECKING:
    from collections.abc import Iterator

log = logging.getLogger(__name__)


class CancelScope:
    """Cancels one task and remembers why.

    asyncio cancellation carries no reason, so the cause is kept here and
    checked by whoever awaits the task before it falls back to whatever
    transport error the cancelled connection produced.
    """

    def __init__(self) -> None:
        self._task: asyncio.Task[None] | None = None
        self.cause: BaseException | None = None

    def bind(self, task: asyncio.Task[None]) -> None:
        self._task = task

    def cancel(self, cause: BaseException) -> None:
        if self.cause is not None:
            return
        self.cause = cause
        if self._task is not None and not self._task.done():
            self._task.cancel()


class Watchdog:
    """Cancels *scope* when no vendor event arrives within *timeout_s*.

    ``reset()`` is called for every vendor event. While ``suspended()`` is
    active (the producer waiting on a slow consumer) the timer keeps
    re-arming instead of firing. A ``timeout_s`` of None disables it.
    """

    def __init__(
        self,
        timeout_s: float | None,
        scope: CancelScope,
        *,
        provider: str | None = None,
    ) -> None:
        self._timeout_s = timeout_s
        self._scope = scope
        self._provider = provider
        self._activity = asyncio.Event()
        self._suspended = 0
        self._stopped = False
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._timeout_s is None or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="llmbridge-watchdog")

    def reset(self) -> None:
        self._activity.set()

    @contextmanager
    def suspended(self) -> Iterator[None]:
        self._suspended += 1
        try:
            yield
        finally:
            self._suspended -= 1
            self.reset()

    async def stop(self) -> None:
        self._stopped = True
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise

    async def _run(self) -> None:
        assert self._timeout_s is not None
        while not self._stopped:
            try:
                await asyncio.wait_for(self._activity.wait(), self._timeout_s)
            except TimeoutError:
                if self._suspended or self._stopped:
                    continue
                log.debug(
                    "No stream event for %gs; cancelling %s stream",
                    self._timeout_s,
                    self._provider or "vendor",
                )
                self._scope.cancel(
                    StreamTimeoutError(self._timeout_s, provider=self._provider)
                )
                return
            self._activity.clear()
