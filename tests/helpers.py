"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off adapters and fake SDK streams as coverage expands.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from llmbridge.engine import TurnResult, VendorStream
from llmbridge.errors import APIError
from llmbridge.models import (
    Annotation,
    TextStreamEvent,
    TokenUsage,
    ToolCall,
)
from llmbridge.options import LanguageModelConfig
from llmbridge.stream import TextStreamResult
from llmbridge.tools import AutoRunResult


@dataclass
class FakeTurn:
    """One scripted model turn.

    ``stall`` keeps the stream open forever after the text chunks;
    ``error`` is raised after them instead of finishing the turn.
    """

    chunks: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    annotations: list[Annotation] = field(default_factory=list)
    usage: TokenUsage | None = None
    stall: bool = False
    error: BaseException | None = None


class FakeDecoder:
    """Decoder for ``ScriptedAdapter`` streams: text chunks then the turn."""

    def __init__(self) -> None:
        self.text: list[str] = []
        self.turn: FakeTurn | None = None

    def feed(self, event: Any) -> list[TextStreamEvent]:
        if isinstance(event, FakeTurn):
            self.turn = event
            return []
        self.text.append(event)
        return [TextStreamEvent.text(event)]

    def flush(self) -> list[TextStreamEvent]:
        return []

    def finish(self) -> TurnResult:
        turn = self.turn or FakeTurn()
        return TurnResult(
            text="".join(self.text),
            tool_calls=[
                ToolCall(id=c.id, name=c.name, arguments=c.arguments)
                for c in turn.tool_calls
            ],
            assistant_message={"role": "assistant", "text": "".join(self.text)},
            annotations=list(turn.annotations),
            usage=turn.usage,
        )


@dataclass
class ScriptedAdapter:
    """Provider adapter that plays a scripted sequence of turns.

    An exception in ``script`` is raised by ``open_stream`` instead of
    opening a stream.
    """

    script: list[FakeTurn | BaseException] = field(default_factory=list)
    name: str = "fake"
    open_calls: int = 0
    closed_streams: int = 0
    rounds: list[tuple[TurnResult, list[AutoRunResult]]] = field(default_factory=list)

    def default_config(self) -> LanguageModelConfig:
        return LanguageModelConfig(model="fake-model", max_generated_tokens=256)

    def translate(self, request: Any, cfg: LanguageModelConfig) -> dict[str, Any]:
        return {"posts": list(request.posts)}

    async def open_stream(self, state: Any, cfg: LanguageModelConfig) -> VendorStream:
        self.open_calls += 1
        item = self.script.pop(0) if self.script else FakeTurn(chunks=["ok"])
        if isinstance(item, BaseException):
            raise item
        return VendorStream(self._events(item), self._close)

    async def _events(self, turn: FakeTurn):
        for chunk in turn.chunks:
            yield chunk
        if turn.stall:
            await asyncio.Event().wait()
        if turn.error is not None:
            raise turn.error
        yield turn

    async def _close(self) -> None:
        self.closed_streams += 1

    def new_decoder(self, cfg: LanguageModelConfig) -> FakeDecoder:
        return FakeDecoder()

    def append_tool_round(
        self, state: Any, turn: TurnResult, results: list[AutoRunResult]
    ) -> None:
        self.rounds.append((turn, results))

    def wrap_error(self, exc: Exception) -> APIError:
        return APIError(f"fake stream failed: {exc}", provider=self.name, phase="stream")


async def collect(stream: TextStreamResult) -> list[TextStreamEvent]:
    """Drain *stream* and return every event, terminal included."""
    return [event async for event in stream]


class FakeAsyncStream:
    """Stand-in for the openai/anthropic SDK ``AsyncStream``."""

    def __init__(self, events: list[Any]) -> None:
        self._events = list(events)
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            yield event

    async def close(self) -> None:
        self.closed = True


class FakeBotoEventStream:
    """Stand-in for botocore's blocking ``EventStream``."""

    def __init__(self, events: list[dict[str, Any]]) -> None:
        self._events = list(events)
        self.closed = False

    def __iter__(self):
        return iter(self._events)

    def close(self) -> None:
        self.closed = True
