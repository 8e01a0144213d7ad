"""Provider-independent completion engine: stream, tool loop and watchdog.

Every provider plugs into one ``CompletionEngine`` through the small
``ProviderAdapter`` protocol; the loop, depth guard, cancellation and event
ordering are implemented only here.

Per model turn the caller sees, in order: live ``TEXT``/``REASONING``
deltas, ``REASONING_END``, then ``TOOL_CALLS`` (only when awaiting
approval), ``ANNOTATIONS``, ``USAGE`` and finally one ``END`` or ``ERROR``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
import logging
from typing import TYPE_CHECKING, Any, Protocol

from llmbridge.errors import (
    LLMBridgeError,
    StreamCancelledError,
    ToolDepthExceededError,
)
from llmbridge.models import TextStreamEvent
from llmbridge.options import apply_options
from llmbridge.retry import RetryPolicy, retry_async
from llmbridge.stream import EventStream, TextStreamResult
from llmbridge.tools import execute_auto_run_tools, should_auto_run_tools
from llmbridge.watchdog import CancelScope, Watchdog

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from llmbridge.models import (
        Annotation,
        CompletionRequest,
        ReasoningData,
        TokenUsage,
        ToolCall,
    )
    from llmbridge.options import LanguageModelConfig, LanguageModelOption
    from llmbridge.tools import AutoRunResult

log = logging.getLogger(__name__)

MAX_TOOL_RESOLUTION_DEPTH = 10


@dataclass
class TurnResult:
    """Everything a decoder learned from one model turn."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    #: Vendor-native assistant content, replayed when the loop continues.
    assistant_message: Any = None
    annotations: list[Annotation] = field(default_factory=list)
    usage: TokenUsage | None = None
    stop_reason: str = ""
    reasoning: ReasoningData | None = None


class StreamDecoder(Protocol):
    """Turns one vendor stream into normalized events."""

    def feed(self, event: Any) -> list[TextStreamEvent]:
        """Consume one vendor event; return the events to forward live.

        Raises ``APIError`` when the vendor reports an error in-stream.
        """
        ...

    def flush(self) -> list[TextStreamEvent]:
        """Events still owed once the vendor stream ends (e.g. an open ``REASONING_END``)."""
        ...

    def finish(self) -> TurnResult: ...


class VendorStream:
    """An opened vendor stream: async iterable plus an explicit close."""

    def __init__(
        self,
        events: AsyncIterator[Any],
        close: Callable[[], Awaitable[None]],
    ) -> None:
        self._events = events
        self._close = close

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._events

    async def aclose(self) -> None:
        await self._close()


class ProviderAdapter(Protocol):
    """What a vendor integration supplies to the engine."""

    name: str

    def default_config(self) -> LanguageModelConfig: ...

    def translate(self, request: CompletionRequest, cfg: LanguageModelConfig) -> Any:
        """Build the vendor request state (messages, tools, parameters)."""
        ...

    async def open_stream(self, state: Any, cfg: LanguageModelConfig) -> VendorStream: ...

    def new_decoder(self, cfg: LanguageModelConfig) -> StreamDecoder: ...

    def append_tool_round(
        self, state: Any, turn: TurnResult, results: list[AutoRunResult]
    ) -> None:
        """Append the assistant tool-use turn and its results to *state*."""
        ...

    def wrap_error(self, exc: Exception) -> Exception: ...


def _usage_event(usage: TokenUsage) -> TextStreamEvent:
    return TextStreamEvent.usage(usage.input_tokens, usage.output_tokens)


async def _close_stream(stream: VendorStream) -> None:
    try:
        await stream.aclose()
    except Exception as exc:
        log.warning("Failed to close vendor stream: %s", exc)


class CompletionEngine:
    """Runs completions for one adapter.

    Each call owns one producer task; a second task (the watchdog) shares
    only the cancel scope and the activity signal with it.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        *,
        streaming_timeout_s: float | None = None,
        retry: RetryPolicy | None = None,
        max_tool_depth: int = MAX_TOOL_RESOLUTION_DEPTH,
    ) -> None:
        self._adapter = adapter
        self._streaming_timeout_s = streaming_timeout_s
        self._retry = retry or RetryPolicy()
        self._max_tool_depth = max_tool_depth

    async def chat_completion(
        self, request: CompletionRequest, *options: LanguageModelOption
    ) -> TextStreamResult:
        """Start a completion and return its event stream."""
        cfg = apply_options(self._adapter.default_config(), options)
        out = EventStream()
        producer = asyncio.create_task(
            self._produce(request, cfg, out),
            name=f"llmbridge-{self._adapter.name}-completion",
        )
        return TextStreamResult(out, producer)

    async def chat_completion_no_stream(
        self, request: CompletionRequest, *options: LanguageModelOption
    ) -> str:
        """Run a completion to the end and return its text."""
        async with await self.chat_completion(request, *options) as stream:
            return await stream.read_all()

    async def _produce(
        self, request: CompletionRequest, cfg: LanguageModelConfig, out: EventStream
    ) -> None:
        try:
            await self._run_tool_loop(request, cfg, out)
        except asyncio.CancelledError:
            log.debug("%s completion cancelled by caller", self._adapter.name)
            out.terminate(
                TextStreamEvent.error(StreamCancelledError(provider=self._adapter.name))
            )
            raise
        except Exception as exc:
            if not isinstance(exc, LLMBridgeError):
                exc = self._adapter.wrap_error(exc)
            log.debug("%s completion failed: %s", self._adapter.name, exc)
            await out.send(TextStreamEvent.error(exc))

    async def _run_tool_loop(
        self, request: CompletionRequest, cfg: LanguageModelConfig, out: EventStream
    ) -> None:
        state = self._adapter.translate(request, cfg)
        tools = request.context.tools
        emitted = _EmittedText()
        depth = 0

        while True:
            turn = await self._stream_turn(state, cfg, out)
            pending = turn.tool_calls

            if (
                tools is not None
                and not cfg.tools_disabled
                and should_auto_run_tools(pending, cfg.auto_run_tools)
            ):
                log.debug(
                    "Auto-running %d tool call(s) at depth %d",
                    len(pending),
                    depth + 1,
                )
                results = await execute_auto_run_tools(
                    pending, tools.resolve_tool, request.context
                )
                self._adapter.append_tool_round(state, turn, results)
                await self._send_turn_metadata(out, turn, emitted)
                depth += 1
                # At most max_tool_depth vendor calls per request.
                if depth >= self._max_tool_depth:
                    raise ToolDepthExceededError(self._max_tool_depth)
                continue

            if pending:
                for call in pending:
                    call.sanitize_arguments()
                await out.send(TextStreamEvent.tool_calls(pending))
            await self._send_turn_metadata(out, turn, emitted)
            await out.send(TextStreamEvent.end())
            return

    async def _send_turn_metadata(
        self, out: EventStream, turn: TurnResult, emitted: _EmittedText
    ) -> None:
        annotations = emitted.rebase(turn)
        if annotations:
            await out.send(TextStreamEvent.annotations(annotations))
        if turn.usage is not None:
            await out.send(_usage_event(turn.usage))

    async def _stream_turn(
        self,
        state: Any,
        cfg: LanguageModelConfig,
        out: EventStream,
    ) -> TurnResult:
        decoder = self._adapter.new_decoder(cfg)
        scope = CancelScope()
        watchdog = Watchdog(
            self._streaming_timeout_s, scope, provider=self._adapter.name
        )
        reader = asyncio.create_task(
            self._pump(state, cfg, decoder, out, watchdog),
            name=f"llmbridge-{self._adapter.name}-reader",
        )
        scope.bind(reader)
        try:
            await reader
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if scope.cause is not None and not (current and current.cancelling()):
                raise scope.cause from None
            raise
        except Exception:
            # The watchdog closed the connection under the reader.
            if scope.cause is not None:
                raise scope.cause from None
            raise
        return decoder.finish()

    async def _pump(
        self,
        state: Any,
        cfg: LanguageModelConfig,
        decoder: StreamDecoder,
        out: EventStream,
        watchdog: Watchdog,
    ) -> None:
        watchdog.start()
        stream: VendorStream | None = None
        try:
            stream = await retry_async(
                lambda: self._adapter.open_stream(state, cfg), policy=self._retry
            )
            async for raw in stream:
                watchdog.reset()
                try:
                    events = decoder.feed(raw)
                except LLMBridgeError:
                    # Usage the vendor reported with its in-stream error precedes ERROR.
                    usage = decoder.finish().usage
                    if usage is not None and (
                        usage.input_tokens or usage.output_tokens
                    ):
                        with watchdog.suspended():
                            await out.send(_usage_event(usage))
                    raise
                for event in events:
                    with watchdog.suspended():
                        await out.send(event)
            for event in decoder.flush():
                with watchdog.suspended():
                    await out.send(event)
        finally:
            if stream is not None:
                await _close_stream(stream)
            await watchdog.stop()


class _EmittedText:
    """Running answer length and citation count across the turns of a request."""

    def __init__(self) -> None:
        self.offset = 0
        self.citations = 0

    def rebase(self, turn: TurnResult) -> list[Annotation]:
        """Shift *turn*'s annotations into whole-answer positions and numbering."""
        rebased: list[Annotation] = []
        for annotation in turn.annotations:
            self.citations += 1
            rebased.append(
                replace(
                    annotation,
                    start_index=annotation.start_index + self.offset,
                    end_index=annotation.end_index + self.offset,
                    index=self.citations,
                )
            )
        self.offset += len(turn.text)
        return rebased
