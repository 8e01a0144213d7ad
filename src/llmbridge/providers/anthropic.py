"""Anthropic Messages API provider."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Any

from llmbridge.engine import TurnResult, VendorStream
from llmbridge.errors import APIError
from llmbridge.models import (
    Annotation,
    ReasoningData,
    TextStreamEvent,
    TokenUsage,
    ToolCall,
    ToolCallStatus,
)
from llmbridge.providers._errors import wrap_provider_error
from llmbridge.providers._utils import get_field
from llmbridge.providers.base import BaseProvider, ModelInfo, ProviderCapabilities
from llmbridge.translate import ImageRejection, TurnRole, translate_posts

if TYPE_CHECKING:
    from collections.abc import Sequence

    from llmbridge.models import CompletionRequest, File
    from llmbridge.options import LanguageModelConfig
    from llmbridge.tools import AutoRunResult, Tool

log = logging.getLogger(__name__)

_MIN_THINKING_BUDGET = 1024
_MAX_DEFAULT_THINKING_BUDGET = 8192
_WEB_SEARCH_TOOL: dict[str, Any] = {"type": "web_search_20250305", "name": "web_search"}
_TOOL_USE_STOP = "tool_use"


def calculate_thinking_budget(max_generated_tokens: int, thinking_budget: int = 0) -> int:
    """Thinking tokens to request for a given output ceiling.

    An explicit budget is honored but never below 1024; otherwise a quarter
    of the ceiling is used, clamped to ``[1024, 8192]``.
    """
    if thinking_budget > 0:
        return max(thinking_budget, _MIN_THINKING_BUDGET)
    budget = max_generated_tokens // 4
    return max(min(budget, _MAX_DEFAULT_THINKING_BUDGET), _MIN_THINKING_BUDGET)


def thinking_config(
    max_generated_tokens: int,
    *,
    reasoning_enabled: bool,
    thinking_budget: int = 0,
) -> dict[str, Any] | None:
    """Return the ``thinking`` request parameter, or None to leave it off.

    The API requires ``budget_tokens < max_tokens``; a budget that does not
    fit disables thinking rather than failing the request.
    """
    if not reasoning_enabled:
        return None
    budget = calculate_thinking_budget(max_generated_tokens, thinking_budget)
    if budget >= max_generated_tokens:
        return None
    return {"type": "enabled", "budget_tokens": budget}


class AnthropicEncoder:
    """Content blocks for the Messages API."""

    max_image_size: int | None = None

    def text(self, role: TurnRole, text: str) -> dict[str, Any]:
        return {"type": "text", "text": text}

    def reasoning(self, text: str, signature: str) -> dict[str, Any]:
        return {"type": "thinking", "thinking": text, "signature": signature}

    def image(self, role: TurnRole, mime_type: str, data: bytes) -> dict[str, Any]:
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": mime_type,
                "data": base64.b64encode(data).decode("ascii"),
            },
        }

    def image_placeholder(self, file: File, rejection: ImageRejection) -> str:
        if rejection is ImageRejection.UNSUPPORTED_TYPE:
            return f"[Unsupported image type: {file.mime_type}]"
        return "[Error reading image data]"

    def tool_uses(self, calls: Sequence[ToolCall]) -> list[dict[str, Any]]:
        return [
            {
                "type": "tool_use",
                "id": call.id,
                "name": call.name,
                "input": call.parsed_arguments(),
            }
            for call in calls
        ]

    def tool_results(self, calls: Sequence[ToolCall]) -> list[dict[str, Any]]:
        return [
            _tool_result_block(
                call.id, call.result, call.status != ToolCallStatus.SUCCESS
            )
            for call in calls
        ]

    def turn(self, role: TurnRole, blocks: list[Any]) -> list[dict[str, Any]]:
        return [{"role": role, "content": blocks}]


def _tool_result_block(tool_use_id: str, content: str, is_error: bool) -> dict[str, Any]:
    return {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": content,
        "is_error": is_error,
    }


def convert_tools(tools: Sequence[Tool]) -> list[dict[str, Any]]:
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.parameters_schema(),
        }
        for tool in tools
    ]


@dataclass
class AnthropicState:
    """Request state carried across the turns of one completion."""

    system: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]]


@dataclass
class _Block:
    type: str
    start: int = 0
    text: str = ""
    thinking: str = ""
    signature: str = ""
    data: str = ""
    id: str = ""
    name: str = ""
    json_parts: list[str] = field(default_factory=list)
    citations: list[Any] = field(default_factory=list)
    reasoning_sent: bool = False


class AnthropicStreamDecoder:
    """Decodes raw ``messages.create(stream=True)`` events for one turn."""

    def __init__(self) -> None:
        self._blocks: dict[int, _Block] = {}
        self._text_len = 0
        self._input_tokens = 0
        self._output_tokens = 0
        self._stop_reason = ""
        self._annotations: list[Annotation] = []

    def feed(self, event: Any) -> list[TextStreamEvent]:
        kind = get_field(event, "type")
        if kind == "message_start":
            usage = get_field(get_field(event, "message"), "usage")
            self._input_tokens = get_field(usage, "input_tokens", 0) or 0
            self._output_tokens = get_field(usage, "output_tokens", 0) or 0
        elif kind == "content_block_start":
            self._start_block(get_field(event, "index", 0), get_field(event, "content_block"))
        elif kind == "content_block_delta":
            return self._apply_delta(get_field(event, "index", 0), get_field(event, "delta"))
        elif kind == "content_block_stop":
            return self._stop_block(get_field(event, "index", 0))
        elif kind == "message_delta":
            stop_reason = get_field(get_field(event, "delta"), "stop_reason")
            if stop_reason:
                self._stop_reason = stop_reason
            usage = get_field(event, "usage")
            output_tokens = get_field(usage, "output_tokens")
            if output_tokens is not None:
                self._output_tokens = output_tokens
            input_tokens = get_field(usage, "input_tokens")
            if input_tokens:
                self._input_tokens = input_tokens
        elif kind == "error":
            error = get_field(event, "error")
            error_type = get_field(error, "type", "")
            raise APIError(
                f"anthropic stream error: {get_field(error, 'message', error)}",
                retryable=error_type in ("overloaded_error", "api_error"),
                provider="anthropic",
                phase="stream",
            )
        return []

    def _start_block(self, index: int, content_block: Any) -> None:
        block = _Block(type=get_field(content_block, "type", ""), start=self._text_len)
        if block.type == "tool_use":
            block.id = get_field(content_block, "id", "")
            block.name = get_field(content_block, "name", "")
        elif block.type == "redacted_thinking":
            block.data = get_field(content_block, "data", "")
        elif block.type == "thinking":
            block.signature = get_field(content_block, "signature", "") or ""
        self._blocks[index] = block

    def _apply_delta(self, index: int, delta: Any) -> list[TextStreamEvent]:
        block = self._blocks.get(index)
        if block is None:
            block = self._blocks[index] = _Block(type="text", start=self._text_len)
        kind = get_field(delta, "type")
        if kind == "text_delta":
            text = get_field(delta, "text", "")
            block.text += text
            self._text_len += len(text)
            return [TextStreamEvent.text(text)] if text else []
        if kind == "thinking_delta":
            thinking = get_field(delta, "thinking", "")
            block.thinking += thinking
            return [TextStreamEvent.reasoning(thinking)] if thinking else []
        if kind == "signature_delta":
            block.signature += get_field(delta, "signature", "")
        elif kind == "input_json_delta":
            block.json_parts.append(get_field(delta, "partial_json", ""))
        elif kind == "citations_delta":
            block.citations.append(get_field(delta, "citation"))
        return []

    def _stop_block(self, index: int) -> list[TextStreamEvent]:
        block = self._blocks.get(index)
        if block is None:
            return []
        if block.type == "text":
            self._collect_citations(block)
        if block.type == "thinking":
            return self._reasoning_end(block)
        return []

    def _reasoning_end(self, block: _Block) -> list[TextStreamEvent]:
        if block.reasoning_sent or not block.thinking:
            return []
        block.reasoning_sent = True
        return [TextStreamEvent.reasoning_end(block.thinking, block.signature)]

    def _collect_citations(self, block: _Block) -> None:
        # Anthropic cites whole text blocks, so the span is the block's span.
        end = block.start + len(block.text)
        for citation in block.citations:
            if get_field(citation, "type") != "web_search_result_location":
                continue
            self._annotations.append(
                Annotation(
                    start_index=block.start,
                    end_index=end,
                    url=get_field(citation, "url", ""),
                    title=get_field(citation, "title", "") or "",
                    cited_text=get_field(citation, "cited_text", "") or "",
                    index=len(self._annotations) + 1,
                )
            )
        block.citations = []

    def flush(self) -> list[TextStreamEvent]:
        events: list[TextStreamEvent] = []
        for index in sorted(self._blocks):
            block = self._blocks[index]
            if block.type == "thinking":
                events.extend(self._reasoning_end(block))
            elif block.type == "text" and block.citations:
                self._collect_citations(block)
        return events

    def finish(self) -> TurnResult:
        tool_calls: list[ToolCall] = []
        content: list[dict[str, Any]] = []
        text_parts: list[str] = []
        reasoning: ReasoningData | None = None
        # A turn cut off mid tool_use carries truncated input JSON.
        wants_tools = self._stop_reason == _TOOL_USE_STOP

        for index in sorted(self._blocks):
            block = self._blocks[index]
            if block.type == "text":
                text_parts.append(block.text)
                if block.text:
                    content.append({"type": "text", "text": block.text})
            elif block.type == "thinking":
                reasoning = ReasoningData(block.thinking, block.signature)
                content.append(
                    {
                        "type": "thinking",
                        "thinking": block.thinking,
                        "signature": block.signature,
                    }
                )
            elif block.type == "redacted_thinking":
                content.append({"type": "redacted_thinking", "data": block.data})
            elif block.type == "tool_use" and wants_tools:
                call = ToolCall(
                    id=block.id,
                    name=block.name,
                    arguments="".join(block.json_parts) or "{}",
                )
                tool_calls.append(call)
                content.append(
                    {
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.name,
                        "input": call.parsed_arguments(),
                    }
                )

        return TurnResult(
            text="".join(text_parts),
            tool_calls=tool_calls,
            assistant_message=content,
            annotations=list(self._annotations),
            usage=TokenUsage(self._input_tokens, self._output_tokens),
            stop_reason=self._stop_reason,
            reasoning=reasoning,
        )


class AnthropicProvider(BaseProvider):
    """Anthropic Messages API provider."""

    name = "anthropic"
    capabilities = ProviderCapabilities(reasoning=True, native_web_search=True)
    default_input_token_limit = 100000

    def _create_client(self) -> Any:
        try:
            from anthropic import AsyncAnthropic
        except ImportError as e:
            raise APIError(
                "anthropic package not installed",
                hint="pip install anthropic",
            ) from e
        # Stream-open retries are owned by Config.retry.
        return AsyncAnthropic(
            api_key=self.config.api_key,
            base_url=self.config.api_url or None,
            max_retries=0,
        )

    def count_tokens(self, text: str) -> int:
        # No local tokenizer for Claude models.
        return 0

    def translate(
        self, request: CompletionRequest, cfg: LanguageModelConfig
    ) -> AnthropicState:
        system, messages = translate_posts(request.posts, AnthropicEncoder())
        tools = convert_tools(self.request_tools(request, cfg))
        if not cfg.tools_disabled and self.is_native_tool_enabled("web_search"):
            tools.append(dict(_WEB_SEARCH_TOOL))
        if cfg.json_output_format is not None:
            log.debug("JSON output format is not supported by anthropic; ignoring")
        return AnthropicState(system=system, messages=messages, tools=tools)

    def build_params(
        self, state: AnthropicState, cfg: LanguageModelConfig
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": cfg.model,
            "max_tokens": cfg.max_generated_tokens,
            "messages": list(state.messages),
        }
        if state.system:
            params["system"] = [{"type": "text", "text": state.system}]
        if state.tools:
            params["tools"] = state.tools
        if not cfg.reasoning_disabled:
            thinking = thinking_config(
                cfg.max_generated_tokens,
                reasoning_enabled=self.config.reasoning_enabled,
                thinking_budget=self.config.thinking_budget,
            )
            if thinking is not None:
                params["thinking"] = thinking
        return params

    async def open_stream(
        self, state: AnthropicState, cfg: LanguageModelConfig
    ) -> VendorStream:
        client = self._get_client()
        params = self.build_params(state, cfg)
        try:
            stream = await client.messages.create(**params, stream=True)
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.name, phase="open", allow_network_errors=True
            ) from e
        return VendorStream(aiter(stream), stream.close)

    def new_decoder(self, cfg: LanguageModelConfig) -> AnthropicStreamDecoder:
        return AnthropicStreamDecoder()

    def append_tool_round(
        self,
        state: AnthropicState,
        turn: TurnResult,
        results: list[AutoRunResult],
    ) -> None:
        state.messages.append({"role": "assistant", "content": turn.assistant_message})
        state.messages.append(
            {
                "role": "user",
                "content": [
                    _tool_result_block(r.tool_call_id, r.result, r.is_error)
                    for r in results
                ],
            }
        )

    async def list_models(self) -> list[ModelInfo]:
        """Models available to this API key."""
        client = self._get_client()
        try:
            return [
                ModelInfo(id=model.id, display_name=getattr(model, "display_name", ""))
                async for model in client.models.list()
            ]
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.name, phase="list_models", allow_network_errors=True
            ) from e
