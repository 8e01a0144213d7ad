"""AWS Bedrock Converse API provider (boto3 ``converse_stream``)."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Any

from llmbridge.engine import TurnResult, VendorStream
from llmbridge.errors import APIError, ConfigurationError, RateLimitError
from llmbridge.models import (
    ReasoningData,
    TextStreamEvent,
    TokenUsage,
    ToolCall,
    ToolCallStatus,
)
from llmbridge.providers._errors import wrap_provider_error
from llmbridge.providers.anthropic import thinking_config
from llmbridge.providers.base import BaseProvider, ModelInfo, ProviderCapabilities
from llmbridge.translate import ImageRejection, TurnRole, translate_posts

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator, Sequence

    from llmbridge.models import CompletionRequest, File
    from llmbridge.options import LanguageModelConfig
    from llmbridge.tools import AutoRunResult, Tool

log = logging.getLogger(__name__)

_INT32_MAX = 2**31 - 1
_TOOL_USE_STOP = "tool_use"

# ConverseStream exception members, keyed by whether a retry may succeed.
_STREAM_EXCEPTIONS: dict[str, bool] = {
    "internalServerException": True,
    "modelStreamErrorException": False,
    "validationException": False,
    "throttlingException": True,
    "serviceUnavailableException": True,
}


class BedrockEncoder:
    """Converse content blocks."""

    max_image_size: int | None = None

    def text(self, role: TurnRole, text: str) -> dict[str, Any]:
        return {"text": text}

    def reasoning(self, text: str, signature: str) -> dict[str, Any]:
        return _reasoning_block(text, signature)

    def image(self, role: TurnRole, mime_type: str, data: bytes) -> dict[str, Any]:
        return {
            "image": {
                "format": mime_type.split("/", 1)[1],
                "source": {"bytes": data},
            }
        }

    def image_placeholder(self, file: File, rejection: ImageRejection) -> str:
        if rejection is ImageRejection.UNSUPPORTED_TYPE:
            return f"[Unsupported image type: {file.mime_type}]"
        return "[Error reading image data]"

    def tool_uses(self, calls: Sequence[ToolCall]) -> list[dict[str, Any]]:
        return [_tool_use_block(call) for call in calls]

    def tool_results(self, calls: Sequence[ToolCall]) -> list[dict[str, Any]]:
        return [
            _tool_result_block(
                call.id, call.result, call.status != ToolCallStatus.SUCCESS
            )
            for call in calls
        ]

    def turn(self, role: TurnRole, blocks: list[Any]) -> list[dict[str, Any]]:
        return [{"role": role, "content": blocks}]


def _reasoning_block(text: str, signature: str) -> dict[str, Any]:
    reasoning_text: dict[str, Any] = {"text": text}
    if signature:
        reasoning_text["signature"] = signature
    return {"reasoningContent": {"reasoningText": reasoning_text}}


def _tool_use_block(call: ToolCall) -> dict[str, Any]:
    return {
        "toolUse": {
            "toolUseId": call.id,
            "name": call.name,
            "input": call.parsed_arguments(),
        }
    }


def _tool_result_block(tool_use_id: str, content: str, is_error: bool) -> dict[str, Any]:
    return {
        "toolResult": {
            "toolUseId": tool_use_id,
            "content": [{"text": content}],
            "status": "error" if is_error else "success",
        }
    }


def convert_tools(tools: Sequence[Tool]) -> list[dict[str, Any]]:
    return [
        {
            "toolSpec": {
                "name": tool.name,
                "description": tool.description,
                "inputSchema": {"json": tool.parameters_schema()},
            }
        }
        for tool in tools
    ]


@dataclass
class BedrockState:
    """Request state carried across the turns of one completion."""

    system: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]]


@dataclass
class _ToolUse:
    id: str
    name: str
    input_parts: list[str] = field(default_factory=list)

    def arguments(self) -> str:
        return "".join(self.input_parts) or "{}"


class BedrockStreamDecoder:
    """Decodes ``converse_stream`` event dicts for one turn."""

    def __init__(self) -> None:
        self._text: list[str] = []
        self._tools: dict[int, _ToolUse] = {}
        self._reasoning: dict[int, ReasoningData] = {}
        self._reasoning_sent: set[int] = set()
        self._stop_reason = ""
        self._usage: TokenUsage | None = None

    def feed(self, event: dict[str, Any]) -> list[TextStreamEvent]:
        if "contentBlockStart" in event:
            body = event["contentBlockStart"]
            tool_use = (body.get("start") or {}).get("toolUse")
            if tool_use is not None:
                self._tools[body.get("contentBlockIndex", 0)] = _ToolUse(
                    id=tool_use.get("toolUseId", ""),
                    name=tool_use.get("name", ""),
                )
        elif "contentBlockDelta" in event:
            body = event["contentBlockDelta"]
            return self._apply_delta(body.get("contentBlockIndex", 0), body.get("delta") or {})
        elif "contentBlockStop" in event:
            return self._reasoning_end(event["contentBlockStop"].get("contentBlockIndex", 0))
        elif "messageStop" in event:
            stop_reason = event["messageStop"].get("stopReason")
            if stop_reason:
                self._stop_reason = stop_reason
        elif "metadata" in event:
            usage = event["metadata"].get("usage")
            if usage:
                self._usage = TokenUsage(
                    usage.get("inputTokens", 0), usage.get("outputTokens", 0)
                )
        else:
            for key, retryable in _STREAM_EXCEPTIONS.items():
                if key in event:
                    self._raise_stream_exception(key, event[key], retryable)
        return []

    def _apply_delta(self, index: int, delta: dict[str, Any]) -> list[TextStreamEvent]:
        if "text" in delta:
            text = delta["text"]
            self._text.append(text)
            return [TextStreamEvent.text(text)] if text else []
        if "toolUse" in delta:
            tool = self._tools.get(index)
            fragment = delta["toolUse"].get("input")
            if tool is not None and fragment:
                tool.input_parts.append(fragment)
            return []
        if "reasoningContent" in delta:
            content = delta["reasoningContent"]
            current = self._reasoning.get(index, ReasoningData("", ""))
            thinking = content.get("text", "")
            self._reasoning[index] = ReasoningData(
                current.text + thinking,
                current.signature + content.get("signature", ""),
            )
            return [TextStreamEvent.reasoning(thinking)] if thinking else []
        return []

    def _reasoning_end(self, index: int) -> list[TextStreamEvent]:
        reasoning = self._reasoning.get(index)
        if reasoning is None or index in self._reasoning_sent or not reasoning.text:
            return []
        self._reasoning_sent.add(index)
        return [TextStreamEvent.reasoning_end(reasoning.text, reasoning.signature)]

    def _raise_stream_exception(self, key: str, body: Any, retryable: bool) -> None:
        message = body.get("message", "") if isinstance(body, dict) else str(body)
        err_cls = RateLimitError if key == "throttlingException" else APIError
        raise err_cls(
            f"bedrock stream error ({key}): {message}",
            retryable=retryable,
            status_code=429 if key == "throttlingException" else None,
            provider="bedrock",
            phase="stream",
        )

    def flush(self) -> list[TextStreamEvent]:
        events: list[TextStreamEvent] = []
        for index in sorted(self._reasoning):
            events.extend(self._reasoning_end(index))
        return events

    def finish(self) -> TurnResult:
        text = "".join(self._text)
        reasoning = self._reasoning[min(self._reasoning)] if self._reasoning else None

        tool_calls: list[ToolCall] = []
        if self._stop_reason == _TOOL_USE_STOP:
            tool_calls = [
                ToolCall(id=tool.id, name=tool.name, arguments=tool.arguments())
                for _, tool in sorted(self._tools.items())
            ]

        content: list[dict[str, Any]] = []
        if reasoning is not None:
            content.append(_reasoning_block(reasoning.text, reasoning.signature))
        if text:
            content.append({"text": text})
        content.extend(_tool_use_block(call) for call in tool_calls)

        return TurnResult(
            text=text,
            tool_calls=tool_calls,
            assistant_message=content,
            usage=self._usage,
            stop_reason=self._stop_reason,
            reasoning=reasoning,
        )


async def _iterate_events(events: Iterator[dict[str, Any]]) -> AsyncIterator[dict[str, Any]]:
    # botocore's event stream blocks on socket reads.
    while True:
        event = await asyncio.to_thread(next, events, None)
        if event is None:
            return
        yield event


class BedrockProvider(BaseProvider):
    """AWS Bedrock provider using the Converse streaming API."""

    name = "bedrock"
    capabilities = ProviderCapabilities(reasoning=True)
    default_input_token_limit = 200000

    def _session(self) -> Any:
        try:
            import boto3
        except ImportError as e:
            raise APIError(
                "boto3 package not installed",
                hint="pip install boto3",
            ) from e
        if self.config.aws_access_key_id:
            return boto3.session.Session(
                aws_access_key_id=self.config.aws_access_key_id,
                aws_secret_access_key=self.config.aws_secret_access_key,
                region_name=self.config.region,
            )
        return boto3.session.Session(region_name=self.config.region)

    def _make_client(self, service: str) -> Any:
        """Build a boto3 client honoring the credential priority.

        IAM keys win, then a Bedrock API key sent as a bearer token, then the
        default AWS credential chain.
        """
        session = self._session()
        from botocore import UNSIGNED
        from botocore.config import Config as BotoConfig

        use_bearer = bool(self.config.api_key) and not self.config.aws_access_key_id
        # Stream-open retries are owned by Config.retry.
        boto_config = BotoConfig(
            retries={"total_max_attempts": 1},
            signature_version=UNSIGNED if use_bearer else None,
        )
        client = session.client(
            service,
            region_name=self.config.region,
            endpoint_url=self.config.api_url or None,
            config=boto_config,
        )
        if use_bearer:
            token = self.config.api_key

            def add_bearer(request: Any, **_: Any) -> None:
                request.headers["Authorization"] = f"Bearer {token}"

            client.meta.events.register(f"before-send.{service}.*", add_bearer)
        return client

    def _create_client(self) -> Any:
        return self._make_client("bedrock-runtime")

    def translate(
        self, request: CompletionRequest, cfg: LanguageModelConfig
    ) -> BedrockState:
        system, messages = translate_posts(request.posts, BedrockEncoder())
        tools = convert_tools(self.request_tools(request, cfg))
        if cfg.json_output_format is not None:
            log.debug("JSON output format is not supported by bedrock; ignoring")
        return BedrockState(system=system, messages=messages, tools=tools)

    def build_params(
        self, state: BedrockState, cfg: LanguageModelConfig
    ) -> dict[str, Any]:
        if cfg.max_generated_tokens > _INT32_MAX:
            raise ConfigurationError(
                f"max token value ({cfg.max_generated_tokens}) exceeds int32 maximum",
                hint="Lower max_generated_tokens or Config.output_token_limit.",
            )
        params: dict[str, Any] = {
            "modelId": cfg.model,
            "messages": list(state.messages),
            "inferenceConfig": {"maxTokens": cfg.max_generated_tokens},
        }
        if state.system:
            params["system"] = [{"text": state.system}]
        if state.tools:
            params["toolConfig"] = {"tools": state.tools}
        # Thinking is opt-in here: not every Bedrock model accepts it.
        if self.config.thinking_budget and not cfg.reasoning_disabled:
            thinking = thinking_config(
                cfg.max_generated_tokens,
                reasoning_enabled=self.config.reasoning_enabled,
                thinking_budget=self.config.thinking_budget,
            )
            if thinking is not None:
                params["additionalModelRequestFields"] = {"thinking": thinking}
        return params

    async def open_stream(
        self, state: BedrockState, cfg: LanguageModelConfig
    ) -> VendorStream:
        params = self.build_params(state, cfg)
        client = self._get_client()
        try:
            response = await asyncio.to_thread(client.converse_stream, **params)
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.name, phase="open", allow_network_errors=True
            ) from e
        event_stream = response["stream"]

        async def close() -> None:
            event_stream.close()

        return VendorStream(_iterate_events(iter(event_stream)), close)

    def new_decoder(self, cfg: LanguageModelConfig) -> BedrockStreamDecoder:
        return BedrockStreamDecoder()

    def append_tool_round(
        self,
        state: BedrockState,
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
        """Foundation models offered in the configured region."""
        try:
            client = self._make_client("bedrock")
            response = await asyncio.to_thread(client.list_foundation_models)
        except APIError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.name, phase="list_models", allow_network_errors=True
            ) from e
        return [
            ModelInfo(id=summary["modelId"], display_name=summary.get("modelName", ""))
            for summary in response.get("modelSummaries", [])
        ]
