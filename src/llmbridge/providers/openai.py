"""OpenAI provider: Chat Completions or Responses API, plain, compatible or Azure."""

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
)
from llmbridge.providers._errors import wrap_provider_error
from llmbridge.providers._utils import get_field, to_strict_schema
from llmbridge.providers.base import BaseProvider, ModelInfo, ProviderCapabilities
from llmbridge.subtitles import Transcript, parse_vtt
from llmbridge.translate import (
    ImageRejection,
    TurnRole,
    image_data_url,
    translate_posts,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from typing import BinaryIO

    from llmbridge.config import Config
    from llmbridge.models import CompletionRequest, File
    from llmbridge.options import LanguageModelConfig
    from llmbridge.tools import AutoRunResult, Tool

log = logging.getLogger(__name__)

OPENAI_MAX_IMAGE_SIZE = 20 * 1024 * 1024
AZURE_API_VERSION = "2025-04-01-preview"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-large"
TRANSCRIPTION_MODEL = "whisper-1"
GENERATED_IMAGE_SIZE = "256x256"

_JSON_FORMAT_NAME = "output_format"
_UNSUPPORTED_IMAGE_TEXT = (
    "User submitted image was not a supported format. Tell the user this."
)
_OVERSIZED_IMAGE_TEXT = "User submitted an image larger than 20MB. Tell the user this."
_INCOMPLETE_MESSAGE = "response incomplete: max tokens reached before completion"
_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

_LARGE_CONTEXT_PREFIXES = (
    "gpt-4o",
    "o1-preview",
    "o1-mini",
    "gpt-4-turbo",
    "gpt-4-0125-preview",
    "gpt-4-1106-preview",
)


def input_token_limit_for_model(model: str) -> int:
    """Context size for well-known model ids; 128000 when unknown."""
    if model.startswith(_LARGE_CONTEXT_PREFIXES):
        return 128000
    if model.startswith("gpt-4"):
        return 8192
    if model == "gpt-3.5-turbo-instruct":
        return 4096
    if model.startswith("gpt-3.5-turbo"):
        return 16385
    return 128000


def _placeholder(rejection: ImageRejection) -> str | None:
    if rejection is ImageRejection.UNSUPPORTED_TYPE:
        return _UNSUPPORTED_IMAGE_TEXT
    if rejection is ImageRejection.TOO_LARGE:
        return _OVERSIZED_IMAGE_TEXT
    # Unreadable attachments are dropped.
    return None


class ChatEncoder:
    """Messages for the Chat Completions API."""

    max_image_size: int | None = OPENAI_MAX_IMAGE_SIZE

    def text(self, role: TurnRole, text: str) -> dict[str, Any]:
        return {"type": "text", "text": text}

    def reasoning(self, text: str, signature: str) -> None:
        return None

    def image(self, role: TurnRole, mime_type: str, data: bytes) -> dict[str, Any]:
        return {
            "type": "image_url",
            "image_url": {"url": image_data_url(mime_type, data), "detail": "auto"},
        }

    def image_placeholder(self, file: File, rejection: ImageRejection) -> str | None:
        return _placeholder(rejection)

    def tool_uses(self, calls: Sequence[ToolCall]) -> list[dict[str, Any]]:
        return [{"type": "tool_call", "call": _chat_tool_call(call)} for call in calls]

    def tool_results(self, calls: Sequence[ToolCall]) -> list[dict[str, Any]]:
        return [
            {"role": "tool", "tool_call_id": call.id, "content": call.result}
            for call in calls
        ]

    def turn(self, role: TurnRole, blocks: list[Any]) -> list[dict[str, Any]]:
        # Tool results arrive already shaped as one message each.
        if all(block.get("role") == "tool" for block in blocks):
            return list(blocks)

        if role == "assistant":
            texts = [b["text"] for b in blocks if b.get("type") == "text"]
            calls = [
                {"type": "function", **b["call"]}
                for b in blocks
                if b.get("type") == "tool_call"
            ]
            message: dict[str, Any] = {
                "role": "assistant",
                "content": "\n".join(texts) if texts else None,
            }
            if calls:
                message["tool_calls"] = calls
            return [message]

        if all(b.get("type") == "text" for b in blocks) and len(blocks) == 1:
            return [{"role": "user", "content": blocks[0]["text"]}]
        return [{"role": "user", "content": blocks}]


def _chat_tool_call(call: ToolCall) -> dict[str, Any]:
    return {
        "id": call.id,
        "function": {"name": call.name, "arguments": call.arguments or "{}"},
    }


class ResponsesEncoder:
    """Input items for the Responses API."""

    max_image_size: int | None = OPENAI_MAX_IMAGE_SIZE

    def text(self, role: TurnRole, text: str) -> dict[str, Any]:
        text_type = "output_text" if role == "assistant" else "input_text"
        return {"type": text_type, "text": text}

    def reasoning(self, text: str, signature: str) -> None:
        return None

    def image(self, role: TurnRole, mime_type: str, data: bytes) -> dict[str, Any]:
        return {
            "type": "input_image",
            "image_url": image_data_url(mime_type, data),
            "detail": "auto",
        }

    def image_placeholder(self, file: File, rejection: ImageRejection) -> str | None:
        return _placeholder(rejection)

    def tool_uses(self, calls: Sequence[ToolCall]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function_call",
                "call_id": call.id,
                "name": call.name,
                "arguments": call.arguments or "{}",
            }
            for call in calls
        ]

    def tool_results(self, calls: Sequence[ToolCall]) -> list[dict[str, Any]]:
        return [
            {"type": "function_call_output", "call_id": call.id, "output": call.result}
            for call in calls
        ]

    def turn(self, role: TurnRole, blocks: list[Any]) -> list[dict[str, Any]]:
        # Function calls and their outputs are top-level items, not content.
        standalone = {"function_call", "function_call_output"}
        content = [b for b in blocks if b.get("type") not in standalone]
        items: list[dict[str, Any]] = []
        if content:
            items.append({"role": role, "content": content})
        items.extend(b for b in blocks if b.get("type") in standalone)
        return items


def convert_chat_tools(tools: Sequence[Tool]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters_schema(),
            },
        }
        for tool in tools
    ]


def convert_responses_tools(tools: Sequence[Tool]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters_schema(),
            "strict": False,
        }
        for tool in tools
    ]


@dataclass
class _ToolSlot:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)


def _collect_tool_calls(slots: dict[int, _ToolSlot]) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for index in sorted(slots):
        slot = slots[index]
        if not slot.name:
            continue
        calls.append(
            ToolCall(id=slot.id, name=slot.name, arguments="".join(slot.arguments) or "{}")
        )
    return calls


class ChatStreamDecoder:
    """Decodes ``chat.completions.create(stream=True)`` chunks for one turn."""

    def __init__(self) -> None:
        self._text: list[str] = []
        self._reasoning: list[str] = []
        self._reasoning_sent = False
        self._slots: dict[int, _ToolSlot] = {}
        self._usage: TokenUsage | None = None
        self._stop_reason = ""

    def feed(self, chunk: Any) -> list[TextStreamEvent]:
        usage = get_field(chunk, "usage")
        if usage is not None:
            prompt = get_field(usage, "prompt_tokens", 0) or 0
            completion = get_field(usage, "completion_tokens", 0) or 0
            if prompt or completion:
                self._usage = TokenUsage(prompt, completion)

        choices = get_field(chunk, "choices") or []
        if not choices:
            return []
        choice = choices[0]
        delta = get_field(choice, "delta")
        events: list[TextStreamEvent] = []

        # Some compatible servers stream chain-of-thought separately.
        reasoning = get_field(delta, "reasoning_content")
        if reasoning:
            self._reasoning.append(reasoning)
            events.append(TextStreamEvent.reasoning(reasoning))

        content = get_field(delta, "content")
        if content:
            events.extend(self._end_reasoning())
            self._text.append(content)
            events.append(TextStreamEvent.text(content))

        for fragment in get_field(delta, "tool_calls") or []:
            slot = self._slots.setdefault(get_field(fragment, "index", 0) or 0, _ToolSlot())
            if get_field(fragment, "id"):
                slot.id += get_field(fragment, "id")
            function = get_field(fragment, "function")
            if get_field(function, "name"):
                slot.name += get_field(function, "name")
            if get_field(function, "arguments"):
                slot.arguments.append(get_field(function, "arguments"))

        finish_reason = get_field(choice, "finish_reason")
        if finish_reason:
            self._stop_reason = finish_reason
            if finish_reason not in ("stop", "tool_calls"):
                log.debug("Chat completion finished with reason %s", finish_reason)
        return events

    def _end_reasoning(self) -> list[TextStreamEvent]:
        if self._reasoning_sent or not self._reasoning:
            return []
        self._reasoning_sent = True
        return [TextStreamEvent.reasoning_end("".join(self._reasoning))]

    def flush(self) -> list[TextStreamEvent]:
        return self._end_reasoning()

    def finish(self) -> TurnResult:
        text = "".join(self._text)
        # Fragments from a turn cut off by "length" are not complete calls.
        tool_calls: list[ToolCall] = []
        if self._stop_reason == "tool_calls":
            tool_calls = _collect_tool_calls(self._slots)
        message: dict[str, Any] = {"role": "assistant", "content": text or None}
        if tool_calls:
            message["tool_calls"] = [
                {"type": "function", **_chat_tool_call(call)} for call in tool_calls
            ]
        return TurnResult(
            text=text,
            tool_calls=tool_calls,
            assistant_message=message,
            usage=self._usage,
            stop_reason=self._stop_reason,
            reasoning=ReasoningData("".join(self._reasoning)) if self._reasoning else None,
        )


class ResponsesStreamDecoder:
    """Decodes ``responses.create(stream=True)`` events for one turn."""

    def __init__(self) -> None:
        self._text: list[str] = []
        self._text_len = 0
        self._reasoning: list[str] = []
        self._reasoning_sent = False
        self._slots: dict[int, _ToolSlot] = {}
        self._current_slot = 0
        self._annotations: list[Annotation] = []
        self._usage: TokenUsage | None = None
        self._stop_reason = ""

    def feed(self, event: Any) -> list[TextStreamEvent]:
        kind = get_field(event, "type")
        if kind == "response.output_text.delta":
            delta = get_field(event, "delta", "")
            if not delta:
                return []
            self._text.append(delta)
            self._text_len += len(delta)
            return [TextStreamEvent.text(delta)]
        if kind == "response.reasoning_summary_text.delta":
            delta = get_field(event, "delta", "")
            if not delta:
                return []
            self._reasoning.append(delta)
            return [TextStreamEvent.reasoning(delta)]
        if kind == "response.content_part.done":
            self._collect_annotations(get_field(event, "part"))
        elif kind == "response.output_item.added":
            self._item_added(event)
        elif kind == "response.function_call_arguments.delta":
            index = self._slot_index(event)
            self._current_slot = index
            delta = get_field(event, "delta", "")
            if delta:
                self._slots.setdefault(index, _ToolSlot()).arguments.append(delta)
        elif kind == "response.function_call_arguments.done":
            slot = self._slots.get(self._slot_index(event))
            arguments = get_field(event, "arguments", "")
            if slot is not None and arguments and not slot.arguments:
                slot.arguments.append(arguments)
        elif kind == "response.output_item.done":
            self._item_done(event)
        elif kind == "response.completed":
            self._stop_reason = "completed"
            self._record_usage(get_field(get_field(event, "response"), "usage"))
        elif kind == "response.incomplete":
            self._record_usage(get_field(get_field(event, "response"), "usage"))
            raise APIError(_INCOMPLETE_MESSAGE, provider="openai", phase="stream")
        elif kind == "error":
            message = get_field(event, "message") or "Unknown error from Responses API"
            raise APIError(message, provider="openai", phase="stream")
        return []

    def _slot_index(self, event: Any) -> int:
        """The event's own ``output_index``, else the last function call seen."""
        index = get_field(event, "output_index")
        return self._current_slot if index is None else index

    def _item_added(self, event: Any) -> None:
        item = get_field(event, "item")
        if get_field(item, "type") != "function_call":
            return
        self._current_slot = self._slot_index(event)
        slot = self._slots.setdefault(self._current_slot, _ToolSlot())
        slot.id = get_field(item, "call_id") or get_field(item, "id") or slot.id
        slot.name = get_field(item, "name") or slot.name

    def _item_done(self, event: Any) -> None:
        item = get_field(event, "item")
        if get_field(item, "type") != "function_call":
            return
        slot = self._slots.get(self._slot_index(event))
        if slot is None:
            return
        if not slot.name and get_field(item, "name"):
            slot.name = get_field(item, "name")
        if not slot.id and get_field(item, "call_id"):
            slot.id = get_field(item, "call_id")

    def _collect_annotations(self, part: Any) -> None:
        if get_field(part, "type") != "output_text":
            return
        # Vendor offsets are relative to this part, which ended the text so far.
        part_start = self._text_len - len(get_field(part, "text", "") or "")
        for annotation in get_field(part, "annotations") or []:
            if get_field(annotation, "type") != "url_citation":
                continue
            self._annotations.append(
                Annotation(
                    start_index=part_start + (get_field(annotation, "start_index", 0) or 0),
                    end_index=part_start + (get_field(annotation, "end_index", 0) or 0),
                    url=get_field(annotation, "url", ""),
                    title=get_field(annotation, "title", "") or "",
                    index=len(self._annotations) + 1,
                )
            )

    def _record_usage(self, usage: Any) -> None:
        input_tokens = get_field(usage, "input_tokens", 0) or 0
        output_tokens = get_field(usage, "output_tokens", 0) or 0
        if input_tokens or output_tokens:
            self._usage = TokenUsage(input_tokens, output_tokens)

    def flush(self) -> list[TextStreamEvent]:
        if self._reasoning_sent or not self._reasoning:
            return []
        self._reasoning_sent = True
        return [TextStreamEvent.reasoning_end("".join(self._reasoning))]

    def finish(self) -> TurnResult:
        text = "".join(self._text)
        tool_calls = _collect_tool_calls(self._slots)
        items: list[dict[str, Any]] = []
        if text:
            items.append(
                {"role": "assistant", "content": [{"type": "output_text", "text": text}]}
            )
        items.extend(ResponsesEncoder().tool_uses(tool_calls))
        return TurnResult(
            text=text,
            tool_calls=tool_calls,
            assistant_message=items,
            annotations=list(self._annotations),
            usage=self._usage,
            stop_reason=self._stop_reason,
            reasoning=ReasoningData("".join(self._reasoning)) if self._reasoning else None,
        )


@dataclass
class OpenAIState:
    """Request state carried across the turns of one completion."""

    system: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]]
    user: str | None = None


class OpenAIProvider(BaseProvider):
    """OpenAI, OpenAI-compatible and Azure OpenAI provider."""

    name = "openai"
    capabilities = ProviderCapabilities(
        reasoning=True, json_output=True, native_web_search=True, token_counting=True
    )

    def __init__(self, config: Config) -> None:
        super().__init__(config)
        self.name = config.provider

    def _create_client(self) -> Any:
        try:
            from openai import AsyncAzureOpenAI, AsyncOpenAI
        except ImportError as e:
            raise APIError(
                "openai package not installed",
                hint="pip install openai",
            ) from e
        config = self.config
        # Stream-open retries are owned by Config.retry.
        if config.provider == "azure":
            return AsyncAzureOpenAI(
                api_key=config.api_key,
                azure_endpoint=config.api_url.rstrip("/"),
                api_version=AZURE_API_VERSION,
                max_retries=0,
            )
        return AsyncOpenAI(
            api_key=config.api_key,
            organization=config.org_id or None,
            base_url=config.api_url.rstrip("/") or None,
            max_retries=0,
        )

    def input_token_limit(self) -> int:
        return self.config.input_token_limit or input_token_limit_for_model(
            self.config.model
        )

    @property
    def use_responses_api(self) -> bool:
        return self.config.use_responses_api

    def translate(self, request: CompletionRequest, cfg: LanguageModelConfig) -> OpenAIState:
        tools = self.request_tools(request, cfg)
        user = None
        if self.config.send_user_id and request.context.requesting_user_id:
            user = request.context.requesting_user_id

        if self.use_responses_api:
            system, items = translate_posts(request.posts, ResponsesEncoder())
            converted = convert_responses_tools(tools)
            if not cfg.tools_disabled and self.is_native_tool_enabled("web_search"):
                converted.append({"type": "web_search_preview"})
            return OpenAIState(system=system, messages=items, tools=converted, user=user)

        system, messages = translate_posts(request.posts, ChatEncoder())
        if system:
            messages.insert(0, {"role": "system", "content": system})
        return OpenAIState(
            system=system, messages=messages, tools=convert_chat_tools(tools), user=user
        )

    def build_chat_params(
        self, state: OpenAIState, cfg: LanguageModelConfig
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"model": cfg.model, "messages": list(state.messages)}
        if cfg.max_generated_tokens > 0:
            key = "max_tokens" if self.config.use_max_tokens else "max_completion_tokens"
            params[key] = cfg.max_generated_tokens
        if state.tools:
            params["tools"] = state.tools
        if cfg.json_output_format is not None:
            params["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": _JSON_FORMAT_NAME,
                    "schema": to_strict_schema(cfg.json_output_format),
                    "strict": True,
                },
            }
        if not self.config.disable_stream_options:
            params["stream_options"] = {"include_usage": True}
        if state.user:
            params["user"] = state.user
        return params

    def build_responses_params(
        self, state: OpenAIState, cfg: LanguageModelConfig
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"model": cfg.model, "input": list(state.messages)}
        if state.system:
            params["instructions"] = state.system
        if cfg.max_generated_tokens > 0:
            params["max_output_tokens"] = cfg.max_generated_tokens
        if state.tools:
            params["tools"] = state.tools
        if self.config.reasoning_enabled and not cfg.reasoning_disabled:
            params["reasoning"] = {
                "effort": self.config.reasoning_effort,
                "summary": "auto",
            }
        if cfg.json_output_format is not None:
            params["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": _JSON_FORMAT_NAME,
                    "schema": to_strict_schema(cfg.json_output_format),
                    "strict": True,
                }
            }
        if state.user:
            params["safety_identifier"] = state.user
        return params

    async def open_stream(
        self, state: OpenAIState, cfg: LanguageModelConfig
    ) -> VendorStream:
        client = self._get_client()
        try:
            if self.use_responses_api:
                stream = await client.responses.create(
                    **self.build_responses_params(state, cfg), stream=True
                )
            else:
                stream = await client.chat.completions.create(
                    **self.build_chat_params(state, cfg), stream=True
                )
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.name, phase="open", allow_network_errors=True
            ) from e
        return VendorStream(aiter(stream), stream.close)

    def new_decoder(
        self, cfg: LanguageModelConfig
    ) -> ChatStreamDecoder | ResponsesStreamDecoder:
        if self.use_responses_api:
            return ResponsesStreamDecoder()
        return ChatStreamDecoder()

    def append_tool_round(
        self,
        state: OpenAIState,
        turn: TurnResult,
        results: list[AutoRunResult],
    ) -> None:
        if self.use_responses_api:
            state.messages.extend(turn.assistant_message)
            state.messages.extend(
                {
                    "type": "function_call_output",
                    "call_id": r.tool_call_id,
                    "output": r.result,
                }
                for r in results
            )
            return
        state.messages.append(turn.assistant_message)
        state.messages.extend(
            {"role": "tool", "tool_call_id": r.tool_call_id, "content": r.result}
            for r in results
        )

    async def create_embedding(self, text: str) -> list[float]:
        """Embed one text with the configured embedding model."""
        embeddings = await self.batch_create_embeddings([text])
        if not embeddings:
            raise APIError("no embedding data returned", provider=self.name)
        return embeddings[0]

    async def batch_create_embeddings(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in one request, preserving order."""
        client = self._get_client()
        params: dict[str, Any] = {
            "input": texts,
            "model": self.config.embedding_model or DEFAULT_EMBEDDING_MODEL,
        }
        if self.config.embedding_dimensions > 0:
            params["dimensions"] = self.config.embedding_dimensions
        try:
            response = await client.embeddings.create(**params)
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.name, phase="embeddings", allow_network_errors=True
            ) from e
        data = sorted(response.data, key=lambda d: getattr(d, "index", 0))
        return [list(d.embedding) for d in data]

    async def list_models(self) -> list[ModelInfo]:
        """Models available to this API key."""
        client = self._get_client()
        try:
            return [ModelInfo(id=model.id) async for model in client.models.list()]
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.name, phase="list_models", allow_network_errors=True
            ) from e

    async def transcribe(
        self, audio: BinaryIO | bytes, *, filename: str = "audio.mp3"
    ) -> Transcript:
        """Transcribe speech with Whisper into timed cues."""
        client = self._get_client()
        upload = (filename, audio) if isinstance(audio, bytes) else audio
        try:
            response = await client.audio.transcriptions.create(
                model=TRANSCRIPTION_MODEL, file=upload, response_format="vtt"
            )
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.name, phase="transcribe", allow_network_errors=True
            ) from e
        # Text formats come back as a bare string from the SDK.
        document = response if isinstance(response, str) else get_field(response, "text")
        try:
            return parse_vtt(document or "")
        except ValueError as e:
            raise APIError(
                f"unable to parse whisper transcription: {e}",
                provider=self.name,
                phase="transcribe",
            ) from e

    async def generate_image(self, prompt: str) -> bytes:
        """Generate one small image for *prompt*; returns the PNG bytes."""
        client = self._get_client()
        try:
            response = await client.images.generate(
                prompt=prompt,
                size=GENERATED_IMAGE_SIZE,
                response_format="b64_json",
                n=1,
            )
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.name, phase="generate_image", allow_network_errors=True
            ) from e

        def failure(message: str) -> APIError:
            return APIError(message, provider=self.name, phase="generate_image")

        data = get_field(response, "data") or []
        if not data:
            raise failure("no image data returned")
        encoded = get_field(data[0], "b64_json")
        if not encoded:
            raise failure("no base64 image data")
        try:
            image = base64.b64decode(encoded, validate=True)
        except ValueError as e:
            raise failure(f"invalid base64 image data: {e}") from e
        if not image.startswith(_PNG_SIGNATURE):
            raise failure("generated image is not a PNG")
        return image
