"""OpenAI provider characterization tests (Chat Completions and Responses).

Fake clients capture the exact request shapes; stream chunks are plain
SimpleNamespace/dict stand-ins for the SDK's event models.
"""

from __future__ import annotations

import io
from types import SimpleNamespace
from typing import Any

from pydantic import BaseModel
import pytest

from llmbridge.config import Config
from llmbridge.errors import APIError
from llmbridge.models import (
    CompletionRequest,
    Context,
    EventType,
    File,
    Post,
    PostRole,
    ToolCall,
    ToolCallStatus,
)
from llmbridge.options import (
    LanguageModelConfig,
    apply_options,
    with_auto_run_tools,
    with_json_output,
)
from llmbridge.providers.openai import (
    OPENAI_MAX_IMAGE_SIZE,
    ChatStreamDecoder,
    OpenAIProvider,
    ResponsesStreamDecoder,
    input_token_limit_for_model,
)
from llmbridge.tools import Tool, ToolStore
from tests.conftest import OPENAI_MODEL
from tests.helpers import FakeAsyncStream, collect

pytestmark = pytest.mark.contract


class Verdict(BaseModel):
    label: str


def _provider(**overrides: Any) -> OpenAIProvider:
    overrides.setdefault("api_key", "k")
    return OpenAIProvider(Config(provider="openai", model=OPENAI_MODEL, **overrides))


def _cfg(*options: Any) -> LanguageModelConfig:
    return apply_options(
        LanguageModelConfig(model=OPENAI_MODEL, max_generated_tokens=1000), options
    )


def _chunk(
    content: str | None = None,
    *,
    tool_calls: list[Any] | None = None,
    finish_reason: str | None = None,
    reasoning_content: str | None = None,
    usage: Any = None,
) -> SimpleNamespace:
    delta = SimpleNamespace(
        content=content, tool_calls=tool_calls, reasoning_content=reasoning_content
    )
    choices = [SimpleNamespace(delta=delta, finish_reason=finish_reason)]
    return SimpleNamespace(choices=choices, usage=usage)


def _fragment(index: int, *, id: str | None = None, name: str | None = None, arguments: str | None = None):
    return SimpleNamespace(
        index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments)
    )


def _weather_store() -> ToolStore:
    store = ToolStore()
    store.add_tools([Tool("lookup", "Weather", lambda c, a: f"sunny in {a()['city']}")])
    return store


# =============================================================================
# Model limits
# =============================================================================


@pytest.mark.parametrize(
    ("model", "expected"),
    [
        ("gpt-4o-mini", 128000),
        ("gpt-4-turbo-2024-04-09", 128000),
        ("gpt-4-0613", 8192),
        ("gpt-3.5-turbo-instruct", 4096),
        ("gpt-3.5-turbo-0125", 16385),
        ("o3-mini", 128000),
    ],
)
def test_input_token_limit_for_model(model: str, expected: int) -> None:
    assert input_token_limit_for_model(model) == expected


def test_configured_input_limit_wins() -> None:
    assert _provider(input_token_limit=4000).input_token_limit() == 4000


def test_blended_token_estimate() -> None:
    # 11 chars / 4 = 2.75; 2 words / 0.75 = 2.67 -> int(2.71)
    assert _provider().count_tokens("hello world") == 2


# =============================================================================
# Chat Completions requests
# =============================================================================


def test_chat_translation_puts_system_first_and_splits_tool_results() -> None:
    provider = _provider()
    call = ToolCall(
        id="call_1",
        name="lookup",
        arguments='{"city": "Rome"}',
        result="hot",
        status=ToolCallStatus.SUCCESS,
    )
    request = CompletionRequest(
        posts=(
            Post(PostRole.SYSTEM, "Be brief."),
            Post(PostRole.USER, "Weather?"),
            Post(PostRole.BOT, "Checking.", tool_use=(call,)),
        )
    )

    state = provider.translate(request, _cfg())

    assert state.messages == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Weather?"},
        {
            "role": "assistant",
            "content": "Checking.",
            "tool_calls": [
                {
                    "type": "function",
                    "id": "call_1",
                    "function": {"name": "lookup", "arguments": '{"city": "Rome"}'},
                }
            ],
        },
        {"role": "tool", "tool_call_id": "call_1", "content": "hot"},
    ]


def test_chat_images_become_data_urls_and_oversized_ones_placeholders() -> None:
    provider = _provider()
    request = CompletionRequest(
        posts=(
            Post(
                PostRole.USER,
                "look",
                files=(
                    File("image/jpeg", 2, io.BytesIO(b"ok")),
                    File("image/png", OPENAI_MAX_IMAGE_SIZE + 1, io.BytesIO(b"")),
                    File("image/bmp", 1, io.BytesIO(b"x")),
                ),
            ),
        )
    )

    (message,) = provider.translate(request, _cfg()).messages

    assert message["content"] == [
        {"type": "text", "text": "look"},
        {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,b2s=", "detail": "auto"}},
        {"type": "text", "text": "User submitted an image larger than 20MB. Tell the user this."},
        {"type": "text", "text": "User submitted image was not a supported format. Tell the user this."},
    ]


def test_chat_params_defaults() -> None:
    provider = _provider()
    state = provider.translate(CompletionRequest(posts=(Post(PostRole.USER, "hi"),)), _cfg())

    params = provider.build_chat_params(state, _cfg())

    assert params == {
        "model": OPENAI_MODEL,
        "messages": [{"role": "user", "content": "hi"}],
        "max_completion_tokens": 1000,
        "stream_options": {"include_usage": True},
    }


def test_chat_params_compat_switches_and_user_id() -> None:
    provider = _provider(use_max_tokens=True, disable_stream_options=True, send_user_id=True)
    request = CompletionRequest(
        posts=(Post(PostRole.USER, "hi"),),
        context=Context(tools=_weather_store(), requesting_user_id="u-42"),
    )

    params = provider.build_chat_params(provider.translate(request, _cfg()), _cfg())

    assert params["max_tokens"] == 1000
    assert "max_completion_tokens" not in params
    assert "stream_options" not in params
    assert params["user"] == "u-42"
    assert params["tools"][0]["function"]["name"] == "lookup"


def test_chat_json_output_is_strict_schema() -> None:
    provider = _provider()
    cfg = _cfg(with_json_output(Verdict))
    params = provider.build_chat_params(
        provider.translate(CompletionRequest(posts=(Post(PostRole.USER, "hi"),)), cfg), cfg
    )

    fmt = params["response_format"]
    assert fmt["type"] == "json_schema"
    assert fmt["json_schema"]["strict"] is True
    assert fmt["json_schema"]["schema"]["additionalProperties"] is False
    assert fmt["json_schema"]["schema"]["required"] == ["label"]


# =============================================================================
# Chat Completions decoding
# =============================================================================


def test_chat_decoder_assembles_tool_call_fragments_by_index() -> None:
    decoder = ChatStreamDecoder()
    chunks = [
        _chunk(tool_calls=[_fragment(1, id="call_b", name="second", arguments='{"x"')]),
        _chunk(tool_calls=[_fragment(0, id="call_a", name="first")]),
        _chunk(tool_calls=[_fragment(1, arguments=": 1}")]),
        _chunk(finish_reason="tool_calls"),
        SimpleNamespace(choices=[], usage=SimpleNamespace(prompt_tokens=12, completion_tokens=5)),
    ]

    events = [e for c in chunks for e in decoder.feed(c)]
    turn = decoder.finish()

    assert events == []
    assert [(c.id, c.name, c.arguments) for c in turn.tool_calls] == [
        ("call_a", "first", "{}"),
        ("call_b", "second", '{"x": 1}'),
    ]
    assert turn.stop_reason == "tool_calls"
    assert (turn.usage.input_tokens, turn.usage.output_tokens) == (12, 5)
    assert turn.assistant_message["content"] is None
    assert len(turn.assistant_message["tool_calls"]) == 2


def test_chat_decoder_reasoning_content_closes_before_text() -> None:
    decoder = ChatStreamDecoder()
    events = []
    for chunk in [
        _chunk(reasoning_content="thinking "),
        _chunk(reasoning_content="hard"),
        _chunk("Answer"),
        _chunk(finish_reason="stop"),
    ]:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.flush())

    assert [e.type for e in events] == [
        EventType.REASONING,
        EventType.REASONING,
        EventType.REASONING_END,
        EventType.TEXT,
    ]
    assert events[2].value.text == "thinking hard"


def test_chat_decoder_length_finish_is_not_an_error() -> None:
    decoder = ChatStreamDecoder()
    decoder.feed(_chunk("trunc", finish_reason="length"))
    assert decoder.finish().stop_reason == "length"


def test_chat_decoder_drops_tool_calls_cut_off_by_length() -> None:
    decoder = ChatStreamDecoder()
    for chunk in [
        _chunk(tool_calls=[_fragment(0, id="call_1", name="lookup", arguments='{"city": "Pa')]),
        _chunk(finish_reason="length"),
    ]:
        decoder.feed(chunk)

    turn = decoder.finish()

    assert turn.tool_calls == []
    assert "tool_calls" not in turn.assistant_message


# =============================================================================
# Responses API
# =============================================================================


def test_responses_params() -> None:
    provider = _provider(
        use_responses_api=True,
        reasoning_effort="high",
        send_user_id=True,
        enabled_native_tools=("web_search",),
    )
    request = CompletionRequest(
        posts=(Post(PostRole.SYSTEM, "Sys"), Post(PostRole.USER, "hi")),
        context=Context(tools=_weather_store(), requesting_user_id="u-1"),
    )

    params = provider.build_responses_params(provider.translate(request, _cfg()), _cfg())

    assert params["instructions"] == "Sys"
    assert params["input"] == [
        {"role": "user", "content": [{"type": "input_text", "text": "hi"}]}
    ]
    assert params["max_output_tokens"] == 1000
    assert params["reasoning"] == {"effort": "high", "summary": "auto"}
    assert params["safety_identifier"] == "u-1"
    assert params["tools"] == [
        {
            "type": "function",
            "name": "lookup",
            "description": "Weather",
            "parameters": {"type": "object", "properties": {}},
            "strict": False,
        },
        {"type": "web_search_preview"},
    ]


def test_responses_history_uses_function_call_items() -> None:
    provider = _provider(use_responses_api=True)
    call = ToolCall(id="fc_1", name="lookup", arguments="{}", result="ok", status=ToolCallStatus.SUCCESS)
    request = CompletionRequest(
        posts=(Post(PostRole.USER, "q"), Post(PostRole.BOT, "a", tool_use=(call,)))
    )

    items = provider.translate(request, _cfg()).messages

    assert items == [
        {"role": "user", "content": [{"type": "input_text", "text": "q"}]},
        {"role": "assistant", "content": [{"type": "output_text", "text": "a"}]},
        {"type": "function_call", "call_id": "fc_1", "name": "lookup", "arguments": "{}"},
        {"type": "function_call_output", "call_id": "fc_1", "output": "ok"},
    ]


def test_responses_decoder_text_reasoning_citations_and_usage() -> None:
    decoder = ResponsesStreamDecoder()
    raw = [
        {"type": "response.reasoning_summary_text.delta", "delta": "plan"},
        {"type": "response.output_text.delta", "delta": "Hello "},
        {"type": "response.output_text.delta", "delta": "world"},
        {
            "type": "response.content_part.done",
            "part": {
                "type": "output_text",
                "text": "Hello world",
                "annotations": [
                    {"type": "url_citation", "start_index": 6, "end_index": 11, "url": "https://w.example", "title": "W"}
                ],
            },
        },
        {"type": "response.completed", "response": {"usage": {"input_tokens": 8, "output_tokens": 3}}},
    ]

    events = [e for r in raw for e in decoder.feed(r)] + decoder.flush()
    turn = decoder.finish()

    assert [e.type for e in events] == [
        EventType.REASONING,
        EventType.TEXT,
        EventType.TEXT,
        EventType.REASONING_END,
    ]
    (annotation,) = turn.annotations
    assert (annotation.start_index, annotation.end_index, annotation.index) == (6, 11, 1)
    assert annotation.title == "W"
    assert (turn.usage.input_tokens, turn.usage.output_tokens) == (8, 3)


def test_responses_decoder_function_call_events() -> None:
    decoder = ResponsesStreamDecoder()
    for event in [
        {"type": "response.output_item.added", "output_index": 1, "item": {"type": "function_call", "call_id": "fc_9", "name": "lookup"}},
        {"type": "response.function_call_arguments.delta", "output_index": 1, "delta": '{"city":'},
        {"type": "response.function_call_arguments.delta", "output_index": 1, "delta": '"Lima"}'},
        {"type": "response.function_call_arguments.done", "arguments": '{"city":"Lima"}'},
        {"type": "response.output_item.done", "item": {"type": "function_call", "call_id": "fc_9", "name": "lookup"}},
    ]:
        decoder.feed(event)

    turn = decoder.finish()

    assert [(c.id, c.name, c.arguments) for c in turn.tool_calls] == [
        ("fc_9", "lookup", '{"city":"Lima"}')
    ]
    assert turn.assistant_message == [
        {"type": "function_call", "call_id": "fc_9", "name": "lookup", "arguments": '{"city":"Lima"}'}
    ]


def test_responses_decoder_keeps_interleaved_calls_apart_including_index_zero() -> None:
    decoder = ResponsesStreamDecoder()
    for event in [
        {"type": "response.output_item.added", "output_index": 0, "item": {"type": "function_call", "call_id": "fc_a", "name": "first"}},
        {"type": "response.output_item.added", "output_index": 1, "item": {"type": "function_call", "call_id": "fc_b", "name": "second"}},
        {"type": "response.function_call_arguments.delta", "output_index": 1, "delta": '{"b": '},
        {"type": "response.function_call_arguments.delta", "output_index": 0, "delta": '{"a": 1}'},
        {"type": "response.function_call_arguments.delta", "output_index": 1, "delta": "2}"},
        {"type": "response.function_call_arguments.done", "output_index": 0, "arguments": '{"a": 1}'},
        {"type": "response.output_item.done", "output_index": 0, "item": {"type": "function_call", "call_id": "fc_a", "name": "first"}},
        {"type": "response.function_call_arguments.done", "output_index": 1, "arguments": '{"b": 2}'},
        {"type": "response.output_item.done", "output_index": 1, "item": {"type": "function_call", "call_id": "fc_b", "name": "second"}},
    ]:
        decoder.feed(event)

    turn = decoder.finish()

    assert [(c.id, c.name, c.arguments) for c in turn.tool_calls] == [
        ("fc_a", "first", '{"a": 1}'),
        ("fc_b", "second", '{"b": 2}'),
    ]


def test_responses_decoder_records_usage_before_incomplete_error() -> None:
    decoder = ResponsesStreamDecoder()
    with pytest.raises(APIError):
        decoder.feed(
            {
                "type": "response.incomplete",
                "response": {"usage": {"input_tokens": 40, "output_tokens": 16}},
            }
        )
    usage = decoder.finish().usage
    assert (usage.input_tokens, usage.output_tokens) == (40, 16)


def test_responses_decoder_incomplete_and_error_events_raise() -> None:
    with pytest.raises(APIError, match="response incomplete: max tokens reached before completion"):
        ResponsesStreamDecoder().feed({"type": "response.incomplete"})
    with pytest.raises(APIError, match="Unknown error from Responses API"):
        ResponsesStreamDecoder().feed({"type": "error"})
    with pytest.raises(APIError, match="quota"):
        ResponsesStreamDecoder().feed({"type": "error", "message": "quota"})


# =============================================================================
# Full loop with a fake client
# =============================================================================


class FakeCompletions:
    def __init__(self, scripts: list[list[Any]]) -> None:
        self.scripts = list(scripts)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **params: Any) -> FakeAsyncStream:
        self.calls.append(params)
        return FakeAsyncStream(self.scripts.pop(0))


@pytest.mark.asyncio
async def test_chat_auto_run_round_trip() -> None:
    provider = _provider()
    completions = FakeCompletions(
        [
            [
                _chunk(tool_calls=[_fragment(0, id="call_1", name="lookup", arguments='{"city":"Nice"}')]),
                _chunk(finish_reason="tool_calls"),
            ],
            [_chunk("Sunny."), _chunk(finish_reason="stop")],
        ]
    )
    provider._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    request = CompletionRequest(
        posts=(Post(PostRole.USER, "Weather?"),), context=Context(tools=_weather_store())
    )

    text = await provider.chat_completion_no_stream(request, with_auto_run_tools(["lookup"]))

    assert text == "Sunny."
    history = completions.calls[1]["messages"]
    assert history[-2]["tool_calls"][0]["id"] == "call_1"
    assert history[-1] == {"role": "tool", "tool_call_id": "call_1", "content": "sunny in Nice"}
    assert completions.calls[0]["stream"] is True


@pytest.mark.asyncio
async def test_responses_incomplete_surfaces_as_error_event() -> None:
    provider = _provider(use_responses_api=True)
    responses = FakeCompletions(
        [[{"type": "response.output_text.delta", "delta": "part"}, {"type": "response.incomplete"}]]
    )
    provider._client = SimpleNamespace(responses=responses)

    events = await collect(
        await provider.chat_completion(CompletionRequest(posts=(Post(PostRole.USER, "q"),)))
    )

    assert [e.type for e in events] == [EventType.TEXT, EventType.ERROR]
    assert "response incomplete" in str(events[-1].value)


@pytest.mark.asyncio
async def test_responses_incomplete_reports_usage_before_the_error() -> None:
    provider = _provider(use_responses_api=True)
    responses = FakeCompletions(
        [
            [
                {"type": "response.output_text.delta", "delta": "part"},
                {
                    "type": "response.incomplete",
                    "response": {"usage": {"input_tokens": 40, "output_tokens": 16}},
                },
            ]
        ]
    )
    provider._client = SimpleNamespace(responses=responses)

    events = await collect(
        await provider.chat_completion(CompletionRequest(posts=(Post(PostRole.USER, "q"),)))
    )

    assert [e.type for e in events] == [EventType.TEXT, EventType.USAGE, EventType.ERROR]
    assert (events[1].value.input_tokens, events[1].value.output_tokens) == (40, 16)


# =============================================================================
# Embeddings and clients
# =============================================================================


@pytest.mark.asyncio
async def test_batch_embeddings_preserve_input_order() -> None:
    captured: dict[str, Any] = {}

    async def create(**params: Any) -> Any:
        captured.update(params)
        return SimpleNamespace(
            data=[
                SimpleNamespace(index=1, embedding=[0.2]),
                SimpleNamespace(index=0, embedding=[0.1]),
            ]
        )

    provider = _provider(embedding_dimensions=256)
    provider._client = SimpleNamespace(embeddings=SimpleNamespace(create=create))

    assert await provider.batch_create_embeddings(["a", "b"]) == [[0.1], [0.2]]
    assert captured == {"input": ["a", "b"], "model": "text-embedding-3-large", "dimensions": 256}
    assert await provider.create_embedding("a") == [0.1]


def test_azure_and_compatible_clients() -> None:
    from openai import AsyncAzureOpenAI, AsyncOpenAI

    azure = OpenAIProvider(
        Config(provider="azure", model="gpt-4o", api_key="k", api_url="https://x.openai.azure.com/")
    )
    compatible = OpenAIProvider(
        Config(provider="openai_compatible", model="llama", api_key="k", api_url="http://localhost:8000/v1/")
    )

    assert isinstance(azure._get_client(), AsyncAzureOpenAI)
    assert azure.name == "azure"
    client = compatible._get_client()
    assert isinstance(client, AsyncOpenAI)
    assert str(client.base_url).startswith("http://localhost:8000/v1")


# =============================================================================
# Transcription and image generation
# =============================================================================

_WHISPER_VTT = """WEBVTT

00:00:00.000 --> 00:00:02.500
Hello and welcome.

00:00:02.500 --> 00:01:04.250
Today we talk
about tides.
"""

# 1x1 transparent PNG
_PNG_B64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


@pytest.mark.asyncio
async def test_transcribe_requests_vtt_and_returns_timed_cues() -> None:
    captured: dict[str, Any] = {}

    async def create(**params: Any) -> str:
        captured.update(params)
        return _WHISPER_VTT

    provider = _provider()
    provider._client = SimpleNamespace(
        audio=SimpleNamespace(transcriptions=SimpleNamespace(create=create))
    )

    transcript = await provider.transcribe(b"RIFF....", filename="meeting.wav")

    assert captured["model"] == "whisper-1"
    assert captured["response_format"] == "vtt"
    assert captured["file"] == ("meeting.wav", b"RIFF....")
    assert [(c.start.total_seconds(), c.end.total_seconds()) for c in transcript.cues] == [
        (0.0, 2.5),
        (2.5, 64.25),
    ]
    assert transcript.cues[1].text == "Today we talk\nabout tides."


@pytest.mark.asyncio
async def test_transcribe_wraps_unparseable_output() -> None:
    async def create(**params: Any) -> Any:
        return SimpleNamespace(text="not a subtitle file")

    provider = _provider()
    provider._client = SimpleNamespace(
        audio=SimpleNamespace(transcriptions=SimpleNamespace(create=create))
    )

    with pytest.raises(APIError, match="unable to parse whisper transcription") as exc:
        await provider.transcribe(io.BytesIO(b"audio"))
    assert exc.value.phase == "transcribe"


@pytest.mark.asyncio
async def test_generate_image_decodes_base64_png() -> None:
    captured: dict[str, Any] = {}

    async def generate(**params: Any) -> Any:
        captured.update(params)
        return SimpleNamespace(data=[SimpleNamespace(b64_json=_PNG_B64)])

    provider = _provider()
    provider._client = SimpleNamespace(images=SimpleNamespace(generate=generate))

    image = await provider.generate_image("a lighthouse at dusk")

    assert image.startswith(b"\x89PNG\r\n\x1a\n")
    assert captured == {
        "prompt": "a lighthouse at dusk",
        "size": "256x256",
        "response_format": "b64_json",
        "n": 1,
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("data", "message"),
    [
        ([], "no image data returned"),
        ([SimpleNamespace(b64_json=None)], "no base64 image data"),
        ([SimpleNamespace(b64_json="R0lGODlhAQABAAAAACw=")], "not a PNG"),
    ],
)
async def test_generate_image_rejects_missing_or_non_png_data(data: list[Any], message: str) -> None:
    async def generate(**params: Any) -> Any:
        return SimpleNamespace(data=data)

    provider = _provider()
    provider._client = SimpleNamespace(images=SimpleNamespace(generate=generate))

    with pytest.raises(APIError, match=message):
        await provider.generate_image("x")
