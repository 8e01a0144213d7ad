"""llmbridge: one streaming chat-completion interface over several LLM vendors.

Public API:
    - Config: Connection settings for one provider
    - create_provider(): Build the provider a Config describes
    - CompletionRequest / Post / Context: The conversation to complete
    - Tool / ToolStore: Tools the model may call
    - TextStreamEvent / EventType: The normalized event stream
"""

from __future__ import annotations

import logging

from llmbridge.config import Config
from llmbridge.engine import MAX_TOOL_RESOLUTION_DEPTH, CompletionEngine
from llmbridge.errors import (
    APIError,
    ConfigurationError,
    InternalError,
    LLMBridgeError,
    RateLimitError,
    StreamCancelledError,
    StreamTimeoutError,
    ToolDepthExceededError,
    ToolNotFoundError,
)
from llmbridge.models import (
    Annotation,
    CompletionRequest,
    Context,
    EventType,
    File,
    Post,
    PostRole,
    ReasoningData,
    TextStreamEvent,
    TokenUsage,
    ToolCall,
    ToolCallStatus,
)
from llmbridge.options import (
    LanguageModelConfig,
    LanguageModelOption,
    with_auto_run_tools,
    with_json_output,
    with_max_generated_tokens,
    with_model,
    with_reasoning_disabled,
    with_tools_disabled,
)
from llmbridge.providers import create_provider
from llmbridge.retry import RetryPolicy
from llmbridge.stream import TextStreamResult
from llmbridge.subtitles import Subtitle, Transcript
from llmbridge.tools import Tool, ToolArguments, Tools, ToolStore

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("llmbridge")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("llmbridge").addHandler(logging.NullHandler())

__all__ = [
    "MAX_TOOL_RESOLUTION_DEPTH",
    "APIError",
    "Annotation",
    "CompletionEngine",
    "CompletionRequest",
    "Config",
    "ConfigurationError",
    "Context",
    "EventType",
    "File",
    "InternalError",
    "LLMBridgeError",
    "LanguageModelConfig",
    "LanguageModelOption",
    "Post",
    "PostRole",
    "RateLimitError",
    "ReasoningData",
    "RetryPolicy",
    "StreamCancelledError",
    "StreamTimeoutError",
    "Subtitle",
    "TextStreamEvent",
    "TextStreamResult",
    "TokenUsage",
    "Tool",
    "ToolArguments",
    "ToolCall",
    "ToolCallStatus",
    "ToolDepthExceededError",
    "ToolNotFoundError",
    "ToolStore",
    "Tools",
    "Transcript",
    "create_provider",
    "with_auto_run_tools",
    "with_json_output",
    "with_max_generated_tokens",
    "with_model",
    "with_reasoning_disabled",
    "with_tools_disabled",
]
