"""Vendor-agnostic conversation model and the normalized stream event union."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
import json
import re
from typing import TYPE_CHECKING, Any, BinaryIO
import unicodedata

if TYPE_CHECKING:
    from llmbridge.tools import Tools


class PostRole(str, Enum):
    """Author of a post in the internal conversation."""

    SYSTEM = "system"
    USER = "user"
    BOT = "bot"


class ToolCallStatus(IntEnum):
    """Lifecycle of a tool call as the caller and the tool loop act on it."""

    PENDING = 0
    ACCEPTED = 1
    REJECTED = 2
    ERROR = 3
    SUCCESS = 4


@dataclass(frozen=True)
class File:
    """An attachment whose bytes are read once, during translation."""

    mime_type: str
    size: int
    reader: BinaryIO


# Code points that render invisibly but are still classified as printable:
# variation selectors and the other default-ignorable code points.
_DEFAULT_IGNORABLE_RE = re.compile(
    "[\\u034f\\u115f\\u1160\\u17b4\\u17b5\\u180b-\\u180f\\u2065\\u3164"
    "\\ufe00-\\ufe0f\\uffa0\\ufff0-\\ufff8\\U000e0000-\\U000e0fff]"
)


def _is_safe_char(ch: str) -> bool:
    code = ord(ch)
    if 0x20 <= code <= 0x7E:
        return True
    if ch in "\n\t\r":
        return True
    if code <= 0x7E:
        return False
    # C* = control, format, surrogate, private use, unassigned; Z* = separators
    category = unicodedata.category(ch)
    if category[0] in "CZ":
        return False
    return _DEFAULT_IGNORABLE_RE.match(ch) is None


def sanitize_non_printable_chars(s: str) -> str:
    """Replace non-printable and invisible characters with ``[U+XXXX]``.

    Guards against bidirectional-text and homoglyph spoofing when tool
    arguments are shown to a human or logged. The bracket form is used
    instead of ``\\uXXXX`` so JSON parsers cannot turn it back into the
    original character. Newline, tab and carriage return pass through.
    """
    if all(_is_safe_char(ch) for ch in s):
        return s
    return "".join(ch if _is_safe_char(ch) else f"[U+{ord(ch):04X}]" for ch in s)


@dataclass
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` holds the raw JSON text exactly as the vendor produced it.
    An empty ``result`` means the call has not been resolved yet.
    """

    id: str
    name: str
    arguments: str = "{}"
    description: str = ""
    result: str = ""
    status: ToolCallStatus = ToolCallStatus.PENDING

    def sanitize_arguments(self) -> None:
        """Escape spoofing characters in ``arguments`` in place."""
        if self.arguments:
            self.arguments = sanitize_non_printable_chars(self.arguments)

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode ``arguments``; malformed or non-object JSON yields ``{}``."""
        if not self.arguments:
            return {}
        try:
            value = json.loads(self.arguments)
        except ValueError:
            return {}
        return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class Post:
    """One message of the internal conversation."""

    role: PostRole
    message: str = ""
    files: tuple[File, ...] = ()
    tool_use: tuple[ToolCall, ...] = ()
    reasoning: str = ""
    reasoning_signature: str = ""


@dataclass(frozen=True)
class ReasoningData:
    """Full text (and vendor signature) of a closed reasoning block."""

    text: str
    signature: str = ""


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting reported by the vendor for one model turn."""

    input_tokens: int = 0
    output_tokens: int = 0


URL_CITATION = "url_citation"


@dataclass(frozen=True)
class Annotation:
    """A span of the answer linked to a source.

    ``start_index``/``end_index`` are positions in the full emitted answer
    and ``index`` is the 1-based display order across the whole response.
    """

    start_index: int
    end_index: int
    url: str
    title: str = ""
    cited_text: str = ""
    index: int = 0
    type: str = URL_CITATION


class EventType(str, Enum):
    """Kinds of events on the normalized stream."""

    TEXT = "text"
    REASONING = "reasoning"
    REASONING_END = "reasoning_end"
    TOOL_CALLS = "tool_calls"
    ANNOTATIONS = "annotations"
    USAGE = "usage"
    ERROR = "error"
    END = "end"


@dataclass(frozen=True)
class TextStreamEvent:
    """A single normalized event.

    ``value`` depends on ``type``: ``str`` for TEXT/REASONING,
    ``ReasoningData``, ``list[ToolCall]``, ``list[Annotation]``,
    ``TokenUsage``, an exception for ERROR and ``None`` for END.
    """

    type: EventType
    value: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.ERROR, EventType.END)

    @classmethod
    def text(cls, text: str) -> TextStreamEvent:
        return cls(EventType.TEXT, text)

    @classmethod
    def reasoning(cls, text: str) -> TextStreamEvent:
        return cls(EventType.REASONING, text)

    @classmethod
    def reasoning_end(cls, text: str, signature: str = "") -> TextStreamEvent:
        return cls(EventType.REASONING_END, ReasoningData(text, signature))

    @classmethod
    def tool_calls(cls, calls: list[ToolCall]) -> TextStreamEvent:
        return cls(EventType.TOOL_CALLS, list(calls))

    @classmethod
    def annotations(cls, annotations: list[Annotation]) -> TextStreamEvent:
        return cls(EventType.ANNOTATIONS, list(annotations))

    @classmethod
    def usage(cls, input_tokens: int, output_tokens: int) -> TextStreamEvent:
        return cls(EventType.USAGE, TokenUsage(input_tokens, output_tokens))

    @classmethod
    def error(cls, exc: BaseException) -> TextStreamEvent:
        return cls(EventType.ERROR, exc)

    @classmethod
    def end(cls) -> TextStreamEvent:
        return cls(EventType.END)


@dataclass
class Context:
    """Per-request collaborators handed to tool resolvers."""

    tools: Tools | None = None
    requesting_user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CompletionRequest:
    """Conversation plus context for one ``chat_completion`` call."""

    posts: tuple[Post, ...] | list[Post]
    context: Context = field(default_factory=Context)
