"""Conversation → vendor message list, shared by every provider.

The turn-building rules live here once; providers only supply an encoder
that knows how their wire format spells a text block, an image, a tool call
and a tool result.
"""

from __future__ import annotations

import base64
from enum import Enum
import logging
from typing import TYPE_CHECKING, Any, Literal, Protocol

from llmbridge.models import PostRole

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from llmbridge.models import File, Post, ToolCall

log = logging.getLogger(__name__)

TurnRole = Literal["user", "assistant"]

SUPPORTED_IMAGE_TYPES: frozenset[str] = frozenset(
    {"image/jpeg", "image/png", "image/gif", "image/webp"}
)


class ImageRejection(str, Enum):
    """Why an attachment was replaced by a placeholder."""

    UNSUPPORTED_TYPE = "unsupported_type"
    TOO_LARGE = "too_large"
    UNREADABLE = "unreadable"


class MessageEncoder(Protocol):
    """Vendor-specific spelling of the pieces of a turn."""

    #: Largest accepted image in bytes, or None when the vendor sets no limit.
    max_image_size: int | None

    def text(self, role: TurnRole, text: str) -> Any: ...

    def reasoning(self, text: str, signature: str) -> Any | None: ...

    def image(self, role: TurnRole, mime_type: str, data: bytes) -> Any: ...

    def image_placeholder(self, file: File, rejection: ImageRejection) -> str | None:
        """Text that replaces a rejected attachment; None drops it silently."""
        ...

    def tool_uses(self, calls: Sequence[ToolCall]) -> list[Any]: ...

    def tool_results(self, calls: Sequence[ToolCall]) -> list[Any]: ...

    def turn(self, role: TurnRole, blocks: list[Any]) -> list[Any]:
        """Wrap accumulated blocks into one or more vendor messages."""
        ...


def read_image(file: File, *, max_size: int | None = None) -> bytes | ImageRejection:
    """Drain *file* if it is an acceptable image, else say why not."""
    if file.mime_type not in SUPPORTED_IMAGE_TYPES:
        return ImageRejection.UNSUPPORTED_TYPE
    if max_size is not None and file.size > max_size:
        return ImageRejection.TOO_LARGE
    try:
        data = file.reader.read()
    except (OSError, ValueError) as exc:
        log.debug("Failed to read %s attachment: %s", file.mime_type, exc)
        return ImageRejection.UNREADABLE
    return data


def image_data_url(mime_type: str, data: bytes) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def _file_blocks(
    encoder: MessageEncoder, role: TurnRole, files: Iterable[File]
) -> list[Any]:
    blocks: list[Any] = []
    for file in files:
        outcome = read_image(file, max_size=encoder.max_image_size)
        if isinstance(outcome, ImageRejection):
            placeholder = encoder.image_placeholder(file, outcome)
            if placeholder:
                blocks.append(encoder.text(role, placeholder))
            continue
        blocks.append(encoder.image(role, file.mime_type, outcome))
    return blocks


def translate_posts(
    posts: Iterable[Post], encoder: MessageEncoder
) -> tuple[str, list[Any]]:
    """Translate *posts* into ``(system_preamble, vendor_messages)``.

    - System posts are joined into the preamble and never become turns.
    - Consecutive posts resolving to the same role share one turn.
    - A bot post with tool use closes its assistant turn after the tool-use
      blocks; the results then form their own user turn.
    - Reasoning is replayed (before the text) only for bot posts with tool
      use, since only those need the signed thinking block echoed back.
    """
    system_parts: list[str] = []
    messages: list[Any] = []
    blocks: list[Any] = []
    role: TurnRole = "user"

    def flush() -> None:
        nonlocal blocks
        if blocks:
            messages.extend(encoder.turn(role, blocks))
            blocks = []

    for post in posts:
        if post.role is PostRole.SYSTEM:
            if post.message:
                system_parts.append(post.message)
            continue

        new_role: TurnRole = "assistant" if post.role is PostRole.BOT else "user"
        if new_role != role:
            flush()
            role = new_role

        is_tool_turn = post.role is PostRole.BOT and bool(post.tool_use)
        if is_tool_turn and post.reasoning:
            thinking = encoder.reasoning(post.reasoning, post.reasoning_signature)
            if thinking is not None:
                blocks.append(thinking)

        if post.message:
            blocks.append(encoder.text(role, post.message))

        blocks.extend(_file_blocks(encoder, role, post.files))

        if is_tool_turn:
            blocks.extend(encoder.tool_uses(post.tool_use))
            flush()
            role = "user"
            blocks = encoder.tool_results(post.tool_use)
            flush()

    flush()
    return "\n".join(system_parts), messages
