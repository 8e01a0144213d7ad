"""Exception hierarchy for llmbridge."""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

# HTTP statuses worth another attempt when opening a stream.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})


class LLMBridgeError(Exception):
    """Base exception for all llmbridge errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(LLMBridgeError):
    """Configuration validation or resolution failed."""


class InternalError(LLMBridgeError):
    """An llmbridge internal error (bug) or invariant violation."""


class APIError(LLMBridgeError):
    """A vendor call or vendor stream failed.

    Providers attach retry metadata so callers can decide on bounded retries
    without brittle substring matching.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase


class RateLimitError(APIError):
    """Rate limit exceeded (HTTP 429)."""


class StreamTimeoutError(APIError):
    """The vendor stream went idle for longer than the streaming timeout.

    Raised in place of whatever transport error the cancelled connection
    produced, so callers can retry idle streams differently from failed ones.
    """

    def __init__(
        self,
        timeout_s: float,
        *,
        provider: str | None = None,
    ) -> None:
        super().__init__(
            f"timeout streaming: no event received for {timeout_s:g}s",
            hint="Raise Config.streaming_timeout_s for slow models.",
            retryable=True,
            provider=provider,
            phase="stream",
        )
        self.timeout_s = timeout_s


class StreamCancelledError(APIError):
    """The caller closed the stream before it finished."""

    def __init__(self, *, provider: str | None = None) -> None:
        super().__init__(
            "stream cancelled by caller",
            retryable=False,
            provider=provider,
            phase="stream",
        )


class ToolDepthExceededError(LLMBridgeError):
    """The auto-run tool loop hit its round-trip ceiling."""

    def __init__(self, max_depth: int) -> None:
        super().__init__(
            f"max tool resolution depth ({max_depth}) exceeded",
            hint="The model kept requesting tools; resume with a new request.",
        )
        self.max_depth = max_depth


class ToolNotFoundError(LLMBridgeError):
    """A model requested a tool the registry does not know."""

    def __init__(self, name: str) -> None:
        super().__init__(f"unknown tool {name}")
        self.name = name


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc*, then what it was raised from, nearest first; each once."""
    queue: deque[BaseException] = deque([exc])
    visited: set[int] = set()
    while queue:
        current = queue.popleft()
        if id(current) in visited:
            continue
        visited.add(id(current))
        yield current
        queue.extend(
            linked
            for linked in (current.__cause__, current.__context__)
            if linked is not None
        )
