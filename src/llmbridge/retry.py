"""Bounded retry around opening a vendor stream.

Only the open call is retried. After the first event reaches the caller a
second attempt would repeat output, so later failures become error events.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

import httpx

from llmbridge.errors import (
    RETRYABLE_STATUS_CODES,
    APIError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

log = logging.getLogger(__name__)

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TimeoutError,
    httpx.TimeoutException,
    httpx.RequestError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a stream open is re-attempted.

    Delays grow geometrically from ``initial_delay_s`` up to ``max_delay_s``;
    with ``jitter`` each sleep is drawn uniformly below that ceiling. A
    vendor ``Retry-After`` hint raises the sleep, and ``deadline_s`` caps the
    total time spent across attempts.
    """

    max_attempts: int = 2
    initial_delay_s: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_s: float = 5.0
    jitter: bool = True
    deadline_s: float | None = 15.0

    def __post_init__(self) -> None:
        checks = (
            (self.max_attempts >= 1, "max_attempts must be >= 1"),
            (self.initial_delay_s >= 0, "initial_delay_s must be >= 0"),
            (self.backoff_multiplier > 0, "backoff_multiplier must be > 0"),
            (self.max_delay_s >= 0, "max_delay_s must be >= 0"),
            (self.deadline_s is None or self.deadline_s >= 0, "deadline_s must be >= 0"),
        )
        for ok, message in checks:
            if not ok:
                raise ValueError(f"RetryPolicy.{message}")

    def delay_before(self, retry: int, *, retry_after_s: float | None = None) -> float:
        """Seconds to sleep before retry number *retry* (1-based)."""
        ceiling = min(
            self.max_delay_s,
            self.initial_delay_s * self.backoff_multiplier ** (retry - 1),
        )
        delay = random.uniform(0, ceiling) if self.jitter and ceiling > 0 else ceiling  # noqa: S311
        if retry_after_s is not None and retry_after_s > delay:
            delay = retry_after_s
        return max(delay, 0.0)


def should_retry_open(exc: BaseException) -> bool:
    """Whether a failed stream open deserves another attempt.

    Cancellation never does. An APIError does when its provider flagged it
    retryable or its HTTP status is a transient one. Anything else does only
    when a transport timeout or connection error sits in its cause chain.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, APIError):
        if exc.retryable is True:
            return True
        return exc.status_code in RETRYABLE_STATUS_CODES
    return any(isinstance(e, _TRANSIENT_ERRORS) for e in _walk_exception_chain(exc))


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry_open,
) -> T:
    """Await ``factory()`` until it succeeds or *policy* gives up."""
    deadline = None
    if policy.deadline_s is not None:
        deadline = time.monotonic() + policy.deadline_s

    attempt = 1
    while True:
        try:
            return await factory()
        except Exception as exc:
            if attempt >= policy.max_attempts or not should_retry(exc):
                raise
            retry_after = exc.retry_after_s if isinstance(exc, APIError) else None
            delay = policy.delay_before(attempt, retry_after_s=retry_after)
            if deadline is not None:
                left = deadline - time.monotonic()
                if left <= 0:
                    raise
                delay = min(delay, left)
            log.debug(
                "Stream open failed (attempt %d/%d), retrying in %.2fs: %s",
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
        await asyncio.sleep(delay)
        attempt += 1
