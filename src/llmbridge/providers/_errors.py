"""Map vendor SDK exceptions onto APIError.

Status codes and Retry-After hints are read from the exception chain once,
so stream-open retry decisions never depend on message text.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ConnectionError as BotoConnectionError
from botocore.exceptions import HTTPClientError
import httpx

from llmbridge.errors import (
    RETRYABLE_STATUS_CODES,
    APIError,
    RateLimitError,
    _walk_exception_chain,
)

# botocore error codes that mean "slow down"; reported as HTTP 429.
_AWS_THROTTLING_CODES = frozenset(
    {"ThrottlingException", "TooManyRequestsException", "ServiceQuotaExceededException"}
)

_NETWORK_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.RequestError,
    HTTPClientError,
    BotoConnectionError,
)

_CREDENTIAL_ENV: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "openai_compatible": "OPENAI_API_KEY",
    "azure": "AZURE_OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "bedrock": "AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY or AWS_BEARER_TOKEN_BEDROCK",
}


def _http_status(value: Any) -> int | None:
    if isinstance(value, int) and 100 <= value <= 599:
        return value
    return None


def _status_of(exc: BaseException) -> int | None:
    """HTTP status of one exception: SDK attributes, httpx response, botocore dict."""
    for attr in ("status_code", "status"):
        status = _http_status(getattr(exc, attr, None))
        if status is not None:
            return status

    response: Any = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return _http_status(getattr(response, "status_code", None))

    # botocore ClientError
    error = response.get("Error") or {}
    if isinstance(error, dict) and error.get("Code") in _AWS_THROTTLING_CODES:
        return 429
    metadata = response.get("ResponseMetadata") or {}
    if isinstance(metadata, dict):
        return _http_status(metadata.get("HTTPStatusCode"))
    return None


def _retry_after_of(exc: BaseException) -> float | None:
    value = getattr(exc, "retry_after", None)
    if isinstance(value, (int, float)) and value >= 0:
        return float(value)

    headers: Any = getattr(getattr(exc, "response", None), "headers", None)
    getter = getattr(headers, "get", None)
    if getter is None:
        return None
    raw = getter("Retry-After")
    if not isinstance(raw, str):
        return None
    try:
        seconds = float(raw.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """First usable Retry-After delay (seconds) anywhere in the cause chain."""
    for e in _walk_exception_chain(exc):
        seconds = _retry_after_of(e)
        if seconds is not None:
            return seconds
    return None


@dataclass(frozen=True)
class _Facts:
    status_code: int | None
    retry_after_s: float | None
    network: bool

    @classmethod
    def gather(cls, exc: BaseException) -> _Facts:
        status = None
        network = False
        for e in _walk_exception_chain(exc):
            if status is None:
                status = _status_of(e)
            network = network or isinstance(e, _NETWORK_ERRORS)
        return cls(status, extract_retry_after_s(exc), network)


def _credential_hint(provider: str, status_code: int | None, cause: str) -> str | None:
    lowered = cause.lower()
    mentions_key = "api key" in lowered or "api_key" in lowered
    if status_code in (401, 403) or (status_code == 400 and mentions_key):
        env_var = _CREDENTIAL_ENV.get(provider, "an API key")
        return f"Check credentials/permissions (try setting {env_var} or Config.api_key)."
    return None


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    allow_network_errors: bool,
    message: str | None = None,
    hint: str | None = None,
) -> APIError:
    """Return *exc* as an APIError carrying provider, phase and retry metadata.

    An existing APIError is enriched in place. Cancellation is re-raised,
    never wrapped.
    """
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    if isinstance(exc, APIError):
        exc.provider = exc.provider or provider
        exc.phase = exc.phase or phase
        if exc.hint is None:
            exc.hint = hint
        return exc

    facts = _Facts.gather(exc)
    retryable = (
        facts.retry_after_s is not None
        or facts.status_code in RETRYABLE_STATUS_CODES
        or (allow_network_errors and facts.network)
    )

    cause = str(exc)
    text = message or f"{provider} {phase} failed"
    if facts.status_code is not None:
        text += f" (status={facts.status_code})"
    if cause:
        text += f": {cause}"

    err_cls = RateLimitError if facts.status_code == 429 else APIError
    wrapped = err_cls(
        text,
        hint=hint if hint is not None else _credential_hint(provider, facts.status_code, cause),
        retryable=retryable,
        status_code=facts.status_code,
        retry_after_s=facts.retry_after_s,
        provider=provider,
        phase=phase,
    )
    wrapped.__cause__ = exc
    return wrapped
