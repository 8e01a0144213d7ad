"""Shared pytest setup: model ids, env isolation and live-API gating."""

from __future__ import annotations

from contextlib import suppress
import logging
import os

import pytest

OPENAI_MODEL = "gpt-4o-mini"
ANTHROPIC_MODEL = "claude-sonnet-4-5"
BEDROCK_MODEL = "anthropic.claude-3-5-sonnet-20240620-v1:0"

# Credentials and endpoints that would leak the developer's setup into tests.
_PROVIDER_ENV_PREFIXES = ("OPENAI_", "AZURE_", "ANTHROPIC_", "AWS_")

_LIVE_API_FLAG = "ENABLE_API_TESTS"

# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Keep a local .env out of Config; opt out with ``allow_dotenv``."""
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Drop provider credentials unless the test is ``api`` or opts out."""
    keep = request.node.get_closest_marker("allow_env_pollution")
    if keep or "api" in request.node.keywords:
        return
    for key in [k for k in os.environ if k.startswith(_PROVIDER_ENV_PREFIXES)]:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    for name in ("httpx", "httpcore", "botocore", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


# =============================================================================
# Live API gating
# =============================================================================


def pytest_collection_modifyitems(items):
    """Skip ``api`` tests unless ENABLE_API_TESTS is set."""
    if os.getenv(_LIVE_API_FLAG):
        return
    skip = pytest.mark.skip(reason=f"API tests require {_LIVE_API_FLAG}=1")
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip)


def _key_or_skip(env_var: str) -> str:
    key = os.getenv(env_var)
    if not key:
        pytest.skip(f"{env_var} not set")
    return key


@pytest.fixture
def openai_api_key():
    return _key_or_skip("OPENAI_API_KEY")


@pytest.fixture
def anthropic_api_key():
    return _key_or_skip("ANTHROPIC_API_KEY")
