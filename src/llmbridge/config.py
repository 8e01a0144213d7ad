"""Configuration: Frozen Config describing one vendor connection."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Literal

from dotenv import load_dotenv

from llmbridge.errors import ConfigurationError
from llmbridge.retry import RetryPolicy

load_dotenv()

ProviderKind = Literal["openai", "openai_compatible", "azure", "anthropic", "bedrock"]
ReasoningEffort = Literal["minimal", "low", "medium", "high"]

_PROVIDERS: tuple[str, ...] = (
    "openai",
    "openai_compatible",
    "azure",
    "anthropic",
    "bedrock",
)

# Provider-specific API key environment variable names
_API_KEY_ENV_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "openai_compatible": "OPENAI_API_KEY",
    "azure": "AZURE_OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "bedrock": "AWS_BEARER_TOKEN_BEDROCK",
}

_REASONING_EFFORTS: tuple[str, ...] = ("minimal", "low", "medium", "high")

DEFAULT_STREAMING_TIMEOUT_S = 60.0
DEFAULT_OUTPUT_TOKEN_LIMIT = 8192


@dataclass(frozen=True)
class Config:
    """Immutable settings for one provider connection.

    API keys are auto-resolved from standard environment variables. Bedrock
    may run without a key, in which case boto3's default credential chain
    (environment, shared profile, instance role) is used.

    Example:
        config = Config(provider="anthropic", model="claude-sonnet-4-5")
        # API key is automatically resolved from ANTHROPIC_API_KEY
    """

    provider: ProviderKind
    model: str
    #: Auto-resolved from the provider's key variable when *None*.
    api_key: str | None = None
    #: Base URL for compatible/Azure endpoints; Bedrock endpoint override.
    api_url: str = ""
    org_id: str = ""
    #: AWS region for Bedrock; falls back to ``AWS_REGION``.
    region: str = ""
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    #: Idle timeout for vendor streams; *None* disables the watchdog.
    streaming_timeout_s: float | None = DEFAULT_STREAMING_TIMEOUT_S
    output_token_limit: int = DEFAULT_OUTPUT_TOKEN_LIMIT
    #: Input context size; 0 means "use the provider/model default".
    input_token_limit: int = 0
    reasoning_enabled: bool = True
    #: Explicit thinking budget for Anthropic; 0 derives one from the ceiling.
    thinking_budget: int = 0
    reasoning_effort: ReasoningEffort = "medium"
    #: OpenAI only: drive the Responses API instead of Chat Completions.
    use_responses_api: bool = False
    #: Vendor-hosted tools to expose, e.g. ``("web_search",)``.
    enabled_native_tools: tuple[str, ...] = ()
    send_user_id: bool = False
    #: For OpenAI-compatible servers that reject ``stream_options``.
    disable_stream_options: bool = False
    #: Send ``max_tokens`` instead of ``max_completion_tokens``.
    use_max_tokens: bool = False
    #: OpenAI embeddings; empty selects text-embedding-3-large.
    embedding_model: str = ""
    #: 0 leaves the model default.
    embedding_dimensions: int = 0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        """Auto-resolve credentials and validate configuration."""
        if self.provider not in _PROVIDERS:
            raise ConfigurationError(
                f"Unknown provider: {self.provider!r}",
                hint=f"Supported providers: {', '.join(map(repr, _PROVIDERS))}",
            )
        if not self.model:
            raise ConfigurationError(
                "model is required",
                hint="Pass model='gpt-4o' or another model id for the provider.",
            )

        if self.streaming_timeout_s is not None and self.streaming_timeout_s <= 0:
            raise ConfigurationError(
                f"streaming_timeout_s must be > 0, got {self.streaming_timeout_s}",
                hint="Pass streaming_timeout_s=None to disable the stream watchdog.",
            )
        if self.output_token_limit < 1:
            raise ConfigurationError(
                f"output_token_limit must be ≥ 1, got {self.output_token_limit}",
                hint="This is the default max output tokens per model turn.",
            )
        if min(self.input_token_limit, self.thinking_budget, self.embedding_dimensions) < 0:
            raise ConfigurationError(
                "input_token_limit, thinking_budget and embedding_dimensions must be ≥ 0",
                hint="Use 0 to fall back to the provider default.",
            )
        if self.reasoning_effort not in _REASONING_EFFORTS:
            raise ConfigurationError(
                f"Unknown reasoning_effort: {self.reasoning_effort!r}",
                hint="Use one of 'minimal', 'low', 'medium', 'high'.",
            )
        if self.provider in ("openai_compatible", "azure") and not self.api_url:
            raise ConfigurationError(
                f"api_url is required for {self.provider}",
                hint="Pass the base URL of the endpoint, e.g. api_url='https://…'.",
            )
        if bool(self.aws_access_key_id) != bool(self.aws_secret_access_key):
            raise ConfigurationError(
                "aws_access_key_id and aws_secret_access_key must be set together",
                hint="Leave both empty to use the default AWS credential chain.",
            )

        if self.api_key is None:
            env_var = _API_KEY_ENV_VARS[self.provider]
            object.__setattr__(self, "api_key", os.environ.get(env_var))

        if self.provider == "bedrock":
            if not self.region:
                object.__setattr__(
                    self, "region", os.environ.get("AWS_REGION", "us-east-1")
                )
            return

        if not self.api_key:
            env_var = _API_KEY_ENV_VARS[self.provider]
            raise ConfigurationError(
                f"API key required for {self.provider}",
                hint=f"Set {env_var} environment variable or pass api_key=...",
            )

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        secret = "[REDACTED]"
        return (
            f"Config(provider={self.provider!r}, model={self.model!r}, "
            f"api_key={secret if self.api_key else None}, "
            f"api_url={self.api_url!r}, region={self.region!r}, "
            f"aws_secret_access_key={secret if self.aws_secret_access_key else None}, "
            f"streaming_timeout_s={self.streaming_timeout_s})"
        )

    __repr__ = __str__
