"""Provider protocol and the shared base every vendor adapter builds on."""

from __future__ import annotations

from dataclasses import dataclass
import inspect
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from llmbridge.engine import CompletionEngine
from llmbridge.options import LanguageModelConfig
from llmbridge.providers._errors import wrap_provider_error
from llmbridge.providers._utils import estimate_tokens

if TYPE_CHECKING:
    from llmbridge.config import Config
    from llmbridge.errors import APIError
    from llmbridge.models import CompletionRequest
    from llmbridge.options import LanguageModelOption
    from llmbridge.stream import TextStreamResult
    from llmbridge.tools import Tool

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags exposed by providers."""

    reasoning: bool = False
    json_output: bool = False
    native_web_search: bool = False
    token_counting: bool = False


@dataclass(frozen=True)
class ModelInfo:
    """A model the vendor account can use."""

    id: str
    display_name: str = ""


@runtime_checkable
class LanguageModel(Protocol):
    """What callers of a provider rely on."""

    async def chat_completion(
        self, request: CompletionRequest, *options: LanguageModelOption
    ) -> TextStreamResult: ...

    async def chat_completion_no_stream(
        self, request: CompletionRequest, *options: LanguageModelOption
    ) -> str: ...

    def count_tokens(self, text: str) -> int: ...

    def input_token_limit(self) -> int: ...

    def default_config(self) -> LanguageModelConfig: ...

    async def aclose(self) -> None: ...


class BaseProvider:
    """Connects a vendor adapter to the shared ``CompletionEngine``.

    Subclasses implement the adapter half (``translate``, ``open_stream``,
    ``new_decoder``, ``append_tool_round``) and ``_create_client``.
    """

    name = "base"
    capabilities = ProviderCapabilities()
    default_input_token_limit = 128000

    def __init__(self, config: Config) -> None:
        self.config = config
        self._client: Any = None
        self._engine = CompletionEngine(
            self,
            streaming_timeout_s=config.streaming_timeout_s,
            retry=config.retry,
        )

    def _create_client(self) -> Any:
        raise NotImplementedError

    def _get_client(self) -> Any:
        """Lazily initialize and return the vendor client."""
        if self._client is None:
            self._client = self._create_client()
        return self._client

    async def chat_completion(
        self, request: CompletionRequest, *options: LanguageModelOption
    ) -> TextStreamResult:
        return await self._engine.chat_completion(request, *options)

    async def chat_completion_no_stream(
        self, request: CompletionRequest, *options: LanguageModelOption
    ) -> str:
        return await self._engine.chat_completion_no_stream(request, *options)

    def default_config(self) -> LanguageModelConfig:
        return LanguageModelConfig(
            model=self.config.model,
            max_generated_tokens=self.config.output_token_limit,
        )

    def count_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    def input_token_limit(self) -> int:
        return self.config.input_token_limit or self.default_input_token_limit

    def is_native_tool_enabled(self, name: str) -> bool:
        return name in self.config.enabled_native_tools

    def request_tools(
        self, request: CompletionRequest, cfg: LanguageModelConfig
    ) -> list[Tool]:
        """Tools to advertise for this call (none when disabled)."""
        registry = request.context.tools
        if cfg.tools_disabled or registry is None:
            return []
        return registry.get_tools()

    def wrap_error(self, exc: Exception) -> APIError:
        return wrap_provider_error(
            exc, provider=self.name, phase="stream", allow_network_errors=True
        )

    async def aclose(self) -> None:
        """Release the underlying HTTP client, if one was created."""
        client, self._client = self._client, None
        if client is None:
            return
        close = getattr(client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result
