"""Per-call overrides applied over a provider's default model configuration."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from llmbridge.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterable

JSONSchemaInput = type[BaseModel] | dict[str, Any]


@dataclass
class LanguageModelConfig:
    """Effective settings for one ``chat_completion`` call."""

    model: str = ""
    #: Output token ceiling; 0 means "use the provider default".
    max_generated_tokens: int = 0
    tools_disabled: bool = False
    reasoning_disabled: bool = False
    #: Tool names the engine may execute without human approval.
    auto_run_tools: list[str] = field(default_factory=list)
    #: JSON schema the answer must follow, or None for free text.
    json_output_format: dict[str, Any] | None = None


LanguageModelOption = Callable[[LanguageModelConfig], None]


def with_model(model: str) -> LanguageModelOption:
    def option(cfg: LanguageModelConfig) -> None:
        cfg.model = model

    return option


def with_max_generated_tokens(max_tokens: int) -> LanguageModelOption:
    if not isinstance(max_tokens, int) or max_tokens <= 0:
        raise ConfigurationError(
            "max_generated_tokens must be a positive integer",
            hint="Pass with_max_generated_tokens(8192).",
        )

    def option(cfg: LanguageModelConfig) -> None:
        cfg.max_generated_tokens = max_tokens

    return option


def with_tools_disabled() -> LanguageModelOption:
    def option(cfg: LanguageModelConfig) -> None:
        cfg.tools_disabled = True

    return option


def with_reasoning_disabled() -> LanguageModelOption:
    def option(cfg: LanguageModelConfig) -> None:
        cfg.reasoning_disabled = True

    return option


def with_auto_run_tools(names: Iterable[str]) -> LanguageModelOption:
    """Allow the engine to execute the named tools without approval."""
    allowed = list(names)

    def option(cfg: LanguageModelConfig) -> None:
        cfg.auto_run_tools = list(allowed)

    return option


def _schema_dict(schema: JSONSchemaInput) -> dict[str, Any]:
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        return schema.model_json_schema()
    if isinstance(schema, dict):
        return dict(schema)
    raise ConfigurationError(
        "json output schema must be a Pydantic model class or JSON schema dict",
        hint="Pass a BaseModel subclass or a dict following JSON Schema.",
    )


def with_json_output(schema: JSONSchemaInput) -> LanguageModelOption:
    """Constrain the answer to *schema* on providers that support it."""
    resolved = _schema_dict(schema)

    def option(cfg: LanguageModelConfig) -> None:
        cfg.json_output_format = resolved

    return option


def apply_options(
    default: LanguageModelConfig,
    options: Iterable[LanguageModelOption],
) -> LanguageModelConfig:
    """Return a copy of *default* with *options* applied in order."""
    cfg = replace(default, auto_run_tools=list(default.auto_run_tools))
    for option in options:
        option(cfg)
    return cfg
