"""Tool registry, bound parameters and the auto-run helpers of the tool loop.

A ``Tool`` pairs a JSON schema (shown to the model) with a resolver (run by
the host). Resolvers receive the request ``Context`` and a ``ToolArguments``
getter; they may be plain functions or coroutines.
"""

from __future__ import annotations

import asyncio
from copy import deepcopy
from dataclasses import dataclass
import inspect
import json
import logging
from typing import (
    TYPE_CHECKING,
    Any,
    Protocol,
    TypeVar,
    overload,
    runtime_checkable,
)

from pydantic import BaseModel

from llmbridge.errors import ToolNotFoundError
from llmbridge.models import Context, ToolCall, sanitize_non_printable_chars

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Mapping

    ToolResolver = Callable[[Context, "ToolArguments"], "str | Awaitable[str]"]
    ResolveFn = Callable[[str, "ToolArguments", Context], Awaitable[str]]

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class ToolArguments:
    """Lazy accessor for a tool call's arguments.

    Bound values are overlaid on the model-supplied arguments *before*
    validation, so a bound name always wins over whatever the model sent.
    """

    def __init__(self, raw: str, bound: Mapping[str, Any] | None = None) -> None:
        self.raw = raw
        self._bound = dict(bound or {})

    @overload
    def __call__(self, model: None = None) -> dict[str, Any]: ...
    @overload
    def __call__(self, model: type[M]) -> M: ...

    def __call__(self, model: type[M] | None = None) -> dict[str, Any] | M:
        """Decode the arguments, optionally validating into *model*.

        Raises ``ValueError`` for malformed JSON or a non-object payload and
        ``pydantic.ValidationError`` when *model* rejects the data.
        """
        data: Any = json.loads(self.raw) if self.raw.strip() else {}
        if not isinstance(data, dict):
            raise ValueError(
                f"tool arguments must be a JSON object, got {type(data).__name__}"
            )
        data.update(self._bound)
        if model is None:
            return data
        return model.model_validate(data)

    def with_bound(self, params: Mapping[str, Any]) -> ToolArguments:
        """Return a getter that additionally injects *params*."""
        merged = {**self._bound, **params}
        return ToolArguments(self.raw, merged)


_EMPTY_OBJECT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


def _schema_to_dict(schema: dict[str, Any] | type[BaseModel] | None) -> dict[str, Any]:
    if schema is None:
        return deepcopy(_EMPTY_OBJECT_SCHEMA)
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        result = schema.model_json_schema()
    else:
        result = deepcopy(schema)
    result.setdefault("type", "object")
    result.setdefault("properties", {})
    return result


def _remove_schema_properties(
    schema: dict[str, Any], names: Iterable[str]
) -> dict[str, Any]:
    hidden = set(names)
    if not hidden:
        return schema
    properties = schema.get("properties")
    if isinstance(properties, dict):
        schema["properties"] = {
            k: v for k, v in properties.items() if k not in hidden
        }
    required = schema.get("required")
    if isinstance(required, list):
        schema["required"] = [name for name in required if name not in hidden]
    return schema


def _wrap_resolver_with_bound_params(
    original: ToolResolver, params: Mapping[str, Any]
) -> ToolResolver:
    bound = dict(params)

    def resolver(context: Context, args: ToolArguments) -> str | Awaitable[str]:
        return original(context, args.with_bound(bound))

    return resolver


@dataclass(frozen=True)
class Tool:
    """A function the model may call.

    ``schema`` is a JSON-schema dict or a pydantic model class describing the
    arguments object.
    """

    name: str
    description: str
    resolver: ToolResolver
    schema: dict[str, Any] | type[BaseModel] | None = None

    def parameters_schema(self) -> dict[str, Any]:
        """Return a fresh JSON schema dict with ``type`` and ``properties`` set."""
        return _schema_to_dict(self.schema)

    def with_bound_params(self, params: Mapping[str, Any]) -> Tool:
        """Derive a tool whose *params* are fixed by the host.

        The derived schema no longer mentions the bound names (neither in
        ``properties`` nor in ``required``), and the derived resolver injects
        the bound values on every call. ``self`` is left untouched.
        """
        if not params:
            return Tool(self.name, self.description, self.resolver, self.schema)
        return Tool(
            name=self.name,
            description=self.description,
            resolver=_wrap_resolver_with_bound_params(self.resolver, params),
            schema=_remove_schema_properties(self.parameters_schema(), params),
        )


@dataclass(frozen=True)
class ToolInfo:
    """Name and description of a tool, without its schema."""

    name: str
    description: str


@dataclass(frozen=True)
class ToolAuthError:
    """A tool source that could not be registered because auth failed."""

    server_name: str
    auth_url: str
    error: BaseException


@runtime_checkable
class Tools(Protocol):
    """Capability the engine needs from a tool registry."""

    def get_tools(self) -> list[Tool]: ...

    def get_tool(self, name: str) -> Tool | None: ...

    async def resolve_tool(
        self, name: str, args: ToolArguments, context: Context
    ) -> str: ...


async def _call_resolver(
    resolver: ToolResolver, context: Context, args: ToolArguments
) -> str:
    result = resolver(context, args)
    if inspect.isawaitable(result):
        result = await result
    return result


class ToolStore:
    """Name-indexed tool registry.

    Read-mostly: populate it up front, then share it across requests.
    """

    def __init__(self, *, trace: bool = False) -> None:
        self._tools: dict[str, Tool] = {}
        self._trace = trace
        self._auth_errors: list[ToolAuthError] = []

    def add_tools(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self._tools[tool.name] = tool

    def get_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def get_tool(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_tools_info(self) -> list[ToolInfo]:
        """Names and descriptions, for telling a model about tools it can't call here."""
        return [ToolInfo(t.name, t.description) for t in self._tools.values()]

    async def resolve_tool(
        self, name: str, args: ToolArguments, context: Context
    ) -> str:
        """Run the named tool's resolver and return its result text."""
        tool = self._tools.get(name)
        if tool is None:
            self._trace_call("unknown tool called", name, args)
            raise ToolNotFoundError(name)
        try:
            result = await _call_resolver(tool.resolver, context, args)
        except Exception as exc:
            self._trace_call("tool resolved", name, args, error=exc)
            raise
        self._trace_call("tool resolved", name, args, result=result)
        return result

    def add_auth_error(self, auth_error: ToolAuthError) -> None:
        self._auth_errors.append(auth_error)

    def get_auth_errors(self) -> list[ToolAuthError]:
        return list(self._auth_errors)

    def _trace_call(
        self,
        message: str,
        name: str,
        args: ToolArguments,
        *,
        result: str | None = None,
        error: BaseException | None = None,
    ) -> None:
        if not self._trace:
            return
        log.info(
            "%s: name=%s args=%s result=%r error=%s",
            message,
            name,
            sanitize_non_printable_chars(args.raw),
            result,
            error,
        )


# Shared empty registry; never add tools to it.
NO_TOOLS = ToolStore()


@dataclass(frozen=True)
class AutoRunResult:
    """Outcome of executing one tool call inside the tool loop."""

    tool_call_id: str
    tool_name: str
    result: str
    is_error: bool = False


def should_auto_run_tools(
    pending: Iterable[ToolCall], auto_run_tools: Iterable[str]
) -> bool:
    """Whether the whole batch may run without human approval.

    True only when the allow-list and the batch are both non-empty and every
    call's name is allowed. One disallowed call sends the whole batch to
    approval; partial auto-run is never done.
    """
    allowed = set(auto_run_tools)
    calls = list(pending)
    if not allowed or not calls:
        return False
    return all(call.name in allowed for call in calls)


async def execute_auto_run_tools(
    pending: Iterable[ToolCall],
    resolve: ResolveFn,
    context: Context,
) -> list[AutoRunResult]:
    """Execute each call in order; failures become error results, never raise."""
    results: list[AutoRunResult] = []
    for call in pending:
        args = ToolArguments(call.arguments)
        try:
            result = await resolve(call.name, args, context)
            is_error = False
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.debug("Auto-run tool %s failed: %s", call.name, exc)
            result = f"Error executing tool: {exc}"
            is_error = True
        results.append(
            AutoRunResult(
                tool_call_id=call.id,
                tool_name=call.name,
                result=result,
                is_error=is_error,
            )
        )
    return results

