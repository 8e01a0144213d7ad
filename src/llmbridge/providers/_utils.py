"""Helpers shared by the provider modules."""

from __future__ import annotations

from typing import Any

from llmbridge.errors import ConfigurationError


def to_strict_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *schema* accepted by strict structured output.

    Every object node gets ``additionalProperties: false`` and, unless it
    already lists them, all of its properties as ``required``. Nested
    ``$defs``, ``items`` and ``anyOf`` branches are rewritten too.
    """
    if not isinstance(schema, dict):
        raise ConfigurationError("Invalid json output schema: expected object schema")
    return _strict_node(schema)


def _strict_node(node: Any) -> Any:
    if isinstance(node, list):
        return [_strict_node(item) for item in node]
    if not isinstance(node, dict):
        return node
    out = {key: _strict_node(value) for key, value in node.items()}
    properties = out.get("properties", {})
    if (out.get("type") == "object" or "properties" in out) and isinstance(properties, dict):
        out["additionalProperties"] = False
        out.setdefault("required", list(properties))
    return out


def get_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read *name* from an SDK object or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def estimate_tokens(text: str) -> int:
    """Rough token count blending character and word based estimates.

    Averages ``chars / 4`` and ``words / 0.75``; an approximation for when
    no tokenizer is available, not an exact count.
    """
    by_chars = len(text) / 4.0
    by_words = len(text.split()) / 0.75
    return int((by_chars + by_words) / 2)
