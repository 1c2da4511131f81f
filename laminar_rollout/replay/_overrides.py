"""Application of per-path system prompt and tool overrides to OpenAI-shaped requests."""

from collections.abc import Sequence
from typing import Any

from laminar_rollout.cache import PathOverride, ToolOverride


def apply_system_override(messages: Sequence[dict[str, Any]], system: str | None) -> list[dict[str, Any]]:
    """Replace every system message with a single leading one carrying ``system``."""
    if not system:
        return list(messages)
    return [{"role": "system", "content": system}, *(m for m in messages if m.get("role") != "system")]


def _new_tool(override: ToolOverride) -> dict[str, Any]:
    function: dict[str, Any] = {"name": override.name, "parameters": override.parameters}
    if override.description is not None:
        function["description"] = override.description
    return {"type": "function", "function": function}


def apply_tool_overrides(
    tools: Sequence[dict[str, Any]] | None, overrides: Sequence[ToolOverride] | None
) -> list[dict[str, Any]] | None:
    """Merge tool overrides into function tools by name.

    An override replaces the description and parameters it carries. An
    override for an unknown tool is appended only when it has parameters.
    """
    if not overrides:
        return list(tools) if tools is not None else None

    updated = [dict(tool) for tool in tools or []]
    for override in overrides:
        position = next(
            (
                i
                for i, tool in enumerate(updated)
                if tool.get("type") == "function" and (tool.get("function") or {}).get("name") == override.name
            ),
            None,
        )
        if position is not None:
            function = dict(updated[position].get("function") or {})
            if override.description is not None:
                function["description"] = override.description
            if override.parameters is not None:
                function["parameters"] = override.parameters
            updated[position] = {**updated[position], "function": function}
        elif override.parameters is not None:
            updated.append(_new_tool(override))

    if not updated and tools is None:
        return None
    return updated


def apply_overrides(
    override: PathOverride | None,
    messages: Sequence[dict[str, Any]],
    tools: Sequence[dict[str, Any]] | None,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]] | None]:
    if override is None:
        return list(messages), list(tools) if tools is not None else None
    return (
        apply_system_override(messages, override.system_text()),
        apply_tool_overrides(tools, override.tools),
    )
