"""
Tool definitions for the tool-use loop.

Selects registry entries to offer the model and converts them into
OpenAI-style ``tools`` payload entries.
"""

import logging
from typing import Iterable, Optional

from ..models.messages import ToolKind, ToolSpec
from ..tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


def select_tool_specs(
    registry: ToolRegistry,
    names: Optional[Iterable[str]] = None,
    kinds: Optional[Iterable[ToolKind]] = None,
    exclude_tools: Optional[set[str]] = None,
    include_remote: bool = True,
) -> list[ToolSpec]:
    """
    Pick the tool specs to offer for a run.

    Args:
        registry: Source registry
        names: Only these tools, in this order; unknown names raise KeyError
        kinds: Only tools of these kinds (e.g. ``{ToolKind.READ}`` for a
            run that must not mutate anything)
        exclude_tools: Tool names to leave out
        include_remote: Whether to offer remote tools when ``names`` is None

    Returns:
        Tool specs in offer order
    """
    exclude = exclude_tools or set()
    allowed_kinds = set(kinds) if kinds is not None else None

    if names is not None:
        specs = []
        for name in names:
            spec = registry.lookup(name)
            if spec is None:
                raise KeyError(f"Unknown tool: {name}")
            specs.append(spec)
    else:
        specs = registry.specs(include_remote=include_remote)

    selected = []
    for spec in specs:
        if spec.name in exclude:
            logger.debug("Excluding tool '%s'", spec.name)
            continue
        if allowed_kinds is not None and registry.kind_of(spec.name) not in allowed_kinds:
            continue
        selected.append(spec)
    return selected


def build_tool_definitions(
    registry: ToolRegistry,
    names: Optional[Iterable[str]] = None,
    kinds: Optional[Iterable[ToolKind]] = None,
    exclude_tools: Optional[set[str]] = None,
    include_remote: bool = True,
) -> list[dict]:
    """
    Build OpenAI function-calling tool definitions from the registry.

    Takes the same filters as select_tool_specs.

    Returns:
        List of ``{"type": "function", "function": {...}}`` entries.
    """
    return [
        spec.to_payload()
        for spec in select_tool_specs(
            registry,
            names=names,
            kinds=kinds,
            exclude_tools=exclude_tools,
            include_remote=include_remote,
        )
    ]
