"""
Tool-use orchestration.

The loop sends the conversation plus tool specs, runs the requested tools
in order, feeds their results back and repeats until the model answers.
"""

from .tool_defs import build_tool_definitions, select_tool_specs
from .loop import (
    LoopOutcome,
    LoopResult,
    LoopRun,
    ToolUseLoop,
    assign_tool_call_ids,
)
from .runtime import (
    TOOL_STEP_LIMIT_MESSAGE,
    ComparisonEntry,
    ToolRuntimeResult,
    compare_models,
    run_tool_runtime,
)

__all__ = [
    "build_tool_definitions",
    "select_tool_specs",
    "LoopOutcome",
    "LoopResult",
    "LoopRun",
    "ToolUseLoop",
    "assign_tool_call_ids",
    "TOOL_STEP_LIMIT_MESSAGE",
    "ComparisonEntry",
    "ToolRuntimeResult",
    "compare_models",
    "run_tool_runtime",
]
