"""
toolloop - tool-use orchestration for OpenAI-compatible completion APIs

This package provides:
- Completion client with buffered and streamed (SSE) transport
- Tool registry with JSON Schema argument validation and remote tools
- Iterative tool-use loop with step and iteration ceilings
- Telemetry hooks and optional Langfuse tracing
- Command-line interface
"""

from .errors import (
    EmptyResponseError,
    LoopExceededError,
    MissingExecutorError,
    RequestValidationError,
    SchemaError,
    ToolLoopError,
    TransportError,
    UnknownToolError,
)
from .llm_call import CompletionClient, CompletionResult, TransportMode
from .models.messages import Message, TokenUsage, ToolCall, ToolKind, ToolSpec
from .orchestration import (
    LoopOutcome,
    LoopResult,
    ToolUseLoop,
    compare_models,
    run_tool_runtime,
)
from .telemetry import TelemetryHooks
from .tools import ToolHandlers, ToolRegistry, register_builtin_tools

__all__ = [
    "EmptyResponseError",
    "LoopExceededError",
    "MissingExecutorError",
    "RequestValidationError",
    "SchemaError",
    "ToolLoopError",
    "TransportError",
    "UnknownToolError",
    "CompletionClient",
    "CompletionResult",
    "TransportMode",
    "Message",
    "TokenUsage",
    "ToolCall",
    "ToolKind",
    "ToolSpec",
    "LoopOutcome",
    "LoopResult",
    "ToolUseLoop",
    "compare_models",
    "run_tool_runtime",
    "TelemetryHooks",
    "ToolHandlers",
    "ToolRegistry",
    "register_builtin_tools",
]

__version__ = "0.1.0"
