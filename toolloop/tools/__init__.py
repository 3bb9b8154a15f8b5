"""
toolloop tools package

- registry: tool schemas, argument validation, remote tool table
- remote: remote tool discovery parsing and results
- builtin: stock tool catalog (schemas and kinds only)
- dispatcher: executes tool calls against injected handlers
"""

from .registry import RegisteredTool, ToolRegistry, parse_arguments
from .remote import (
    RemoteContent,
    RemoteExecutor,
    RemoteToolDef,
    RemoteToolResult,
    parse_remote_tool_defs,
)
from .builtin import BUILTIN_TOOLS, register_builtin_tools
from .dispatcher import (
    ToolAuditLog,
    ToolDispatcher,
    ToolExecutor,
    ToolHandlers,
    is_tool_result_success,
)

__all__ = [
    "RegisteredTool",
    "ToolRegistry",
    "parse_arguments",
    "RemoteContent",
    "RemoteExecutor",
    "RemoteToolDef",
    "RemoteToolResult",
    "parse_remote_tool_defs",
    "BUILTIN_TOOLS",
    "register_builtin_tools",
    "ToolAuditLog",
    "ToolDispatcher",
    "ToolExecutor",
    "ToolHandlers",
    "is_tool_result_success",
]
