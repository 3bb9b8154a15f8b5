"""
Data models for toolloop.
"""

from .messages import (
    CompletionRequest,
    FunctionCall,
    Message,
    TokenUsage,
    ToolCall,
    ToolKind,
    ToolSpec,
    build_request,
    ensure_message,
    ensure_request,
    normalize_content,
)
from .config import (
    TransportConfig,
    LoopConfig,
    RuntimeConfig,
    LoggingConfig,
    LangfuseConfig,
    AppConfig,
    clamp_max_iterations,
)

__all__ = [
    # Wire models
    "CompletionRequest",
    "FunctionCall",
    "Message",
    "TokenUsage",
    "ToolCall",
    "ToolKind",
    "ToolSpec",
    "build_request",
    "ensure_message",
    "ensure_request",
    "normalize_content",
    # Config models
    "TransportConfig",
    "LoopConfig",
    "RuntimeConfig",
    "LoggingConfig",
    "LangfuseConfig",
    "AppConfig",
    "clamp_max_iterations",
]
