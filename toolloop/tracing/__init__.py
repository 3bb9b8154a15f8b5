"""
Langfuse tracing integration for toolloop.

Records completion calls as generations and tool calls as spans.
"""

from .client import (
    TracingClient,
    init_tracing_client,
    get_tracing_client,
    shutdown_tracing,
)
from .context import (
    Observation,
    TracingContext,
)
from .hooks import TracingHookRecorder, build_tracing_hooks

__all__ = [
    "TracingClient",
    "init_tracing_client",
    "get_tracing_client",
    "shutdown_tracing",
    "Observation",
    "TracingContext",
    "TracingHookRecorder",
    "build_tracing_hooks",
]
