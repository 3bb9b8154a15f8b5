"""
Lifecycle telemetry hooks.

Hooks are plain callables invoked synchronously at well-defined points of a
completion call or a tool call. They are best-effort: a hook that raises is
logged and ignored, and nothing a hook returns is ever awaited.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = frozenset({"set-cookie", "cookie", "authorization", "proxy-authorization"})


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


def safe_response_headers(headers: Optional[Mapping[str, str]]) -> dict[str, str]:
    """Copy response headers, dropping credentials and cookies."""
    if not headers:
        return {}
    return {
        key.lower(): value
        for key, value in headers.items()
        if key.lower() not in SENSITIVE_HEADERS
    }


@dataclass
class HttpRequestStartEvent:
    timestamp_ms: int
    request_payload: dict
    message_count: int
    stream: bool


@dataclass
class HttpRequestEndEvent:
    timestamp_ms: int
    request_payload: dict
    duration_ms: int
    status: int
    response_headers: dict[str, str]
    response_payload: Any
    stream_chunk_count: Optional[int] = None


@dataclass
class HttpRequestErrorEvent:
    timestamp_ms: int
    request_payload: dict
    duration_ms: int
    error_message: str
    status: Optional[int] = None
    response_payload: Any = None


@dataclass
class ToolCallStartEvent:
    timestamp_ms: int
    tool_call_id: str
    tool_name: str
    arguments_json: str


@dataclass
class ToolCallEndEvent:
    timestamp_ms: int
    tool_call_id: str
    tool_name: str
    arguments_json: str
    duration_ms: int
    success: bool
    result: str


@dataclass
class TelemetryHooks:
    """Optional callbacks for completion and tool-call lifecycle events."""

    on_http_request_start: Optional[Callable[[HttpRequestStartEvent], Any]] = None
    on_http_request_end: Optional[Callable[[HttpRequestEndEvent], Any]] = None
    on_http_request_error: Optional[Callable[[HttpRequestErrorEvent], Any]] = None
    on_stream_chunk: Optional[Callable[[int], Any]] = None
    on_tool_call_start: Optional[Callable[[ToolCallStartEvent], Any]] = None
    on_tool_call_end: Optional[Callable[[ToolCallEndEvent], Any]] = None


HOOK_NAMES = (
    "on_http_request_start",
    "on_http_request_end",
    "on_http_request_error",
    "on_stream_chunk",
    "on_tool_call_start",
    "on_tool_call_end",
)


def call_telemetry(hooks: Optional[TelemetryHooks], hook_name: str, event: Any) -> None:
    """
    Fire one telemetry hook, swallowing anything it raises.

    Args:
        hooks: Hook set, or None when telemetry is not wired in
        hook_name: Attribute name of the hook on TelemetryHooks
        event: Event object (or chunk count) passed to the hook
    """
    if hooks is None:
        return
    hook = getattr(hooks, hook_name, None)
    if hook is None:
        return
    try:
        hook(event)
    except Exception as e:
        logger.warning("Telemetry hook %s failed: %s", hook_name, e)


def combine_hooks(*hook_sets: Optional[TelemetryHooks]) -> Optional[TelemetryHooks]:
    """
    Fan each event out to several hook sets in order.

    A failing sink does not prevent later sinks from seeing the event.
    Returns None when no hook set is given.
    """
    active = [hooks for hooks in hook_sets if hooks is not None]
    if not active:
        return None
    if len(active) == 1:
        return active[0]

    def fan_out(name: str) -> Optional[Callable[[Any], None]]:
        if not any(getattr(hooks, name) is not None for hooks in active):
            return None

        def dispatch(event: Any) -> None:
            for hooks in active:
                call_telemetry(hooks, name, event)

        return dispatch

    return TelemetryHooks(**{name: fan_out(name) for name in HOOK_NAMES})
