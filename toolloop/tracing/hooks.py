"""
Telemetry hooks that record a run in Langfuse.

Each completion call becomes a generation (model, input messages, output,
token usage) and each tool call becomes a span, both under the given parent
observation. Build one recorder per run: it tracks the completion in flight.
"""

import logging
from typing import Any, Optional

from langfuse.types import TraceContext

from ..llm_call import parse_usage
from ..telemetry import (
    HttpRequestEndEvent,
    HttpRequestErrorEvent,
    HttpRequestStartEvent,
    TelemetryHooks,
    ToolCallEndEvent,
    ToolCallStartEvent,
)
from .context import Observation, TracingContext

logger = logging.getLogger(__name__)


def _completion_output(response_payload: Any) -> Any:
    """Assistant output from a buffered payload or a stream summary."""
    if not isinstance(response_payload, dict):
        return response_payload
    if "output_text" in response_payload:
        return response_payload["output_text"]
    choices = response_payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0].get("message")
    return None


def _resolved_model(response_payload: Any) -> Optional[str]:
    if not isinstance(response_payload, dict):
        return None
    return response_payload.get("model") or response_payload.get("resolved_model")


class TracingHookRecorder:
    """Turns telemetry events into Langfuse observations."""

    def __init__(self, context: TracingContext, parent: Optional[TraceContext] = None):
        self.context = context
        self.parent = parent
        self._generation: Optional[Observation] = None
        self._tool_spans: dict[str, Observation] = {}

    def on_http_request_start(self, event: HttpRequestStartEvent) -> None:
        payload = event.request_payload
        self._generation = self.context.observation(
            "completion",
            as_type="generation",
            parent=self.parent,
            model=payload.get("model"),
            input=payload.get("messages"),
            model_parameters={
                "temperature": payload.get("temperature"),
                "max_tokens": payload.get("max_tokens"),
            },
            metadata={"stream": event.stream, "message_count": event.message_count},
        )
        self._generation.start()

    def on_http_request_end(self, event: HttpRequestEndEvent) -> None:
        generation, self._generation = self._generation, None
        if generation is None:
            return
        payload = event.response_payload
        usage = parse_usage(payload.get("usage") if isinstance(payload, dict) else None)
        generation.set_output(_completion_output(payload))
        generation.set_usage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
        )
        generation.add_metadata(
            http_status=event.status,
            resolved_model=_resolved_model(payload),
            stream_chunk_count=event.stream_chunk_count,
        )
        generation.end()

    def on_http_request_error(self, event: HttpRequestErrorEvent) -> None:
        generation, self._generation = self._generation, None
        if generation is None:
            return
        generation.set_status("error")
        generation.set_output(event.error_message)
        generation.add_metadata(http_status=event.status)
        generation.end()

    def on_tool_call_start(self, event: ToolCallStartEvent) -> None:
        span = self.context.observation(
            f"tool:{event.tool_name}",
            parent=self.parent,
            input=event.arguments_json,
            metadata={"tool_call_id": event.tool_call_id},
        )
        span.start()
        self._tool_spans[event.tool_call_id] = span

    def on_tool_call_end(self, event: ToolCallEndEvent) -> None:
        span = self._tool_spans.pop(event.tool_call_id, None)
        if span is None:
            return
        span.set_output(event.result)
        span.set_status("success" if event.success else "error")
        span.end()

    def hooks(self) -> TelemetryHooks:
        return TelemetryHooks(
            on_http_request_start=self.on_http_request_start,
            on_http_request_end=self.on_http_request_end,
            on_http_request_error=self.on_http_request_error,
            on_tool_call_start=self.on_tool_call_start,
            on_tool_call_end=self.on_tool_call_end,
        )


def build_tracing_hooks(
    context: Optional[TracingContext], parent: Optional[TraceContext] = None
) -> Optional[TelemetryHooks]:
    """Fresh hooks recording into ``context`` under ``parent``, or None when tracing is off."""
    if context is None or not context.enabled:
        return None
    return TracingHookRecorder(context, parent=parent).hooks()
