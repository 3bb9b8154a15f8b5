"""
Request-scoped tracing context using Langfuse SDK v3.

Every observation is opened with an explicit trace_context (trace id plus
parent span id) so nesting stays correct across awaits, whatever state the
OpenTelemetry current context is in. All operations degrade to no-ops when
tracing is disabled or a Langfuse call fails.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Generator, Optional

from langfuse.types import TraceContext

from .client import TracingClient, get_tracing_client

logger = logging.getLogger(__name__)


@dataclass
class Observation:
    """A single Langfuse span or generation with deferred updates."""

    name: str
    as_type: str = "span"
    client: Optional[TracingClient] = None
    parent: Optional[TraceContext] = None
    start_fields: dict = field(default_factory=dict)
    _context_manager: Any = field(default=None, repr=False)
    _observation: Any = field(default=None, repr=False)
    _start_time: float = field(default=0.0, repr=False)
    _output: Any = field(default=None, repr=False)
    _status: str = field(default="success", repr=False)
    _usage: dict = field(default_factory=dict, repr=False)
    _metadata: dict = field(default_factory=dict, repr=False)

    @property
    def enabled(self) -> bool:
        return self.client is not None and self.client.enabled and self.client.client is not None

    @property
    def active(self) -> bool:
        return self._observation is not None

    def start(self) -> None:
        if not self.enabled:
            return
        try:
            self._start_time = time.time()
            fields = {k: v for k, v in self.start_fields.items() if v is not None}
            self._context_manager = self.client.client.start_as_current_observation(
                trace_context=self.parent,
                as_type=self.as_type,
                name=self.name,
                **fields,
            )
            self._observation = self._context_manager.__enter__()
        except Exception as e:
            logger.warning("Failed to start %s '%s': %s", self.as_type, self.name, e)
            self._observation = None

    def end(self) -> None:
        if self._observation is None:
            return
        try:
            metadata = {
                "status": self._status,
                "duration_ms": round((time.time() - self._start_time) * 1000, 2),
                **self._metadata,
            }
            update: dict[str, Any] = {"metadata": metadata}
            if self._output is not None:
                update["output"] = self._output
            if self._usage:
                update["usage_details"] = self._usage
            if self._status == "error":
                update["level"] = "ERROR"
            self._observation.update(**update)
            self._context_manager.__exit__(None, None, None)
        except Exception as e:
            logger.warning("Failed to end %s '%s': %s", self.as_type, self.name, e)
        finally:
            self._observation = None

    def set_output(self, output: Any) -> None:
        self._output = output

    def set_status(self, status: str) -> None:
        self._status = status

    def add_metadata(self, **metadata: Any) -> None:
        self._metadata.update({k: v for k, v in metadata.items() if v is not None})

    def set_usage(
        self,
        prompt_tokens: Optional[int] = None,
        completion_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
    ) -> None:
        """Record token usage (generations only)."""
        for key, value in (
            ("input", prompt_tokens),
            ("output", completion_tokens),
            ("total", total_tokens),
        ):
            if value is not None:
                self._usage[key] = value

    def child_context(self) -> Optional[TraceContext]:
        """TraceContext that makes this observation the parent of new ones."""
        trace_id = getattr(self._observation, "trace_id", None)
        span_id = getattr(self._observation, "id", None)
        if not trace_id or not span_id:
            return self.parent
        return TraceContext(trace_id=trace_id, parent_span_id=span_id)


@dataclass
class TracingContext:
    """
    Tracing state for one loop run.

    ``start_trace`` opens a root span; observations created afterwards are
    its children. Pass the context to ``ToolUseLoop`` to trace a run.
    """

    execution_id: str
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    client: Optional[TracingClient] = None
    _root: Optional[Observation] = field(default=None, repr=False)

    def __post_init__(self):
        if self.client is None:
            self.client = get_tracing_client()

    @property
    def enabled(self) -> bool:
        return self.client is not None and self.client.enabled

    def start_trace(
        self,
        name: str = "tool_loop",
        input: Optional[Any] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Open the root span and attach user and session ids to the trace."""
        if not self.enabled:
            logger.debug("[%s] start_trace skipped: tracing disabled", self.execution_id)
            return

        self._root = Observation(
            name=name,
            client=self.client,
            start_fields={
                "input": input,
                "metadata": {"execution_id": self.execution_id, **(metadata or {})},
            },
        )
        self._root.start()
        if not self._root.active:
            return
        try:
            self._root._observation.update_trace(
                user_id=self.user_id, session_id=self.session_id
            )
        except Exception as e:
            logger.warning("[%s] Failed to set trace attributes: %s", self.execution_id, e)

    def end_trace(
        self,
        output: Optional[Any] = None,
        status: str = "success",
        metadata: Optional[dict] = None,
    ) -> None:
        """Close the root span."""
        if self._root is None:
            return
        self._root.set_output(output)
        self._root.set_status(status)
        self._root.add_metadata(**(metadata or {}))
        self._root.end()
        self._root = None

    def get_trace_context(self) -> Optional[TraceContext]:
        return self._root.child_context() if self._root is not None else None

    def observation(
        self,
        name: str,
        as_type: str = "span",
        parent: Optional[TraceContext] = None,
        **start_fields: Any,
    ) -> Observation:
        """Create (but do not start) an observation under ``parent``, else the root span."""
        return Observation(
            name=name,
            as_type=as_type,
            client=self.client if self.enabled else None,
            parent=parent if parent is not None else self.get_trace_context(),
            start_fields=start_fields,
        )

    @contextmanager
    def span(
        self,
        name: str,
        input: Optional[Any] = None,
        metadata: Optional[dict] = None,
    ) -> Generator[Observation, None, None]:
        span = self.observation(name, input=input, metadata=metadata)
        try:
            span.start()
            yield span
        finally:
            span.end()

    @contextmanager
    def generation(
        self,
        name: str,
        model: str,
        input: Optional[Any] = None,
        metadata: Optional[dict] = None,
        model_parameters: Optional[dict] = None,
    ) -> Generator[Observation, None, None]:
        generation = self.observation(
            name,
            as_type="generation",
            model=model,
            input=input,
            metadata=metadata,
            model_parameters=model_parameters,
        )
        try:
            generation.start()
            yield generation
        finally:
            generation.end()
