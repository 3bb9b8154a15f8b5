"""
Tool-use loop orchestrator.

Drives a conversation with the completion API until the model answers
without requesting tools. Each iteration sends the whole conversation plus
the offered tool specs; tool calls in the response run one at a time, in
order, and their results are appended as ``tool`` messages before the next
request.

A run ends in one of four ways:
- COMPLETED: the model answered without tool calls
- STEP_LIMIT_REACHED: the run-wide tool step ceiling was hit
- CANCELLED: the caller's cancel event was set
- an exception: transport failure, configuration defect, or
  LoopExceededError when the model keeps calling tools past
  ``max_iterations``
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Protocol, Sequence, Union

from ..config import config
from ..errors import EmptyResponseError, LoopExceededError, ToolLoopError
from ..llm_call import CompletionClient, CompletionResult, TokenCallback, TransportMode
from ..models.config import clamp_max_iterations
from ..models.messages import (
    CompletionRequest,
    Message,
    TokenUsage,
    ToolCall,
    ToolSpec,
    build_request,
    ensure_message,
)
from ..telemetry import (
    TelemetryHooks,
    ToolCallEndEvent,
    ToolCallStartEvent,
    call_telemetry,
    combine_hooks,
    now_ms,
)
from ..tools.dispatcher import ToolDispatcher, ToolHandlers, is_tool_result_success
from ..tools.registry import ToolRegistry
from ..tracing import TracingContext, build_tracing_hooks
from .tool_defs import select_tool_specs

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 8
STEP_LIMIT_MESSAGE_TEMPLATE = (
    "Tool step limit reached ({limit}). No further tool calls were executed. "
    "Please narrow the task and run again."
)


class CancelSignal(Protocol):
    """Anything with ``is_set()``, such as ``asyncio.Event``."""

    def is_set(self) -> bool: ...


class LoopOutcome(str, Enum):
    COMPLETED = "completed"
    STEP_LIMIT_REACHED = "step_limit_reached"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class LoopRun:
    """
    State of one loop invocation.

    ``conversation`` is what the model sees (assistant turns keep their raw
    content); ``transcript`` holds only the turns the loop appended, with
    normalized text. Owned by a single run and never shared.
    """

    conversation: list[Message] = field(default_factory=list)
    transcript: list[Message] = field(default_factory=list)
    requests: list[CompletionRequest] = field(default_factory=list)
    response_payloads: list[Any] = field(default_factory=list)
    iteration: int = 0
    step_count: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    resolved_model: Optional[str] = None
    raw_response: Any = None
    outcome: Optional[LoopOutcome] = None
    error: Optional[ToolLoopError] = None
    tools_used: list[str] = field(default_factory=list)

    @property
    def request_payloads(self) -> list[dict]:
        """Requests as sent on the wire, in order."""
        return [request.to_payload() for request in self.requests]


@dataclass
class LoopResult:
    """Terminal result of a run that did not raise."""

    output_text: str
    outcome: LoopOutcome
    run: LoopRun

    @property
    def completed(self) -> bool:
        return self.outcome is LoopOutcome.COMPLETED

    @property
    def step_limit_reached(self) -> bool:
        return self.outcome is LoopOutcome.STEP_LIMIT_REACHED

    @property
    def usage(self) -> TokenUsage:
        """Usage reported for the final completion."""
        return self.run.usage

    @property
    def resolved_model(self) -> Optional[str]:
        return self.run.resolved_model

    @property
    def raw_response(self) -> Any:
        return self.run.raw_response

    @property
    def transcript(self) -> list[Message]:
        return self.run.transcript

    @property
    def request_payloads(self) -> list[dict]:
        return self.run.request_payloads

    @property
    def response_payloads(self) -> list[Any]:
        return self.run.response_payloads

    @property
    def step_count(self) -> int:
        return self.run.step_count

    @property
    def iterations(self) -> int:
        return len(self.run.requests)


def assign_tool_call_ids(tool_calls: Sequence[ToolCall], iteration: int) -> list[ToolCall]:
    """
    Give every call a unique id within its message.

    Provider ids are kept. Missing or repeated ids become
    ``tool-call-<iteration>-<index>``, so identical provider output always
    yields identical ids.
    """
    assigned = []
    seen: set[str] = set()
    for index, call in enumerate(tool_calls):
        call_id = call.id
        if not call_id or call_id in seen:
            call_id = f"tool-call-{iteration}-{index}"
        seen.add(call_id)
        assigned.append(call if call_id == call.id else call.with_id(call_id))
    return assigned


def _is_cancelled(cancel_event: Optional[CancelSignal]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


class ToolUseLoop:
    """
    Iterative tool-use loop over one CompletionClient and ToolRegistry.

    The loop object holds configuration only; each ``run`` call gets its
    own LoopRun, so one loop may serve several runs.
    """

    def __init__(
        self,
        client: CompletionClient,
        registry: ToolRegistry,
        handlers: Optional[ToolHandlers] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        max_iterations: Optional[int] = None,
        max_steps: Optional[int] = None,
        mode: Optional[Union[TransportMode, str]] = None,
        tool_choice: Union[str, dict, None] = "auto",
        telemetry: Optional[TelemetryHooks] = None,
        tracing_context: Optional[TracingContext] = None,
        correlation_id: Optional[str] = None,
        step_limit_message: Optional[str] = None,
        settings: Optional[Any] = None,
    ):
        """
        Args:
            client: Transport for completion calls
            registry: Source of tool specs and argument schemas
            handlers: Tool executors; a run offering tools without
                executors fails before any request
            model: Model id; the configured loop model when omitted
            temperature: Sampling temperature in [0, 2]
            max_tokens: Completion token limit
            max_iterations: Request ceiling, clamped to [1, 50]
            max_steps: Run-wide tool call ceiling; None for no ceiling
            mode: Buffered or streamed transport
            tool_choice: Sent with the tools list
            telemetry: Caller hooks for HTTP and tool lifecycle events
            tracing_context: Langfuse context; the run is wrapped in an
                ``orchestration`` span and traced through hooks
            correlation_id: Sent to the provider and used as log prefix
            step_limit_message: Output when the step ceiling is hit
            settings: Config or AppConfig whose ``loop`` section fills every
                option left as None; the environment config when omitted
        """
        defaults = (settings or config).loop
        self.client = client
        self.registry = registry
        handlers = handlers or ToolHandlers()
        if handlers.tool_timeout is None and defaults.tool_timeout is not None:
            handlers = replace(handlers, tool_timeout=defaults.tool_timeout)
        self.handlers = handlers
        self.model = model or defaults.model
        self.temperature = temperature if temperature is not None else defaults.temperature
        self.max_tokens = max_tokens if max_tokens is not None else defaults.max_tokens
        self.max_iterations = clamp_max_iterations(
            max_iterations if max_iterations is not None else defaults.max_iterations
        )
        self.max_steps = max_steps
        if mode is None:
            mode = TransportMode.STREAMED if defaults.stream else TransportMode.BUFFERED
        self.mode = TransportMode(mode)
        self.tool_choice = tool_choice
        self.tracing_context = tracing_context
        self.telemetry = telemetry
        self.correlation_id = correlation_id
        self.id_prefix = f"[{correlation_id}] " if correlation_id else ""
        self.step_limit_message = step_limit_message or STEP_LIMIT_MESSAGE_TEMPLATE.format(
            limit=max_steps
        )
        self.dispatcher = ToolDispatcher(registry, correlation_id=correlation_id)

    async def run(
        self,
        messages: Sequence[Union[Message, dict]],
        tools: Optional[Sequence[ToolSpec]] = None,
        on_token: Optional[TokenCallback] = None,
        cancel_event: Optional[CancelSignal] = None,
        require_output: bool = False,
    ) -> LoopResult:
        """
        Run the loop to a terminal state.

        Args:
            messages: Initial conversation (system/user turns and any history)
            tools: Tool specs to offer; every registry tool when None,
                no tools when empty
            on_token: Receives streamed deltas, or the whole answer once when
                the transport is buffered
            cancel_event: Checked before each request and each tool call
            require_output: Raise EmptyResponseError on an empty answer

        Returns:
            LoopResult with the output text and the run state

        Raises:
            RequestValidationError: If the request is out of bounds
            TransportError: On any completion failure (never retried)
            UnknownToolError: If the model calls a tool the registry lacks
            MissingExecutorError: If offered tools have no executor
            LoopExceededError: If tools are still requested after
                ``max_iterations`` requests
            EmptyResponseError: If output was required and is empty

        Every raised ToolLoopError carries the run state as ``error.run``.
        """
        run = LoopRun()
        try:
            run.conversation = [ensure_message(message) for message in messages]
            tool_specs = list(tools) if tools is not None else select_tool_specs(self.registry)
            logger.debug(
                "%sStarting tool loop: model=%s, tools=%d, mode=%s",
                self.id_prefix,
                self.model,
                len(tool_specs),
                self.mode.value,
            )
            if tool_specs:
                self.dispatcher.ensure_executable(
                    [spec.name for spec in tool_specs], self.handlers
                )
            if self.tracing_context:
                result = await self._run_with_tracing(run, tool_specs, on_token, cancel_event)
            else:
                result = await self._run_loop(
                    run, tool_specs, on_token, cancel_event, self.telemetry
                )
            if require_output and result.completed and not result.output_text:
                raise EmptyResponseError()
        except ToolLoopError as e:
            run.outcome = LoopOutcome.ERROR
            run.error = e
            e.run = run
            raise
        return result

    async def _run_with_tracing(
        self,
        run: LoopRun,
        tool_specs: list[ToolSpec],
        on_token: Optional[TokenCallback],
        cancel_event: Optional[CancelSignal],
    ) -> LoopResult:
        """Run the loop inside an ``orchestration`` span."""
        with self.tracing_context.span(
            name="orchestration",
            metadata={
                "model": self.model,
                "max_iterations": self.max_iterations,
                "max_steps": self.max_steps,
                "correlation_id": self.correlation_id,
            },
            input={"messages": [message.to_payload() for message in run.conversation]},
        ) as span:
            telemetry = combine_hooks(
                self.telemetry,
                build_tracing_hooks(self.tracing_context, parent=span.child_context()),
            )
            try:
                result = await self._run_loop(run, tool_specs, on_token, cancel_event, telemetry)
            except ToolLoopError as e:
                span.set_status("error")
                span.set_output({"error": e.message, "steps_taken": run.step_count})
                raise
            span.set_output(
                {
                    "outcome": result.outcome.value,
                    "steps_taken": run.step_count,
                    "output": result.output_text[:500],
                }
            )
            return result

    async def _run_loop(
        self,
        run: LoopRun,
        tool_specs: list[ToolSpec],
        on_token: Optional[TokenCallback],
        cancel_event: Optional[CancelSignal],
        telemetry: Optional[TelemetryHooks],
    ) -> LoopResult:
        streamed = self.mode is TransportMode.STREAMED

        for iteration in range(self.max_iterations):
            run.iteration = iteration
            if _is_cancelled(cancel_event):
                return self._cancel(run)

            request = build_request(
                model=self.model,
                messages=list(run.conversation),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                tools=tool_specs or None,
                tool_choice=self.tool_choice if tool_specs else None,
                stream=streamed,
            )
            run.requests.append(request)

            completion = await self.client.complete(
                request,
                mode=self.mode,
                on_token=on_token if streamed else None,
                telemetry=telemetry,
                correlation_id=self.correlation_id,
            )
            if _is_cancelled(cancel_event):
                return self._cancel(run)

            tool_calls = self._record_completion(run, completion, iteration)
            assistant_text = run.transcript[-1].text

            if not tool_calls:
                if assistant_text and not streamed:
                    self._emit_token(on_token, assistant_text)
                return self._finish(run, LoopOutcome.COMPLETED, assistant_text)

            for tool_call in tool_calls:
                if _is_cancelled(cancel_event):
                    return self._cancel(run)
                if self.max_steps is not None and run.step_count >= self.max_steps:
                    logger.warning(
                        "%sTool step limit (%d) reached; skipping remaining tool calls",
                        self.id_prefix,
                        self.max_steps,
                    )
                    return self._finish(
                        run, LoopOutcome.STEP_LIMIT_REACHED, self.step_limit_message
                    )
                await self._execute_tool(run, tool_call, telemetry)

        logger.error(
            "%sTool loop did not converge within %d iterations",
            self.id_prefix,
            self.max_iterations,
        )
        raise LoopExceededError(self.max_iterations)

    def _record_completion(
        self, run: LoopRun, completion: CompletionResult, iteration: int
    ) -> list[ToolCall]:
        """Append the assistant turn and return its tool calls with ids."""
        run.response_payloads.append(completion.raw_response)
        run.raw_response = completion.raw_response
        run.usage = completion.usage
        run.resolved_model = completion.resolved_model or run.resolved_model

        tool_calls = assign_tool_call_ids(completion.tool_calls, iteration)
        text = completion.output_text.strip()
        content = completion.assistant_content
        run.conversation.append(
            Message(
                role="assistant",
                content=content if content is not None else text,
                tool_calls=tool_calls or None,
            )
        )
        run.transcript.append(
            Message(role="assistant", content=text, tool_calls=tool_calls or None)
        )
        return tool_calls

    async def _execute_tool(
        self, run: LoopRun, tool_call: ToolCall, telemetry: Optional[TelemetryHooks]
    ) -> None:
        started_ms = now_ms()
        call_telemetry(
            telemetry,
            "on_tool_call_start",
            ToolCallStartEvent(
                timestamp_ms=started_ms,
                tool_call_id=tool_call.id,
                tool_name=tool_call.name,
                arguments_json=tool_call.arguments,
            ),
        )

        result_text = await self.dispatcher.execute(
            tool_call, self.handlers, step_index=run.step_count
        )

        finished_ms = now_ms()
        call_telemetry(
            telemetry,
            "on_tool_call_end",
            ToolCallEndEvent(
                timestamp_ms=finished_ms,
                tool_call_id=tool_call.id,
                tool_name=tool_call.name,
                arguments_json=tool_call.arguments,
                duration_ms=finished_ms - started_ms,
                success=is_tool_result_success(result_text),
                result=result_text,
            ),
        )

        tool_message = Message(
            role="tool",
            tool_call_id=tool_call.id,
            name=tool_call.name,
            content=result_text,
        )
        run.conversation.append(tool_message)
        run.transcript.append(tool_message)
        run.step_count += 1
        run.tools_used.append(tool_call.name)

    def _emit_token(self, on_token: Optional[TokenCallback], text: str) -> None:
        if on_token is None:
            return
        try:
            on_token(text)
        except Exception as e:
            logger.warning("%sToken callback failed: %s", self.id_prefix, e)

    def _cancel(self, run: LoopRun) -> LoopResult:
        logger.warning(
            "%sRun cancelled after %d request(s) and %d step(s)",
            self.id_prefix,
            len(run.requests),
            run.step_count,
        )
        return self._finish(run, LoopOutcome.CANCELLED, "")

    def _finish(self, run: LoopRun, outcome: LoopOutcome, output_text: str) -> LoopResult:
        run.outcome = outcome
        self._log_run_summary(run)
        return LoopResult(output_text=output_text, outcome=outcome, run=run)

    def _log_run_summary(self, run: LoopRun) -> None:
        logger.info(
            "%sTool loop finished: outcome=%s, requests=%d, steps=%d, tools=%s",
            self.id_prefix,
            run.outcome.value if run.outcome else None,
            len(run.requests),
            run.step_count,
            ", ".join(run.tools_used) or "none",
        )
