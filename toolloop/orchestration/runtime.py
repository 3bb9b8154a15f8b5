"""
Single-path tool runtime and parallel model comparison.

``run_tool_runtime`` is the lightweight variant of the loop used outside
multi-tool workflows: a system and user prompt, the registry's built-in
tools, a stricter iteration default and a fixed step ceiling. Transport
failures come back in the result instead of being raised.

``compare_models`` runs one independent loop per model concurrently.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union

from ..config import config
from ..errors import TransportError
from ..llm_call import CompletionClient, TokenCallback, TransportMode
from ..models.messages import Message, TokenUsage, ToolSpec
from ..telemetry import TelemetryHooks
from ..tools.dispatcher import ToolHandlers
from ..tools.registry import ToolRegistry
from .loop import STEP_LIMIT_MESSAGE_TEMPLATE, LoopResult, LoopRun, ToolUseLoop
from .tool_defs import select_tool_specs

logger = logging.getLogger(__name__)

TOOL_RUNTIME_MAX_STEPS = 5
TOOL_STEP_LIMIT_MESSAGE = STEP_LIMIT_MESSAGE_TEMPLATE.format(limit=TOOL_RUNTIME_MAX_STEPS)


@dataclass
class ToolRuntimeResult:
    """Outcome of run_tool_runtime."""

    output_text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    resolved_model: Optional[str] = None
    request_payloads: list[dict] = field(default_factory=list)
    response_payloads: list[Any] = field(default_factory=list)
    tool_step_count: int = 0
    step_limit_reached: bool = False
    error: Optional[str] = None

    @classmethod
    def from_run(cls, run: LoopRun, output_text: str, error: Optional[str] = None) -> "ToolRuntimeResult":
        return cls(
            output_text=output_text,
            usage=run.usage,
            resolved_model=run.resolved_model,
            request_payloads=run.request_payloads,
            response_payloads=list(run.response_payloads),
            tool_step_count=run.step_count,
            step_limit_reached=False,
            error=error,
        )


def build_initial_messages(system_prompt: Optional[str], user_prompt: str) -> list[Message]:
    """``[system?, user]`` from trimmed prompts; a blank system prompt is dropped."""
    messages = []
    system_text = (system_prompt or "").strip()
    if system_text:
        messages.append(Message(role="system", content=system_text))
    messages.append(Message(role="user", content=user_prompt.strip()))
    return messages


async def run_tool_runtime(
    client: CompletionClient,
    registry: ToolRegistry,
    handlers: ToolHandlers,
    user_prompt: str,
    system_prompt: Optional[str] = None,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    max_steps: Optional[int] = None,
    max_iterations: Optional[int] = None,
    telemetry: Optional[TelemetryHooks] = None,
    correlation_id: Optional[str] = None,
    settings: Optional[Any] = None,
) -> ToolRuntimeResult:
    """
    Run a single prompt through the loop with the built-in tools.

    Args:
        client: Completion transport
        registry: Registry whose built-in (non-remote) tools are offered
        handlers: Executors for those tools
        user_prompt: User turn
        system_prompt: Optional system turn
        model: Model id; the configured loop model when omitted
        temperature: Sampling temperature
        max_tokens: Completion token limit
        max_steps: Tool step ceiling; ``runtime.max_steps`` when omitted
        max_iterations: Request ceiling; ``runtime.max_iterations`` when omitted
        telemetry: Lifecycle hooks
        correlation_id: Request correlation id
        settings: Config or AppConfig supplying defaults; the environment
            config when omitted

    Returns:
        ToolRuntimeResult; ``error`` holds the message of a transport
        failure, with the payloads accumulated until then
    """
    defaults = (settings or config).runtime
    steps = max_steps if max_steps is not None else defaults.max_steps
    if max_iterations is None:
        max_iterations = defaults.max_iterations
    loop = ToolUseLoop(
        client,
        registry,
        handlers,
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        max_iterations=max_iterations,
        max_steps=steps,
        mode=TransportMode.BUFFERED,
        telemetry=telemetry,
        correlation_id=correlation_id,
        settings=settings,
    )

    try:
        result = await loop.run(
            build_initial_messages(system_prompt, user_prompt),
            tools=select_tool_specs(registry, include_remote=False),
        )
    except TransportError as e:
        failed = ToolRuntimeResult.from_run(e.run, "", error=e.message)
        if e.response_payload is not None:
            failed.response_payloads.append(e.response_payload)
        return failed

    runtime_result = ToolRuntimeResult.from_run(result.run, result.output_text)
    runtime_result.step_limit_reached = result.step_limit_reached
    return runtime_result


@dataclass
class ComparisonEntry:
    """One model's outcome in a comparison."""

    model: str
    result: Optional[LoopResult] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def compare_models(
    client: CompletionClient,
    registry: ToolRegistry,
    models: Sequence[str],
    messages: Sequence[Union[Message, dict]],
    handlers: Optional[ToolHandlers] = None,
    tools: Optional[Sequence[ToolSpec]] = None,
    on_token: Optional[TokenCallback] = None,
    **loop_options: Any,
) -> list[ComparisonEntry]:
    """
    Run the same conversation against several models concurrently.

    Each model gets its own ToolUseLoop and LoopRun; nothing is shared but
    the client and the read-only registry. A failing model does not affect
    the others.

    Args:
        client: Completion transport
        registry: Tool registry
        models: Model ids; one entry per model is returned, in this order
        messages: Initial conversation
        handlers: Tool executors
        tools: Tool specs to offer (as for ToolUseLoop.run)
        on_token: Passed to every run
        **loop_options: Extra ToolUseLoop keyword arguments

    Raises:
        ValueError: If no models are given
    """
    if not models:
        raise ValueError("compare_models needs at least one model")

    async def run_one(model: str) -> LoopResult:
        loop = ToolUseLoop(client, registry, handlers, model=model, **loop_options)
        return await loop.run(messages, tools=tools, on_token=on_token)

    outcomes = await asyncio.gather(
        *(run_one(model) for model in models), return_exceptions=True
    )

    entries = []
    for model, outcome in zip(models, outcomes):
        if isinstance(outcome, Exception):
            logger.warning("Model %s failed during comparison: %s", model, outcome)
            entries.append(ComparisonEntry(model=model, error=outcome))
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            entries.append(ComparisonEntry(model=model, result=outcome))
    return entries
