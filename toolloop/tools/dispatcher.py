"""
Tool Dispatcher.

Runs one tool call: routes it to a local executor or the remote executor,
validates arguments, enforces the per-tool timeout and serializes the
result to text for the conversation.

Tool failures (bad arguments, executor exceptions, timeouts, remote error
results) come back as ``{"error": "..."}`` text so the model can correct
itself. Unknown tools and missing executors are configuration defects and
raise.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from ..errors import MissingExecutorError, SchemaError, UnknownToolError
from ..models.messages import ToolCall
from .registry import ToolRegistry, parse_arguments
from .remote import RemoteExecutor, RemoteToolResult, split_qualified_name

logger = logging.getLogger(__name__)

# Receives the validated argument object, returns any JSON-serializable value
ToolExecutor = Callable[[dict], Awaitable[Any]]


class ToolAuditLog(Protocol):
    """External record of tool executions."""

    async def record_start(self, tool_call: ToolCall, step_index: int) -> Any: ...

    async def record_result(self, token: Any, result_json: str) -> None: ...

    async def record_error(self, token: Any, message: str) -> None: ...


@dataclass
class ToolHandlers:
    """Executors and collaborators injected into the dispatcher.

    A ``tool_timeout`` of None means no timeout here; ToolUseLoop fills it
    from its configured default.
    """

    executors: dict[str, ToolExecutor] = field(default_factory=dict)
    remote: Optional[RemoteExecutor] = None
    audit_log: Optional[ToolAuditLog] = None
    tool_timeout: Optional[float] = None

    def missing_for(self, tool_names: Iterable[str]) -> list[str]:
        """Names among ``tool_names`` that nothing here can execute."""
        missing = []
        for name in tool_names:
            if split_qualified_name(name) is not None:
                if self.remote is None:
                    missing.append(name)
            elif name not in self.executors:
                missing.append(name)
        return missing


def serialize_result(result: Any) -> str:
    """Tool result as conversation text; strings pass through untouched."""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result)
    except (TypeError, ValueError):
        return "null"


def error_result(message: str) -> str:
    return json.dumps({"error": message})


def is_tool_result_success(result_text: str) -> bool:
    """A result is a failure only when it is a JSON object with an ``error`` key."""
    try:
        parsed = json.loads(result_text)
    except (TypeError, ValueError):
        return True
    return not (isinstance(parsed, dict) and "error" in parsed)


class ToolTimeoutExpired(Exception):
    """The dispatcher's per-tool timeout ran out."""

    def __init__(self, timeout: float):
        super().__init__(f"timed out after {timeout:g}s")
        self.timeout = timeout


async def _executor_timeouts_as_errors(awaitable: Awaitable[Any]) -> Any:
    """Keep a TimeoutError raised by the tool itself apart from wait_for's."""
    try:
        return await awaitable
    except asyncio.TimeoutError as e:
        raise RuntimeError(str(e) or type(e).__name__) from e


class ToolDispatcher:
    """Executes tool calls against a registry and a set of handlers."""

    def __init__(self, registry: ToolRegistry, correlation_id: Optional[str] = None):
        self.registry = registry
        self.correlation_id = correlation_id
        self.id_prefix = f"[{correlation_id}] " if correlation_id else ""

    def ensure_executable(self, tool_names: Iterable[str], handlers: ToolHandlers) -> None:
        """
        Fail fast when offered tools cannot be executed.

        Raises:
            MissingExecutorError: If any tool lacks an executor
        """
        missing = handlers.missing_for(tool_names)
        if missing:
            raise MissingExecutorError(missing)

    async def execute(
        self, tool_call: ToolCall, handlers: ToolHandlers, step_index: int = 0
    ) -> str:
        """
        Execute one tool call.

        Args:
            tool_call: Call with a resolved id
            handlers: Executors, remote executor, audit log and timeout
            step_index: Run-wide index of this step, passed to the audit log

        Returns:
            Result text: the executor's value, or an ``{"error": ...}`` object

        Raises:
            UnknownToolError: If a local tool name is not registered
            MissingExecutorError: If no executor handles the tool
        """
        name = tool_call.name
        remote_target = split_qualified_name(name)

        if remote_target is None:
            if self.registry.get(name) is None:
                raise UnknownToolError(name)
            executor = handlers.executors.get(name)
            if executor is None:
                raise MissingExecutorError([name])
        elif handlers.remote is None:
            raise MissingExecutorError([name])

        logger.debug("%sExecuting tool %s (step %d)", self.id_prefix, name, step_index)
        audit_token, audit_note = await self._audit_start(handlers, tool_call, step_index)

        try:
            if remote_target is None:
                args = self.registry.validate(name, tool_call.arguments)
                result = await self._run(executor(args), handlers.tool_timeout)
                result_text = serialize_result(result)
            else:
                result_text = await self._execute_remote(
                    tool_call, remote_target, handlers
                )
        except Exception as e:
            message = _error_message(name, e)
            if audit_note:
                message = f"{message} ({audit_note})"
            message = await self._audit_error(handlers, audit_token, message)
            logger.debug("%sTool %s failed: %s", self.id_prefix, name, message)
            return error_result(message)

        if audit_note:
            if not is_tool_result_success(result_text):
                parsed = json.loads(result_text)
                return error_result(f"{parsed['error']} ({audit_note})")
            logger.warning("%s%s for %s", self.id_prefix, audit_note, name)

        await self._audit_result(handlers, audit_token, result_text)
        return result_text

    async def _execute_remote(
        self, tool_call: ToolCall, target: tuple[str, str], handlers: ToolHandlers
    ) -> str:
        name = tool_call.name
        if self.registry.get(name) is not None:
            args = self.registry.validate(name, tool_call.arguments)
        else:
            args = parse_arguments(tool_call.arguments, tool_name=name)

        server_id, tool_name = target
        result = await self._run(
            handlers.remote(server_id, tool_name, args), handlers.tool_timeout
        )
        if not isinstance(result, RemoteToolResult):
            result = RemoteToolResult.from_response(result)
        if result.is_error:
            return error_result(result.text or f"Remote tool {name} failed.")
        return result.text

    async def _run(self, awaitable: Awaitable[Any], timeout: Optional[float]) -> Any:
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(
                _executor_timeouts_as_errors(awaitable), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise ToolTimeoutExpired(timeout) from e

    async def _audit_start(
        self, handlers: ToolHandlers, tool_call: ToolCall, step_index: int
    ) -> tuple[Any, Optional[str]]:
        if handlers.audit_log is None:
            return None, None
        try:
            return await handlers.audit_log.record_start(tool_call, step_index), None
        except Exception as e:
            logger.warning("%sTool log start failed for %s: %s", self.id_prefix, tool_call.name, e)
            return None, f"Tool logging failure: {e}"

    async def _audit_result(self, handlers: ToolHandlers, token: Any, result_text: str) -> None:
        if handlers.audit_log is None or token is None:
            return
        try:
            await handlers.audit_log.record_result(token, result_text)
        except Exception as e:
            logger.warning("%sTool log result update failed: %s", self.id_prefix, e)

    async def _audit_error(self, handlers: ToolHandlers, token: Any, message: str) -> str:
        if handlers.audit_log is None or token is None:
            return message
        try:
            await handlers.audit_log.record_error(token, message)
        except Exception as e:
            logger.warning("%sTool log error update failed: %s", self.id_prefix, e)
            return f"{message} (tool log update failed: {e})"
        return message


def _error_message(name: str, error: Exception) -> str:
    if isinstance(error, ToolTimeoutExpired):
        return f'Tool "{name}" timed out after {error.timeout:g}s'
    if isinstance(error, SchemaError):
        return error.message
    return str(error) or type(error).__name__
