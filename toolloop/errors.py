"""
Error taxonomy for toolloop.

Transport failures surface to the caller untouched. Schema failures are
recovered inside the dispatcher and turned into tool-result messages.
Unknown tools and missing executors are configuration defects that abort
a run immediately.
"""

from typing import Any, Optional


class ToolLoopError(Exception):
    """Base class for every error raised by toolloop.

    When raised out of a loop run, ``run`` holds the partially built
    ``LoopRun`` so request payloads and transcript stay inspectable.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.run: Any = None


class TransportError(ToolLoopError):
    """A completion call failed at the network, HTTP or response-shape level."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        request_payload: Optional[dict] = None,
        response_payload: Any = None,
    ):
        super().__init__(message)
        self.status = status
        self.request_payload = request_payload
        self.response_payload = response_payload
        # Set for streamed calls that fail after usage was reported
        self.usage: Any = None


class RequestValidationError(TransportError):
    """The outgoing request was rejected before any network call."""

    def __init__(self, message: str, issues: Optional[list[str]] = None):
        super().__init__(message)
        self.issues = issues or []


class SchemaError(ToolLoopError):
    """Tool arguments failed to decode or validate."""

    def __init__(
        self,
        message: str,
        tool_name: Optional[str] = None,
        issues: Optional[list[str]] = None,
    ):
        super().__init__(message)
        self.tool_name = tool_name
        self.issues = issues or []


class UnknownToolError(ToolLoopError):
    """The model asked for a tool the registry does not know."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class MissingExecutorError(ToolLoopError):
    """One or more offered tools have no executor wired in."""

    def __init__(self, tool_names: list[str]):
        names = ", ".join(tool_names)
        super().__init__(f"No executor configured for tool(s): {names}")
        self.tool_names = list(tool_names)


class LoopExceededError(ToolLoopError):
    """The model kept requesting tools past the iteration ceiling."""

    def __init__(self, max_iterations: int):
        super().__init__(f"Tool-use loop exceeded {max_iterations} iterations.")
        self.max_iterations = max_iterations


class EmptyResponseError(ToolLoopError):
    """A completed run produced no output while output was required."""

    def __init__(self, message: str = "Model returned an empty response."):
        super().__init__(message)
