"""
Pytest configuration and fixtures for toolloop tests.

The completion endpoint is replaced by httpx.MockTransport, so tests run
the real CompletionClient against scripted responses.
"""

import json
from typing import Any, Callable, Optional, Union

import httpx
import pytest

from toolloop.llm_call import CompletionClient
from toolloop.models.messages import ToolKind, ToolSpec
from toolloop.telemetry import TelemetryHooks
from toolloop.tools.dispatcher import ToolHandlers
from toolloop.tools.registry import ToolRegistry
from toolloop.tracing.client import shutdown_tracing

TEST_BASE_URL = "https://llm.test/api/v1"


def completion_payload(
    content: Any = "",
    tool_calls: Optional[list] = None,
    usage: Optional[dict] = None,
    model: str = "test-model",
) -> dict:
    """A buffered chat completion response body."""
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    payload: dict[str, Any] = {
        "id": "cmpl-test",
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": "tool_calls" if tool_calls else "stop",
            }
        ],
    }
    if usage is not None:
        payload["usage"] = usage
    return payload


def tool_call_entry(name: str, arguments: Any = None, call_id: Optional[str] = None) -> dict:
    """One provider tool call."""
    entry: dict[str, Any] = {
        "type": "function",
        "function": {
            "name": name,
            "arguments": json.dumps(arguments if arguments is not None else {}),
        },
    }
    if call_id is not None:
        entry["id"] = call_id
    return entry


def sse_response(chunks: list, done: bool = True, status: int = 200) -> httpx.Response:
    """A text/event-stream response; str chunks are sent as raw data lines."""
    lines = []
    for chunk in chunks:
        data = chunk if isinstance(chunk, str) else json.dumps(chunk)
        lines.append(f"data: {data}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return httpx.Response(
        status,
        content="".join(lines).encode(),
        headers={"content-type": "text/event-stream"},
    )


ScriptItem = Union[dict, httpx.Response, Exception, Callable[[httpx.Request], Any]]


class ScriptedLLM:
    """
    Plays back scripted responses, one per request.

    Items may be JSON bodies, httpx.Response objects, exceptions to raise,
    or callables taking the request. With ``repeat`` the last item is
    reused once the script runs out.
    """

    def __init__(self, responses: list[ScriptItem], repeat: bool = False):
        self.responses = list(responses)
        self.repeat = repeat
        self.requests: list[httpx.Request] = []
        self.payloads: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.payloads.append(json.loads(request.content))
        if not self.responses:
            raise AssertionError("Unexpected completion request")
        item = self.responses[0] if self.repeat and len(self.responses) == 1 else self.responses.pop(0)
        if callable(item) and not isinstance(item, httpx.Response):
            item = item(request)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)

    @property
    def request_count(self) -> int:
        return len(self.requests)

    def client(self, **kwargs: Any) -> CompletionClient:
        return CompletionClient(
            base_url=kwargs.pop("base_url", TEST_BASE_URL),
            api_key=kwargs.pop("api_key", "test-key"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self)),
            **kwargs,
        )


class TelemetryRecorder:
    """Collects every telemetry event as (hook_name, event)."""

    def __init__(self):
        self.events: list[tuple[str, Any]] = []

    def _record(self, name: str) -> Callable[[Any], None]:
        return lambda event: self.events.append((name, event))

    def hooks(self) -> TelemetryHooks:
        return TelemetryHooks(
            on_http_request_start=self._record("on_http_request_start"),
            on_http_request_end=self._record("on_http_request_end"),
            on_http_request_error=self._record("on_http_request_error"),
            on_stream_chunk=self._record("on_stream_chunk"),
            on_tool_call_start=self._record("on_tool_call_start"),
            on_tool_call_end=self._record("on_tool_call_end"),
        )

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, name: str) -> list[Any]:
        return [event for hook_name, event in self.events if hook_name == name]


@pytest.fixture
def scripted_llm() -> Callable[..., ScriptedLLM]:
    """Factory for ScriptedLLM instances."""
    return ScriptedLLM


@pytest.fixture
def telemetry_recorder() -> TelemetryRecorder:
    return TelemetryRecorder()


@pytest.fixture
def echo_spec() -> ToolSpec:
    return ToolSpec(
        name="echo",
        description="Echo the given text back.",
        parameters={
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    )


@pytest.fixture
def registry(echo_spec) -> ToolRegistry:
    """Registry with an ``echo`` read tool and an ``add`` tool."""
    registry = ToolRegistry()
    registry.register(echo_spec)
    registry.register(
        ToolSpec(
            name="add",
            description="Add two integers.",
            parameters={
                "type": "object",
                "properties": {"a": {"type": "integer"}, "b": {"type": "integer"}},
                "required": ["a", "b"],
            },
        ),
        kind=ToolKind.READ,
    )
    return registry


@pytest.fixture
def handlers() -> ToolHandlers:
    """Executors for the sample registry tools."""

    async def echo(args: dict) -> dict:
        return {"echo": args["text"]}

    async def add(args: dict) -> int:
        return args["a"] + args["b"]

    return ToolHandlers(executors={"echo": echo, "add": add})


@pytest.fixture(autouse=True)
def reset_tracing():
    """Make sure no tracing client leaks between tests."""
    shutdown_tracing()
    yield
    shutdown_tracing()
