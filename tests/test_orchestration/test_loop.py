"""Tests for the tool-use loop."""

import asyncio
import json

import httpx
import pytest

from conftest import completion_payload, sse_response, tool_call_entry
from toolloop.errors import (
    EmptyResponseError,
    LoopExceededError,
    MissingExecutorError,
    RequestValidationError,
    TransportError,
    UnknownToolError,
)
from toolloop.llm_call import TransportMode
from toolloop.models.config import AppConfig, LoopConfig
from toolloop.models.messages import Message, ToolCall
from toolloop.orchestration.loop import (
    DEFAULT_MAX_ITERATIONS,
    LoopOutcome,
    ToolUseLoop,
    assign_tool_call_ids,
)
from toolloop.tools.dispatcher import ToolHandlers

USER = [Message(role="user", content="What is 2+2?")]


def make_loop(llm, registry, handlers=None, **kwargs):
    kwargs.setdefault("model", "test-model")
    kwargs.setdefault("temperature", 0.0)
    kwargs.setdefault("max_tokens", 128)
    kwargs.setdefault("mode", TransportMode.BUFFERED)
    return ToolUseLoop(llm.client(), registry, handlers, **kwargs)


class TestAssignToolCallIds:
    """Tests for assign_tool_call_ids."""

    def test_provider_ids_kept(self):
        """Test unique provider ids pass through."""
        calls = [ToolCall.create("echo", id="a"), ToolCall.create("add", id="b")]
        assert [c.id for c in assign_tool_call_ids(calls, 0)] == ["a", "b"]

    def test_missing_ids_are_synthesized(self):
        """Test missing ids get iteration and position based ids."""
        calls = [ToolCall.create("echo"), ToolCall.create("add")]
        assert [c.id for c in assign_tool_call_ids(calls, 2)] == [
            "tool-call-2-0",
            "tool-call-2-1",
        ]

    def test_duplicate_ids_replaced(self):
        """Test a repeated provider id is replaced on its second use."""
        calls = [ToolCall.create("echo", id="dup"), ToolCall.create("echo", id="dup")]
        assert [c.id for c in assign_tool_call_ids(calls, 0)] == ["dup", "tool-call-0-1"]

    def test_deterministic(self):
        """Test identical input yields identical ids."""
        calls = [ToolCall.create("echo"), ToolCall.create("echo", id="x")]
        assert assign_tool_call_ids(calls, 1) == assign_tool_call_ids(calls, 1)


class TestToolUseLoopConfig:
    """Tests for loop construction."""

    def test_max_iterations_clamped(self, scripted_llm, registry):
        """Test the iteration ceiling is clamped into [1, 50]."""
        llm = scripted_llm([])
        assert make_loop(llm, registry, max_iterations=0).max_iterations == 1
        assert make_loop(llm, registry, max_iterations=120).max_iterations == 50

    def test_default_iterations(self):
        """Test the documented default ceiling."""
        assert DEFAULT_MAX_ITERATIONS == 8

    def test_settings_supply_defaults(self, scripted_llm, registry, handlers):
        """Test options left unset come from the given settings."""
        settings = AppConfig(
            loop=LoopConfig(
                model="yaml-model",
                temperature=0.3,
                max_tokens=64,
                max_iterations=4,
                tool_timeout=2.5,
                stream=True,
            )
        )
        loop = ToolUseLoop(scripted_llm([]).client(), registry, handlers, settings=settings)

        assert loop.model == "yaml-model"
        assert loop.temperature == 0.3
        assert loop.max_tokens == 64
        assert loop.max_iterations == 4
        assert loop.mode is TransportMode.STREAMED
        assert loop.handlers.tool_timeout == 2.5
        assert handlers.tool_timeout is None

    def test_explicit_options_override_settings(self, scripted_llm, registry):
        """Test constructor arguments win over settings."""
        settings = AppConfig(loop=LoopConfig(model="yaml-model", max_iterations=4))
        handlers = ToolHandlers(tool_timeout=9)
        loop = make_loop(
            scripted_llm([]), registry, handlers, max_iterations=2, settings=settings
        )

        assert loop.model == "test-model"
        assert loop.max_iterations == 2
        assert loop.handlers.tool_timeout == 9


class TestToolUseLoopRun:
    """Tests for ToolUseLoop.run."""

    @pytest.mark.asyncio
    async def test_direct_answer(self, scripted_llm, registry, handlers):
        """Test an answer without tool calls completes after one request."""
        llm = scripted_llm(
            [completion_payload("4", usage={"prompt_tokens": 9, "completion_tokens": 1, "total_tokens": 10})]
        )
        result = await make_loop(llm, registry, handlers).run(USER)

        assert result.output_text == "4"
        assert result.outcome is LoopOutcome.COMPLETED
        assert result.completed is True
        assert result.iterations == 1
        assert result.step_count == 0
        assert result.usage.total_tokens == 10
        assert result.resolved_model == "test-model"
        assert [m.role for m in result.transcript] == ["assistant"]

        payload = llm.payloads[0]
        assert [tool["function"]["name"] for tool in payload["tools"]] == ["echo", "add"]
        assert payload["tool_choice"] == "auto"
        assert result.request_payloads == llm.payloads

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, scripted_llm, registry, handlers):
        """Test a tool call is executed and its result fed back."""
        llm = scripted_llm(
            [
                completion_payload("", tool_calls=[tool_call_entry("add", {"a": 2, "b": 2}, "call_1")]),
                completion_payload("The answer is 4."),
            ]
        )
        result = await make_loop(llm, registry, handlers).run(USER)

        assert result.output_text == "The answer is 4."
        assert result.step_count == 1
        assert result.iterations == 2

        second = llm.payloads[1]["messages"]
        assert [m["role"] for m in second] == ["user", "assistant", "tool"]
        assert second[1]["tool_calls"][0]["id"] == "call_1"
        assert second[2] == {"role": "tool", "content": "4", "name": "add", "tool_call_id": "call_1"}

    @pytest.mark.asyncio
    async def test_executor_receives_exact_arguments(self, scripted_llm, registry):
        """Test arguments reach the executor unchanged."""
        received = []

        async def echo(args):
            received.append(args)
            return "ok"

        arguments = {"text": "héllo \"quoted\" \n newline"}
        llm = scripted_llm(
            [
                completion_payload("", tool_calls=[tool_call_entry("echo", arguments, "c1")]),
                completion_payload("done"),
            ]
        )
        await make_loop(llm, registry, ToolHandlers(executors={"echo": echo, "add": echo})).run(USER)

        assert received == [arguments]

    @pytest.mark.asyncio
    async def test_loop_exceeded(self, scripted_llm, registry, handlers):
        """Test a model that never stops calling tools hits the ceiling."""
        llm = scripted_llm(
            [completion_payload("", tool_calls=[tool_call_entry("echo", {"text": "again"})])],
            repeat=True,
        )

        with pytest.raises(LoopExceededError) as exc_info:
            await make_loop(llm, registry, handlers, max_iterations=3).run(USER)

        error = exc_info.value
        assert error.message == "Tool-use loop exceeded 3 iterations."
        assert llm.request_count == 3
        assert error.run.step_count == 3
        assert error.run.outcome is LoopOutcome.ERROR
        ids = [m.tool_call_id for m in error.run.transcript if m.role == "tool"]
        assert ids == ["tool-call-0-0", "tool-call-1-0", "tool-call-2-0"]

    @pytest.mark.asyncio
    async def test_step_limit(self, scripted_llm, registry, handlers):
        """Test the step ceiling stops before the third tool call."""
        llm = scripted_llm(
            [
                completion_payload(
                    "",
                    tool_calls=[
                        tool_call_entry("echo", {"text": "a"}),
                        tool_call_entry("echo", {"text": "b"}),
                    ],
                )
            ],
            repeat=True,
        )

        result = await make_loop(llm, registry, handlers, max_steps=2).run(USER)

        assert result.outcome is LoopOutcome.STEP_LIMIT_REACHED
        assert result.step_limit_reached is True
        assert result.step_count == 2
        assert llm.request_count == 2
        assert result.output_text == (
            "Tool step limit reached (2). No further tool calls were executed. "
            "Please narrow the task and run again."
        )

    @pytest.mark.asyncio
    async def test_invalid_arguments_reported_to_model(self, scripted_llm, registry, handlers):
        """Test an extra argument key becomes an error tool message."""
        llm = scripted_llm(
            [
                completion_payload(
                    "", tool_calls=[tool_call_entry("echo", {"text": "hi", "extra": 1}, "c1")]
                ),
                completion_payload("Sorry, fixed."),
            ]
        )

        result = await make_loop(llm, registry, handlers).run(USER)

        tool_message = result.transcript[1]
        assert tool_message.role == "tool"
        error = json.loads(tool_message.content)["error"]
        assert error.startswith("Invalid arguments for echo:")
        assert "extra" in error
        assert result.completed is True
        assert result.step_count == 1

    @pytest.mark.asyncio
    async def test_unknown_tool(self, scripted_llm, registry, handlers):
        """Test a call to an unregistered tool aborts the run."""
        llm = scripted_llm([completion_payload("", tool_calls=[tool_call_entry("nope", {})])])

        with pytest.raises(UnknownToolError) as exc_info:
            await make_loop(llm, registry, handlers).run(USER)

        assert exc_info.value.run.iteration == 0

    @pytest.mark.asyncio
    async def test_missing_executor_fails_before_request(self, scripted_llm, registry):
        """Test offered tools without executors fail with no request made."""
        llm = scripted_llm([completion_payload("never")])
        handlers = ToolHandlers(executors={"echo": lambda args: None})

        with pytest.raises(MissingExecutorError) as exc_info:
            await make_loop(llm, registry, handlers).run(USER)

        assert exc_info.value.tool_names == ["add"]
        assert llm.request_count == 0
        assert exc_info.value.run is not None

    @pytest.mark.asyncio
    async def test_no_tools_offered(self, scripted_llm, registry):
        """Test an empty tool list sends no tools and needs no executors."""
        llm = scripted_llm([completion_payload("hi")])

        result = await make_loop(llm, registry).run(USER, tools=[])

        assert result.output_text == "hi"
        assert "tools" not in llm.payloads[0]
        assert "tool_choice" not in llm.payloads[0]

    @pytest.mark.asyncio
    async def test_transport_error_carries_run(self, scripted_llm, registry, handlers):
        """Test a failing request surfaces with the partial run attached."""
        llm = scripted_llm(
            [
                completion_payload("", tool_calls=[tool_call_entry("echo", {"text": "x"}, "c1")]),
                httpx.Response(500, json={"error": {"message": "Upstream exploded"}}),
            ]
        )

        with pytest.raises(TransportError) as exc_info:
            await make_loop(llm, registry, handlers).run(USER)

        error = exc_info.value
        assert error.message == "Upstream exploded"
        assert error.status == 500
        assert len(error.run.request_payloads) == 2
        assert [m.role for m in error.run.transcript] == ["assistant", "tool"]
        assert error.run.outcome is LoopOutcome.ERROR

    @pytest.mark.asyncio
    async def test_require_output(self, scripted_llm, registry):
        """Test an empty answer raises when output is required."""
        llm = scripted_llm([completion_payload("   ")])

        with pytest.raises(EmptyResponseError):
            await make_loop(llm, registry).run(USER, tools=[], require_output=True)

    @pytest.mark.asyncio
    async def test_empty_answer_allowed_by_default(self, scripted_llm, registry):
        """Test an empty answer completes when output is optional."""
        llm = scripted_llm([completion_payload("")])
        result = await make_loop(llm, registry).run(USER, tools=[])
        assert result.output_text == ""
        assert result.completed is True

    @pytest.mark.asyncio
    async def test_dict_messages_accepted(self, scripted_llm, registry):
        """Test the initial conversation may be plain mappings."""
        llm = scripted_llm([completion_payload("ok")])
        await make_loop(llm, registry).run(
            [{"role": "system", "content": "Be brief."}, {"role": "user", "content": "hi"}], tools=[]
        )
        assert [m["role"] for m in llm.payloads[0]["messages"]] == ["system", "user"]

    @pytest.mark.asyncio
    async def test_malformed_initial_message_carries_run(self, scripted_llm, registry):
        """Test an invalid starting message fails with the run attached."""
        llm = scripted_llm([])

        with pytest.raises(RequestValidationError) as exc_info:
            await make_loop(llm, registry).run([{"role": "wizard", "content": "hi"}], tools=[])

        assert exc_info.value.run is not None
        assert exc_info.value.run.outcome is LoopOutcome.ERROR
        assert llm.request_count == 0

    @pytest.mark.asyncio
    async def test_raw_assistant_content_preserved(self, scripted_llm, registry, handlers):
        """Test list content is resent as-is while the transcript is normalized."""
        content = [{"type": "text", "text": "Checking."}]
        llm = scripted_llm(
            [
                completion_payload(content, tool_calls=[tool_call_entry("echo", {"text": "x"}, "c1")]),
                completion_payload("done"),
            ]
        )

        result = await make_loop(llm, registry, handlers).run(USER)

        assert llm.payloads[1]["messages"][1]["content"] == content
        assert result.transcript[0].content == "Checking."

    @pytest.mark.asyncio
    async def test_buffered_answer_emitted_once(self, scripted_llm, registry):
        """Test buffered runs pass the final answer to on_token once."""
        tokens = []
        llm = scripted_llm([completion_payload("final")])

        await make_loop(llm, registry).run(USER, tools=[], on_token=tokens.append)

        assert tokens == ["final"]

    @pytest.mark.asyncio
    async def test_streamed_run(self, scripted_llm, registry, handlers):
        """Test a streamed run with a tool call and a streamed answer."""
        llm = scripted_llm(
            [
                sse_response(
                    [
                        {
                            "choices": [
                                {
                                    "delta": {
                                        "tool_calls": [
                                            {
                                                "index": 0,
                                                "function": {"name": "add", "arguments": '{"a": 1, "b": 2}'},
                                            }
                                        ]
                                    }
                                }
                            ]
                        }
                    ]
                ),
                sse_response(
                    [
                        {"choices": [{"delta": {"content": "It is "}}]},
                        {"choices": [{"delta": {"content": "3."}}]},
                    ]
                ),
            ]
        )
        tokens = []

        result = await make_loop(llm, registry, handlers, mode=TransportMode.STREAMED).run(
            USER, on_token=tokens.append
        )

        assert tokens == ["It is ", "3."]
        assert result.output_text == "It is 3."
        assert llm.payloads[1]["messages"][2]["tool_call_id"] == "tool-call-0-0"
        assert llm.payloads[1]["messages"][2]["content"] == "3"

    @pytest.mark.asyncio
    async def test_tool_telemetry(self, scripted_llm, registry, handlers, telemetry_recorder):
        """Test tool start and end events bracket each call."""
        llm = scripted_llm(
            [
                completion_payload(
                    "",
                    tool_calls=[
                        tool_call_entry("echo", {"text": "x"}, "c1"),
                        tool_call_entry("echo", {}, "c2"),
                    ],
                ),
                completion_payload("done"),
            ]
        )

        await make_loop(llm, registry, handlers, telemetry=telemetry_recorder.hooks()).run(USER)

        tool_events = [
            (name, event.tool_call_id)
            for name, event in telemetry_recorder.events
            if name.startswith("on_tool_call")
        ]
        assert tool_events == [
            ("on_tool_call_start", "c1"),
            ("on_tool_call_end", "c1"),
            ("on_tool_call_start", "c2"),
            ("on_tool_call_end", "c2"),
        ]
        ends = telemetry_recorder.of("on_tool_call_end")
        assert ends[0].success is True
        assert ends[1].success is False
        assert telemetry_recorder.names().count("on_http_request_end") == 2


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, scripted_llm, registry, handlers):
        """Test a pre-set event stops the run before any request."""
        event = asyncio.Event()
        event.set()
        llm = scripted_llm([completion_payload("never")])

        result = await make_loop(llm, registry, handlers).run(USER, cancel_event=event)

        assert result.outcome is LoopOutcome.CANCELLED
        assert result.output_text == ""
        assert llm.request_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_during_request(self, scripted_llm, registry, handlers):
        """Test a response arriving after cancellation is discarded."""
        event = asyncio.Event()

        def respond(request):
            event.set()
            return httpx.Response(
                200, json=completion_payload("", tool_calls=[tool_call_entry("echo", {"text": "x"})])
            )

        llm = scripted_llm([respond])
        result = await make_loop(llm, registry, handlers).run(USER, cancel_event=event)

        assert result.outcome is LoopOutcome.CANCELLED
        assert result.transcript == []
        assert result.step_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_between_tool_calls(self, scripted_llm, registry):
        """Test remaining tool calls are skipped once cancelled."""
        event = asyncio.Event()
        calls = []

        async def echo(args):
            calls.append(args["text"])
            event.set()
            return "ok"

        llm = scripted_llm(
            [
                completion_payload(
                    "",
                    tool_calls=[
                        tool_call_entry("echo", {"text": "first"}),
                        tool_call_entry("echo", {"text": "second"}),
                    ],
                )
            ]
        )
        handlers = ToolHandlers(executors={"echo": echo, "add": echo})

        result = await make_loop(llm, registry, handlers).run(USER, cancel_event=event)

        assert result.outcome is LoopOutcome.CANCELLED
        assert calls == ["first"]
        assert result.step_count == 1
        assert llm.request_count == 1
