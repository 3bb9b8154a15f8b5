"""
Completion transport for toolloop.

Talks to an OpenAI-compatible chat completions endpoint (OpenRouter by
default) in one of two modes:
- Buffered: a single JSON response
- Streamed: server-sent events accumulated into the same result shape

Both modes return a CompletionResult, so callers do not care which one ran.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import config
from .errors import TransportError
from .models.messages import (
    CompletionRequest,
    TokenUsage,
    ToolCall,
    ensure_request,
    normalize_content,
)
from .telemetry import (
    HttpRequestEndEvent,
    HttpRequestErrorEvent,
    HttpRequestStartEvent,
    TelemetryHooks,
    call_telemetry,
    now_ms,
    safe_response_headers,
)

logger = logging.getLogger(__name__)

COMPLETIONS_PATH = "/chat/completions"
STREAM_DONE = "[DONE]"
USAGE_FIELDS = ("prompt_tokens", "completion_tokens", "total_tokens")

TokenCallback = Callable[[str], Any]


class TransportMode(str, Enum):
    """How a completion is fetched."""

    BUFFERED = "buffered"
    STREAMED = "streamed"


@dataclass
class CompletionResult:
    """Canonical outcome of one completion call."""

    raw_response: Any
    output_text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    resolved_model: Optional[str] = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    # Raw assistant content (string, list of parts, or None) before normalization
    assistant_content: Any = None


class _ResponseMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: Union[str, list[Any], None] = None
    tool_calls: Optional[list[Any]] = None


class _ResponseChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    message: _ResponseMessage


class _CompletionResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    choices: list[_ResponseChoice] = Field(..., min_length=1)
    usage: Optional[dict[str, Any]] = None


def _id_prefix(correlation_id: Optional[str]) -> str:
    return f"[{correlation_id}] " if correlation_id else ""


def _usage_value(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def parse_usage(raw_usage: Any) -> TokenUsage:
    """Read token counters from a provider ``usage`` object."""
    if not isinstance(raw_usage, dict):
        return TokenUsage()
    return TokenUsage(**{name: _usage_value(raw_usage.get(name)) for name in USAGE_FIELDS})


def normalize_arguments(value: Any) -> str:
    """Tool-call arguments as JSON text, serializing structured values."""
    if isinstance(value, str):
        return value
    if value is None:
        return "{}"
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return "{}"


def parse_tool_calls(raw_calls: Any) -> list[ToolCall]:
    """
    Convert provider tool calls into ToolCall objects.

    Entries that are not objects, declare a type other than ``function``,
    lack a function object, or have a blank function name are skipped.
    """
    if not isinstance(raw_calls, list):
        return []

    calls = []
    for entry in raw_calls:
        if not isinstance(entry, dict):
            continue
        call_type = entry.get("type")
        if call_type is not None and call_type != "function":
            continue
        function = entry.get("function")
        if not isinstance(function, dict):
            continue
        name = function.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        call_id = entry.get("id")
        calls.append(
            ToolCall.create(
                name=name.strip(),
                arguments=normalize_arguments(function.get("arguments")),
                id=call_id if isinstance(call_id, str) and call_id else None,
            )
        )
    return calls


def extract_error_message(response_payload: Any, status: int) -> str:
    """Prefer the provider's ``error.message`` over a generic status line."""
    if isinstance(response_payload, dict):
        error = response_payload.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message.strip():
                return message
    return f"Completion request failed with status {status}"


def _read_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


class StreamAccumulator:
    """
    Folds server-sent completion chunks into a single result.

    Text deltas are appended in order and forwarded to the token callback.
    The resolved model and each usage counter are last-write-wins. Tool-call
    deltas are merged by their ``index``.
    """

    def __init__(
        self,
        on_token: Optional[TokenCallback] = None,
        telemetry: Optional[TelemetryHooks] = None,
    ):
        self.output_text = ""
        self.chunks_processed = 0
        self.resolved_model: Optional[str] = None
        self.usage = TokenUsage()
        self.saw_usage = False
        self.done = False
        # Last data payload, when it failed to parse and nothing followed it
        self.trailing_unparseable: Optional[str] = None
        self._on_token = on_token
        self._telemetry = telemetry
        self._tool_slots: dict[int, dict[str, Any]] = {}

    def feed_line(self, line: str) -> None:
        """Consume one line of the event stream."""
        line = line.strip()
        if not line.startswith("data:"):
            return
        data = line[len("data:"):].strip()
        if not data:
            return
        if data == STREAM_DONE:
            self.done = True
            self.trailing_unparseable = None
            return

        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed stream event: %.200s", data)
            self.trailing_unparseable = data
            return

        self.trailing_unparseable = None
        self.chunks_processed += 1
        call_telemetry(self._telemetry, "on_stream_chunk", self.chunks_processed)
        if isinstance(chunk, dict):
            self._apply_chunk(chunk)

    def _apply_chunk(self, chunk: dict) -> None:
        model = chunk.get("model")
        if isinstance(model, str) and model:
            self.resolved_model = model

        usage = chunk.get("usage")
        if isinstance(usage, dict):
            self._merge_usage(usage)

        choices = chunk.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return

        token = normalize_content(delta.get("content"))
        if token:
            self.output_text += token
            self._emit_token(token)
        self._merge_tool_call_deltas(delta.get("tool_calls"))

    def _merge_usage(self, raw_usage: dict) -> None:
        updates = {}
        for name in USAGE_FIELDS:
            value = _usage_value(raw_usage.get(name))
            if value is not None:
                updates[name] = value
        if updates:
            self.usage = self.usage.model_copy(update=updates)
            self.saw_usage = True

    def _merge_tool_call_deltas(self, deltas: Any) -> None:
        if not isinstance(deltas, list):
            return
        for position, delta in enumerate(deltas):
            if not isinstance(delta, dict):
                continue
            index = delta.get("index")
            if not isinstance(index, int):
                index = position
            slot = self._tool_slots.setdefault(
                index, {"id": None, "type": None, "name": "", "arguments": ""}
            )
            if isinstance(delta.get("id"), str) and delta["id"]:
                slot["id"] = delta["id"]
            if isinstance(delta.get("type"), str):
                slot["type"] = delta["type"]
            function = delta.get("function")
            if isinstance(function, dict):
                if isinstance(function.get("name"), str):
                    slot["name"] += function["name"]
                if isinstance(function.get("arguments"), str):
                    slot["arguments"] += function["arguments"]

    def _emit_token(self, token: str) -> None:
        if self._on_token is None:
            return
        try:
            self._on_token(token)
        except Exception as e:
            logger.warning("Token callback failed: %s", e)

    def tool_calls(self) -> list[ToolCall]:
        raw_calls = []
        for index in sorted(self._tool_slots):
            slot = self._tool_slots[index]
            entry: dict[str, Any] = {
                "id": slot["id"],
                "function": {"name": slot["name"], "arguments": slot["arguments"] or "{}"},
            }
            if slot["type"] is not None:
                entry["type"] = slot["type"]
            raw_calls.append(entry)
        return parse_tool_calls(raw_calls)

    def summary(self) -> dict:
        return {
            "chunks_processed": self.chunks_processed,
            "output_text": self.output_text,
            "usage": self.usage.model_dump(),
            "resolved_model": self.resolved_model,
        }


class CompletionClient:
    """
    Async client for an OpenAI-compatible chat completions endpoint.

    One instance can serve any number of concurrent runs; it holds no
    per-run state. Pass ``http_client`` to reuse a configured
    ``httpx.AsyncClient`` (tests pass one built on ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        app_title: Optional[str] = None,
        referer: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or config.transport.base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else config.transport.api_key
        self.app_title = app_title if app_title is not None else config.transport.app_title
        self.referer = referer if referer is not None else config.transport.referer
        self.timeout = timeout or config.transport.timeout
        self.endpoint = f"{self.base_url}{COMPLETIONS_PATH}"
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.timeout)

    async def __aenter__(self) -> "CompletionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    def build_headers(self, correlation_id: Optional[str] = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.app_title:
            headers["X-Title"] = self.app_title
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id
        return headers

    async def complete(
        self,
        request: Union[CompletionRequest, dict],
        mode: Union[TransportMode, str] = TransportMode.BUFFERED,
        on_token: Optional[TokenCallback] = None,
        telemetry: Optional[TelemetryHooks] = None,
        correlation_id: Optional[str] = None,
    ) -> CompletionResult:
        """
        Run one completion call.

        Args:
            request: The request, or a mapping of its fields
            mode: Buffered or streamed transport
            on_token: Called with each streamed text delta (streamed mode only)
            telemetry: Lifecycle hooks for the HTTP exchange
            correlation_id: Sent as X-Correlation-Id and used as log prefix

        Returns:
            CompletionResult with normalized text, tool calls and usage

        Raises:
            RequestValidationError: If the request is out of bounds (no
                network call is made)
            TransportError: On network failure, non-2xx status or a response
                that does not have the expected shape
        """
        request = ensure_request(request)
        if TransportMode(mode) is TransportMode.STREAMED:
            return await self._complete_streamed(request, on_token, telemetry, correlation_id)
        return await self._complete_buffered(request, telemetry, correlation_id)

    def _start(
        self,
        telemetry: Optional[TelemetryHooks],
        payload: dict,
        stream: bool,
        correlation_id: Optional[str],
    ) -> int:
        started_ms = now_ms()
        logger.debug(
            "%sRequesting completion: model=%s, messages=%d, stream=%s",
            _id_prefix(correlation_id),
            payload["model"],
            len(payload["messages"]),
            stream,
        )
        call_telemetry(
            telemetry,
            "on_http_request_start",
            HttpRequestStartEvent(
                timestamp_ms=started_ms,
                request_payload=payload,
                message_count=len(payload["messages"]),
                stream=stream,
            ),
        )
        return started_ms

    def _fail(
        self,
        telemetry: Optional[TelemetryHooks],
        payload: dict,
        started_ms: int,
        message: str,
        correlation_id: Optional[str],
        status: Optional[int] = None,
        response_payload: Any = None,
    ) -> TransportError:
        finished_ms = now_ms()
        logger.error("%sCompletion failed: %s", _id_prefix(correlation_id), message)
        call_telemetry(
            telemetry,
            "on_http_request_error",
            HttpRequestErrorEvent(
                timestamp_ms=finished_ms,
                request_payload=payload,
                duration_ms=finished_ms - started_ms,
                error_message=message,
                status=status,
                response_payload=response_payload,
            ),
        )
        return TransportError(
            message,
            status=status,
            request_payload=payload,
            response_payload=response_payload,
        )

    def _finish(
        self,
        telemetry: Optional[TelemetryHooks],
        payload: dict,
        started_ms: int,
        response: httpx.Response,
        response_payload: Any,
        stream_chunk_count: Optional[int] = None,
    ) -> None:
        finished_ms = now_ms()
        call_telemetry(
            telemetry,
            "on_http_request_end",
            HttpRequestEndEvent(
                timestamp_ms=finished_ms,
                request_payload=payload,
                duration_ms=finished_ms - started_ms,
                status=response.status_code,
                response_headers=safe_response_headers(response.headers),
                response_payload=response_payload,
                stream_chunk_count=stream_chunk_count,
            ),
        )

    async def _complete_buffered(
        self,
        request: CompletionRequest,
        telemetry: Optional[TelemetryHooks],
        correlation_id: Optional[str],
    ) -> CompletionResult:
        payload = request.to_payload()
        payload.pop("stream", None)
        started_ms = self._start(telemetry, payload, False, correlation_id)

        try:
            response = await self._http.post(
                self.endpoint, json=payload, headers=self.build_headers(correlation_id)
            )
        except httpx.HTTPError as e:
            raise self._fail(
                telemetry, payload, started_ms, f"Completion request failed: {e}", correlation_id
            ) from e

        response_payload = _read_payload(response)
        if not response.is_success:
            raise self._fail(
                telemetry,
                payload,
                started_ms,
                extract_error_message(response_payload, response.status_code),
                correlation_id,
                status=response.status_code,
                response_payload=response_payload,
            )

        try:
            parsed = _CompletionResponse.model_validate(response_payload)
        except ValidationError as e:
            raise self._fail(
                telemetry,
                payload,
                started_ms,
                "Completion response validation failed.",
                correlation_id,
                status=response.status_code,
                response_payload=response_payload,
            ) from e

        self._finish(telemetry, payload, started_ms, response, response_payload)

        message = parsed.choices[0].message
        return CompletionResult(
            raw_response=response_payload,
            output_text=normalize_content(message.content).strip(),
            usage=parse_usage(parsed.usage),
            resolved_model=parsed.model or None,
            tool_calls=parse_tool_calls(message.tool_calls),
            assistant_content=message.content,
        )

    async def _complete_streamed(
        self,
        request: CompletionRequest,
        on_token: Optional[TokenCallback],
        telemetry: Optional[TelemetryHooks],
        correlation_id: Optional[str],
    ) -> CompletionResult:
        payload = request.to_payload()
        payload["stream"] = True
        started_ms = self._start(telemetry, payload, True, correlation_id)
        accumulator = StreamAccumulator(on_token=on_token, telemetry=telemetry)

        try:
            async with self._http.stream(
                "POST",
                self.endpoint,
                json=payload,
                headers=self.build_headers(correlation_id),
            ) as response:
                if not response.is_success:
                    await response.aread()
                    response_payload = _read_payload(response)
                    raise self._fail(
                        telemetry,
                        payload,
                        started_ms,
                        extract_error_message(response_payload, response.status_code),
                        correlation_id,
                        status=response.status_code,
                        response_payload=response_payload,
                    )

                async for line in response.aiter_lines():
                    accumulator.feed_line(line)
                    if accumulator.done:
                        break
        except httpx.HTTPError as e:
            error = self._fail(
                telemetry, payload, started_ms, f"Completion stream failed: {e}", correlation_id
            )
            error.usage = accumulator.usage if accumulator.saw_usage else TokenUsage()
            raise error from e

        if accumulator.trailing_unparseable is not None:
            raise self._fail(
                telemetry,
                payload,
                started_ms,
                "Completion stream ended with an unparseable event.",
                correlation_id,
                status=response.status_code,
                response_payload=accumulator.trailing_unparseable,
            )

        logger.debug(
            "%sStream finished after %d chunks",
            _id_prefix(correlation_id),
            accumulator.chunks_processed,
        )
        summary = accumulator.summary()
        self._finish(
            telemetry,
            payload,
            started_ms,
            response,
            summary,
            stream_chunk_count=accumulator.chunks_processed,
        )
        return CompletionResult(
            raw_response=summary,
            output_text=accumulator.output_text,
            usage=accumulator.usage,
            resolved_model=accumulator.resolved_model,
            tool_calls=accumulator.tool_calls(),
            assistant_content=accumulator.output_text,
        )
