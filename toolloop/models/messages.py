"""
Wire models for chat completions with tool use.

These schemas follow the OpenAI-compatible chat completions format used by
OpenRouter and most hosted providers.
"""

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..errors import RequestValidationError

Role = Literal["system", "user", "assistant", "tool"]

EMPTY_OBJECT_SCHEMA = {"type": "object", "properties": {}}


def normalize_content(content: Any) -> str:
    """
    Reduce message content to plain text.

    Strings pass through. A list of content parts keeps plain string parts
    and parts carrying a string ``text`` field, joined with newlines. Any
    other shape yields an empty string.
    """
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""

    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and isinstance(part.get("text"), str):
            parts.append(part["text"])
    return "\n".join(part for part in parts if part)


class FunctionCall(BaseModel):
    """Function half of a tool call: the tool name and its raw JSON arguments."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    arguments: str = "{}"


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    type: Literal["function"] = "function"
    function: FunctionCall

    @classmethod
    def create(cls, name: str, arguments: str = "{}", id: Optional[str] = None) -> "ToolCall":
        return cls(id=id, function=FunctionCall(name=name, arguments=arguments))

    @property
    def name(self) -> str:
        return self.function.name

    @property
    def arguments(self) -> str:
        return self.function.arguments

    def with_id(self, call_id: str) -> "ToolCall":
        return self.model_copy(update={"id": call_id})


class Message(BaseModel):
    """A single conversation turn. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: Union[str, list[Any], None] = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[list[ToolCall]] = None

    @model_validator(mode="after")
    def check_tool_linkage(self) -> "Message":
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")
        if self.tool_calls is not None:
            if self.role != "assistant":
                raise ValueError("only assistant messages carry tool_calls")
            if not self.tool_calls:
                raise ValueError("tool_calls must be non-empty when present")
            ids = [call.id for call in self.tool_calls if call.id is not None]
            if len(ids) != len(set(ids)):
                raise ValueError("tool call ids must be unique within a message")
        return self

    @property
    def text(self) -> str:
        """Normalized text content."""
        return normalize_content(self.content)

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name is not None:
            payload["name"] = self.name
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [
                call.model_dump(exclude_none=True) for call in self.tool_calls
            ]
        return payload


class ToolKind(str, Enum):
    """Side-effect class of a tool, for callers gating on approval."""

    READ = "read"
    MUTATE = "mutate"


class ToolSpec(BaseModel):
    """Declarative description of a tool offered to the model."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: dict(EMPTY_OBJECT_SCHEMA)
    )

    def to_payload(self) -> dict:
        """Provider ``tools`` entry for this spec."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class TokenUsage(BaseModel):
    """Token counters reported by the provider; unknown counters stay None."""

    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class CompletionRequest(BaseModel):
    """One outgoing chat completion request."""

    model: str = Field(..., min_length=1)
    messages: list[Message] = Field(..., min_length=1)
    temperature: float = Field(..., ge=0.0, le=2.0)
    max_tokens: int = Field(..., gt=0)
    tools: Optional[list[ToolSpec]] = None
    tool_choice: Optional[Union[str, dict[str, Any]]] = None
    stream: bool = False

    def to_payload(self) -> dict:
        """JSON body sent to the completions endpoint."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_payload() for message in self.messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if self.tools:
            payload["tools"] = [tool.to_payload() for tool in self.tools]
            if self.tool_choice is not None:
                payload["tool_choice"] = self.tool_choice
        if self.stream:
            payload["stream"] = True
        return payload


def _format_issues(exc: ValidationError) -> list[str]:
    issues = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        issues.append(f"{location}: {error['msg']}" if location else error["msg"])
    return issues


def build_request(**fields: Any) -> CompletionRequest:
    """
    Build a CompletionRequest, converting validation failures.

    Raises:
        RequestValidationError: If the request is outside its bounds
            (empty messages, temperature outside [0, 2], non-positive
            max_tokens, malformed messages).
    """
    try:
        return CompletionRequest(**fields)
    except ValidationError as e:
        issues = _format_issues(e)
        raise RequestValidationError(
            "Invalid completion request: " + "; ".join(issues), issues=issues
        ) from e


def ensure_request(request: Union[CompletionRequest, dict]) -> CompletionRequest:
    """Accept either a built request or its field mapping."""
    if isinstance(request, CompletionRequest):
        return request
    return build_request(**request)


def ensure_message(message: Union[Message, dict]) -> Message:
    """Accept either a Message or its mapping form."""
    if isinstance(message, Message):
        return message
    try:
        return Message.model_validate(message)
    except ValidationError as e:
        issues = _format_issues(e)
        raise RequestValidationError(
            "Invalid message: " + "; ".join(issues), issues=issues
        ) from e
