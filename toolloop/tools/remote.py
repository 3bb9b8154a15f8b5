"""
Remote tool definitions.

Remote tools come from an external tool-provider protocol (MCP servers and
the like). Discovery yields plain definitions, which are namespaced as
``<server_id>/<name>`` so they never collide with built-in tools.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from ..models.messages import EMPTY_OBJECT_SCHEMA, ToolKind, ToolSpec

logger = logging.getLogger(__name__)

REMOTE_NAME_SEPARATOR = "/"


def qualify_name(server_id: str, name: str) -> str:
    return f"{server_id}{REMOTE_NAME_SEPARATOR}{name}"


def split_qualified_name(name: str) -> Optional[tuple[str, str]]:
    """
    Split ``server/tool`` into its parts.

    Returns None unless the name has exactly one separator with text on
    both sides.
    """
    if name.count(REMOTE_NAME_SEPARATOR) != 1:
        return None
    server_id, tool_name = name.split(REMOTE_NAME_SEPARATOR)
    if not server_id or not tool_name:
        return None
    return server_id, tool_name


@dataclass(frozen=True)
class RemoteToolDef:
    """A tool as reported by a remote provider's discovery call."""

    server_id: str
    name: str
    description: str = ""
    input_schema: dict = field(default_factory=lambda: dict(EMPTY_OBJECT_SCHEMA))
    read_only: bool = False

    @property
    def qualified_name(self) -> str:
        return qualify_name(self.server_id, self.name)

    @property
    def kind(self) -> ToolKind:
        return ToolKind.READ if self.read_only else ToolKind.MUTATE

    @classmethod
    def from_dict(cls, data: dict) -> "RemoteToolDef":
        """Build from a discovery record using either camelCase or snake_case keys."""
        schema = data.get("inputSchema", data.get("input_schema"))
        read_only = data.get("readOnly", data.get("read_only", False))
        return cls(
            server_id=data.get("serverId", data.get("server_id", "")),
            name=data.get("name", ""),
            description=data.get("description") or "",
            input_schema=schema if isinstance(schema, dict) else dict(EMPTY_OBJECT_SCHEMA),
            read_only=read_only is True,
        )


@dataclass(frozen=True)
class RemoteToolEntry:
    """A remote tool as held by the registry."""

    server_id: str
    name: str
    spec: ToolSpec
    kind: ToolKind


def build_remote_entry(definition: RemoteToolDef) -> RemoteToolEntry:
    """
    Convert a discovered definition into a namespaced registry entry.

    Raises:
        ValueError: If the server id or tool name is empty or contains
            the namespace separator
    """
    for label, value in (("server id", definition.server_id), ("tool name", definition.name)):
        if not value or REMOTE_NAME_SEPARATOR in value:
            raise ValueError(f"Invalid remote {label}: {value!r}")

    spec = ToolSpec(
        name=definition.qualified_name,
        description=definition.description,
        parameters=definition.input_schema,
    )
    return RemoteToolEntry(
        server_id=definition.server_id,
        name=definition.name,
        spec=spec,
        kind=definition.kind,
    )


def parse_remote_tool_defs(server_id: str, result: Any) -> list[RemoteToolDef]:
    """
    Read a ``tools/list`` result into tool definitions.

    Tools without a usable name are skipped. A tool annotated with
    ``readOnlyHint: true`` is classified as read; everything else mutates.

    Args:
        server_id: Id of the server that produced the listing
        result: Decoded ``tools/list`` result object

    Returns:
        Definitions in listing order
    """
    tools = result.get("tools") if isinstance(result, dict) else None
    if not isinstance(tools, list):
        return []

    definitions = []
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        name = tool.get("name")
        if not isinstance(name, str) or not name or REMOTE_NAME_SEPARATOR in name:
            logger.debug("Skipping remote tool with unusable name from %s: %r", server_id, name)
            continue
        annotations = tool.get("annotations")
        read_only = isinstance(annotations, dict) and annotations.get("readOnlyHint") is True
        schema = tool.get("inputSchema")
        description = tool.get("description")
        definitions.append(
            RemoteToolDef(
                server_id=server_id,
                name=name,
                description=description if isinstance(description, str) else "",
                input_schema=schema if isinstance(schema, dict) else dict(EMPTY_OBJECT_SCHEMA),
                read_only=read_only,
            )
        )
    return definitions


@dataclass
class RemoteContent:
    type: str = "text"
    text: Optional[str] = None


@dataclass
class RemoteToolResult:
    """Result of a remote tool call."""

    content: list[RemoteContent] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def from_response(cls, result: Any) -> "RemoteToolResult":
        """
        Read a ``tools/call`` result.

        A result without a content list is kept as its JSON text so no
        information is lost.
        """
        if not isinstance(result, dict):
            return cls(content=[RemoteContent(text=json.dumps(result))])

        raw_content = result.get("content")
        is_error = result.get("isError") is True
        if not isinstance(raw_content, list):
            return cls(content=[RemoteContent(text=json.dumps(result))], is_error=is_error)

        content = []
        for part in raw_content:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            content.append(
                RemoteContent(
                    type=str(part.get("type", "text")),
                    text=text if isinstance(text, str) else None,
                )
            )
        return cls(content=content, is_error=is_error)

    @property
    def text(self) -> str:
        """Text parts joined with newlines."""
        return "\n".join(part.text for part in self.content if part.text)


# (server_id, tool_name, arguments) -> RemoteToolResult
RemoteExecutor = Callable[[str, str, dict], Awaitable[RemoteToolResult]]
