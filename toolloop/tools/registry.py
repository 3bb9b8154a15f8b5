"""
Tool Registry - Single source of truth for tool schemas.

Holds every tool the model may be offered: built-in tools registered in
code and remote tools discovered at runtime. Each tool carries a JSON
schema for its arguments and a read/mutate classification.

Built-in schemas are closed at registration (``additionalProperties:
false`` unless the schema says otherwise), so unknown argument keys are
rejected. The remote subset lives in an immutable mapping that is swapped
wholesale, so concurrent readers never see a partial update.
"""

import copy
import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError as JsonSchemaDefinitionError

from ..errors import SchemaError
from ..models.messages import ToolKind, ToolSpec
from .remote import (
    REMOTE_NAME_SEPARATOR,
    RemoteToolDef,
    RemoteToolEntry,
    build_remote_entry,
    split_qualified_name,
)

logger = logging.getLogger(__name__)

# Extra check for rules a JSON schema cannot express; raises ValueError
ArgumentCheck = Callable[[dict], None]


@dataclass(frozen=True)
class RegisteredTool:
    """A registered tool: its spec, classification and validators."""

    spec: ToolSpec
    kind: ToolKind
    validator: Draft7Validator
    check: Optional[ArgumentCheck] = None
    remote: bool = False

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def description(self) -> str:
        return self.spec.description

    @property
    def parameters(self) -> dict:
        return self.spec.parameters


def close_schema(schema: dict) -> dict:
    """Return a copy of an object schema that rejects unknown top-level keys."""
    closed = copy.deepcopy(schema)
    if closed.get("type") == "object" and "additionalProperties" not in closed:
        closed["additionalProperties"] = False
    return closed


def parse_arguments(raw_args: Any, tool_name: Optional[str] = None) -> dict:
    """
    Decode tool arguments into a JSON object.

    Accepts an already-structured mapping or JSON text.

    Raises:
        SchemaError: If the text is not valid JSON or does not decode to
            an object
    """
    if isinstance(raw_args, dict):
        return raw_args
    if not isinstance(raw_args, str):
        raise SchemaError("Tool arguments must be a JSON object.", tool_name=tool_name)
    try:
        parsed = json.loads(raw_args)
    except json.JSONDecodeError as e:
        raise SchemaError(
            f"Tool arguments are not valid JSON: {e.msg}", tool_name=tool_name
        ) from e
    if not isinstance(parsed, dict):
        raise SchemaError(
            "Tool arguments must decode to a JSON object.", tool_name=tool_name
        )
    return parsed


def _format_issue(error) -> str:
    location = ".".join(str(part) for part in error.absolute_path)
    return f"{location}: {error.message}" if location else error.message


def _compile(name: str, schema: dict) -> Draft7Validator:
    try:
        Draft7Validator.check_schema(schema)
    except JsonSchemaDefinitionError as e:
        raise ValueError(f"Invalid argument schema for tool '{name}': {e.message}") from e
    return Draft7Validator(schema)


class ToolRegistry:
    """
    Registry of tool schemas.

    Instances are passed explicitly to the dispatcher and loop. Reads are
    lock-free: built-in registration happens at setup time and the remote
    table is replaced by swapping one immutable mapping.
    """

    def __init__(self):
        self._tools: dict[str, RegisteredTool] = {}
        self._remote: Mapping[str, RegisteredTool] = MappingProxyType({})

    def register(
        self,
        spec: ToolSpec,
        validator: Optional[ArgumentCheck] = None,
        kind: ToolKind = ToolKind.READ,
        strict: bool = True,
    ) -> RegisteredTool:
        """
        Register a built-in tool, replacing any earlier tool of that name.

        Args:
            spec: Name, description and JSON argument schema
            validator: Optional extra check run after schema validation;
                raise ValueError to reject the arguments
            kind: Read or mutate classification
            strict: Close the top-level object schema to unknown keys

        Raises:
            ValueError: If the name uses the remote namespace separator or
                the schema itself is invalid
        """
        if REMOTE_NAME_SEPARATOR in spec.name:
            raise ValueError(
                f"Tool name '{spec.name}' is reserved for remote tools "
                f"(contains '{REMOTE_NAME_SEPARATOR}')"
            )
        if strict:
            spec = spec.model_copy(update={"parameters": close_schema(spec.parameters)})

        tool = RegisteredTool(
            spec=spec,
            kind=ToolKind(kind),
            validator=_compile(spec.name, spec.parameters),
            check=validator,
        )
        self._tools[spec.name] = tool
        return tool

    def get(self, name: str) -> Optional[RegisteredTool]:
        """Get a built-in or remote tool by name."""
        tool = self._tools.get(name)
        if tool is not None:
            return tool
        return self._remote.get(name)

    def lookup(self, name: str) -> Optional[ToolSpec]:
        """Get a tool's spec by name."""
        tool = self.get(name)
        return tool.spec if tool is not None else None

    def kind_of(self, name: str) -> Optional[ToolKind]:
        tool = self.get(name)
        return tool.kind if tool is not None else None

    def validate(self, name: str, raw_args: Any) -> dict:
        """
        Parse and validate arguments for a tool.

        Args:
            name: Registered tool name
            raw_args: Arguments as a mapping or JSON text

        Returns:
            The parsed argument object, unchanged by validation

        Raises:
            SchemaError: If the arguments do not decode to an object or
                break the tool's schema or extra check
        """
        tool = self.get(name)
        if tool is None:
            raise SchemaError(f"Unknown tool: {name}", tool_name=name)

        args = parse_arguments(raw_args, tool_name=name)
        issues = [
            _format_issue(error)
            for error in sorted(tool.validator.iter_errors(args), key=lambda e: list(e.absolute_path))
        ]
        if issues:
            raise SchemaError(
                f"Invalid arguments for {name}: " + "; ".join(issues),
                tool_name=name,
                issues=issues,
            )

        if tool.check is not None:
            try:
                tool.check(args)
            except ValueError as e:
                raise SchemaError(
                    f"Invalid arguments for {name}: {e}", tool_name=name, issues=[str(e)]
                ) from e
        return args

    def set_remote_tools(self, definitions: Iterable[RemoteToolDef]) -> None:
        """
        Replace the whole remote subset.

        The new table is built first and swapped in with one assignment.
        On an invalid definition nothing changes.

        Raises:
            ValueError: If a definition has an unusable server id, name or
                schema
        """
        table: dict[str, RegisteredTool] = {}
        for definition in definitions:
            entry: RemoteToolEntry = build_remote_entry(definition)
            table[entry.spec.name] = RegisteredTool(
                spec=entry.spec,
                kind=entry.kind,
                validator=_compile(entry.spec.name, entry.spec.parameters),
                remote=True,
            )
        self._remote = MappingProxyType(table)
        logger.info("Remote tool table replaced: %d tool(s)", len(table))

    @staticmethod
    def is_remote_name(name: str) -> bool:
        """True when a name has the ``server/tool`` shape."""
        return split_qualified_name(name) is not None

    def all_tools(self) -> dict[str, RegisteredTool]:
        """Get a copy of all built-in tools."""
        return self._tools.copy()

    def remote_tools(self) -> dict[str, RegisteredTool]:
        """Get a copy of the current remote table."""
        return dict(self._remote)

    def specs(self, include_remote: bool = True) -> list[ToolSpec]:
        """Tool specs in registration order, built-ins first."""
        specs = [tool.spec for tool in self._tools.values()]
        if include_remote:
            specs.extend(tool.spec for tool in self._remote.values())
        return specs

    def get_tools_summary(self) -> str:
        """Get formatted summary of all tools for prompts."""
        lines = []
        for name, tool in {**self._tools, **self._remote}.items():
            lines.append(f"- {name} [{tool.kind.value}]: {tool.description}")
        return "\n".join(lines)

    def clear(self) -> None:
        """Remove every tool, built-in and remote."""
        self._tools.clear()
        self._remote = MappingProxyType({})
