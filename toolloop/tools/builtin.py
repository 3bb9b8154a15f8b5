"""
Built-in tool catalog.

Declares the stock tools (workspace files, artifacts, transcript search,
run history and notes) with their argument schemas and read/mutate kinds.
The catalog carries no executors: callers wire side effects in through
ToolHandlers.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from ..models.messages import ToolKind, ToolSpec
from .registry import ArgumentCheck, RegisteredTool, ToolRegistry

MESSAGE_ROLES = ["system", "user", "assistant", "tool"]
MAX_TAGS = 20
MAX_NOTE_FILENAME_LENGTH = 120


def _text(description: str, required_text: bool = False) -> dict:
    schema = {"type": "string", "description": description}
    if required_text:
        # Must contain at least one non-whitespace character
        schema.update({"minLength": 1, "pattern": r"\S"})
    return schema


def _tags(description: str) -> dict:
    return {
        "type": "array",
        "items": {"type": "string", "minLength": 1, "pattern": r"\S"},
        "maxItems": MAX_TAGS,
        "description": description,
    }


def _object(properties: dict, required: Optional[list[str]] = None) -> dict:
    return {
        "type": "object",
        "properties": properties,
        "required": required or [],
        "additionalProperties": False,
    }


def check_note_filename(args: dict) -> None:
    """Note filenames are plain ``.md`` names with no path components."""
    filename = args.get("filename", "")
    if not filename.endswith(".md"):
        raise ValueError("filename must end with .md")
    if "/" in filename or "\\" in filename or ".." in filename:
        raise ValueError("filename must not contain path separators or traversal segments")


def check_artifact_update(args: dict) -> None:
    if not any(key in args for key in ("title", "body", "tags")):
        raise ValueError('At least one of "title", "body", or "tags" must be provided.')


@dataclass(frozen=True)
class BuiltinTool:
    spec: ToolSpec
    kind: ToolKind
    check: Optional[ArgumentCheck] = None


BUILTIN_TOOLS: list[BuiltinTool] = [
    BuiltinTool(
        spec=ToolSpec(
            name="read_file",
            description="Read the contents of a file from the workspace context directory.",
            parameters=_object(
                {"path": _text("Relative path to the file within the context directory.", True)},
                ["path"],
            ),
        ),
        kind=ToolKind.READ,
    ),
    BuiltinTool(
        spec=ToolSpec(
            name="list_files",
            description="List files in the context directory or one of its subdirectories.",
            parameters=_object(
                {
                    "path": _text(
                        "Optional relative path to a subdirectory. "
                        "Defaults to the root context directory."
                    )
                }
            ),
        ),
        kind=ToolKind.READ,
    ),
    BuiltinTool(
        spec=ToolSpec(
            name="write_file",
            description=(
                "Write or overwrite a file in the context directory. Use this for "
                "generated files such as images or PDFs instead of dumping raw text."
            ),
            parameters=_object(
                {
                    "path": _text("Relative path to the file within the context directory.", True),
                    "content": _text(
                        "Full file content. Binary files such as images are passed base64 encoded."
                    ),
                    "encoding": {
                        "type": "string",
                        "enum": ["utf-8", "base64"],
                        "description": "Text encoding. Use base64 for images and binary files.",
                    },
                },
                ["path", "content"],
            ),
        ),
        kind=ToolKind.MUTATE,
    ),
    BuiltinTool(
        spec=ToolSpec(
            name="list_artifacts",
            description="List saved artifacts.",
            parameters=_object(
                {
                    "include_archived": {
                        "type": "boolean",
                        "description": "Whether to include archived artifacts.",
                        "default": False,
                    }
                }
            ),
        ),
        kind=ToolKind.READ,
    ),
    BuiltinTool(
        spec=ToolSpec(
            name="get_artifact",
            description="Get one artifact by id.",
            parameters=_object({"artifact_id": _text("Artifact id.", True)}, ["artifact_id"]),
        ),
        kind=ToolKind.READ,
    ),
    BuiltinTool(
        spec=ToolSpec(
            name="create_artifact",
            description="Create an artifact from an existing transcript message id.",
            parameters=_object(
                {
                    "source_message_id": _text("Transcript message id used as artifact source.", True),
                    "title": _text("Optional artifact title override.", True),
                    "tags": _tags("Optional artifact tags."),
                },
                ["source_message_id"],
            ),
        ),
        kind=ToolKind.MUTATE,
    ),
    BuiltinTool(
        spec=ToolSpec(
            name="update_artifact",
            description="Update an artifact's title, body or tags.",
            parameters=_object(
                {
                    "artifact_id": _text("Artifact id.", True),
                    "title": _text("Optional new title.", True),
                    "body": _text("Optional full body replacement."),
                    "tags": _tags("Optional tag list replacement."),
                },
                ["artifact_id"],
            ),
        ),
        kind=ToolKind.MUTATE,
        check=check_artifact_update,
    ),
    BuiltinTool(
        spec=ToolSpec(
            name="search_transcript",
            description="Search transcript text for matching messages.",
            parameters=_object(
                {
                    "query": _text("Case-insensitive search term.", True),
                    "limit": {"type": "integer", "minimum": 1, "maximum": 50, "default": 10},
                    "roles": {
                        "type": "array",
                        "items": {"type": "string", "enum": MESSAGE_ROLES},
                        "maxItems": len(MESSAGE_ROLES),
                        "description": "Optional role filters.",
                    },
                },
                ["query"],
            ),
        ),
        kind=ToolKind.READ,
    ),
    BuiltinTool(
        spec=ToolSpec(
            name="update_camp_prompt",
            description="Replace the workspace system prompt.",
            parameters=_object(
                {"system_prompt": _text("New system prompt string.")}, ["system_prompt"]
            ),
        ),
        kind=ToolKind.MUTATE,
    ),
    BuiltinTool(
        spec=ToolSpec(
            name="update_camp_memory",
            description="Replace the workspace memory object.",
            parameters=_object(
                {
                    "memory": {
                        "type": "object",
                        "description": "JSON object to store as workspace memory.",
                    }
                },
                ["memory"],
            ),
        ),
        kind=ToolKind.MUTATE,
    ),
    BuiltinTool(
        spec=ToolSpec(
            name="search_runs",
            description="Search past run history.",
            parameters=_object(
                {
                    "query": _text("Search term for user prompt or output text.", True),
                    "limit": {"type": "integer", "minimum": 1, "maximum": 20, "default": 5},
                    "model": _text(
                        "Optional model substring filter against requested or resolved model.", True
                    ),
                    "tag": _text("Optional tag filter.", True),
                    "since_ts": {
                        "type": "integer",
                        "minimum": 0,
                        "description": "Optional lower timestamp bound in Unix milliseconds.",
                    },
                    "until_ts": {
                        "type": "integer",
                        "minimum": 0,
                        "description": "Optional upper timestamp bound in Unix milliseconds.",
                    },
                },
                ["query"],
            ),
        ),
        kind=ToolKind.READ,
    ),
    BuiltinTool(
        spec=ToolSpec(
            name="write_note",
            description="Write a Markdown note to the workspace folder.",
            parameters=_object(
                {
                    "filename": {
                        "type": "string",
                        "minLength": 1,
                        "maxLength": MAX_NOTE_FILENAME_LENGTH,
                        "description": (
                            "Markdown filename ending in .md. Must be a plain filename "
                            "with no path separators and max length 120."
                        ),
                    },
                    "title": _text("Optional markdown title."),
                    "body": _text("Note body content."),
                },
                ["filename", "body"],
            ),
        ),
        kind=ToolKind.MUTATE,
        check=check_note_filename,
    ),
]


def register_builtin_tools(
    registry: ToolRegistry, names: Optional[Iterable[str]] = None
) -> list[RegisteredTool]:
    """
    Register catalog tools in a registry.

    Args:
        registry: Registry to populate
        names: Subset of tool names to register; all when None

    Raises:
        KeyError: If a requested name is not in the catalog
    """
    catalog = {tool.spec.name: tool for tool in BUILTIN_TOOLS}
    selected = list(names) if names is not None else list(catalog)
    registered = []
    for name in selected:
        tool = catalog[name]
        registered.append(registry.register(tool.spec, validator=tool.check, kind=tool.kind))
    return registered
