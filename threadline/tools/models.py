"""Tool descriptors, calls and results shared by the registry and executor."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Marks a tool as skill-backed. Real server ids are positive database ids.
SKILL_SOURCE = -1

SKILL_PREFIX = "skill_"
# Prepended to server tool names that would otherwise land in the skill namespace.
SERVER_ESCAPE_PREFIX = "mcp_"

SERVER_PREFIX_MAX_LEN = 20
SKILL_NAME_MAX_LEN = 30

_INVALID_CHARS = re.compile(r"[^a-z0-9_]")
# Names the model API accepts for a tool.
_TOOL_NAME = re.compile(r"[a-zA-Z0-9_-]{1,64}")


def sanitize_name(name: str, max_len: int) -> str:
    """Lower-case, spaces and dashes to underscores, drop anything else, truncate."""
    name = name.strip().lower().replace(" ", "_").replace("-", "_")
    return _INVALID_CHARS.sub("", name)[:max_len]


def server_tool_name(server_name: str, tool_name: str) -> str:
    """Namespaced model-facing name for a server tool.

    Never starts with the skill prefix, so server and skill names cannot collide.
    """
    name = f"{sanitize_name(server_name, SERVER_PREFIX_MAX_LEN)}_{tool_name}"
    if name.startswith(SKILL_PREFIX):
        name = SERVER_ESCAPE_PREFIX + name
    return name


def skill_tool_name(skill_name: str) -> str:
    return SKILL_PREFIX + sanitize_name(skill_name, SKILL_NAME_MAX_LEN)


def is_valid_tool_name(name: str) -> bool:
    return _TOOL_NAME.fullmatch(name) is not None


@dataclass(frozen=True)
class Tool:
    """A capability offered to the model for one turn.

    Attributes:
        name: Model-facing name, unique within the turn.
        description: Shown to the model.
        input_schema: JSON schema of the arguments.
        source: Owning server id, or ``SKILL_SOURCE``.
        remote_name: Name the owning server knows the tool by.
    """

    name: str
    description: str
    input_schema: dict[str, Any]
    source: int
    remote_name: str = ""

    @property
    def is_skill(self) -> bool:
        return self.source == SKILL_SOURCE

    def to_schema(self) -> dict[str, Any]:
        """Build a Claude tool schema dict."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema or {"type": "object", "properties": {}},
        }


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Outcome of one tool call, fed back to the model as a ``tool`` turn."""

    tool_call_id: str
    name: str
    content: str
    is_error: bool = False

    def to_record(self) -> str:
        """Serialize for storage as a ``tool``-role message."""
        return json.dumps({
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "result": self.content,
            "is_error": self.is_error,
        })


@dataclass
class RemoteToolServer:
    """A configured tool server reachable over HTTP or a local process.

    Attributes:
        id: Database id, also the session cache key.
        name: Display name; its sanitized form prefixes every tool name.
        transport: ``"http"`` or ``"process"``.
        endpoint_url: JSON-RPC endpoint for the http transport.
        command: Executable for the process transport.
        args: Command-line arguments for the process transport.
        env: Extra environment variables for the process transport.
        enabled: Disabled servers are never connected.
    """

    id: int
    name: str
    transport: str
    endpoint_url: str = ""
    command: str = ""
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    created_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = datetime.now(UTC).isoformat()

    @property
    def connection_info(self) -> str:
        if self.transport == "http":
            return self.endpoint_url
        return " ".join([self.command, *self.args]).strip()

    @classmethod
    def from_row(cls, row: tuple) -> RemoteToolServer:
        return cls(
            id=row[0],
            name=row[1],
            transport=row[2],
            endpoint_url=row[3],
            command=row[4],
            args=list(json.loads(row[5] or "[]")),
            env=dict(json.loads(row[6] or "{}")),
            enabled=bool(row[7]),
            created_at=row[8],
        )
