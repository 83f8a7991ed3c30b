"""Remote tool servers, skills, the registry and the executor."""

from threadline.tools.executor import ToolExecutor
from threadline.tools.mcp import MCPClient
from threadline.tools.models import RemoteToolServer, Tool, ToolCall, ToolResult
from threadline.tools.registry import ToolRegistry
from threadline.tools.skills import SkillCache

__all__ = [
    "MCPClient",
    "RemoteToolServer",
    "SkillCache",
    "Tool",
    "ToolCall",
    "ToolExecutor",
    "ToolRegistry",
    "ToolResult",
]
