"""Tools package for Deckhand."""

from deckhand.tools.registry import (
    Tool,
    ToolName,
    ToolRegistry,
    ToolResult,
    build_default_registry,
)
from deckhand.tools.docker import DockerTool
from deckhand.tools.files import FileTool
from deckhand.tools.git_clone import GitCloneTool
from deckhand.tools.remote_deploy import RemoteDeployTool

__all__ = [
    "Tool",
    "ToolName",
    "ToolRegistry",
    "ToolResult",
    "build_default_registry",
    "DockerTool",
    "FileTool",
    "GitCloneTool",
    "RemoteDeployTool",
]
