"""File operations tool."""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from deckhand.config import Config, get_config
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolName, ToolResult

log = get_logger(__name__)

FileOperation = Literal["create", "read", "delete", "list", "exists", "append"]


class FileArgs(BaseModel):
    operation: FileOperation = Field(description="The file operation to perform")
    path: str = Field(description="Path to the file or directory for the operation")
    content: str | None = Field(
        default=None,
        description="Content to write to the file (for create and append operations)",
    )


class FileTool(Tool):
    """Create, read, list, append to and delete files."""

    name = ToolName.FILE_OPERATIONS.value
    description = (
        "Perform file operations: create, read, delete, list (directory entries), "
        "exists and append. Relative paths resolve against the workspace."
    )
    args_model = FileArgs
    timeout_seconds = 30.0

    def __init__(self, config: Config | None = None):
        self.config = config or get_config()
        self.max_read_bytes = int(self.config.tools.files.max_read_bytes)

    @staticmethod
    def _resolve(path: str, base: Path | None) -> Path:
        raw = Path(path).expanduser()
        if raw.is_absolute() or base is None:
            return raw
        return base / raw

    async def execute(
        self,
        operation: FileOperation,
        path: str,
        content: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        if not str(path or "").strip():
            return ToolResult.fail(f"File path is required for {operation} operation", kind="validation")

        base = kwargs.get("_runtime_base_path")
        target = self._resolve(path, Path(base) if base else None)

        try:
            if operation == "create":
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content or "", encoding="utf-8")
                return ToolResult(content=f"File created successfully at {path}")

            if operation == "read":
                if not target.exists():
                    return ToolResult.fail(f"File {path} does not exist")
                if target.is_dir():
                    return ToolResult.fail(f"{path} is a directory")
                size = target.stat().st_size
                if size > self.max_read_bytes:
                    return ToolResult.fail(f"File {path} is too large: {size} bytes (max {self.max_read_bytes})")
                return ToolResult(content=target.read_text(encoding="utf-8", errors="replace"))

            if operation == "delete":
                if not target.exists():
                    return ToolResult.fail(f"File {path} does not exist")
                if target.is_dir():
                    return ToolResult.fail(f"{path} is a directory; only files can be deleted")
                target.unlink()
                return ToolResult(content=f"File {path} deleted successfully")

            if operation == "list":
                if not target.exists():
                    return ToolResult.fail(f"Directory {path} does not exist")
                if not target.is_dir():
                    return ToolResult.fail(f"{path} is not a directory")
                return ToolResult(content="\n".join(sorted(entry.name for entry in target.iterdir())))

            if operation == "exists":
                return ToolResult(content="true" if target.exists() else "false")

            if operation == "append":
                if not content:
                    return ToolResult.fail("Content is required for append operation", kind="validation")
                if not target.exists():
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_text(content, encoding="utf-8")
                    return ToolResult(content=f"File created and content appended at {path}")
                with target.open("a", encoding="utf-8") as handle:
                    handle.write(content)
                return ToolResult(content=f"Content appended to {path}")

        except OSError as e:
            log.error("File operation failed", operation=operation, path=path, error=str(e))
            return ToolResult.fail(f"Error performing file operation on {path}: {e}")

        return ToolResult.fail(
            f"Unsupported operation '{operation}'. Supported operations are: "
            "create, read, delete, list, exists, append",
            kind="validation",
        )
