"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ValidationError, model_validator

from deckhand.exceptions import (
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
    ToolValidationError,
)
from deckhand.llm import ToolCall
from deckhand.logging import get_logger

log = get_logger(__name__)

ErrorKind = Literal["validation", "execution", "not_found", "timeout"]


class ToolName(str, Enum):
    """Closed set of built-in tool identifiers."""

    DOCKER_CLI = "docker_cli"
    FILE_OPERATIONS = "file_operations"
    GITHUB_CLONE = "github_clone"
    AWS_OPERATIONS = "aws_operations"


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None
    error_kind: ErrorKind | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message and kind."""
        if not self.success:
            if not (self.error or "").strip():
                fallback = (self.content or "").strip()
                self.error = fallback or "Tool execution failed"
            if self.error_kind is None:
                self.error_kind = "execution"
        return self

    @classmethod
    def fail(cls, error: str, kind: ErrorKind = "execution") -> "ToolResult":
        return cls(success=False, error=error, error_kind=kind)

    @property
    def text(self) -> str:
        """Text fed back to the model for this outcome."""
        if self.success:
            return self.content
        return f"Error: {self.error}"


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)


class Tool(ABC):
    """Base class for all tools.

    Subclasses either set ``args_model`` to a pydantic model describing
    their input, or a raw JSON Schema in ``parameters``.
    """

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    args_model: type[BaseModel] | None = None
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and content
        """
        pass

    def input_schema(self) -> dict[str, Any]:
        if self.args_model is not None:
            return self.args_model.model_json_schema()
        return dict(self.parameters or {"type": "object", "properties": {}})

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            OpenAI function-style definition
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.input_schema(),
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Validate tool arguments against the input schema.

        Args:
            arguments: Arguments to validate

        Returns:
            Normalized arguments

        Raises:
            ToolValidationError if invalid
        """
        if not isinstance(arguments, dict):
            raise ToolValidationError(self.name, "arguments must be an object")

        if self.args_model is not None:
            try:
                parsed = self.args_model.model_validate(arguments)
            except ValidationError as e:
                raise ToolValidationError(self.name, _format_validation_error(e)) from e
            return parsed.model_dump()

        required = self.input_schema().get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolValidationError(self.name, f"Missing required argument: {field}")
        return dict(arguments)


class ToolRegistry:
    """Registry for the tools the model may call.

    Tools are registered at start-up and the registry is then frozen;
    from that point on it is read-only and shared between sessions.
    """

    def __init__(self, base_path: Path | str | None = None):
        self._tools: dict[str, Tool] = {}
        self._frozen = False
        self._runtime_base_path = Path.cwd()
        self.set_runtime_base_path(base_path or Path.cwd())

    def set_runtime_base_path(self, base_path: Path | str) -> None:
        """Set base path against which tools resolve relative paths."""
        self._runtime_base_path = Path(base_path).expanduser().resolve()

    @property
    def runtime_base_path(self) -> Path:
        return self._runtime_base_path

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        """Reject further registrations."""
        self._frozen = True

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if self._frozen:
            raise RuntimeError(f"Tool registry is frozen; cannot register '{tool.name}'")
        if not tool.name:
            raise ValueError("Tool must have a name")
        if self.has_tool(tool.name):
            raise ValueError(f"Tool already registered: {tool.name}")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if not self.has_tool(name):
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions for LLM.

        Returns:
            List of OpenAI function-style definitions
        """
        return [tool.get_definition() for tool in self._tools.values()]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        session_id: str | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments
            session_id: Optional session id forwarded to the tool
            abort_event: Optional event that aborts the running tool

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolValidationError if arguments are invalid
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)
        validated = tool.validate_arguments(arguments)

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        timeout_seconds = max(0.01, float(getattr(tool, "timeout_seconds", 30.0) or 30.0))
        try:
            log.info("Executing tool", tool=name, args=validated)

            if abort_event is not None:
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )

            execute_task = asyncio.create_task(
                tool.execute(
                    **validated,
                    _runtime_base_path=self.runtime_base_path,
                    _session_id=(session_id or "").strip(),
                    _abort_event=tool_abort_event,
                )
            )
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise ToolTimeoutError(name, timeout_seconds)
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except ToolError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)

    async def dispatch(
        self,
        call: ToolCall,
        session_id: str | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute one model tool call, returning every failure as data."""
        try:
            return await self.execute(
                call.name,
                call.arguments,
                session_id=session_id,
                abort_event=abort_event,
            )
        except ToolError as e:
            log.warning("Tool call failed", tool=call.name, call_id=call.id, kind=e.kind, error=str(e))
            return ToolResult.fail(str(e), kind=e.kind)


def build_default_registry(config: Any = None, base_path: Path | str | None = None) -> ToolRegistry:
    """Create the frozen registry of built-in tools enabled in config."""
    from deckhand.config import get_config
    from deckhand.executor import CommandExecutor
    from deckhand.tools.docker import DockerTool
    from deckhand.tools.files import FileTool
    from deckhand.tools.git_clone import GitCloneTool
    from deckhand.tools.remote_deploy import RemoteDeployTool

    cfg = config or get_config()
    registry = ToolRegistry(base_path=base_path or cfg.resolved_workspace_path())
    executor = CommandExecutor(
        timeout=cfg.tools.executor.timeout,
        max_output_chars=cfg.tools.executor.max_output_chars,
    )
    factories = {
        ToolName.DOCKER_CLI: lambda: DockerTool(executor=executor, config=cfg),
        ToolName.FILE_OPERATIONS: lambda: FileTool(config=cfg),
        ToolName.GITHUB_CLONE: lambda: GitCloneTool(executor=executor, config=cfg),
        ToolName.AWS_OPERATIONS: lambda: RemoteDeployTool(executor=executor, config=cfg),
    }
    for raw_name in cfg.tools.enabled:
        try:
            tool_name = ToolName(raw_name)
        except ValueError:
            log.warning("Ignoring unknown tool in config", tool=raw_name)
            continue
        registry.register(factories[tool_name]())
    registry.freeze()
    return registry
