"""Docker CLI tool."""

from typing import Any

from pydantic import BaseModel, Field

from deckhand.config import Config, get_config
from deckhand.executor import CommandExecutor
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolName, ToolResult
from deckhand.tools.shell_policy import check_allowed_programs, is_blocked_shell_command

log = get_logger(__name__)


class DockerArgs(BaseModel):
    command: str = Field(
        description="Full Docker command to execute (e.g. 'docker build -t my-image .')",
    )


class DockerTool(Tool):
    """Execute raw Docker commands."""

    name = ToolName.DOCKER_CLI.value
    description = "Execute raw Docker commands and return their output"
    args_model = DockerArgs

    def __init__(self, executor: CommandExecutor | None = None, config: Config | None = None):
        self.config = config or get_config()
        self.executor = executor or CommandExecutor()
        self.allowed_programs = list(self.config.tools.docker.allowed_programs)
        self.timeout_seconds = float(self.config.tools.docker.timeout)

    def _is_command_allowed(self, command: str) -> tuple[bool, str]:
        allowed, reason = check_allowed_programs(command, self.allowed_programs)
        if not allowed:
            return False, reason

        blocked, matched = is_blocked_shell_command(command, self.config.tools.docker.blocked)
        if blocked:
            if matched == "empty_command":
                return False, "Command is empty"
            if matched == "unparseable_command":
                return False, "Command is not parseable"
            return False, f"Command matches blocked pattern: {matched}"
        return True, ""

    async def execute(self, command: str, **kwargs: Any) -> ToolResult:
        allowed, reason = self._is_command_allowed(command)
        if not allowed:
            log.warning("Rejected docker command", command=command, reason=reason)
            return ToolResult.fail(reason, kind="validation")

        result = await self.executor.run(
            command,
            timeout=self.timeout_seconds,
            abort_event=kwargs.get("_abort_event"),
        )
        if result.timed_out:
            return ToolResult.fail(f"Docker command failed: {result.error}", kind="timeout")
        if not result.ok:
            return ToolResult.fail(f"Docker command failed: {result.describe_failure()}")
        return ToolResult(content=f"Command output:\n{result.output}".strip())
