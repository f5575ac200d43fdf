"""Remote Docker deployment over SSH (EC2 hosts)."""

import os
import re
import shlex
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from deckhand.config import Config, get_config
from deckhand.executor import CommandExecutor, CommandResult
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolName, ToolResult

log = get_logger(__name__)

_HOST_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.\-:]*$")
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

CLEANUP_COMMAND = "docker ps -q | xargs -r docker stop && docker ps -aq | xargs -r docker rm"
LOGS_COMMAND = "docker logs $(docker ps -q -l)"


class DeployArgs(BaseModel):
    operation: Literal["deploy", "status", "logs"] = Field(description="The remote operation to perform")
    host: str = Field(description="Public IPv4 address or hostname of the EC2 instance")
    image: str | None = Field(default=None, description="The Docker image to deploy (required for deploy)")
    container_port: int | None = Field(default=None, ge=1, le=65535, description="The container port to expose")
    host_port: int | None = Field(default=None, ge=1, le=65535, description="The host port to map to the container port")
    env_vars: dict[str, str] | None = Field(default=None, description="Environment variables to pass to the container")


class RemoteDeployTool(Tool):
    """Deploy and inspect Docker containers on a remote host over SSH."""

    name = ToolName.AWS_OPERATIONS.value
    description = "Perform AWS EC2 deployment operations with Docker containers over SSH (deploy, status, logs)"
    args_model = DeployArgs

    def __init__(self, executor: CommandExecutor | None = None, config: Config | None = None):
        self.config = config or get_config()
        self.executor = executor or CommandExecutor()
        deploy_cfg = self.config.tools.deploy
        self.remote_user = os.getenv("AWS_EC2_USER") or deploy_cfg.remote_user
        self.default_app_port = int(os.getenv("APP_PORT") or deploy_cfg.default_app_port)
        self.connect_timeout = int(deploy_cfg.connect_timeout)
        self.timeout_seconds = float(deploy_cfg.timeout)

    def _ssh_key_path(self) -> str:
        return (self.config.tools.deploy.ssh_key_path or os.getenv("AWS_SSH_KEY_PATH", "")).strip()

    def _ssh_argv(self, key_path: str, host: str, remote_command: str) -> list[str]:
        return [
            "ssh",
            "-i", key_path,
            "-o", "StrictHostKeyChecking=no",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            f"{self.remote_user}@{host}",
            remote_command,
        ]

    async def _remote(self, key_path: str, host: str, remote_command: str, abort_event: Any) -> CommandResult:
        return await self.executor.run(
            self._ssh_argv(key_path, host, remote_command),
            timeout=self.timeout_seconds,
            abort_event=abort_event,
        )

    def build_run_command(
        self,
        image: str,
        container_port: int | None,
        host_port: int | None,
        env_vars: dict[str, str] | None,
    ) -> str:
        effective_container_port = container_port or self.default_app_port
        effective_host_port = host_port or effective_container_port
        parts = ["docker", "run", "-d", "-p", f"{effective_host_port}:{effective_container_port}"]
        for key, value in (env_vars or {}).items():
            parts += ["-e", shlex.quote(f"{key}={value}")]
        parts.append(shlex.quote(image))
        return " ".join(parts)

    async def execute(
        self,
        operation: str,
        host: str,
        image: str | None = None,
        container_port: int | None = None,
        host_port: int | None = None,
        env_vars: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        key_path = self._ssh_key_path()
        if not key_path:
            return ToolResult.fail(
                "AWS_SSH_KEY_PATH is required (set tools.deploy.ssh_key_path or the AWS_SSH_KEY_PATH env var)",
                kind="validation",
            )
        if not Path(key_path).expanduser().is_file():
            return ToolResult.fail(f"SSH key not found at {key_path}", kind="validation")
        key_path = str(Path(key_path).expanduser())

        host = str(host or "").strip()
        if not host:
            return ToolResult.fail(f"EC2 host is required for {operation}", kind="validation")
        if not _HOST_RE.match(host):
            return ToolResult.fail(f"Invalid EC2 host: {host!r}", kind="validation")

        abort_event = kwargs.get("_abort_event")

        if operation == "deploy":
            if not image or not image.strip() or image.startswith("-"):
                return ToolResult.fail("EC2 host and Docker image are required for deployment", kind="validation")
            bad_keys = [key for key in (env_vars or {}) if not _ENV_KEY_RE.match(key)]
            if bad_keys:
                return ToolResult.fail(f"Invalid environment variable names: {', '.join(bad_keys)}", kind="validation")

            pull = await self._remote(key_path, host, f"docker pull {shlex.quote(image)}", abort_event)
            if not pull.ok:
                return ToolResult.fail(f"Error performing AWS operation: {pull.describe_failure()}")

            cleanup = await self._remote(key_path, host, CLEANUP_COMMAND, abort_event)
            if not cleanup.ok:
                log.info("Container cleanup reported failure, continuing", host=host, error=cleanup.describe_failure())

            run_command = self.build_run_command(image, container_port, host_port, env_vars)
            run = await self._remote(key_path, host, run_command, abort_event)
            if not run.ok:
                return ToolResult.fail(f"Error performing AWS operation: {run.describe_failure()}")
            log.info("Deployed container", host=host, image=image)
            return ToolResult(content=f"Successfully deployed container {run.stdout.strip()} on EC2 instance {host}")

        if operation == "status":
            status = await self._remote(key_path, host, "docker ps", abort_event)
            if not status.ok:
                return ToolResult.fail(f"Error performing AWS operation: {status.describe_failure()}")
            return ToolResult(content=f"Container status on {host}:\n{status.stdout}")

        if operation == "logs":
            logs = await self._remote(key_path, host, LOGS_COMMAND, abort_event)
            if not logs.ok:
                return ToolResult.fail(f"Error performing AWS operation: {logs.describe_failure()}")
            return ToolResult(content=f"Container logs on {host}:\n{logs.output}")

        return ToolResult.fail(
            f"Unsupported operation '{operation}'. Supported operations are: deploy, status, logs",
            kind="validation",
        )
