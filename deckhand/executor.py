"""Time-bounded subprocess execution for process-backed tools."""

import asyncio
import os
import shlex
import signal
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from deckhand.config import get_config
from deckhand.logging import get_logger

log = get_logger(__name__)


@dataclass
class CommandResult:
    """Captured outcome of one child process."""

    command: str
    stdout: str = ""
    stderr: str = ""
    returncode: int | None = None
    error: str | None = None
    timed_out: bool = False
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def describe_failure(self) -> str:
        """Best available diagnostic for a failed command."""
        if self.error:
            detail = self.output
            return f"{self.error}\n{detail}" if detail else self.error
        detail = self.output or "[no output]"
        return f"Command failed with exit code {self.returncode}: {self.command}\n{detail}"


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n... [truncated, {len(text)} total chars]"


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    """Kill every process in the child's group, not just the shell."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass


async def _reap(process: asyncio.subprocess.Process, communicate_task: asyncio.Task[Any]) -> None:
    """Kill the process group and wait for its pipes to close."""
    _kill_process_group(process)
    await process.wait()
    communicate_task.cancel()
    try:
        await communicate_task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        log.debug("Pipe drain after kill failed", error=str(e))


class CommandExecutor:
    """Run external commands as child processes.

    A string command runs through ``/bin/sh``; a sequence runs as an argv
    with no shell in between. Every run is bounded by a timeout and can be
    aborted through an ``asyncio.Event``. Each child leads its own process
    group, and a timeout or abort kills the whole group. Apart from task
    cancellation, nothing raises out of :meth:`run`: launch failures,
    non-zero exits and timeouts all come back as a :class:`CommandResult`.
    """

    def __init__(
        self,
        timeout: float | None = None,
        max_output_chars: int | None = None,
        env: dict[str, str] | None = None,
    ):
        cfg = get_config().tools.executor
        self.timeout = float(timeout if timeout is not None else cfg.timeout)
        self.max_output_chars = int(max_output_chars or cfg.max_output_chars)
        self._env = env

    def _build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")
        if self._env:
            env.update(self._env)
        return env

    async def _spawn(self, command: str | Sequence[str], cwd: str | None) -> asyncio.subprocess.Process:
        if isinstance(command, str):
            return await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                cwd=cwd,
                start_new_session=True,
            )
        return await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._build_env(),
            cwd=cwd,
            start_new_session=True,
        )

    async def run(
        self,
        command: str | Sequence[str],
        timeout: float | None = None,
        abort_event: asyncio.Event | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        """Run a command and capture its output.

        Args:
            command: Shell command line, or argv sequence
            timeout: Seconds before the process is killed (default from config)
            abort_event: Optional event that kills the process when set
            cwd: Optional working directory

        Returns:
            CommandResult describing the run
        """
        label = command if isinstance(command, str) else shlex.join(command)
        result = CommandResult(command=label)
        if isinstance(command, str) and not command.strip():
            result.error = "Command is empty"
            return result
        if not isinstance(command, str) and not list(command):
            result.error = "Command is empty"
            return result
        if abort_event is not None and abort_event.is_set():
            result.error = "Command aborted"
            result.aborted = True
            return result

        limit = max(0.01, float(timeout if timeout is not None else self.timeout))

        try:
            log.info("Executing command", command=label, timeout=limit)
            process = await self._spawn(command, cwd)
        except (OSError, ValueError) as e:
            log.error("Command launch failed", command=label, error=str(e))
            result.error = f"Failed to start command: {e}"
            return result

        communicate_task = asyncio.create_task(process.communicate())
        abort_wait_task: asyncio.Task[bool] | None = None
        if abort_event is not None:
            abort_wait_task = asyncio.create_task(abort_event.wait())
        try:
            wait_tasks: set[asyncio.Task[Any]] = {communicate_task}
            if abort_wait_task is not None:
                wait_tasks.add(abort_wait_task)
            done, _ = await asyncio.wait(
                wait_tasks,
                timeout=limit,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if communicate_task in done:
                stdout, stderr = await communicate_task
            elif abort_wait_task is not None and abort_wait_task in done:
                await _reap(process, communicate_task)
                result.error = "Command aborted"
                result.aborted = True
                return result
            else:
                await _reap(process, communicate_task)
                shown = int(limit) if float(limit).is_integer() else limit
                log.warning("Command timed out", command=label, timeout=limit)
                result.error = f"Command timed out after {shown}s"
                result.timed_out = True
                return result
        except asyncio.CancelledError:
            await _reap(process, communicate_task)
            raise
        finally:
            if abort_wait_task is not None and not abort_wait_task.done():
                abort_wait_task.cancel()
                try:
                    await abort_wait_task
                except asyncio.CancelledError:
                    pass

        result.returncode = process.returncode
        result.stdout = _truncate(stdout.decode("utf-8", errors="replace").strip(), self.max_output_chars)
        result.stderr = _truncate(stderr.decode("utf-8", errors="replace").strip(), self.max_output_chars)
        if process.returncode != 0:
            log.warning("Command exited non-zero", command=label, returncode=process.returncode)
        return result
