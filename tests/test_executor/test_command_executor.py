import asyncio
import shlex
import sys
import time
from pathlib import Path

import pytest

from deckhand.executor import CommandExecutor


@pytest.mark.asyncio
async def test_shell_string_runs_through_shell():
    executor = CommandExecutor(timeout=10)

    result = await executor.run("echo hello && echo there")

    assert result.ok is True
    assert result.returncode == 0
    assert result.stdout == "hello\nthere"


@pytest.mark.asyncio
async def test_argv_runs_without_shell_and_captures_exit_status():
    executor = CommandExecutor(timeout=10)

    result = await executor.run(
        [sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"]
    )

    assert result.ok is False
    assert result.returncode == 3
    assert result.stderr == "boom"
    assert "exit code 3" in result.describe_failure()


@pytest.mark.asyncio
async def test_argv_arguments_are_not_shell_interpreted():
    executor = CommandExecutor(timeout=10)

    result = await executor.run([sys.executable, "-c", "import sys; print(sys.argv[1])", "$(whoami); echo x"])

    assert result.stdout == "$(whoami); echo x"


@pytest.mark.asyncio
async def test_timeout_kills_the_process():
    executor = CommandExecutor(timeout=10)
    started = time.monotonic()

    result = await executor.run([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.3)

    assert time.monotonic() - started < 10
    assert result.timed_out is True
    assert result.ok is False
    assert result.error == "Command timed out after 0.3s"


@pytest.mark.asyncio
async def test_abort_event_kills_the_process():
    executor = CommandExecutor(timeout=30)
    abort_event = asyncio.Event()

    task = asyncio.create_task(
        executor.run([sys.executable, "-c", "import time; time.sleep(30)"], abort_event=abort_event)
    )
    await asyncio.sleep(0.2)
    abort_event.set()
    result = await asyncio.wait_for(task, timeout=10)

    assert result.aborted is True
    assert result.error == "Command aborted"


@pytest.mark.asyncio
async def test_cancellation_propagates_after_killing_the_process():
    executor = CommandExecutor(timeout=30)
    started = time.monotonic()

    task = asyncio.create_task(executor.run([sys.executable, "-c", "import time; time.sleep(30)"]))
    await asyncio.sleep(0.2)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert time.monotonic() - started < 10


@pytest.mark.asyncio
async def test_launch_failure_and_empty_command_are_results():
    executor = CommandExecutor(timeout=5)

    missing = await executor.run(["deckhand-no-such-binary-7f3a"])
    empty = await executor.run("   ")

    assert missing.ok is False
    assert missing.error.startswith("Failed to start command:")
    assert empty.error == "Command is empty"


@pytest.mark.asyncio
async def test_output_is_truncated():
    executor = CommandExecutor(timeout=10, max_output_chars=10)

    result = await executor.run([sys.executable, "-c", "print('x' * 100)"])

    assert result.stdout.startswith("x" * 10)
    assert "truncated, 100 total chars" in result.stdout


def _two_stage_pipeline(marker: Path) -> str:
    """A pipeline whose first stage writes ``marker`` unless it is killed first."""
    writer = shlex.join(
        [sys.executable, "-c", f"import time; time.sleep(1.5); open({str(marker)!r}, 'w').close()"]
    )
    sleeper = shlex.join([sys.executable, "-c", "import time; time.sleep(30)"])
    return f"{writer} | {sleeper}"


@pytest.mark.asyncio
async def test_timeout_kills_every_stage_of_a_pipeline(tmp_path: Path):
    marker = tmp_path / "survivor"
    executor = CommandExecutor(timeout=30)
    started = time.monotonic()

    result = await executor.run(_two_stage_pipeline(marker), timeout=0.3)

    assert time.monotonic() - started < 5
    assert result.timed_out is True
    await asyncio.sleep(2)
    assert not marker.exists()


@pytest.mark.asyncio
async def test_abort_kills_every_stage_of_a_pipeline(tmp_path: Path):
    marker = tmp_path / "survivor"
    executor = CommandExecutor(timeout=30)
    abort_event = asyncio.Event()

    task = asyncio.create_task(executor.run(_two_stage_pipeline(marker), abort_event=abort_event))
    await asyncio.sleep(0.2)
    abort_event.set()
    result = await asyncio.wait_for(task, timeout=5)

    assert result.aborted is True
    await asyncio.sleep(2)
    assert not marker.exists()


@pytest.mark.asyncio
async def test_cancellation_kills_every_stage_of_a_pipeline(tmp_path: Path):
    marker = tmp_path / "survivor"
    executor = CommandExecutor(timeout=30)

    task = asyncio.create_task(executor.run(_two_stage_pipeline(marker)))
    await asyncio.sleep(0.2)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(2)
    assert not marker.exists()
