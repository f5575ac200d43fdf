import asyncio
from pathlib import Path

import pytest
from pydantic import BaseModel

from deckhand.config import Config
from deckhand.exceptions import (
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
    ToolValidationError,
)
from deckhand.llm import ToolCall
from deckhand.tools.registry import Tool, ToolRegistry, ToolResult, build_default_registry


class EchoArgs(BaseModel):
    value: str


class EchoTool(Tool):
    name = "echo"
    description = "Echo the value back"
    args_model = EchoArgs

    def __init__(self):
        self.seen: list[dict] = []

    async def execute(self, value: str, **kwargs):
        self.seen.append({"value": value, **kwargs})
        return ToolResult(content=value)


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    parameters = {
        "type": "object",
        "properties": {},
        "required": [],
    }
    timeout_seconds = 0.05

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolResult(content="done")


class CancellableTool(Tool):
    name = "cancellable"
    description = "Cancellable"
    parameters = {
        "type": "object",
        "properties": {},
        "required": [],
    }
    timeout_seconds = 20.0

    def __init__(self):
        self.cancelled = False

    async def execute(self, **kwargs):
        try:
            await asyncio.sleep(10.0)
            return ToolResult(content="done")
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class BrokenTool(Tool):
    name = "broken"
    description = "Raises"
    parameters = {"type": "object", "properties": {}}

    async def execute(self, **kwargs):
        raise RuntimeError("kaboom")


@pytest.mark.asyncio
async def test_registry_injects_runtime_context_into_tool(tmp_path: Path):
    registry = ToolRegistry(base_path=tmp_path)
    tool = EchoTool()
    registry.register(tool)

    result = await registry.execute("echo", {"value": "hi"}, session_id="abc")

    assert result.content == "hi"
    assert tool.seen[0]["_runtime_base_path"] == tmp_path.resolve()
    assert tool.seen[0]["_session_id"] == "abc"
    assert isinstance(tool.seen[0]["_abort_event"], asyncio.Event)


@pytest.mark.asyncio
async def test_registry_raises_not_found_and_validation_errors():
    registry = ToolRegistry()
    registry.register(EchoTool())

    with pytest.raises(ToolNotFoundError, match="Tool not found: nope"):
        await registry.execute("nope", {})
    with pytest.raises(ToolValidationError, match="value"):
        await registry.execute("echo", {})


@pytest.mark.asyncio
async def test_registry_uses_tool_level_timeout_seconds():
    registry = ToolRegistry()
    registry.register(SlowTool())

    with pytest.raises(ToolTimeoutError, match="timed out"):
        await registry.execute("slow", {})


@pytest.mark.asyncio
async def test_registry_abort_event_cancels_running_tool_execution():
    registry = ToolRegistry()
    tool = CancellableTool()
    registry.register(tool)

    abort_event = asyncio.Event()
    execution = asyncio.create_task(registry.execute("cancellable", {}, abort_event=abort_event))
    await asyncio.sleep(0.05)
    abort_event.set()

    with pytest.raises(ToolExecutionError, match="aborted"):
        await execution
    assert tool.cancelled is True


@pytest.mark.asyncio
async def test_registry_task_cancellation_reaches_the_tool():
    registry = ToolRegistry()
    tool = CancellableTool()
    registry.register(tool)

    execution = asyncio.create_task(registry.execute("cancellable", {}))
    await asyncio.sleep(0.05)
    execution.cancel()

    with pytest.raises(asyncio.CancelledError):
        await execution
    assert tool.cancelled is True


@pytest.mark.asyncio
async def test_dispatch_returns_every_failure_as_a_result():
    registry = ToolRegistry()
    registry.register(EchoTool())
    registry.register(SlowTool())
    registry.register(BrokenTool())

    missing = await registry.dispatch(ToolCall(id="1", name="nope", arguments={}))
    invalid = await registry.dispatch(ToolCall(id="2", name="echo", arguments={"value": 3.5j}))
    slow = await registry.dispatch(ToolCall(id="3", name="slow", arguments={}))
    broken = await registry.dispatch(ToolCall(id="4", name="broken", arguments={}))
    ok = await registry.dispatch(ToolCall(id="5", name="echo", arguments={"value": "fine"}))

    assert (missing.success, missing.error_kind) == (False, "not_found")
    assert missing.text == "Error: Tool not found: nope"
    assert (invalid.success, invalid.error_kind) == (False, "validation")
    assert (slow.success, slow.error_kind) == (False, "timeout")
    assert (broken.success, broken.error_kind) == (False, "execution")
    assert "kaboom" in (broken.error or "")
    assert ok.success is True
    assert ok.content == "fine"


def test_registry_rejects_duplicates_and_registration_after_freeze():
    registry = ToolRegistry()
    registry.register(EchoTool())

    with pytest.raises(ValueError, match="already registered"):
        registry.register(EchoTool())

    registry.freeze()
    assert registry.frozen is True
    with pytest.raises(RuntimeError, match="frozen"):
        registry.register(SlowTool())
    assert registry.list_tools() == ["echo"]
    assert registry.has_tool("echo") is True
    assert registry.has_tool("slow") is False


def test_tool_definition_exposes_json_schema_from_args_model():
    definition = EchoTool().get_definition()

    assert definition["name"] == "echo"
    assert definition["parameters"]["properties"]["value"]["type"] == "string"
    assert definition["parameters"]["required"] == ["value"]


def test_build_default_registry_registers_enabled_builtins(tmp_path: Path):
    registry = build_default_registry(Config(), base_path=tmp_path)

    assert registry.frozen is True
    assert registry.runtime_base_path == tmp_path.resolve()
    assert registry.list_tools() == [
        "docker_cli",
        "file_operations",
        "github_clone",
        "aws_operations",
    ]
    names = {definition["name"] for definition in registry.get_definitions()}
    assert names == set(registry.list_tools())


def test_build_default_registry_ignores_unknown_and_disabled_tools(tmp_path: Path):
    cfg = Config()
    cfg.tools.enabled = ["file_operations", "teleport"]

    registry = build_default_registry(cfg, base_path=tmp_path)

    assert registry.list_tools() == ["file_operations"]
