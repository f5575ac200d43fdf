import asyncio
from pathlib import Path

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestClient, TestServer

from deckhand.config import Config
from deckhand.llm import LLMProvider, LLMResponse, Message, ToolCall, ToolDefinition
from deckhand.tools.files import FileTool
from deckhand.tools.registry import ToolRegistry
from deckhand.web_server import WebServer


class ListThenAnswerProvider(LLMProvider):
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        last = messages[-1]
        if last.role == "tool":
            return LLMResponse(content=f"Found:\n{last.content}")
        return LLMResponse(
            content="Listing.",
            tool_calls=[ToolCall(id="ls", name="file_operations", arguments={"operation": "list", "path": "."})],
        )


def _server(tmp_path: Path) -> WebServer:
    (tmp_path / "a.txt").write_text("alpha", encoding="utf-8")
    (tmp_path / "b").mkdir()
    registry = ToolRegistry(base_path=tmp_path)
    registry.register(FileTool(config=Config()))
    registry.freeze()
    return WebServer(config=Config(), registry=registry, provider=ListThenAnswerProvider())


async def _receive_until_terminal(ws) -> list[dict]:
    frames: list[dict] = []
    while True:
        frame = await ws.receive_json(timeout=5)
        frames.append(frame)
        if frame["event"] in {"agentComplete", "agentError"}:
            return frames


@pytest.mark.asyncio
async def test_run_agent_streams_frames_and_completes(tmp_path: Path):
    async with TestClient(TestServer(_server(tmp_path).create_app())) as client:
        ws = await client.ws_connect("/ws")
        await ws.send_json({"event": "runAgent", "data": {"instruction": "list files"}})

        frames = await _receive_until_terminal(ws)
        await ws.close()

    assert [frame["event"] for frame in frames] == [
        "agentResponse",
        "agentResponse",
        "agentResponse",
        "agentComplete",
    ]
    first = frames[0]["data"]["content"]
    assert first[0] == {"type": "text", "text": "Listing."}
    assert first[1] == {"type": "tool_use", "id": "ls", "name": "file_operations", "input": {"operation": "list", "path": "."}}
    assert frames[1]["data"]["content"][0]["content"] == "a.txt\nb"
    assert frames[2]["data"]["content"] == [{"type": "text", "text": "Found:\na.txt\nb"}]
    assert frames[3]["data"] is None


@pytest.mark.asyncio
async def test_bare_string_payload_is_accepted(tmp_path: Path):
    async with TestClient(TestServer(_server(tmp_path).create_app())) as client:
        ws = await client.ws_connect("/ws")
        await ws.send_json({"event": "runAgent", "data": "list files"})

        frames = await _receive_until_terminal(ws)
        await ws.close()

    assert frames[-1]["event"] == "agentComplete"


@pytest.mark.asyncio
async def test_invalid_json_and_unknown_events_get_agent_error(tmp_path: Path):
    async with TestClient(TestServer(_server(tmp_path).create_app())) as client:
        ws = await client.ws_connect("/ws")
        await ws.send_str("{not json")
        invalid = await ws.receive_json(timeout=5)
        await ws.send_json({"event": "dance", "data": {}})
        unknown = await ws.receive_json(timeout=5)
        await ws.close()

    assert invalid == {"event": "agentError", "data": {"message": "Invalid JSON"}}
    assert unknown == {"event": "agentError", "data": {"message": "Unsupported event: dance"}}


@pytest.mark.asyncio
async def test_http_endpoints_report_health_and_tools(tmp_path: Path):
    server = _server(tmp_path)
    async with TestClient(TestServer(server.create_app())) as client:
        health = await client.get("/health")
        tools = await client.get("/api/tools")

        assert health.status == 200
        assert (await health.json())["status"] == "ok"
        body = await tools.json()

    assert [tool["name"] for tool in body["tools"]] == ["file_operations"]
    assert "operation" in body["tools"][0]["parameters"]["properties"]


@pytest.mark.asyncio
async def test_disconnect_removes_session(tmp_path: Path):
    server = _server(tmp_path)
    async with TestClient(TestServer(server.create_app())) as client:
        ws = await client.ws_connect("/ws")
        await ws.send_json({"event": "runAgent", "data": {"instruction": "list files"}})
        await _receive_until_terminal(ws)
        assert len(server.sessions) == 1
        await ws.close()

        for _ in range(50):
            if not server.sessions:
                break
            await asyncio.sleep(0.02)

    assert server.sessions == {}


@pytest.mark.asyncio
async def test_failed_delivery_closes_the_connection(monkeypatch, tmp_path: Path):
    async def broken_send_str(self, data, compress=None):
        raise ConnectionResetError("peer gone")

    monkeypatch.setattr(web.WebSocketResponse, "send_str", broken_send_str)
    server = _server(tmp_path)
    async with TestClient(TestServer(server.create_app())) as client:
        ws = await client.ws_connect("/ws")
        await ws.send_json({"event": "dance", "data": {}})
        msg = await ws.receive(timeout=5)

        for _ in range(50):
            if not server.sessions:
                break
            await asyncio.sleep(0.02)

    assert msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED}
    assert server.sessions == {}
