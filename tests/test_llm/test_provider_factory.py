from types import SimpleNamespace

import httpx
import pytest

import deckhand.llm as llm_module
from deckhand.exceptions import LLMAPIError, LLMError
from deckhand.llm import (
    LiteLLMProvider,
    Message,
    OllamaProvider,
    ToolCall,
    _coerce_arguments,
    create_provider,
    to_openai_messages,
)


def test_create_provider_supports_ollama():
    provider = create_provider(
        provider="ollama",
        model="llama3.2",
        base_url="http://localhost:11434",
    )
    assert isinstance(provider, OllamaProvider)
    assert provider.model == "llama3.2"
    assert provider.base_url == "http://localhost:11434"


def test_create_provider_supports_chatgpt_alias():
    provider = create_provider(
        provider="chatgpt",
        model="gpt-4o-mini",
    )
    assert isinstance(provider, LiteLLMProvider)
    assert provider.provider == "openai"
    assert provider.model == "openai/gpt-4o-mini"


def test_create_provider_supports_claude_alias():
    provider = create_provider(
        provider="claude",
        model="claude-3-5-sonnet-latest",
    )
    assert isinstance(provider, LiteLLMProvider)
    assert provider.provider == "anthropic"
    assert provider.model == "anthropic/claude-3-5-sonnet-latest"


def test_create_provider_rejects_unknown_provider():
    with pytest.raises(ValueError, match="not supported"):
        create_provider(provider="carrier-pigeon", model="coo")


def test_gpt5_family_forces_default_temperature():
    provider = LiteLLMProvider(provider="openai", model="gpt-5-mini", temperature=0.2)

    kwargs = provider._request_kwargs([Message(role="user", content="hi")], temperature=0.0)

    assert kwargs["temperature"] == 1.0


def test_request_kwargs_wrap_tools_as_functions():
    provider = LiteLLMProvider(provider="anthropic", model="claude-3-5-sonnet-20241022", api_key="sk-test")

    kwargs = provider._request_kwargs(
        [Message(role="user", content="hi")],
        tools=[{"name": "docker_cli", "description": "Run docker", "parameters": {"type": "object"}}],
    )

    assert kwargs["tools"] == [
        {
            "type": "function",
            "function": {"name": "docker_cli", "description": "Run docker", "parameters": {"type": "object"}},
        }
    ]
    assert kwargs["api_key"] == "sk-test"


def test_to_openai_messages_keeps_tool_call_linkage():
    messages = [
        Message(role="user", content="list"),
        Message(
            role="assistant",
            content="",
            tool_calls=[ToolCall(id="c1", name="file_operations", arguments={"operation": "list", "path": "."})],
        ),
        Message(role="tool", content="a.txt", tool_call_id="c1", tool_name="file_operations"),
    ]

    converted = to_openai_messages(messages)

    assert converted[1]["content"] is None
    assert converted[1]["tool_calls"][0]["function"]["arguments"] == '{"operation": "list", "path": "."}'
    assert converted[2] == {"role": "tool", "tool_call_id": "c1", "name": "file_operations", "content": "a.txt"}


def test_coerce_arguments_keeps_undecodable_payload():
    assert _coerce_arguments('{"path": "."}') == {"path": "."}
    assert _coerce_arguments("") == {}
    assert _coerce_arguments("{broken") == {"raw": "{broken"}
    assert _coerce_arguments("[1, 2]") == {"raw": [1, 2]}


@pytest.mark.asyncio
async def test_litellm_complete_parses_tool_calls(monkeypatch):
    captured: dict = {}

    async def fake_acompletion(**kwargs):
        captured.update(kwargs)
        tool_call = SimpleNamespace(
            id="call_9",
            function=SimpleNamespace(name="file_operations", arguments='{"operation": "list", "path": "."}'),
        )
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="Listing", tool_calls=[tool_call]))],
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
            model="anthropic/claude-3-5-sonnet-20241022",
        )

    monkeypatch.setattr(llm_module.litellm, "acompletion", fake_acompletion)
    provider = LiteLLMProvider(provider="anthropic", model="claude-3-5-sonnet-20241022")

    response = await provider.complete([Message(role="user", content="list")])

    assert captured["model"] == "anthropic/claude-3-5-sonnet-20241022"
    assert response.content == "Listing"
    assert response.tool_calls == [
        ToolCall(id="call_9", name="file_operations", arguments={"operation": "list", "path": "."})
    ]
    assert response.usage["total_tokens"] == 15


@pytest.mark.asyncio
async def test_litellm_errors_map_to_llm_errors(monkeypatch):
    class RateLimited(Exception):
        status_code = 429

    async def rate_limited(**kwargs):
        raise RateLimited("slow down")

    async def offline(**kwargs):
        raise ConnectionError("no route")

    provider = LiteLLMProvider(provider="openai", model="gpt-4o-mini")

    monkeypatch.setattr(llm_module.litellm, "acompletion", rate_limited)
    with pytest.raises(LLMAPIError) as excinfo:
        await provider.complete([Message(role="user", content="hi")])
    assert excinfo.value.status_code == 429

    monkeypatch.setattr(llm_module.litellm, "acompletion", offline)
    with pytest.raises(LLMError, match="no route"):
        await provider.complete([Message(role="user", content="hi")])


@pytest.mark.asyncio
async def test_ollama_complete_uses_native_chat_api():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "message": {
                    "content": "",
                    "tool_calls": [{"function": {"name": "docker_cli", "arguments": {"command": "docker ps"}}}],
                },
                "prompt_eval_count": 3,
                "eval_count": 2,
            },
        )

    provider = OllamaProvider(model="llama3.2", base_url="http://ollama.test")
    provider.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    response = await provider.complete([Message(role="user", content="ps")])
    await provider.close()

    assert str(seen[0].url) == "http://ollama.test/api/chat"
    assert response.tool_calls[0].name == "docker_cli"
    assert response.tool_calls[0].arguments == {"command": "docker ps"}
    assert response.usage["total_tokens"] == 5


@pytest.mark.asyncio
async def test_ollama_http_error_status_raises_api_error():
    provider = OllamaProvider(model="llama3.2", base_url="http://ollama.test")
    provider.client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")))

    with pytest.raises(LLMAPIError) as excinfo:
        await provider.complete([Message(role="user", content="ps")])
    await provider.close()

    assert excinfo.value.status_code == 500
