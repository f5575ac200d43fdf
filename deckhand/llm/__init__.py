"""LLM provider abstraction: LiteLLM for hosted models, direct HTTP for Ollama."""

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
import litellm

from deckhand.exceptions import LLMAPIError, LLMError
from deckhand.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"

_PROVIDER_ALIASES = {
    "openai": "openai",
    "chatgpt": "openai",
    "anthropic": "anthropic",
    "claude": "anthropic",
    "gemini": "gemini",
    "google": "gemini",
}

_PROVIDER_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


def _coerce_arguments(raw: Any) -> dict[str, Any]:
    """Parse tool-call arguments, keeping undecodable payloads visible to validation."""
    if isinstance(raw, dict):
        return raw
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}
        return parsed if isinstance(parsed, dict) else {"raw": parsed}
    return {"raw": raw}


def _tool_entry(tool: ToolDefinition | dict[str, Any]) -> dict[str, Any]:
    if isinstance(tool, dict):
        name = tool.get("name")
        description = tool.get("description", "")
        parameters = tool.get("parameters", {})
    else:
        name = tool.name
        description = tool.description
        parameters = tool.parameters
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description or "",
            "parameters": parameters or {"type": "object", "properties": {}},
        },
    }


def to_openai_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert messages to the OpenAI chat format understood by LiteLLM."""
    result: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": msg.content or None}
            if msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments),
                        },
                    }
                    for tc in msg.tool_calls
                ]
            result.append(entry)
        elif msg.role == "tool":
            result.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id or "",
                "name": msg.tool_name or "",
                "content": msg.content or "",
            })
        else:
            result.append({"role": msg.role, "content": msg.content or ""})
    return result


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    async def close(self) -> None:
        """Release provider resources."""
        return None


class LiteLLMProvider(LLMProvider):
    """Hosted model provider routed through LiteLLM."""

    def __init__(
        self,
        provider: str = "anthropic",
        model: str = "claude-3-5-sonnet-20241022",
        temperature: float = 0.0,
        max_tokens: int = 4096,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        normalized = _PROVIDER_ALIASES.get(provider.strip().lower())
        if normalized is None:
            raise ValueError(f"Provider '{provider}' not supported")
        self.provider = normalized
        self.model = model if "/" in model else f"{normalized}/{model}"
        self.temperature = 1.0 if self._is_gpt5_family(self.model) else temperature
        self.max_tokens = max_tokens
        self.api_key = api_key or os.getenv(_PROVIDER_KEY_ENV[normalized], "") or None
        self.base_url = base_url or None

    @staticmethod
    def _is_gpt5_family(model: str) -> bool:
        # gpt-5 models only accept the default temperature
        return model.split("/", 1)[-1].lower().startswith("gpt-5")

    def _request_kwargs(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(messages),
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "stream": stream,
        }
        if self._is_gpt5_family(self.model):
            kwargs["temperature"] = 1.0
        if tools:
            kwargs["tools"] = [_tool_entry(tool) for tool in tools]
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.base_url:
            kwargs["api_base"] = self.base_url
        return kwargs

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        kwargs = self._request_kwargs(messages, tools, temperature, max_tokens)
        log.debug("Calling LiteLLM", model=self.model, msg_count=len(messages))
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            status_code = getattr(e, "status_code", None)
            if isinstance(status_code, int):
                raise LLMAPIError(f"{self.provider} API error {status_code}: {e}", status_code=status_code) from e
            raise LLMError(f"{self.provider} call failed: {e}") from e

        try:
            message = response.choices[0].message
        except (AttributeError, IndexError) as e:
            raise LLMError(f"Malformed {self.provider} response: {e}") from e

        tool_calls = [
            ToolCall(
                id=str(tc.id or f"call_{idx}"),
                name=str(tc.function.name or ""),
                arguments=_coerce_arguments(tc.function.arguments),
            )
            for idx, tc in enumerate(getattr(message, "tool_calls", None) or [])
        ]
        usage_obj = getattr(response, "usage", None)
        usage = {
            "prompt_tokens": int(getattr(usage_obj, "prompt_tokens", 0) or 0),
            "completion_tokens": int(getattr(usage_obj, "completion_tokens", 0) or 0),
            "total_tokens": int(getattr(usage_obj, "total_tokens", 0) or 0),
        }
        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            model=str(getattr(response, "model", "") or self.model),
            usage=usage,
        )


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.0,
        max_tokens: int = 4096,
        api_key: str | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key

        self.client = httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": tc.name, "arguments": tc.arguments}}
                    for tc in msg.tool_calls
                ]
            if msg.role == "tool" and msg.tool_name:
                entry["tool_name"] = msg.tool_name
            result.append(entry)
        return result

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/api/chat"
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": False,
            "options": {
                "temperature": self.temperature if temperature is None else temperature,
                "num_predict": max_tokens or self.max_tokens,
            },
        }
        if tools:
            body["tools"] = [_tool_entry(tool) for tool in tools]

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(messages))
            response = await self.client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}") from e

        if not response.is_success:
            raise LLMAPIError(
                f"Ollama API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}") from e

        message = data.get("message") or {}
        tool_calls = [
            ToolCall(
                id=f"ollama_call_{idx}",
                name=str((tc.get("function") or {}).get("name", "")),
                arguments=_coerce_arguments((tc.get("function") or {}).get("arguments")),
            )
            for idx, tc in enumerate(message.get("tool_calls") or [])
        ]
        prompt_tokens = int(data.get("prompt_eval_count", 0) or 0)
        completion_tokens = int(data.get("eval_count", 0) or 0)
        return LLMResponse(
            content=str(message.get("content") or ""),
            tool_calls=tool_calls,
            model=self.model,
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "anthropic",
    model: str = "claude-3-5-sonnet-20241022",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.0,
    max_tokens: int = 4096,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (anthropic, openai, gemini, ollama or an alias)
        model: Model name
        api_key: Optional API key (falls back to the provider's env var)
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens

    Returns:
        Configured LLMProvider instance
    """
    if provider.strip().lower() == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
        )
    return LiteLLMProvider(
        provider=provider,
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        api_key=api_key,
        base_url=base_url,
    )


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from deckhand.config import get_config

        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
        )
    return _provider


def set_provider(provider: LLMProvider | None) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
