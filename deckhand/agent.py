"""Reasoning loop: model call, tool dispatch, repeat until a final answer."""

import asyncio
from enum import Enum
from typing import Any, AsyncIterator

from deckhand.config import get_config
from deckhand.events import AgentResponse, TextItem, ToolResultItem, ToolUseItem
from deckhand.exceptions import LLMError, StepBudgetExceededError
from deckhand.instructions import InstructionLoader
from deckhand.llm import LLMProvider, LLMResponse, Message, ToolCall, get_provider
from deckhand.logging import get_logger
from deckhand.tools.registry import ToolRegistry, build_default_registry

log = get_logger(__name__)


class AgentState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    MODEL_RESPONDED = "model_responded"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    FAILED = "failed"


class Agent:
    """Drive one instruction at a time through the model and the tool registry.

    Conversation history lives only for the duration of :meth:`run`; each
    instruction starts from the system prompt and the user's text.
    """

    def __init__(
        self,
        provider: LLMProvider | None = None,
        tools: ToolRegistry | None = None,
        max_steps: int | None = None,
        instructions: InstructionLoader | None = None,
        session_id: str | None = None,
    ):
        cfg = get_config()
        self.provider = provider or get_provider()
        self.tools = tools if tools is not None else build_default_registry(cfg)
        self.max_steps = max(1, int(max_steps or cfg.agent.max_steps))
        self.instructions = instructions or InstructionLoader()
        self.session_id = session_id
        self.state = AgentState.IDLE
        self.failure_reason: str | None = None
        self.messages: list[Message] = []
        self.final_answer: str | None = None
        self.steps_taken = 0
        self.last_usage = self._empty_usage()

    @staticmethod
    def _empty_usage() -> dict[str, int]:
        return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}

    def _set_state(self, state: AgentState) -> None:
        if state != self.state:
            log.debug("Agent state", state=state.value, step=self.steps_taken)
        self.state = state

    def _fail(self, reason: str) -> None:
        self.failure_reason = reason
        self._set_state(AgentState.FAILED)

    def _build_system_prompt(self) -> str:
        cfg = get_config()
        base = self.tools.runtime_base_path
        staging = cfg.tools.clone.staging_dir
        tool_summary = "\n".join(
            f"- {definition['name']}: {definition['description']}"
            for definition in self.tools.get_definitions()
        ) or "- (none)"
        return self.instructions.render(
            cfg.agent.system_prompt_template,
            workspace_root=base,
            staging_root=base / staging,
            allowed_programs=", ".join(cfg.tools.docker.allowed_programs),
            tool_summary=tool_summary,
        )

    @staticmethod
    def _normalize_calls(calls: list[ToolCall], step: int) -> list[ToolCall]:
        """Give every call a unique id so results can be matched to requests."""
        seen: set[str] = set()
        normalized: list[ToolCall] = []
        for idx, call in enumerate(calls):
            call_id = str(call.id or "").strip()
            if not call_id or call_id in seen:
                call_id = f"call_{step}_{idx}"
            seen.add(call_id)
            arguments = call.arguments if isinstance(call.arguments, dict) else {"raw": call.arguments}
            normalized.append(ToolCall(id=call_id, name=str(call.name or "").strip(), arguments=arguments))
        return normalized

    def _accumulate_usage(self, usage: dict[str, int] | None) -> None:
        for key in self.last_usage:
            self.last_usage[key] += int((usage or {}).get(key, 0) or 0)

    async def _call_model(self, tool_defs: list[dict[str, Any]]) -> LLMResponse:
        try:
            return await self.provider.complete(
                messages=list(self.messages),
                tools=tool_defs or None,
            )
        except LLMError:
            raise
        except Exception as e:
            raise LLMError(f"Model call failed: {e}") from e

    async def run(
        self,
        instruction: str,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[AgentResponse]:
        """Run the loop for one instruction, yielding events as they happen.

        Raises:
            StepBudgetExceededError if no final answer arrives within max_steps
            LLMError if a model call fails
        """
        self.messages = [
            Message(role="system", content=self._build_system_prompt()),
            Message(role="user", content=instruction),
        ]
        self.final_answer = None
        self.failure_reason = None
        self.steps_taken = 0
        self.last_usage = self._empty_usage()
        tool_defs = self.tools.get_definitions()

        try:
            while True:
                if self.steps_taken >= self.max_steps:
                    error = StepBudgetExceededError(self.max_steps)
                    self._fail(str(error))
                    log.warning("Step budget exceeded", max_steps=self.max_steps)
                    raise error

                self.steps_taken += 1
                self._set_state(AgentState.AWAITING_MODEL)
                log.info("Calling LLM", step=self.steps_taken, message_count=len(self.messages))
                try:
                    response = await self._call_model(tool_defs)
                except LLMError as e:
                    self._fail(str(e))
                    log.error("LLM call failed", error=str(e))
                    raise
                self._set_state(AgentState.MODEL_RESPONDED)
                self._accumulate_usage(response.usage)

                text = (response.content or "").strip()
                calls = self._normalize_calls(response.tool_calls, self.steps_taken)
                self.messages.append(Message(role="assistant", content=response.content or "", tool_calls=calls))

                items: list[TextItem | ToolUseItem] = []
                if text:
                    items.append(TextItem(text=text))
                items.extend(ToolUseItem(id=call.id, name=call.name, input=call.arguments) for call in calls)
                if items:
                    yield AgentResponse(content=items)

                if not calls:
                    self.final_answer = text
                    self._set_state(AgentState.DONE)
                    log.info("Agent finished", steps=self.steps_taken, usage=self.last_usage)
                    return

                self._set_state(AgentState.EXECUTING_TOOLS)
                log.info("Tool calls detected", count=len(calls), tools=[call.name for call in calls])
                for call in calls:
                    result = await self.tools.dispatch(call, session_id=self.session_id, abort_event=abort_event)
                    self.messages.append(
                        Message(
                            role="tool",
                            content=result.text,
                            tool_call_id=call.id,
                            tool_name=call.name,
                        )
                    )
                    yield AgentResponse(
                        content=[
                            ToolResultItem(
                                tool_use_id=call.id,
                                name=call.name,
                                content=result.text,
                                is_error=not result.success,
                            )
                        ]
                    )
        except asyncio.CancelledError:
            self._fail("cancelled")
            raise

    async def complete(self, instruction: str) -> str:
        """Run an instruction to completion and return the final answer."""
        async for _ in self.run(instruction):
            pass
        return self.final_answer or ""
