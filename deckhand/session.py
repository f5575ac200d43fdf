"""Per-connection bridge between a client channel and the reasoning loop."""

import asyncio
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from typing import Literal

import structlog

from deckhand.agent import Agent
from deckhand.config import get_config
from deckhand.events import AgentComplete, AgentErrorEvent, AgentEvent, AgentQueued
from deckhand.exceptions import DeckhandError
from deckhand.logging import get_logger

log = get_logger(__name__)

BUSY_MESSAGE = "Agent is busy processing another request. Please wait."

EventSender = Callable[[AgentEvent], Awaitable[None]]
BusyPolicy = Literal["reject", "queue"]


class AgentSession:
    """Run instructions for one client, one at a time, streaming events back.

    A second instruction arriving while one is in flight is either
    rejected with a busy ``agentError`` (``reject``) or queued behind the
    running one (``queue``, bounded by ``queue_cap``). Closing the session
    cancels the in-flight loop, which kills any running subprocess, and
    drops queued instructions.
    """

    def __init__(
        self,
        agent: Agent,
        send: EventSender,
        session_id: str | None = None,
        busy_policy: BusyPolicy | None = None,
        queue_cap: int | None = None,
    ):
        web_cfg = get_config().web
        self.id = session_id or uuid.uuid4().hex[:12]
        self.agent = agent
        self._send = send
        self.busy_policy: BusyPolicy = busy_policy or web_cfg.busy_policy
        self.queue_cap = max(1, int(queue_cap or web_cfg.queue_cap))
        self._pending: deque[str] = deque()
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def connected(self) -> bool:
        return not self._closed

    @property
    def queued(self) -> int:
        return len(self._pending)

    async def _emit(self, event: AgentEvent) -> None:
        if self._closed:
            return
        try:
            await self._send(event)
        except Exception as e:
            log.warning("Event delivery failed, closing session", session_id=self.id, error=str(e))
            self._closed = True
            self._pending.clear()

    async def send_error(self, message: str) -> None:
        await self._emit(AgentErrorEvent(message=message))

    async def submit(self, instruction: str) -> bool:
        """Start or queue an instruction.

        Returns:
            True if the instruction was started or queued
        """
        if self._closed:
            return False
        text = str(instruction or "").strip()
        if not text:
            await self.send_error("Instruction is empty")
            return False

        if self.busy:
            if self.busy_policy == "queue" and len(self._pending) < self.queue_cap:
                self._pending.append(text)
                log.info("Instruction queued", session_id=self.id, position=len(self._pending))
                await self._emit(AgentQueued(position=len(self._pending)))
                return True
            log.info("Instruction rejected, session busy", session_id=self.id)
            await self.send_error(BUSY_MESSAGE)
            return False

        self._task = asyncio.create_task(self._drain(text))
        return True

    async def _drain(self, first: str) -> None:
        structlog.contextvars.bind_contextvars(session_id=self.id)
        instruction: str | None = first
        while instruction is not None and not self._closed:
            await self._run_one(instruction)
            instruction = self._pending.popleft() if self._pending else None

    async def _run_one(self, instruction: str) -> None:
        log.info("Running instruction", session_id=self.id, chars=len(instruction))
        abort_event = asyncio.Event()
        try:
            async with aclosing(self.agent.run(instruction, abort_event=abort_event)) as events:
                async for event in events:
                    await self._emit(event)
                    if self._closed:
                        abort_event.set()
                        log.info("Client gone, stopping instruction", session_id=self.id)
                        return
        except asyncio.CancelledError:
            abort_event.set()
            log.info("Instruction cancelled", session_id=self.id)
            raise
        except DeckhandError as e:
            log.warning("Instruction failed", session_id=self.id, error=str(e))
            await self._emit(AgentErrorEvent(message=str(e)))
            return
        except Exception as e:
            log.error("Instruction crashed", session_id=self.id, error=str(e), exc_info=True)
            await self._emit(AgentErrorEvent(message=str(e) or "Unknown error occurred"))
            return

        await self._emit(AgentComplete())

    async def wait_idle(self) -> None:
        """Wait until the running and queued instructions have finished."""
        task = self._task
        if task is not None:
            await asyncio.shield(task)

    async def close(self) -> None:
        """Disconnect: cancel in-flight work and stop emitting."""
        self._closed = True
        self._pending.clear()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        log.info("Session closed", session_id=self.id)
