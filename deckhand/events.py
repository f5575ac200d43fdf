"""Events streamed from the reasoning loop to connected clients."""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

AGENT_RESPONSE = "agentResponse"
AGENT_COMPLETE = "agentComplete"
AGENT_ERROR = "agentError"
AGENT_QUEUED = "agentQueued"
RUN_AGENT = "runAgent"


class TextItem(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseItem(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultItem(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    name: str
    content: str
    is_error: bool = False


ResponseItem = Annotated[Union[TextItem, ToolUseItem, ToolResultItem], Field(discriminator="type")]


class AgentResponse(BaseModel):
    """Assistant text, tool invocations or tool results, in emission order."""

    event: Literal["agentResponse"] = AGENT_RESPONSE
    content: list[ResponseItem]

    def payload(self) -> dict[str, Any]:
        return {"content": [item.model_dump() for item in self.content]}


class AgentComplete(BaseModel):
    event: Literal["agentComplete"] = AGENT_COMPLETE

    def payload(self) -> None:
        return None


class AgentErrorEvent(BaseModel):
    event: Literal["agentError"] = AGENT_ERROR
    message: str

    def payload(self) -> dict[str, Any]:
        return {"message": self.message}


class AgentQueued(BaseModel):
    event: Literal["agentQueued"] = AGENT_QUEUED
    position: int

    def payload(self) -> dict[str, Any]:
        return {"position": self.position}


AgentEvent = Union[AgentResponse, AgentComplete, AgentErrorEvent, AgentQueued]


def to_wire(event: AgentEvent) -> dict[str, Any]:
    """Render an event as the ``{"event", "data"}`` frame sent to clients."""
    return {"event": event.event, "data": event.payload()}
