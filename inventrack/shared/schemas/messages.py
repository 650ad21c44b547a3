"""Conversation and stream event schemas exchanged with the chat client."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class TextPart(BaseModel):
    """Plain text produced by the user or the assistant."""

    type: Literal["text"] = "text"
    text: str


class ToolCallPart(BaseModel):
    """A tool invocation requested by the model."""

    type: Literal["tool_call"] = "tool_call"
    tool_use_id: str
    tool_name: str
    arguments: dict = {}


class ToolResultPart(BaseModel):
    """The outcome of a tool invocation, matched to its call by ``tool_use_id``."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    tool_name: str
    success: bool = True
    result: Any = None
    error: str | None = None


MessagePart = Annotated[
    Union[TextPart, ToolCallPart, ToolResultPart],
    Field(discriminator="type"),
]


class ChatMessage(BaseModel):
    """One conversation entry. The client resends the whole history every turn."""

    role: Literal["user", "assistant"]
    parts: list[MessagePart]

    @classmethod
    def user(cls, text: str) -> ChatMessage:
        return cls(role="user", parts=[TextPart(text=text)])

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))


class ChatRequest(BaseModel):
    """Inbound chat request. The caller's role comes from the session, never from here."""

    messages: list[ChatMessage] = Field(min_length=1)


class StreamEvent(BaseModel):
    """One event on the response stream.

    ``status`` events mark the transient working states, ``text`` events carry
    incremental model output, ``tool_result`` events summarise executed calls,
    and exactly one terminal ``done`` or ``error`` event closes the stream.
    """

    type: Literal["status", "text", "tool_result", "done", "error"]
    state: str | None = None
    step: int | None = None
    tools: list[str] | None = None
    delta: str | None = None
    tool_name: str | None = None
    success: bool | None = None
    stop_reason: str | None = None
    steps: int | None = None
    message: str | None = None
    retryable: bool | None = None
    conversation: list[ChatMessage] | None = None
