"""Abstract LLM provider interface."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Literal

from pydantic import BaseModel

from inventrack.shared.schemas.tools import ToolCall


class StreamChunk(BaseModel):
    """One item of a provider's streamed response.

    A stream is any number of ``text_delta`` and ``tool_call`` chunks followed
    by exactly one ``finish`` chunk carrying the stop reason and token usage.
    Tool calls are only emitted once their arguments are complete.
    """

    type: Literal["text_delta", "tool_call", "finish"]
    text: str = ""
    tool_call: ToolCall | None = None
    stop_reason: str = ""  # end_turn, tool_use, max_tokens
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def stream_chat(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        model: str = "",
        max_tokens: int = 4000,
        temperature: float = 0.2,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion as ``StreamChunk`` values."""
        ...


def parse_tool_arguments(name: str, raw: str | None) -> tuple[dict, str | None]:
    """Decode streamed JSON arguments, returning ``(arguments, error)``."""
    if not raw or not raw.strip():
        return {}, None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        return {}, f"Arguments for {name} are not valid JSON: {e.msg}"
    if not isinstance(parsed, dict):
        return {}, f"Arguments for {name} must be a JSON object"
    return parsed, None
