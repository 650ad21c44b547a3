"""OpenAI LLM provider."""

from __future__ import annotations

import asyncio
import copy
import json
import re
from collections.abc import AsyncIterator

import structlog
from openai import AsyncOpenAI, BadRequestError

from inventrack.core.llm_router.providers.base import LLMProvider, StreamChunk, parse_tool_arguments
from inventrack.shared.schemas.tools import ToolCall

logger = structlog.get_logger()


class OpenAIProvider(LLMProvider):
    """Provider for OpenAI models (GPT-4o, etc.)."""

    def __init__(self, api_key: str):
        self.client = AsyncOpenAI(api_key=api_key)

    def _sanitize_name(self, name: str) -> str:
        """
        Sanitize tool name to match OpenAI pattern '^[a-zA-Z0-9_-]+$'.
        Truncate to 64 chars to be safe.
        """
        return re.sub(r"[^a-zA-Z0-9_-]", "_", name)[:64]

    def _convert_tools(
        self, tools: list[dict] | None
    ) -> tuple[list[dict] | None, dict[str, str]]:
        """
        Sanitize names on OpenAI function-calling tool definitions.

        Returns:
            Tuple containing:
            1. List of OpenAI tool definitions
            2. Dictionary mapping sanitized_names -> original_names
        """
        if not tools:
            return None, {}

        openai_tools = []
        name_mapping = {}
        for tool in tools:
            new_tool = copy.deepcopy(tool)
            original_name = new_tool["function"]["name"]
            sanitized_name = self._sanitize_name(original_name)
            name_mapping[sanitized_name] = original_name
            new_tool["function"]["name"] = sanitized_name
            openai_tools.append(new_tool)
        return openai_tools, name_mapping

    def _convert_messages(self, messages: list[dict]) -> list[dict]:
        """Convert messages to OpenAI format.

        Consecutive tool calls (and the assistant text that introduced them)
        are folded into a single assistant message, the shape OpenAI expects
        for parallel tool calls.
        """
        converted: list[dict] = []
        for msg in messages:
            if msg["role"] == "tool_call":
                sanitized_name = self._sanitize_name(msg.get("name", ""))
                call = {
                    "id": msg.get("tool_use_id") or "call_" + sanitized_name,
                    "type": "function",
                    "function": {
                        "name": sanitized_name,
                        "arguments": json.dumps(msg.get("arguments", {})),
                    },
                }
                last = converted[-1] if converted else None
                if last is not None and last["role"] == "assistant":
                    last.setdefault("tool_calls", []).append(call)
                else:
                    converted.append({"role": "assistant", "content": None, "tool_calls": [call]})
            elif msg["role"] == "tool_result":
                converted.append(
                    {
                        "role": "tool",
                        "tool_call_id": msg.get("tool_use_id", ""),
                        "content": str(msg.get("content", "")),
                    }
                )
            else:
                converted.append(
                    {
                        "role": msg["role"],
                        "content": msg["content"],
                    }
                )
        return converted

    async def _open_stream(self, kwargs: dict):
        last_error = None
        for attempt in range(3):
            try:
                return await self.client.chat.completions.create(**kwargs)
            except BadRequestError:
                raise  # 400 = bad payload, retrying won't help
            except Exception as e:
                last_error = e
                logger.warning("openai_api_error", attempt=attempt, error=str(e))
                if attempt < 2:
                    await asyncio.sleep(2**attempt)
        raise last_error  # type: ignore[misc]

    async def stream_chat(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        model: str = "gpt-4o",
        max_tokens: int = 4000,
        temperature: float = 0.2,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion from OpenAI."""
        openai_tools, tool_name_mapping = self._convert_tools(tools)
        kwargs: dict = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": self._convert_messages(messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if openai_tools:
            kwargs["tools"] = openai_tools

        stream = await self._open_stream(kwargs)

        # Tool call fragments arrive keyed by index
        pending: dict[int, dict] = {}
        finish_reason = None
        input_tokens = output_tokens = 0
        response_model = model

        async for chunk in stream:
            if chunk.model:
                response_model = chunk.model
            if chunk.usage:
                input_tokens = chunk.usage.prompt_tokens or 0
                output_tokens = chunk.usage.completion_tokens or 0
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            if delta is not None:
                if delta.content:
                    yield StreamChunk(type="text_delta", text=delta.content)
                for tc in delta.tool_calls or []:
                    slot = pending.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function is not None:
                        if tc.function.name:
                            slot["name"] += tc.function.name
                        if tc.function.arguments:
                            slot["arguments"] += tc.function.arguments
            if choice.finish_reason:
                finish_reason = choice.finish_reason

        for index in sorted(pending):
            slot = pending[index]
            # Map the sanitized name back to the registered tool name
            original_name = tool_name_mapping.get(slot["name"], slot["name"])
            arguments, error = parse_tool_arguments(original_name, slot["arguments"])
            yield StreamChunk(
                type="tool_call",
                tool_call=ToolCall(
                    tool_name=original_name,
                    arguments=arguments,
                    tool_use_id=slot["id"],
                    argument_error=error,
                ),
            )

        stop_reason = "end_turn"
        if finish_reason == "tool_calls" or pending:
            stop_reason = "tool_use"
        elif finish_reason == "length":
            stop_reason = "max_tokens"

        yield StreamChunk(
            type="finish",
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=response_model,
        )
