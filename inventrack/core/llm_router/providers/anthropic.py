"""Anthropic (Claude) LLM provider with prompt caching."""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator

import structlog
from anthropic import AsyncAnthropic, BadRequestError

from inventrack.core.llm_router.providers.base import LLMProvider, StreamChunk, parse_tool_arguments
from inventrack.shared.schemas.tools import ToolCall

logger = structlog.get_logger()


def _sanitize_name(name: str) -> str:
    # Anthropic enforces ^[a-zA-Z0-9_-]{1,128}$
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name)[:64]


class AnthropicProvider(LLMProvider):
    """Provider for Anthropic Claude models."""

    def __init__(self, api_key: str):
        self.client = AsyncAnthropic(api_key=api_key)

    def _convert_tools(
        self, tools: list[dict] | None
    ) -> tuple[list[dict] | None, dict[str, str]]:
        """
        Convert OpenAI-style tool definitions to Anthropic format.

        The last tool definition receives a ``cache_control`` marker so
        that the entire system + tools prefix is cached across calls.

        Returns:
            Tuple containing:
            1. List of Anthropic tool definitions
            2. Dictionary mapping sanitized_names -> original_names
        """
        if not tools:
            return None, {}

        anthropic_tools = []
        name_mapping = {}

        for tool in tools:
            func = tool.get("function", tool)
            sanitized_name = _sanitize_name(func["name"])
            name_mapping[sanitized_name] = func["name"]

            params = func.get("parameters", {})
            anthropic_tools.append(
                {
                    "name": sanitized_name,
                    "description": func.get("description", ""),
                    "input_schema": {
                        "type": "object",
                        "properties": params.get("properties", {}),
                        "required": params.get("required", []),
                    },
                }
            )

        if anthropic_tools:
            anthropic_tools[-1]["cache_control"] = {"type": "ephemeral"}

        return anthropic_tools, name_mapping

    @staticmethod
    def _append(converted: list[dict], role: str, blocks: list[dict]) -> None:
        """Append content blocks, merging into the previous message when roles match.

        Anthropic requires alternating roles, so parallel tool calls share one
        assistant turn and their results share one user turn.
        """
        if converted and converted[-1]["role"] == role:
            previous = converted[-1]
            if isinstance(previous["content"], str):
                previous["content"] = [{"type": "text", "text": previous["content"]}]
            previous["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    def _convert_messages(
        self, messages: list[dict]
    ) -> tuple[list[dict] | None, list[dict]]:
        """Extract system messages and convert the rest to Anthropic format.

        The last system block receives a ``cache_control`` marker so the
        full system prompt prefix is cached across requests.
        """
        system_blocks: list[dict] = []
        converted: list[dict] = []
        for msg in messages:
            if msg["role"] == "system":
                system_blocks.append({"type": "text", "text": msg["content"]})
            elif msg["role"] == "tool_call":
                sanitized_name = _sanitize_name(msg.get("name", ""))
                self._append(
                    converted,
                    "assistant",
                    [
                        {
                            "type": "tool_use",
                            "id": msg.get("tool_use_id") or "tool_" + sanitized_name,
                            "name": sanitized_name,
                            "input": msg.get("arguments", {}),
                        }
                    ],
                )
            elif msg["role"] == "tool_result":
                self._append(
                    converted,
                    "user",
                    [
                        {
                            "type": "tool_result",
                            "tool_use_id": msg.get("tool_use_id", ""),
                            "content": str(msg.get("content", "")),
                        }
                    ],
                )
            else:
                role = "assistant" if msg["role"] == "assistant" else "user"
                self._append(converted, role, [{"type": "text", "text": msg["content"]}])

        if system_blocks:
            system_blocks[-1]["cache_control"] = {"type": "ephemeral"}

        return system_blocks or None, converted

    @staticmethod
    def _add_message_cache_breakpoint(messages: list[dict]) -> None:
        """Place ``cache_control`` on the second-to-last message.

        On step N+1 of an exchange, everything up to the breakpoint from
        step N is a cache hit.
        """
        if len(messages) < 2:
            return
        content = messages[-2].get("content")
        if isinstance(content, list) and content:
            content[-1]["cache_control"] = {"type": "ephemeral"}

    async def _open_stream(self, kwargs: dict):
        last_error = None
        for attempt in range(3):
            try:
                return await self.client.messages.create(**kwargs)
            except BadRequestError:
                raise  # 400s = bad payload, retrying won't help
            except Exception as e:
                last_error = e
                logger.warning("anthropic_api_error", attempt=attempt, error=str(e))
                if attempt < 2:
                    await asyncio.sleep(2**attempt)
        raise last_error  # type: ignore[misc]

    async def stream_chat(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 4000,
        temperature: float = 0.2,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion from Anthropic with prompt caching."""
        system, converted_messages = self._convert_messages(messages)
        anthropic_tools, tool_name_mapping = self._convert_tools(tools)
        self._add_message_cache_breakpoint(converted_messages)

        kwargs: dict = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": converted_messages,
            "stream": True,
        }
        if system:
            kwargs["system"] = system
        if anthropic_tools:
            kwargs["tools"] = anthropic_tools

        stream = await self._open_stream(kwargs)

        blocks: dict[int, dict] = {}
        stop_reason = "end_turn"
        input_tokens = output_tokens = 0
        cache_read = cache_creation = 0
        response_model = model

        async for event in stream:
            if event.type == "message_start":
                response_model = event.message.model or model
                usage = event.message.usage
                input_tokens = usage.input_tokens or 0
                cache_read = getattr(usage, "cache_read_input_tokens", 0) or 0
                cache_creation = getattr(usage, "cache_creation_input_tokens", 0) or 0
            elif event.type == "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    blocks[event.index] = {"id": block.id, "name": block.name, "json": ""}
            elif event.type == "content_block_delta":
                if event.delta.type == "text_delta":
                    yield StreamChunk(type="text_delta", text=event.delta.text)
                elif event.delta.type == "input_json_delta" and event.index in blocks:
                    blocks[event.index]["json"] += event.delta.partial_json
            elif event.type == "content_block_stop":
                block = blocks.pop(event.index, None)
                if block is not None:
                    original_name = tool_name_mapping.get(block["name"], block["name"])
                    arguments, error = parse_tool_arguments(original_name, block["json"])
                    yield StreamChunk(
                        type="tool_call",
                        tool_call=ToolCall(
                            tool_name=original_name,
                            arguments=arguments,
                            tool_use_id=block["id"],
                            argument_error=error,
                        ),
                    )
            elif event.type == "message_delta":
                if event.delta.stop_reason in ("tool_use", "max_tokens"):
                    stop_reason = event.delta.stop_reason
                if event.usage is not None:
                    output_tokens = event.usage.output_tokens or 0

        if cache_read > 0 or cache_creation > 0:
            logger.info(
                "anthropic_cache",
                cache_read_tokens=cache_read,
                cache_creation_tokens=cache_creation,
                input_tokens=input_tokens,
                model=response_model,
            )

        yield StreamChunk(
            type="finish",
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=response_model,
        )
