"""Tests for provider stream parsing and message conversion.

SDK clients are replaced with mocks that replay canned stream events, so no
network access or API keys are needed.
"""

from __future__ import annotations

from types import SimpleNamespace as NS
from unittest.mock import AsyncMock, MagicMock

import pytest

from inventrack.core.llm_router.providers.anthropic import AnthropicProvider
from inventrack.core.llm_router.providers.base import parse_tool_arguments
from inventrack.core.llm_router.providers.google import GoogleProvider
from inventrack.core.llm_router.providers.openai_provider import OpenAIProvider

STEP_MESSAGES = [
    {"role": "system", "content": "You are InvenTrack AI."},
    {"role": "user", "content": "What is running low?"},
    {"role": "assistant", "content": "Let me check."},
    {"role": "tool_call", "name": "get_low_stock_items", "arguments": {}, "tool_use_id": "t1"},
    {"role": "tool_call", "name": "get_analytics", "arguments": {"metric_type": "overview"}, "tool_use_id": "t2"},
    {"role": "tool_result", "name": "get_low_stock_items", "content": "{}", "tool_use_id": "t1"},
    {"role": "tool_result", "name": "get_analytics", "content": "{}", "tool_use_id": "t2"},
]


async def _replay(items):
    for item in items:
        yield item


async def _drain(stream):
    return [chunk async for chunk in stream]


class TestParseToolArguments:

    def test_valid_object(self):
        assert parse_tool_arguments("search_inventory", '{"query": "desk"}') == ({"query": "desk"}, None)

    def test_empty(self):
        assert parse_tool_arguments("get_low_stock_items", "") == ({}, None)

    def test_invalid_json(self):
        args, error = parse_tool_arguments("search_inventory", '{"query": ')
        assert args == {}
        assert error.startswith("Arguments for search_inventory are not valid JSON")

    def test_non_object(self):
        _, error = parse_tool_arguments("search_inventory", "[1, 2]")
        assert error == "Arguments for search_inventory must be a JSON object"


def _openai_chunk(content=None, tool_calls=None, finish_reason=None, usage=None, choices=True):
    return NS(
        model="gpt-4o-mini-2024-07-18",
        usage=usage,
        choices=[NS(delta=NS(content=content, tool_calls=tool_calls), finish_reason=finish_reason)]
        if choices else [],
    )


def _openai_tool_delta(index, id=None, name=None, arguments=None):
    return NS(index=index, id=id, function=NS(name=name, arguments=arguments))


class TestOpenAIProvider:

    @pytest.fixture
    def provider(self):
        provider = OpenAIProvider(api_key="test-key")
        provider.client = MagicMock()
        return provider

    @pytest.mark.asyncio
    async def test_streams_text_then_assembled_tool_calls(self, provider):
        provider.client.chat.completions.create = AsyncMock(return_value=_replay([
            _openai_chunk(content="Checking "),
            _openai_chunk(content="stock."),
            _openai_chunk(tool_calls=[_openai_tool_delta(0, id="call_1", name="search_inventory", arguments='{"que')]),
            _openai_chunk(tool_calls=[_openai_tool_delta(0, arguments='ry": "laptop"}')]),
            _openai_chunk(tool_calls=[_openai_tool_delta(1, id="call_2", name="get_low_stock_items", arguments="{}")]),
            _openai_chunk(finish_reason="tool_calls"),
            _openai_chunk(usage=NS(prompt_tokens=120, completion_tokens=30), choices=False),
        ]))

        chunks = await _drain(provider.stream_chat(STEP_MESSAGES[:2], model="gpt-4o-mini"))

        assert [c.text for c in chunks if c.type == "text_delta"] == ["Checking ", "stock."]
        calls = [c.tool_call for c in chunks if c.type == "tool_call"]
        assert [(c.tool_name, c.arguments, c.tool_use_id) for c in calls] == [
            ("search_inventory", {"query": "laptop"}, "call_1"),
            ("get_low_stock_items", {}, "call_2"),
        ]
        finish = chunks[-1]
        assert finish.type == "finish"
        assert finish.stop_reason == "tool_use"
        assert (finish.input_tokens, finish.output_tokens) == (120, 30)
        assert finish.model == "gpt-4o-mini-2024-07-18"

        kwargs = provider.client.chat.completions.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_broken_arguments_flagged(self, provider):
        provider.client.chat.completions.create = AsyncMock(return_value=_replay([
            _openai_chunk(tool_calls=[_openai_tool_delta(0, id="c", name="get_analytics", arguments='{"metric_')]),
            _openai_chunk(finish_reason="tool_calls"),
        ]))
        chunks = await _drain(provider.stream_chat(STEP_MESSAGES[:2]))
        call = next(c.tool_call for c in chunks if c.type == "tool_call")
        assert call.arguments == {}
        assert call.argument_error is not None

    @pytest.mark.asyncio
    async def test_length_finish(self, provider):
        provider.client.chat.completions.create = AsyncMock(return_value=_replay([
            _openai_chunk(content="partial"),
            _openai_chunk(finish_reason="length"),
        ]))
        chunks = await _drain(provider.stream_chat(STEP_MESSAGES[:2]))
        assert chunks[-1].stop_reason == "max_tokens"

    def test_parallel_calls_share_one_assistant_message(self, provider):
        converted = provider._convert_messages(STEP_MESSAGES)
        assert [m["role"] for m in converted] == ["system", "user", "assistant", "tool", "tool"]
        assistant = converted[2]
        assert assistant["content"] == "Let me check."
        assert [c["id"] for c in assistant["tool_calls"]] == ["t1", "t2"]
        assert assistant["tool_calls"][1]["function"]["arguments"] == '{"metric_type": "overview"}'


class TestAnthropicProvider:

    @pytest.fixture
    def provider(self):
        provider = AnthropicProvider(api_key="test-key")
        provider.client = MagicMock()
        return provider

    @pytest.mark.asyncio
    async def test_streams_events(self, provider):
        provider.client.messages.create = AsyncMock(return_value=_replay([
            NS(type="message_start", message=NS(
                model="claude-sonnet-4-20250514",
                usage=NS(input_tokens=200, cache_read_input_tokens=150, cache_creation_input_tokens=0),
            )),
            NS(type="content_block_start", index=0, content_block=NS(type="text")),
            NS(type="content_block_delta", index=0, delta=NS(type="text_delta", text="Looking now.")),
            NS(type="content_block_stop", index=0),
            NS(type="content_block_start", index=1, content_block=NS(type="tool_use", id="toolu_1", name="get_stock_movements")),
            NS(type="content_block_delta", index=1, delta=NS(type="input_json_delta", partial_json='{"product_id": ')),
            NS(type="content_block_delta", index=1, delta=NS(type="input_json_delta", partial_json='"abc"}')),
            NS(type="content_block_stop", index=1),
            NS(type="message_delta", delta=NS(stop_reason="tool_use"), usage=NS(output_tokens=42)),
            NS(type="message_stop"),
        ]))

        chunks = await _drain(provider.stream_chat(STEP_MESSAGES[:2]))

        assert [c.type for c in chunks] == ["text_delta", "tool_call", "finish"]
        assert chunks[1].tool_call.tool_name == "get_stock_movements"
        assert chunks[1].tool_call.arguments == {"product_id": "abc"}
        assert chunks[1].tool_call.tool_use_id == "toolu_1"
        assert chunks[2].stop_reason == "tool_use"
        assert (chunks[2].input_tokens, chunks[2].output_tokens) == (200, 42)

    def test_conversion_merges_turns_and_marks_cache(self, provider):
        system, converted = provider._convert_messages(STEP_MESSAGES)
        assert system[-1]["cache_control"] == {"type": "ephemeral"}
        assert [m["role"] for m in converted] == ["user", "assistant", "user"]
        assert [b["type"] for b in converted[1]["content"]] == ["text", "tool_use", "tool_use"]
        assert [b["tool_use_id"] for b in converted[2]["content"]] == ["t1", "t2"]

    def test_last_tool_is_cache_marked(self, provider, mock_registry):
        tools, mapping = provider._convert_tools(
            mock_registry.tools_to_openai_format(mock_registry.get_tools_for_role("admin"))
        )
        assert "cache_control" in tools[-1]
        assert "cache_control" not in tools[0]
        assert mapping["search_inventory"] == "search_inventory"


class TestGoogleProvider:

    @pytest.fixture
    def provider(self):
        provider = GoogleProvider(api_key="test-key")
        provider.client = MagicMock()
        return provider

    @staticmethod
    def _chunk(parts, finish_reason=None, usage=None):
        return NS(
            usage_metadata=usage,
            candidates=[NS(finish_reason=finish_reason, content=NS(parts=parts))],
        )

    @pytest.mark.asyncio
    async def test_streams_text_and_calls(self, provider):
        provider.client.aio.models.generate_content_stream = AsyncMock(return_value=_replay([
            self._chunk([NS(text="Here you go", function_call=None)]),
            self._chunk(
                [NS(text=None, function_call=NS(name="get_low_stock_items", args={}, id=None))],
                finish_reason="STOP",
                usage=NS(prompt_token_count=80, candidates_token_count=12),
            ),
        ]))

        chunks = await _drain(provider.stream_chat(STEP_MESSAGES[:2]))

        assert [c.type for c in chunks] == ["text_delta", "tool_call", "finish"]
        assert chunks[1].tool_call.tool_use_id.startswith("tool_")
        assert chunks[2].stop_reason == "tool_use"
        assert chunks[2].input_tokens == 80

    @pytest.mark.asyncio
    async def test_empty_response_raises(self, provider):
        provider.client.aio.models.generate_content_stream = AsyncMock(return_value=_replay([
            self._chunk([], finish_reason="SAFETY"),
        ]))
        with pytest.raises(RuntimeError, match="empty response"):
            await _drain(provider.stream_chat(STEP_MESSAGES[:2]))

    def test_conversion_groups_parallel_turns(self, provider):
        system, contents = provider._convert_messages(STEP_MESSAGES)
        assert system == "You are InvenTrack AI."
        assert [c.role for c in contents] == ["user", "model", "user"]
        assert len(contents[1].parts) == 3
        assert len(contents[2].parts) == 2
