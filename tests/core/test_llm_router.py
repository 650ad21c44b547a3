"""Tests for provider selection and pre-output fallback in the LLM router."""

from __future__ import annotations

import pytest

from inventrack.core.llm_router.providers.base import LLMProvider, StreamChunk
from inventrack.core.llm_router.router import LLMRouter, LLMUnavailableError


class BadRequest(Exception):
    status_code = 400


class FakeProvider(LLMProvider):
    """Streams a fixed text reply, optionally failing before or after output."""

    def __init__(self, reply="hello", fail_before: Exception | None = None, fail_after: Exception | None = None):
        self.reply = reply
        self.fail_before = fail_before
        self.fail_after = fail_after
        self.models: list[str] = []

    async def stream_chat(self, messages, tools=None, model="", max_tokens=4000, temperature=0.2):
        self.models.append(model)
        if self.fail_before:
            raise self.fail_before
        yield StreamChunk(type="text_delta", text=self.reply)
        if self.fail_after:
            raise self.fail_after
        yield StreamChunk(type="finish", stop_reason="end_turn", model=model)


async def _collect(router, **kwargs):
    return [chunk async for chunk in router.stream_chat(messages=[{"role": "user", "content": "hi"}], **kwargs)]


class TestProviderSelection:

    def test_no_keys_means_no_providers(self, settings):
        assert LLMRouter(settings).providers == {}

    def test_default_falls_back_to_available_provider(self, settings):
        router = LLMRouter(settings, providers={"openai": FakeProvider()})
        assert router.effective_default_model == "gpt-4o-mini"

    def test_configured_default_kept_when_available(self, settings):
        router = LLMRouter(settings, providers={"google": FakeProvider()})
        assert router.effective_default_model == "gemini-2.5-flash"

    @pytest.mark.asyncio
    async def test_routes_by_model_prefix(self, settings):
        google, openai = FakeProvider("g"), FakeProvider("o")
        router = LLMRouter(settings, providers={"google": google, "openai": openai})
        chunks = await _collect(router, model="gpt-4o-mini")
        assert chunks[0].text == "o"
        assert google.models == []


class TestFallback:

    @pytest.mark.asyncio
    async def test_primary_failure_before_output_falls_back(self, settings):
        google = FakeProvider(fail_before=RuntimeError("503 overloaded"))
        openai = FakeProvider("from openai")
        router = LLMRouter(settings, providers={"google": google, "openai": openai})

        chunks = await _collect(router)
        assert [c.text for c in chunks if c.type == "text_delta"] == ["from openai"]
        assert google.models == ["gemini-2.5-flash"]
        assert openai.models == ["gpt-4o-mini"]

    @pytest.mark.asyncio
    async def test_failure_after_output_is_not_retried(self, settings):
        google = FakeProvider(fail_after=RuntimeError("connection reset"))
        openai = FakeProvider()
        router = LLMRouter(settings, providers={"google": google, "openai": openai})

        with pytest.raises(RuntimeError, match="connection reset"):
            await _collect(router)
        assert openai.models == []

    @pytest.mark.asyncio
    async def test_bad_request_is_not_retryable(self, settings):
        google = FakeProvider(fail_before=BadRequest("orphaned tool_result"))
        openai = FakeProvider()
        router = LLMRouter(settings, providers={"google": google, "openai": openai})

        with pytest.raises(LLMUnavailableError) as exc:
            await _collect(router)
        assert exc.value.retryable is False
        assert openai.models == []

    @pytest.mark.asyncio
    async def test_all_providers_fail(self, settings):
        router = LLMRouter(settings, providers={
            "google": FakeProvider(fail_before=RuntimeError("down")),
            "openai": FakeProvider(fail_before=RuntimeError("down too")),
        })
        with pytest.raises(LLMUnavailableError) as exc:
            await _collect(router)
        assert exc.value.retryable is True

    @pytest.mark.asyncio
    async def test_no_providers(self, settings):
        with pytest.raises(LLMUnavailableError):
            await _collect(LLMRouter(settings, providers={}))
