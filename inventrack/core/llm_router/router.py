"""LLM Router - routes streamed requests to the right provider with fallback."""

from __future__ import annotations

from collections.abc import AsyncIterator

import structlog

from inventrack.core.llm_router.providers.base import LLMProvider, StreamChunk
from inventrack.shared.config import Settings, parse_list

logger = structlog.get_logger()


class LLMUnavailableError(RuntimeError):
    """No provider produced a response for this step."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


def _is_bad_request(exc: Exception) -> bool:
    """Return True if the exception is a 400-class client error.

    These indicate a malformed payload (e.g. orphaned tool_result) that
    will never succeed regardless of how many providers or retries we try.
    """
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and 400 <= status < 500:
        return True
    # Some SDKs use .code instead of .status_code
    code = getattr(exc, "code", None)
    if code in (400, "400", "INVALID_ARGUMENT"):
        return True
    return False


class LLMRouter:
    """Routes LLM requests to the appropriate provider based on model name."""

    # Model name prefix -> provider name
    model_map = {
        "claude": "anthropic",
        "gpt": "openai",
        "o1": "openai",
        "o3": "openai",
        "gemini": "google",
    }

    provider_defaults = {
        "google": "gemini-2.5-flash",
        "openai": "gpt-4o-mini",
        "anthropic": "claude-sonnet-4-20250514",
    }

    def __init__(self, settings: Settings, providers: dict[str, LLMProvider] | None = None):
        self.settings = settings
        self.providers: dict[str, LLMProvider] = {}
        if providers is None:
            self._setup_providers()
        else:
            self.providers.update(providers)
        self._resolve_effective_default()

    def _setup_providers(self) -> None:
        """Register providers based on available API keys."""
        if self.settings.anthropic_api_key:
            from inventrack.core.llm_router.providers.anthropic import AnthropicProvider

            self.providers["anthropic"] = AnthropicProvider(self.settings.anthropic_api_key)
            logger.info("registered_provider", provider="anthropic")

        if self.settings.openai_api_key:
            from inventrack.core.llm_router.providers.openai_provider import OpenAIProvider

            self.providers["openai"] = OpenAIProvider(self.settings.openai_api_key)
            logger.info("registered_provider", provider="openai")

        if self.settings.google_api_key:
            from inventrack.core.llm_router.providers.google import GoogleProvider

            self.providers["google"] = GoogleProvider(self.settings.google_api_key)
            logger.info("registered_provider", provider="google")

    def _resolve_effective_default(self) -> None:
        """Pick a default model that matches an available provider."""
        self.effective_default_model = self.settings.default_model
        if self._has_provider_for(self.settings.default_model):
            return
        for prov_name, model in self.provider_defaults.items():
            if prov_name in self.providers:
                logger.info(
                    "auto_default_model",
                    configured=self.settings.default_model,
                    resolved=model,
                )
                self.effective_default_model = model
                return

    def _has_provider_for(self, model: str) -> bool:
        """Check if a registered provider can handle this model."""
        for prefix, provider_name in self.model_map.items():
            if model.startswith(prefix):
                return provider_name in self.providers
        return False

    def _get_provider_for_model(self, model: str) -> tuple[str, LLMProvider]:
        """Find the provider that handles a given model."""
        for prefix, provider_name in self.model_map.items():
            if model.startswith(prefix):
                if provider_name in self.providers:
                    return provider_name, self.providers[provider_name]
                raise RuntimeError(
                    f"Model '{model}' requires the '{provider_name}' provider, "
                    f"but no API key is set for it."
                )

        # If no prefix match, try first available provider
        if self.providers:
            name = next(iter(self.providers))
            return name, self.providers[name]

        raise RuntimeError("No LLM providers configured. Set at least one API key.")

    async def stream_chat(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        model: str | None = None,
        max_tokens: int = 4000,
        temperature: float = 0.2,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat response, falling back along the configured chain.

        A model is only abandoned for the next one while it has produced no
        output; once chunks have been yielded a failure propagates as-is.
        """
        target_model = model or self.effective_default_model
        candidates = [target_model] + [
            m for m in parse_list(self.settings.fallback_chain) if m != target_model
        ]

        last_error: Exception | None = None
        for index, candidate in enumerate(candidates):
            try:
                _, provider = self._get_provider_for_model(candidate)
            except RuntimeError as e:
                last_error = e
                logger.warning("model_unavailable", model=candidate, error=str(e))
                continue

            started = False
            try:
                async for chunk in provider.stream_chat(
                    messages=messages,
                    tools=tools,
                    model=candidate,
                    max_tokens=max_tokens,
                    temperature=temperature,
                ):
                    started = True
                    yield chunk
            except Exception as e:
                if started:
                    raise
                # 400-class errors mean the payload is broken, fallback won't help
                if _is_bad_request(e):
                    logger.error("bad_request_no_fallback", model=candidate, error=str(e))
                    raise LLMUnavailableError(str(e), retryable=False) from e
                last_error = e
                logger.warning(
                    "primary_model_failed" if index == 0 else "fallback_model_failed",
                    model=candidate,
                    error=str(e),
                )
                continue

            if index > 0:
                logger.info("fallback_succeeded", model=candidate)
            return

        raise LLMUnavailableError(
            "All LLM providers failed. Check API keys and service status."
        ) from last_error
