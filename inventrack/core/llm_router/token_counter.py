"""Token cost estimates for the LLM router."""

from __future__ import annotations

import structlog

logger = structlog.get_logger()

# Cost per 1M tokens (input, output)
MODEL_COSTS: dict[str, tuple[float, float]] = {
    "claude-sonnet-4-20250514": (3.0, 15.0),
    "claude-haiku-4-5-20251001": (1.0, 5.0),
    "gpt-4o": (2.5, 10.0),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4.1-nano": (0.20, 0.80),
    "gemini-2.5-flash": (0.30, 2.50),
    "gemini-2.5-pro": (1.25, 10.0),
    "gemini-2.0-flash": (0.1, 0.4),
}

# Mid-range estimate for models missing from the table
DEFAULT_COSTS = (3.0, 15.0)


def _lookup(model: str) -> tuple[float, float] | None:
    if model in MODEL_COSTS:
        return MODEL_COSTS[model]
    # Longest key first so "gpt-4o-mini-2024..." does not match "gpt-4o"
    for model_key in sorted(MODEL_COSTS, key=len, reverse=True):
        if model_key in model or (model and model in model_key):
            return MODEL_COSTS[model_key]
    return None


def estimate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
) -> float:
    """Estimate the cost of an LLM call in USD."""
    costs = _lookup(model)
    if costs is None:
        logger.warning("unknown_model_cost", model=model)
        costs = DEFAULT_COSTS

    input_cost = (input_tokens / 1_000_000) * costs[0]
    output_cost = (output_tokens / 1_000_000) * costs[1]
    return input_cost + output_cost
