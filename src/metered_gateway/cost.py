"""Cost computation and token estimation."""

from __future__ import annotations

import math
from collections.abc import Iterable

from metered_gateway.types import LLMMessage, ModelDescriptor, TokenUsage

# Rough estimate: 1 token ≈ 4 characters (for heuristic usage tracking)
_CHARS_PER_TOKEN = 4


def calculate_cost(
    input_tokens: int,
    output_tokens: int,
    input_price_per_million: float | None,
    output_price_per_million: float | None,
) -> float:
    """Return the USD cost of a call.

    Returns:
        ``0.0`` when either price is unknown, never ``None``.
    """
    if input_price_per_million is None or output_price_per_million is None:
        return 0.0
    input_cost = (input_tokens / 1_000_000) * input_price_per_million
    output_cost = (output_tokens / 1_000_000) * output_price_per_million
    return input_cost + output_cost


def build_token_usage(
    descriptor: ModelDescriptor | None, input_tokens: int, output_tokens: int
) -> TokenUsage:
    """Build a TokenUsage priced from the catalog entry (zero cost if unknown)."""
    if (
        descriptor is None
        or descriptor.input_price_per_million is None
        or descriptor.output_price_per_million is None
    ):
        return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        input_cost_usd=input_tokens * descriptor.input_price_per_million / 1_000_000,
        output_cost_usd=output_tokens * descriptor.output_price_per_million / 1_000_000,
    )


def estimate_tokens(text: str) -> int:
    """Heuristic token count for text the vendor has not (yet) metered."""
    if not text:
        return 0
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def estimate_prompt_tokens(
    messages: Iterable[LLMMessage], system_prompt: str | None = None
) -> int:
    """Heuristic input token count for a conversation."""
    total = estimate_tokens(system_prompt or "")
    for msg in messages:
        total += estimate_tokens(msg.get("content", ""))
    return total
