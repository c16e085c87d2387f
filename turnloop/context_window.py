"""Context window token budget for a model identifier."""

import math
from dataclasses import dataclass
from typing import List, Optional

from .messages import Message
from .tokenizer import calculate_total_tokens

__all__ = [
    "TokenBudget", "context_window_size", "max_output_tokens", "available_input",
    "auto_compact_threshold", "compute_budget", "is_above_auto_compact_threshold",
]

DEFAULT_CONTEXT_WINDOW = 200_000
EXTENDED_CONTEXT_WINDOW = 1_000_000
EXTENDED_CONTEXT_MARK = "[1m]"

# Reserved for the session-memory write that may follow a compaction.
SESSION_MEMORY_BUFFER = 13_000

# Ordered: the first matching family wins, so "opus-4-5" must precede "opus-4".
_OUTPUT_TIERS = (
    ("opus-4-5", 64_000),
    ("opus-4", 32_000),
    ("sonnet-4", 64_000),
    ("haiku-4", 64_000),
)
DEFAULT_MAX_OUTPUT = 32_000


@dataclass(frozen=True)
class TokenBudget:
    context_window_size: int
    max_output_tokens: int
    available_input: int
    auto_compact_threshold: int


def context_window_size(model: str) -> int:
    if EXTENDED_CONTEXT_MARK in (model or ""):
        return EXTENDED_CONTEXT_WINDOW
    return DEFAULT_CONTEXT_WINDOW


def max_output_tokens(model: str, override: Optional[int] = None) -> int:
    """Tier default for the model family; ``override`` may only lower it."""
    name = model or ""
    default_max = DEFAULT_MAX_OUTPUT
    for family, tokens in _OUTPUT_TIERS:
        if family in name:
            default_max = tokens
            break
    if override is not None:
        return min(override, default_max)
    return default_max


def available_input(model: str, max_output_override: Optional[int] = None) -> int:
    return context_window_size(model) - max_output_tokens(model, max_output_override)


def auto_compact_threshold(model: str, max_output_override: Optional[int] = None,
                           pct_override: Optional[float] = None) -> int:
    """Token count at which the compaction cascade runs.

    ``pct_override`` scales the available input space; it can tighten the
    threshold but never raise it above the unscaled value.
    """
    available = available_input(model, max_output_override)
    threshold = available - SESSION_MEMORY_BUFFER
    if pct_override is not None and 0 < pct_override <= 100:
        return min(math.floor(available * (pct_override / 100)), threshold)
    return threshold


def compute_budget(model: str, max_output_override: Optional[int] = None,
                   pct_override: Optional[float] = None) -> TokenBudget:
    """Derive the full budget for this turn."""
    output = max_output_tokens(model, max_output_override)
    return TokenBudget(
        context_window_size=context_window_size(model),
        max_output_tokens=output,
        available_input=available_input(model, max_output_override),
        auto_compact_threshold=auto_compact_threshold(model, max_output_override, pct_override),
    )


def is_above_auto_compact_threshold(messages: List[Message], budget: TokenBudget) -> bool:
    return calculate_total_tokens(messages) >= budget.auto_compact_threshold
