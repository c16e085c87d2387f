"""Tests for the per-model token budget."""

from turnloop.context_window import (
    SESSION_MEMORY_BUFFER, auto_compact_threshold, available_input, compute_budget,
    context_window_size, is_above_auto_compact_threshold, max_output_tokens,
)
from turnloop.messages import user_message


class TestBudget:

    def test_generic_opus_4_model(self):
        budget = compute_budget("x-opus-4")
        assert budget.context_window_size == 200_000
        assert budget.max_output_tokens == 32_000
        assert budget.available_input == 168_000
        assert budget.auto_compact_threshold == 168_000 - SESSION_MEMORY_BUFFER

    def test_extended_context_marker(self):
        assert context_window_size("claude-sonnet-4[1m]") == 1_000_000
        assert context_window_size("claude-sonnet-4") == 200_000
        assert context_window_size("") == 200_000

    def test_output_tiers(self):
        assert max_output_tokens("claude-opus-4-5") == 64_000
        assert max_output_tokens("claude-opus-4-1") == 32_000
        assert max_output_tokens("claude-sonnet-4-20250514") == 64_000
        assert max_output_tokens("claude-haiku-4-5") == 64_000
        assert max_output_tokens("gpt-4o") == 32_000

    def test_output_override_only_lowers(self):
        assert max_output_tokens("claude-sonnet-4", 8_000) == 8_000
        assert max_output_tokens("claude-sonnet-4", 100_000) == 64_000
        assert available_input("claude-sonnet-4", 8_000) == 192_000


class TestAutoCompactThreshold:

    def test_percentage_tightens(self):
        assert auto_compact_threshold("x-opus-4", pct_override=50) == 84_000

    def test_percentage_never_loosens(self):
        assert auto_compact_threshold("x-opus-4", pct_override=100) == 155_000

    def test_out_of_range_percentage_ignored(self):
        assert auto_compact_threshold("x-opus-4", pct_override=0) == 155_000

    def test_crossing_is_monotonic(self):
        budget = compute_budget("x-opus-4", pct_override=0.01)  # 16 tokens
        short = [user_message("x" * 40)]
        longer = short + [user_message("y" * 40)]
        assert not is_above_auto_compact_threshold(short, budget)
        assert is_above_auto_compact_threshold(longer, budget)
        assert is_above_auto_compact_threshold(longer + [user_message("z")], budget)
