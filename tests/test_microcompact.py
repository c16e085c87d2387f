"""Tests for Tier 1 eviction of old oversized tool output."""

from turnloop.compaction import CLEARED_PLACEHOLDER, MicrocompactSettings, microcompact
from turnloop.compaction.microcompact import find_evictable
from turnloop.messages import ASSISTANT, USER, Message, ToolResultBlock, ToolUseBlock, tool_results, user_message
from turnloop.tokenizer import calculate_total_tokens
from turnloop.tool_output import wrap_persisted_output

BIG = wrap_persisted_output("line\n" * 100_000)

EAGER = MicrocompactSettings(trigger_threshold=1_000, min_savings=100, keep_recent=3)


def _round(i, tool="Read", content=BIG):
    return [
        Message(role=ASSISTANT, content=[ToolUseBlock(f"t{i}", tool, {"file_path": f"f{i}.py"})]),
        Message(role=USER, content=[ToolResultBlock(f"t{i}", content)]),
    ]


def _history(n, **kwargs):
    history = [user_message("start")]
    for i in range(n):
        history.extend(_round(i, **kwargs))
    return history


def _contents(messages):
    return [b.content for m in messages for b in tool_results(m)]


class TestEviction:

    def test_clears_all_but_most_recent(self):
        history = _history(5)

        result = microcompact(history, EAGER)

        assert result.compacted is True
        contents = _contents(result.messages)
        assert contents[:2] == [CLEARED_PLACEHOLDER] * 2
        assert contents[2:] == [BIG] * 3
        assert result.post_tokens == calculate_total_tokens(result.messages)
        assert result.post_tokens < result.pre_tokens

    def test_input_untouched(self):
        history = _history(5)
        microcompact(history, EAGER)
        assert _contents(history) == [BIG] * 5

    def test_only_compactable_tools(self):
        history = _history(5, tool="Task")
        assert find_evictable(history) == []
        result = microcompact(history, EAGER)
        assert result.compacted is False
        assert result.messages is history

    def test_plain_results_not_evicted(self):
        history = _history(5, content="short output")
        assert microcompact(history, EAGER).reason == "nothing to evict"


class TestDecline:

    def test_below_trigger_with_defaults(self):
        history = _history(5)
        result = microcompact(history)
        assert result.compacted is False
        assert result.reason == "below trigger threshold"
        assert result.messages is history

    def test_savings_too_small(self):
        settings = MicrocompactSettings(trigger_threshold=1_000, min_savings=1_000_000)
        result = microcompact(_history(5), settings)
        assert result.reason == "savings too small"

    def test_too_few_candidates(self):
        assert microcompact(_history(3), EAGER).reason == "nothing to evict"

    def test_disabled(self):
        history = _history(5)
        result = microcompact(history, MicrocompactSettings(enabled=False))
        assert result.reason == "disabled"
        assert result.messages is history
