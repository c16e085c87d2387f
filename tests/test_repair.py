"""Tests for tool_use / tool_result pairing repair."""

from turnloop.messages import (
    ASSISTANT, USER, Message, TextBlock, ToolResultBlock, ToolUseBlock, tool_results, user_message,
)
from turnloop.repair import ORPHANED_TOOL_ERROR_MESSAGE, find_orphaned_tool_uses, repair_tool_results


def _assistant(*blocks):
    return Message(role=ASSISTANT, content=list(blocks))


def _results(*blocks):
    return Message(role=USER, content=list(blocks))


class TestRepair:

    def test_orphaned_read_gets_error_result(self):
        history = [
            user_message("show me a.py"),
            _assistant(TextBlock("Reading."), ToolUseBlock("t1", "Read", {"file_path": "a.py"})),
        ]

        repaired = repair_tool_results(history)

        assert len(repaired) == 3
        result = tool_results(repaired[2])[0]
        assert result.tool_use_id == "t1"
        assert result.is_error is True
        assert ORPHANED_TOOL_ERROR_MESSAGE in result.content
        assert "Read" in result.content
        assert len(history) == 2

    def test_nothing_orphaned_returns_same_list(self):
        history = [
            _assistant(ToolUseBlock("t1", "Bash", {"command": "ls"})),
            _results(ToolResultBlock("t1", "a.py")),
        ]
        assert repair_tool_results(history) is history

    def test_idempotent(self):
        history = [_assistant(ToolUseBlock("t1", "Bash", {"command": "ls"}))]
        once = repair_tool_results(history)
        assert repair_tool_results(once) is once
        assert find_orphaned_tool_uses(once) == {}

    def test_missing_result_joins_existing_results_message(self):
        history = [
            _assistant(ToolUseBlock("t1", "Read", {}), ToolUseBlock("t2", "Grep", {})),
            _results(ToolResultBlock("t1", "contents")),
        ]

        repaired = repair_tool_results(history)

        assert len(repaired) == 2
        ids = [b.tool_use_id for b in tool_results(repaired[1])]
        assert ids == ["t1", "t2"]
        assert repaired[1].id == history[1].id
        assert len(tool_results(history[1])) == 1

    def test_orphans_reported_in_emission_order(self):
        history = [
            _assistant(ToolUseBlock("b", "Read", {}), ToolUseBlock("a", "Glob", {})),
        ]
        assert list(find_orphaned_tool_uses(history)) == ["b", "a"]
