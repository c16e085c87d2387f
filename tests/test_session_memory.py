"""Tests for Tier 3 durable session memory."""

import logging

from turnloop.compaction import (
    SESSION_MEMORY_TEMPLATE, SessionMemorySettings, SessionMemoryStore,
    compact_with_session_memory, is_boundary_marker, select_retained_tail,
)
from turnloop.compaction.session_memory import (
    MAX_SECTION_TOKENS, build_update_prompt, sanitize_project_path, section_tokens,
)
from turnloop.messages import (
    ASSISTANT, USER, Message, ToolResultBlock, ToolUseBlock, assistant_message, text_of, user_message,
)

SMALL_TAIL = SessionMemorySettings(min_tokens=10, min_text_block_messages=2, max_tokens=1_000)


def _texts(n):
    return [user_message(f"m{i} " + "x" * 40) if i % 2 == 0 else assistant_message(f"m{i} " + "x" * 40)
            for i in range(n)]


class RecordingExtractor:
    def __init__(self, notes="# Current State\nworking on the lexer"):
        self.notes = notes
        self.calls = []

    def __call__(self, messages, prompt):
        self.calls.append((list(messages), prompt))
        if isinstance(self.notes, Exception):
            raise self.notes
        return self.notes


class TestStore:

    def test_created_from_template(self, tmp_path):
        store = SessionMemoryStore("/home/dev/proj", "abc", base_dir=tmp_path)
        assert store.read() == SESSION_MEMORY_TEMPLATE
        assert store.path == tmp_path / "home-dev-proj" / "abc" / "session-memory" / "summary.md"
        assert store.is_empty_template(store.read())

    def test_append_only(self, tmp_path):
        store = SessionMemoryStore("/p", "abc", base_dir=tmp_path, template="# Notes\n")
        store.append("first")
        document = store.append("second")
        assert document.startswith("# Notes")
        assert document.index("first") < document.index("second")
        assert store.read() == document

    def test_default_location_under_config_dir(self, isolated_home):
        store = SessionMemoryStore("/p", "abc")
        assert str(store.path).startswith(str(isolated_home / "projects"))

    def test_sanitize(self):
        assert sanitize_project_path("C:\\work\\proj") == "work-proj"
        assert sanitize_project_path("/") == "default"


class TestPrompt:

    def test_update_prompt_embeds_notes(self):
        prompt = build_update_prompt("# Current State\nlexer")
        assert "<current_notes_content>\n# Current State\nlexer\n</current_notes_content>" in prompt

    def test_oversized_section_warning(self):
        notes = "# Worklog\n" + "w" * (MAX_SECTION_TOKENS * 4 + 40)
        assert section_tokens(notes)["# Worklog"] > MAX_SECTION_TOKENS
        assert '"# Worklog" section' in build_update_prompt(notes)


class TestRetainedTail:

    def test_meets_minimums(self):
        messages = _texts(6)
        assert select_retained_tail(messages, SMALL_TAIL) == 4

    def test_capped_by_max_tokens(self):
        messages = _texts(6)
        settings = SessionMemorySettings(min_tokens=10_000, min_text_block_messages=5, max_tokens=30)
        assert select_retained_tail(messages, settings) == 4

    def test_never_splits_tool_pair(self):
        messages = [
            user_message("start"),
            assistant_message("looking"),
            Message(role=ASSISTANT, content=[ToolUseBlock("t1", "Read", {"file_path": "a.py"})]),
            Message(role=USER, content=[ToolResultBlock("t1", "ok")]),
        ]
        settings = SessionMemorySettings(min_tokens=1, min_text_block_messages=1, max_tokens=1)
        assert select_retained_tail(messages, settings) == 2


class TestCompactWithSessionMemory:

    def test_rebuilds_history(self, tmp_path):
        store = SessionMemoryStore("/p", "s", base_dir=tmp_path)
        extractor = RecordingExtractor()
        history = _texts(6)

        result = compact_with_session_memory(history, store, extractor, threshold=10_000,
                                             settings=SMALL_TAIL)

        assert result.compacted is True
        marker, summary, *tail = result.messages
        assert is_boundary_marker(marker)
        assert marker.id == result.tracking_id
        assert result.tracking_id.startswith("sm-")
        assert "working on the lexer" in text_of(summary)
        assert tail == history[4:]
        assert extractor.calls[0][0] == history[:4]
        assert "working on the lexer" in store.read()

    def test_incremental_after_tracking_id(self, tmp_path):
        store = SessionMemoryStore("/p", "s", base_dir=tmp_path)
        first = compact_with_session_memory(_texts(6), store, RecordingExtractor(), 10_000,
                                            settings=SMALL_TAIL)
        newer = _texts(4)
        extractor = RecordingExtractor("# Worklog\nparser done")

        second = compact_with_session_memory(first.messages + newer, store, extractor, 10_000,
                                             tracking_id=first.tracking_id, settings=SMALL_TAIL)

        assert second.compacted is True
        folded = extractor.calls[0][0]
        assert not any(is_boundary_marker(m) for m in folded)
        assert folded == first.messages[2:] + newer[:2]
        assert second.tracking_id != first.tracking_id

    def test_unknown_tracking_id_folds_everything(self, tmp_path, caplog):
        store = SessionMemoryStore("/p", "s", base_dir=tmp_path)
        extractor = RecordingExtractor()
        with caplog.at_level(logging.WARNING):
            result = compact_with_session_memory(_texts(6), store, extractor, 10_000,
                                                 tracking_id="sm-gone", settings=SMALL_TAIL)
        assert result.compacted is True
        assert len(extractor.calls[0][0]) == 4
        assert "sm-gone" in caplog.text

    def test_declines(self, tmp_path):
        history = _texts(6)
        store = SessionMemoryStore("/p", "s", base_dir=tmp_path)
        before = store.read()

        empty = compact_with_session_memory(history, store, RecordingExtractor("  "), 10_000,
                                            settings=SMALL_TAIL)
        headings_only = compact_with_session_memory(history, store, RecordingExtractor("# Worklog\n"),
                                                    10_000, settings=SMALL_TAIL)
        failing = compact_with_session_memory(history, store, RecordingExtractor(RuntimeError("x")),
                                              10_000, settings=SMALL_TAIL)
        too_big = compact_with_session_memory(history, store, RecordingExtractor("# Worklog\nSTEP-ONE"),
                                              threshold=1, settings=SMALL_TAIL)
        disabled = compact_with_session_memory(history, store, RecordingExtractor(), 10_000,
                                               settings=SessionMemorySettings(enabled=False))

        assert empty.reason == "empty extraction"
        assert headings_only.reason == "memory document is empty"
        assert failing.reason.startswith("error:")
        assert too_big.reason == "still above threshold"
        assert disabled.reason == "disabled"
        for result in (empty, headings_only, failing, too_big, disabled):
            assert result.compacted is False
            assert result.messages is history
        assert store.read() == before

    def test_discarded_attempt_does_not_duplicate_notes(self, tmp_path):
        history = _texts(6)
        store = SessionMemoryStore("/p", "s", base_dir=tmp_path)
        compact_with_session_memory(history, store, RecordingExtractor("# Worklog\nSTEP-ONE"),
                                    threshold=1, settings=SMALL_TAIL)
        result = compact_with_session_memory(history, store, RecordingExtractor("# Worklog\nSTEP-ONE"),
                                             threshold=10_000, settings=SMALL_TAIL)
        assert result.compacted is True
        assert store.read().count("STEP-ONE") == 1

    def test_nothing_to_fold(self, tmp_path):
        store = SessionMemoryStore("/p", "s", base_dir=tmp_path)
        history = _texts(2)
        result = compact_with_session_memory(history, store, RecordingExtractor(), 10_000,
                                             settings=SMALL_TAIL)
        assert result.reason == "nothing to fold"
