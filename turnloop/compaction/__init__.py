from .boundary import (
    COMPACT_SENTINEL, create_boundary_marker, create_summary_message, find_last_boundary,
    is_boundary_marker, is_summary_message, messages_since_last_boundary,
)
from .cascade import auto_compact
from .microcompact import COMPACTABLE_TOOLS, CLEARED_PLACEHOLDER, MicrocompactSettings, microcompact
from .result import CompactionResult
from .session_memory import (
    SESSION_MEMORY_TEMPLATE, SessionMemorySettings, SessionMemoryStore, compact_with_session_memory,
    model_extractor, select_retained_tail,
)
from .summary import SUMMARY_SYSTEM_PROMPT, summarize_conversation, validate_summary

__all__ = [
    "COMPACT_SENTINEL", "COMPACTABLE_TOOLS", "CLEARED_PLACEHOLDER", "SESSION_MEMORY_TEMPLATE",
    "SUMMARY_SYSTEM_PROMPT", "CompactionResult", "MicrocompactSettings", "SessionMemorySettings",
    "SessionMemoryStore", "auto_compact", "compact_with_session_memory", "create_boundary_marker",
    "create_summary_message", "find_last_boundary", "is_boundary_marker", "is_summary_message",
    "messages_since_last_boundary", "microcompact", "model_extractor", "select_retained_tail",
    "summarize_conversation", "validate_summary",
]
