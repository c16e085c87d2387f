"""Auto-compaction: session memory first, conversation summary second."""

from typing import List, Optional

from ..context_window import TokenBudget
from ..logger import DIAGNOSTICS_LOGGER, get_logger
from ..messages import Message
from ..tokenizer import calculate_total_tokens
from .result import CompactionResult
from .session_memory import (
    SessionMemorySettings, SessionMemoryStore, compact_with_session_memory, model_extractor,
)
from .summary import summarize_conversation

_log = get_logger(__name__)
_diag = get_logger(DIAGNOSTICS_LOGGER)

TIER = "cascade"


def auto_compact(
    messages: List[Message],
    budget: TokenBudget,
    transport,
    memory_store: Optional[SessionMemoryStore] = None,
    tracking_id: Optional[str] = None,
    enabled: bool = True,
    memory_settings: SessionMemorySettings = SessionMemorySettings(),
    attachments: Optional[List[Message]] = None,
    hook_messages: Optional[List[Message]] = None,
    agent_id: Optional[str] = None,
) -> CompactionResult:
    """Compact ``messages`` when they reach the budget's threshold.

    When every tier declines the very same list object comes back, so the
    turn goes on with the history it had.
    """
    if not enabled:
        return CompactionResult.declined(messages, TIER, "disabled")

    total = calculate_total_tokens(messages)
    threshold = budget.auto_compact_threshold
    if total < threshold:
        return CompactionResult.declined(messages, TIER, "below threshold")

    _log.info("Auto-compact: %d tokens >= threshold %d", total, threshold)

    if memory_store is not None:
        result = compact_with_session_memory(
            messages, memory_store, model_extractor(transport), threshold,
            tracking_id=tracking_id, settings=memory_settings,
            attachments=attachments, hook_messages=hook_messages, agent_id=agent_id,
        )
        if result.compacted:
            return result
        _log.info("Session memory declined: %s", result.reason)

    result = summarize_conversation(messages, transport)
    if result.compacted:
        return result

    _diag.warning("All compaction strategies declined (%s); continuing uncompacted at %d tokens",
                  result.reason, total)
    return CompactionResult.declined(messages, TIER, result.reason)
