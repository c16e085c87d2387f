"""Tier 1: evict old oversized tool output ("microcompact").

Only results already wrapped in the ``<persisted-output>`` envelope and
produced by tools whose output can be re-obtained are candidates. The most
recent few are always kept, and nothing happens unless the history is big
enough and the eviction would free a meaningful amount.
"""

from dataclasses import dataclass
from typing import List, Tuple

from ..logger import get_logger
from ..messages import USER, Message, ToolResultBlock, find_tool_name
from ..tokenizer import calculate_total_tokens, estimate_tokens
from ..tool_output import is_persisted_output
from .result import CompactionResult

_log = get_logger(__name__)

TIER = "microcompact"

COMPACTABLE_TOOLS = frozenset({
    "Read", "Bash", "Grep", "Glob", "WebSearch", "WebFetch", "Edit", "Write",
})
CLEARED_PLACEHOLDER = "[Old tool result content cleared]"

MICROCOMPACT_THRESHOLD = 40_000  # tokens
MIN_SAVINGS_THRESHOLD = 20_000  # tokens
KEEP_RECENT_COUNT = 3


@dataclass(frozen=True)
class MicrocompactSettings:
    enabled: bool = True
    trigger_threshold: int = MICROCOMPACT_THRESHOLD
    min_savings: int = MIN_SAVINGS_THRESHOLD
    keep_recent: int = KEEP_RECENT_COUNT


def find_evictable(messages: List[Message]) -> List[Tuple[int, int, int]]:
    """``(message_index, block_index, tokens)`` for every eligible result, oldest first."""
    targets = []
    for m_idx, msg in enumerate(messages):
        if msg.role != USER:
            continue
        for b_idx, block in enumerate(msg.content):
            if not isinstance(block, ToolResultBlock) or not is_persisted_output(block.content):
                continue
            if find_tool_name(messages, block.tool_use_id) in COMPACTABLE_TOOLS:
                targets.append((m_idx, b_idx, estimate_tokens(block.content)))
    return targets


def microcompact(messages: List[Message],
                 settings: MicrocompactSettings = MicrocompactSettings()) -> CompactionResult:
    if not settings.enabled:
        return CompactionResult.declined(messages, TIER, "disabled")

    targets = find_evictable(messages)
    if len(targets) <= settings.keep_recent:
        return CompactionResult.declined(messages, TIER, "nothing to evict")

    to_clear = targets[:-settings.keep_recent] if settings.keep_recent else targets
    total_tokens = calculate_total_tokens(messages)
    savings = sum(tokens for _, _, tokens in to_clear)
    if total_tokens <= settings.trigger_threshold:
        return CompactionResult.declined(messages, TIER, "below trigger threshold")
    if savings < settings.min_savings:
        return CompactionResult.declined(messages, TIER, "savings too small")

    by_message = {}
    for m_idx, b_idx, _ in to_clear:
        by_message.setdefault(m_idx, set()).add(b_idx)

    result = list(messages)
    for m_idx, block_indices in by_message.items():
        msg = result[m_idx]
        blocks = [
            ToolResultBlock(b.tool_use_id, CLEARED_PLACEHOLDER, b.is_error) if i in block_indices else b
            for i, b in enumerate(msg.content)
        ]
        result[m_idx] = msg.with_content(blocks)

    _log.info("Microcompact cleared %d tool result(s), ~%d tokens", len(to_clear), savings)
    return CompactionResult(
        compacted=True, messages=result, tier=TIER,
        pre_tokens=total_tokens, post_tokens=calculate_total_tokens(result),
    )
