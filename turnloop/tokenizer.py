"""Token estimation heuristics.

The runtime deliberately does not use the model's tokenizer: one token is
taken to be four characters, rounded up. This is only good enough for
deciding when to compact.
"""

import json
import math
from typing import Iterable

from .messages import (
    ContentBlock, MediaBlock, Message, TextBlock, ThinkingBlock,
    ToolResultBlock, ToolUseBlock, block_to_dict,
)

__all__ = ["estimate_tokens", "estimate_block_tokens", "estimate_message_tokens",
           "calculate_total_tokens"]

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Approximate token count for ``text``: ``ceil(len / 4)``."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_block_tokens(block: ContentBlock) -> int:
    if isinstance(block, (TextBlock, ThinkingBlock)):
        return estimate_tokens(block.text)
    if isinstance(block, ToolResultBlock):
        return estimate_tokens(block.content)
    if isinstance(block, (ToolUseBlock, MediaBlock)):
        return estimate_tokens(json.dumps(block_to_dict(block), ensure_ascii=False))
    raise TypeError(f"Unknown content block: {block!r}")


def estimate_message_tokens(msg: Message) -> int:
    """Estimate tokens for a conversation message."""
    return sum(estimate_block_tokens(block) for block in msg.content)


def calculate_total_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_message_tokens(msg) for msg in messages)
