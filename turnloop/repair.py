"""Tool-use / tool-result pairing repair.

A streamed turn can stop between a ``tool_use`` and its ``tool_result``
(network fault, a failing sibling tool, operator cancellation). The next
request would then be rejected by the API, so every orphaned ``tool_use``
gets a synthetic error result before the history is sent.
"""

from typing import Dict, List

from .logger import DIAGNOSTICS_LOGGER, get_logger
from .messages import ASSISTANT, USER, Message, ToolResultBlock, ToolUseBlock

__all__ = ["ORPHANED_TOOL_ERROR_MESSAGE", "find_orphaned_tool_uses", "repair_tool_results"]

_diag = get_logger(DIAGNOSTICS_LOGGER)

ORPHANED_TOOL_ERROR_MESSAGE = (
    "Tool execution was interrupted before it produced a result. "
    "The tool call did not complete successfully."
)


def find_orphaned_tool_uses(messages: List[Message]) -> Dict[str, str]:
    """Return ``{tool_use_id: tool_name}`` for tool uses without a result.

    Ordered by emission.
    """
    uses: Dict[str, str] = {}
    answered = set()
    for msg in messages:
        for block in msg.content:
            if msg.role == ASSISTANT and isinstance(block, ToolUseBlock):
                uses.setdefault(block.id, block.name)
            elif msg.role == USER and isinstance(block, ToolResultBlock):
                answered.add(block.tool_use_id)
    return {tid: name for tid, name in uses.items() if tid not in answered}


def _has_tool_result(msg: Message) -> bool:
    return any(isinstance(b, ToolResultBlock) for b in msg.content)


def repair_tool_results(messages: List[Message]) -> List[Message]:
    """Add an error ``tool_result`` for every orphaned ``tool_use``.

    Pure and idempotent: the input list is returned as-is when nothing is
    orphaned, otherwise a new list is built and the input is left untouched.
    """
    orphaned = find_orphaned_tool_uses(messages)
    if not orphaned:
        return messages

    synthesized = [
        ToolResultBlock(
            tool_use_id=tid,
            content=f"Error: {ORPHANED_TOOL_ERROR_MESSAGE} (Tool: {name or 'unknown'})",
            is_error=True,
        )
        for tid, name in orphaned.items()
    ]

    last_assistant = -1
    for idx in range(len(messages) - 1, -1, -1):
        if messages[idx].role == ASSISTANT:
            last_assistant = idx
            break

    result = list(messages)
    target = -1
    for idx in range(last_assistant + 1, len(result)):
        if result[idx].role == USER and _has_tool_result(result[idx]):
            target = idx
            break

    if target != -1:
        existing = result[target]
        result[target] = existing.with_content(list(existing.content) + synthesized)
    else:
        result.insert(last_assistant + 1, Message(role=USER, content=synthesized))

    _diag.warning("Repaired %d orphaned tool_use(s): %s", len(orphaned),
                  ", ".join(f"{name} ({tid})" for tid, name in orphaned.items()))
    return result
