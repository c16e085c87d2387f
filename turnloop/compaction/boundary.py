"""Compaction boundary markers and summary messages."""

from typing import List, Optional

from ..messages import Message, TextBlock, USER, text_of

COMPACT_SENTINEL = "Conversation Compacted"
SUMMARY_START = "<conversation-summary>"
SUMMARY_END = "</conversation-summary>"

TRIGGER_AUTO = "auto"
TRIGGER_MANUAL = "manual"


def create_boundary_marker(trigger: str, pre_tokens: int,
                           tracking_id: Optional[str] = None) -> Message:
    """User message marking the point before which history was compacted.

    With a ``tracking_id`` the marker's message id is that id, so the next
    session-memory run can find where it left off.
    """
    text = (
        f"--- {COMPACT_SENTINEL} ({trigger}) ---\n"
        f"Previous messages were summarized to save {pre_tokens:,} tokens."
    )
    metadata = {"compact_boundary": True, "trigger": trigger, "pre_tokens": pre_tokens}
    if tracking_id:
        metadata["tracking_id"] = tracking_id
        return Message(role=USER, content=[TextBlock(text)], id=tracking_id, metadata=metadata)
    return Message(role=USER, content=[TextBlock(text)], metadata=metadata)


def is_boundary_marker(msg: Message) -> bool:
    return msg.role == USER and COMPACT_SENTINEL in text_of(msg)


def create_summary_message(summary: str) -> Message:
    return Message(
        role=USER,
        content=[TextBlock(f"{SUMMARY_START}\n{summary}\n{SUMMARY_END}")],
        metadata={"compact_summary": True},
    )


def is_summary_message(msg: Message) -> bool:
    if msg.metadata.get("compact_summary"):
        return True
    return msg.role == USER and text_of(msg).startswith(SUMMARY_START)


def find_last_boundary(messages: List[Message]) -> int:
    """Index of the most recent boundary marker, or -1."""
    for idx in range(len(messages) - 1, -1, -1):
        if is_boundary_marker(messages[idx]):
            return idx
    return -1


def messages_since_last_boundary(messages: List[Message]) -> List[Message]:
    """Messages from the last boundary marker (inclusive), or all of them."""
    idx = find_last_boundary(messages)
    if idx == -1:
        return messages
    return messages[idx:]
