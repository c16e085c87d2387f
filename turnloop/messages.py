"""Conversation message model: a closed set of content blocks.

Every consumer dispatches on the block classes below with an explicit
``isinstance`` chain and raises ``TypeError`` for anything else, so a new
block kind has to be added here and handled everywhere.
"""

import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Union

__all__ = [
    "TextBlock", "ThinkingBlock", "MediaBlock", "ToolUseBlock", "ToolResultBlock",
    "ContentBlock", "Message", "user_message", "assistant_message",
    "block_to_dict", "block_from_dict", "text_of", "tool_uses", "tool_results",
]

USER = "user"
ASSISTANT = "assistant"
ROLES = (USER, ASSISTANT)


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ThinkingBlock:
    text: str


@dataclass(frozen=True)
class MediaBlock:
    mime_type: str
    data: str  # base64 payload


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Union[TextBlock, ThinkingBlock, MediaBlock, ToolUseBlock, ToolResultBlock]


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Message:
    role: str
    content: List[ContentBlock]
    id: str = field(default_factory=_new_id)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")

    def with_content(self, content: List[ContentBlock]) -> "Message":
        """Copy of this message with its blocks replaced (id and metadata kept)."""
        return replace(self, content=list(content))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": [block_to_dict(b) for b in self.content],
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        raw = data.get("content", [])
        if isinstance(raw, str):
            blocks: List[ContentBlock] = [TextBlock(raw)]
        else:
            blocks = [block_from_dict(b) for b in raw]
        return cls(
            role=data["role"],
            content=blocks,
            id=data.get("id") or _new_id(),
            metadata=dict(data.get("metadata") or {}),
        )


def user_message(content: Union[str, List[ContentBlock]], **metadata) -> Message:
    blocks = [TextBlock(content)] if isinstance(content, str) else list(content)
    return Message(role=USER, content=blocks, metadata=metadata)


def assistant_message(content: Union[str, List[ContentBlock]]) -> Message:
    blocks = [TextBlock(content)] if isinstance(content, str) else list(content)
    return Message(role=ASSISTANT, content=blocks)


def block_to_dict(block: ContentBlock) -> Dict[str, Any]:
    """Anthropic-style wire dict for one block."""
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.text}
    if isinstance(block, MediaBlock):
        return {"type": "image",
                "source": {"type": "base64", "media_type": block.mime_type, "data": block.data}}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": dict(block.input)}
    if isinstance(block, ToolResultBlock):
        return {"type": "tool_result", "tool_use_id": block.tool_use_id,
                "content": block.content, "is_error": block.is_error}
    raise TypeError(f"Unknown content block: {block!r}")


def block_from_dict(data: Dict[str, Any]) -> ContentBlock:
    kind = data.get("type")
    if kind == "text":
        return TextBlock(data.get("text", ""))
    if kind == "thinking":
        return ThinkingBlock(data.get("thinking", ""))
    if kind == "image":
        source = data.get("source") or {}
        return MediaBlock(source.get("media_type", "application/octet-stream"), source.get("data", ""))
    if kind == "tool_use":
        return ToolUseBlock(data["id"], data.get("name", ""), dict(data.get("input") or {}))
    if kind == "tool_result":
        content = data.get("content", "")
        if isinstance(content, list):
            content = "".join(part.get("text", "") for part in content if isinstance(part, dict))
        return ToolResultBlock(data["tool_use_id"], content, bool(data.get("is_error", False)))
    raise TypeError(f"Unknown content block type: {kind!r}")


def text_of(message: Message) -> str:
    """Concatenated text of the message's TextBlocks."""
    return "".join(b.text for b in message.content if isinstance(b, TextBlock))


def tool_uses(message: Message) -> List[ToolUseBlock]:
    return [b for b in message.content if isinstance(b, ToolUseBlock)]


def tool_results(message: Message) -> List[ToolResultBlock]:
    return [b for b in message.content if isinstance(b, ToolResultBlock)]


def find_tool_name(messages: List[Message], tool_use_id: str) -> Optional[str]:
    """Name of the tool whose ToolUse carries ``tool_use_id``."""
    for msg in messages:
        if msg.role != ASSISTANT:
            continue
        for block in msg.content:
            if isinstance(block, ToolUseBlock) and block.id == tool_use_id:
                return block.name
    return None
