"""Result-or-decline value returned by every compaction tier."""

from dataclasses import dataclass
from typing import List, Optional

from ..messages import Message


@dataclass(frozen=True)
class CompactionResult:
    compacted: bool
    messages: List[Message]
    tier: str = ""
    reason: str = ""
    pre_tokens: int = 0
    post_tokens: int = 0
    tracking_id: Optional[str] = None

    @property
    def saved_tokens(self) -> int:
        return max(self.pre_tokens - self.post_tokens, 0)

    @classmethod
    def declined(cls, messages: List[Message], tier: str, reason: str) -> "CompactionResult":
        """No-op result: ``messages`` is handed back untouched."""
        return cls(compacted=False, messages=messages, tier=tier, reason=reason)
