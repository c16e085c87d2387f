"""Tier 3: durable session memory.

A structured markdown document lives next to the session on disk. Each run
folds the messages added since the previous run into that document through
an extractor model call, then rebuilds the history as the document plus a
short tail of recent messages. Runs are incremental: the boundary marker of
a successful run carries a tracking id, and the next run only folds what
came after it.
"""

import re
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set

from ..config import CONFIG_DIR
from ..logger import get_logger
from ..messages import (
    ASSISTANT, USER, Message, TextBlock, ToolResultBlock, ToolUseBlock, user_message,
)
from ..tokenizer import calculate_total_tokens, estimate_message_tokens, estimate_tokens
from .boundary import (
    TRIGGER_AUTO, create_boundary_marker, create_summary_message, is_boundary_marker,
    is_summary_message,
)
from .result import CompactionResult

_log = get_logger(__name__)

TIER = "session_memory"

SESSION_MEMORY_TEMPLATE = """\
# Session Title
_A short and distinctive 5-10 word descriptive title for the session. Super info dense, no filler_

# Current State
_What is actively being worked on right now? Pending tasks not yet completed. Immediate next steps._

# Task specification
_What did the user ask to build? Any design decisions or other explanatory context_

# Files and Functions
_What are the important files? In short, what do they contain and why are they relevant?_

# Workflow
_What bash commands are usually run and in what order? How to interpret their output if not obvious?_

# Errors & Corrections
_Errors encountered and how they were fixed. What did the user correct? What approaches failed and should not be tried again?_

# Codebase and System Documentation
_What are the important system components? How do they work/fit together?_

# Learnings
_What has worked well? What has not? What to avoid? Do not duplicate items from other sections_

# Key results
_If the user asked a specific output such as an answer to a question, a table, or other document, repeat the exact result here_

# Worklog
_Step by step, what was attempted, done? Very terse summary for each step_
"""

MAX_SECTION_TOKENS = 2_000

EXTRACTOR_SYSTEM_PROMPT = "You maintain concise, information-dense session notes for a coding assistant."

EXTRACTOR_MAX_TOKENS = 8_000


@dataclass(frozen=True)
class SessionMemorySettings:
    """Retained-tail sizing; the tail is the last part of the history kept verbatim."""
    enabled: bool = True
    min_tokens: int = 10_000
    min_text_block_messages: int = 5
    max_tokens: int = 40_000


def sanitize_project_path(project_path: str) -> str:
    sanitized = re.sub(r"^[a-zA-Z]:", "", str(project_path))
    sanitized = re.sub(r'[\\/:*?"<>|]', "-", sanitized)
    sanitized = sanitized.strip("-")[:100]
    return sanitized or "default"


def section_tokens(content: str) -> Dict[str, int]:
    """Estimated tokens per ``# `` section of a notes document."""
    sections: Dict[str, int] = {}
    current = ""
    body: List[str] = []
    for line in content.splitlines():
        if line.startswith("# "):
            if current and body:
                sections[current] = estimate_tokens("\n".join(body).strip())
            current, body = line, []
        else:
            body.append(line)
    if current and body:
        sections[current] = estimate_tokens("\n".join(body).strip())
    return sections


def section_warnings(content: str) -> str:
    warnings = [
        f'- The "{section}" section is currently ~{tokens} tokens and growing long. '
        "Consider condensing it a bit while keeping all important details."
        for section, tokens in section_tokens(content).items()
        if tokens > MAX_SECTION_TOKENS
    ]
    if not warnings:
        return ""
    return "\n\n" + "\n".join(warnings)


def build_update_prompt(current_notes: str) -> str:
    return f"""\
IMPORTANT: This message and these instructions are NOT part of the actual user conversation. Do NOT include any references to "note-taking", "session notes extraction", or these update instructions in the notes content.

Based on the user conversation above (EXCLUDING this note-taking instruction message as well as system prompt or any past session summaries), write the new material for the session notes.

Here are the current notes:
<current_notes_content>
{current_notes}
</current_notes_content>

Reply with ONLY the additions, grouped under the existing section headers (the lines starting with '#'). Rules:
- Never invent new sections or rename existing ones.
- Skip sections with no substantial new insights; do not add filler like "No info yet".
- Write DETAILED, INFO-DENSE content: file paths, function names, error messages, exact commands.
- For "Key results", include the complete, exact output the user requested.
- Keep each section under ~{MAX_SECTION_TOKENS} tokens.
- Always include "Current State" reflecting the most recent work.
- Do not repeat what the current notes already say.{section_warnings(current_notes)}"""


class SessionMemoryStore:
    """Owner of one session's notes document.

    The document is only ever read whole or appended to. A lock serializes
    appends so two writers never interleave.
    """

    def __init__(self, project_path: str, session_id: str,
                 base_dir: Optional[Path] = None, template: str = SESSION_MEMORY_TEMPLATE):
        root = Path(base_dir) if base_dir else CONFIG_DIR / "projects"
        self.path = root / sanitize_project_path(project_path) / session_id / "session-memory" / "summary.md"
        self.template = template
        self._lock = threading.Lock()

    def read(self) -> str:
        """Current document, created from the template on first use."""
        with self._lock:
            if not self.path.exists():
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.path.write_text(self.template, encoding="utf-8")
            return self.path.read_text(encoding="utf-8")

    @staticmethod
    def with_notes(current: str, notes: str) -> str:
        """The document ``current`` would become after appending ``notes``."""
        return current.rstrip("\n") + "\n\n" + notes.strip() + "\n"

    def write(self, document: str):
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(document, encoding="utf-8")

    def append(self, notes: str) -> str:
        """Append ``notes`` and return the whole updated document."""
        updated = self.with_notes(self.read(), notes)
        self.write(updated)
        return updated

    def is_empty_template(self, content: str) -> bool:
        """True when ``content`` holds nothing beyond the template's own headings and hints."""
        skeleton = {line.strip() for line in self.template.splitlines()}
        return all(not line.strip() or line.strip() in skeleton for line in content.splitlines())


Extractor = Callable[[List[Message], str], str]


def model_extractor(transport, max_tokens: int = EXTRACTOR_MAX_TOKENS) -> Extractor:
    """Extractor that asks ``transport`` for the note additions, without tools."""
    def extract(messages: List[Message], prompt: str) -> str:
        request = list(messages) + [user_message(prompt)]
        response = transport.send(request, [], EXTRACTOR_SYSTEM_PROMPT, {"max_tokens": max_tokens})
        return response.text
    return extract


def _has_text(msg: Message) -> bool:
    return any(isinstance(b, TextBlock) and b.text.strip() for b in msg.content)


def _result_ids(msg: Message) -> Set[str]:
    return {b.tool_use_id for b in msg.content if isinstance(b, ToolResultBlock)}


def _use_ids(msg: Message) -> Set[str]:
    return {b.id for b in msg.content if isinstance(b, ToolUseBlock)}


def select_retained_tail(messages: Sequence[Message],
                         settings: SessionMemorySettings = SessionMemorySettings()) -> int:
    """Start index of the suffix kept verbatim after compaction.

    Grows backwards until both minimums are met or the next message would
    push the tail past ``max_tokens``, then widens so that a tool result in
    the tail never loses its tool use.
    """
    start = len(messages)
    tokens = 0
    text_messages = 0
    while start > 0:
        if tokens >= settings.min_tokens and text_messages >= settings.min_text_block_messages:
            break
        candidate = messages[start - 1]
        cost = estimate_message_tokens(candidate)
        if tokens + cost > settings.max_tokens:
            break
        start -= 1
        tokens += cost
        if _has_text(candidate):
            text_messages += 1

    while start > 0:
        pending = set()
        for msg in messages[start:]:
            if msg.role == USER:
                pending |= _result_ids(msg)
        for msg in messages[start:]:
            if msg.role == ASSISTANT:
                pending -= _use_ids(msg)
        if not pending:
            break
        start -= 1
        while start > 0 and not (messages[start].role == ASSISTANT and _use_ids(messages[start]) & pending):
            start -= 1
    return start


def compact_with_session_memory(
    messages: List[Message],
    store: SessionMemoryStore,
    extractor: Extractor,
    threshold: int,
    tracking_id: Optional[str] = None,
    settings: SessionMemorySettings = SessionMemorySettings(),
    attachments: Optional[List[Message]] = None,
    hook_messages: Optional[List[Message]] = None,
    agent_id: Optional[str] = None,
) -> CompactionResult:
    """Fold recent history into the notes document and rebuild the history.

    The candidate history is discarded as a whole when it is still at or
    above ``threshold``. Every failure is reported as a decline.
    """
    if not settings.enabled:
        return CompactionResult.declined(messages, TIER, "disabled")

    try:
        start = 0
        if tracking_id:
            index = next((i for i, m in enumerate(messages) if m.id == tracking_id), -1)
            if index == -1:
                _log.warning("Session memory boundary %s not found in history; folding everything",
                             tracking_id)
            else:
                start = index + 1

        recent = [m for m in messages[start:] if not is_boundary_marker(m) and not is_summary_message(m)]
        tail_start = select_retained_tail(recent, settings)
        to_fold, tail = recent[:tail_start], recent[tail_start:]
        if not to_fold:
            return CompactionResult.declined(messages, TIER, "nothing to fold")

        current = store.read()
        notes = extractor(to_fold, build_update_prompt(current))
        if not notes or not notes.strip():
            return CompactionResult.declined(messages, TIER, "empty extraction")
        document = store.with_notes(current, notes)
        if store.is_empty_template(document):
            return CompactionResult.declined(messages, TIER, "memory document is empty")

        pre_tokens = calculate_total_tokens(messages)
        new_tracking_id = f"sm-{uuid.uuid4().hex}"
        extra = list(attachments or [])
        if agent_id:
            extra.append(user_message(f"Agent context: {agent_id}"))
        candidate = [
            create_boundary_marker(TRIGGER_AUTO, pre_tokens, tracking_id=new_tracking_id),
            create_summary_message(document),
            *extra,
            *(hook_messages or []),
            *tail,
        ]
        post_tokens = calculate_total_tokens(candidate)
        if post_tokens >= threshold:
            _log.warning("Session memory result still too large (%d >= %d tokens); discarded",
                         post_tokens, threshold)
            return CompactionResult.declined(messages, TIER, "still above threshold")
        store.write(document)
    except Exception as e:
        _log.warning("Session memory compaction failed: %s", e)
        return CompactionResult.declined(messages, TIER, f"error: {e}")

    _log.info("Session memory compaction: %d -> %d tokens", pre_tokens, post_tokens)
    return CompactionResult(compacted=True, messages=candidate, tier=TIER,
                            pre_tokens=pre_tokens, post_tokens=post_tokens,
                            tracking_id=new_tracking_id)
