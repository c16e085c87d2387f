"""Render tool outcomes as text and wrap oversized output in a preview envelope."""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

__all__ = [
    "PERSISTED_OUTPUT_START", "PERSISTED_OUTPUT_END", "OUTPUT_THRESHOLD", "PREVIEW_SIZE",
    "PersistedOutput", "truncate_output", "wrap_persisted_output", "format_tool_result",
    "is_persisted_output",
]

PERSISTED_OUTPUT_START = "<persisted-output>"
PERSISTED_OUTPUT_END = "</persisted-output>"

OUTPUT_THRESHOLD = 400_000  # chars
PREVIEW_SIZE = 2_000  # chars

_ENVELOPE_RE = re.compile(
    re.escape(PERSISTED_OUTPUT_START)
    + r"\nPreview \(first (\d+) bytes\):\n(.*?)\n(\.\.\.\n)?"
    + re.escape(PERSISTED_OUTPUT_END),
    re.DOTALL,
)


@dataclass(frozen=True)
class PersistedOutput:
    preview: str
    omitted: bool
    preview_size: int

    @classmethod
    def parse(cls, text: str) -> Optional["PersistedOutput"]:
        m = _ENVELOPE_RE.fullmatch(text)
        if not m:
            return None
        return cls(preview=m.group(2), omitted=m.group(3) is not None,
                   preview_size=int(m.group(1)))


def truncate_output(content: str, max_size: int) -> Tuple[str, bool]:
    """Cut ``content`` to at most ``max_size`` chars, preferring a line break.

    The cut lands on the last newline inside the window when that newline is
    past the midpoint, otherwise hard at ``max_size``. Returns
    ``(preview, has_more)``.
    """
    if len(content) <= max_size:
        return content, False
    last_newline = content.rfind("\n", 0, max_size)
    cutoff = last_newline if last_newline > max_size * 0.5 else max_size
    return content[:cutoff], True


def wrap_persisted_output(content: str, threshold: int = OUTPUT_THRESHOLD,
                          preview_size: int = PREVIEW_SIZE) -> str:
    if len(content) <= threshold:
        return content

    preview, has_more = truncate_output(content, preview_size)
    parts = [PERSISTED_OUTPUT_START, f"Preview (first {preview_size} bytes):", preview]
    if has_more:
        parts.append("...")
    parts.append(PERSISTED_OUTPUT_END)
    return "\n".join(parts)


def is_persisted_output(content: str) -> bool:
    return PERSISTED_OUTPUT_START in (content or "")


def format_tool_result(tool_name: str, outcome) -> str:
    """Text stored in the ``tool_result`` for ``outcome``.

    ``tool_name`` is accepted for per-tool formatting; every tool currently
    shares the same rendering.
    """
    if not outcome.success:
        content = f"Error: {outcome.error}"
    else:
        content = outcome.output or ""
    return wrap_persisted_output(content)
