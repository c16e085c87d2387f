"""Tier 2: replace the history with a model-written conversation summary."""

from typing import List, Optional

from ..logger import get_logger
from ..messages import Message, user_message
from ..tokenizer import calculate_total_tokens
from .boundary import (
    TRIGGER_AUTO, create_boundary_marker, create_summary_message, messages_since_last_boundary,
)
from .result import CompactionResult

_log = get_logger(__name__)

TIER = "summary"

SUMMARY_SYSTEM_PROMPT = "You are a helpful AI assistant tasked with summarizing conversations."

SUMMARY_MAX_TOKENS = 16_000

SUMMARY_PROMPT = """\
Your task is to create a detailed summary of the conversation so far, paying close attention to the user's explicit requests and your previous actions.
This summary should be thorough in capturing technical details, code patterns, and architectural decisions that would be essential for continuing development work without losing context.

Before providing your final summary, wrap your analysis in <analysis> tags to organize your thoughts and ensure you've covered all necessary points. In your analysis process:

1. Chronologically analyze each message and section of the conversation. For each section thoroughly identify:
   - The user's explicit requests and intents
   - Your approach to addressing the user's requests
   - Key decisions, technical concepts and code patterns
   - Specific details like file names, full code snippets, function signatures and file edits
   - Errors that you ran into and how you fixed them
   - Specific user feedback, especially if the user told you to do something differently.
2. Double-check for technical accuracy and completeness, addressing each required element thoroughly.

Your summary should include the following sections:

1. Primary Request and Intent: Capture all of the user's explicit requests and intents in detail
2. Key Technical Concepts: List all important technical concepts, technologies, and frameworks discussed.
3. Files and Code Sections: Enumerate specific files and code sections examined, modified, or created. Pay special attention to the most recent messages and include full code snippets where applicable and include a summary of why this file read or edit is important.
4. Errors and fixes: List all errors that you ran into, and how you fixed them. Pay special attention to specific user feedback that you received.
5. Problem Solving: Document problems solved and any ongoing troubleshooting efforts.
6. Current State: Describe the current state of the work and what needs to be done next.

Note: Do not include any information from system prompts or any past session summaries in your analysis - only summarize the actual user conversation."""


def build_summary_prompt(custom_instructions: Optional[str] = None) -> str:
    if custom_instructions and custom_instructions.strip():
        return f"{SUMMARY_PROMPT}\n\nAdditional instructions:\n{custom_instructions}"
    return SUMMARY_PROMPT


def validate_summary(text: str) -> Optional[str]:
    """Reason the summary is unusable, or ``None`` when it is fine."""
    if not text or not text.strip():
        return "empty summary"
    if text.startswith("API Error"):
        return "transport error text"
    if "Prompt is too long" in text:
        return "prompt too long"
    return None


def summarize_conversation(messages: List[Message], transport,
                           trigger: str = TRIGGER_AUTO,
                           custom_instructions: Optional[str] = None,
                           max_tokens: int = SUMMARY_MAX_TOKENS) -> CompactionResult:
    """Summarize everything since the last boundary and start over from it.

    Never raises: a failing or unusable model response is a decline.
    """
    if not messages:
        return CompactionResult.declined(messages, TIER, "empty history")

    try:
        pre_tokens = calculate_total_tokens(messages)
        request = list(messages_since_last_boundary(messages))
        request.append(user_message(build_summary_prompt(custom_instructions)))

        response = transport.send(request, [], SUMMARY_SYSTEM_PROMPT, {"max_tokens": max_tokens})
        summary = response.text
        problem = validate_summary(summary)
        if problem:
            _log.warning("Conversation summary rejected: %s", problem)
            return CompactionResult.declined(messages, TIER, problem)

        compacted = [create_boundary_marker(trigger, pre_tokens), create_summary_message(summary)]
    except Exception as e:
        _log.warning("Conversation summary failed: %s", e)
        return CompactionResult.declined(messages, TIER, f"error: {e}")

    post_tokens = calculate_total_tokens(compacted)
    _log.info("Conversation summarized: %d -> %d tokens", pre_tokens, post_tokens)
    return CompactionResult(compacted=True, messages=compacted, tier=TIER,
                            pre_tokens=pre_tokens, post_tokens=post_tokens)
