"""Turn loop: drives one conversation between the operator, the model and the tools."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Generator, Iterator, List, Optional, Union

from .cancellation import CancelToken
from .compaction import (
    CompactionResult, MicrocompactSettings, SessionMemorySettings, SessionMemoryStore,
    auto_compact, microcompact, summarize_conversation,
)
from .compaction.boundary import TRIGGER_MANUAL
from .context_window import TokenBudget, compute_budget
from .errors import AgentBusyError, TransportError
from .hooks import PolicyHook, RulePolicyHook
from .llm import (
    STOP_END_TURN, ErrorEvent, LiteLLMTransport, ModelTransport, RateLimitEvent, RateLimitInfo,
    StopEvent, StreamEvent, TextDelta, ThinkingDelta, ToolCallDelta, ToolCallStart, UsageEvent,
    events_from_response, new_tool_use_id, parse_tool_arguments,
)
from .logger import DIAGNOSTICS_LOGGER, get_logger, setup_logger
from .messages import (
    ASSISTANT, USER, ContentBlock, Message, TextBlock, ThinkingBlock, ToolResultBlock,
    ToolUseBlock, tool_uses, user_message,
)
from .permissions import ApprovalChannel, PermissionEngine, PermissionMode
from .repair import repair_tool_results
from .session import Session, session_path
from .tool_output import format_tool_result
from .tools import ToolOutcome, ToolRegistry

_log = get_logger(__name__)
_diag = get_logger(DIAGNOSTICS_LOGGER)

__all__ = ["Agent", "LoopEvent", "TurnResult"]

DEFAULT_MAX_TURNS = 50

STOP_INTERRUPTED = "interrupted"
STOP_MAX_TURNS = "max_turns"

DEFAULT_SYSTEM_PROMPT = """\
You are a coding assistant running inside the user's project directory.
Explore before changing anything, make precise edits, and verify the result.
Briefly explain your intent before using a tool that modifies files or runs commands.
Respond in the same language the user uses.
"""


@dataclass(frozen=True)
class LoopEvent:
    """Progress notification from :meth:`Agent.stream`.

    ``kind`` is one of ``text``, ``thinking``, ``tool_start``, ``tool_end``,
    ``compacted``, ``interrupted`` or ``done``.
    """
    kind: str
    text: str = ""
    tool_name: str = ""
    tool_use_id: str = ""
    data: Any = None


@dataclass
class TurnResult:
    text: str
    stop_reason: str
    turns: int = 0
    tool_calls: int = 0
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def interrupted(self) -> bool:
        return self.stop_reason == STOP_INTERRUPTED


class _ResponseAccumulator:
    """Assembles stream events into content blocks, in emission order."""

    def __init__(self):
        self._segments: List[list] = []  # [kind, payload]
        self._tools: Dict[int, Dict[str, str]] = {}

    def add_text(self, text: str):
        if self._segments and self._segments[-1][0] == "text":
            self._segments[-1][1] += text
        else:
            self._segments.append(["text", text])

    def add_thinking(self, text: str):
        if self._segments and self._segments[-1][0] == "thinking":
            self._segments[-1][1] += text
        else:
            self._segments.append(["thinking", text])

    def start_tool(self, index: int, tool_id: str, name: str):
        self._tools[index] = {"id": tool_id or new_tool_use_id(), "name": name, "args": ""}
        self._segments.append(["tool", index])

    def add_tool_arguments(self, index: int, fragment: str):
        slot = self._tools.get(index)
        if slot is None:
            _log.warning("Arguments for unknown tool call index %s dropped", index)
            return
        slot["args"] += fragment

    def blocks(self) -> List[ContentBlock]:
        result: List[ContentBlock] = []
        for kind, payload in self._segments:
            if kind == "text":
                if payload:
                    result.append(TextBlock(payload))
            elif kind == "thinking":
                if payload:
                    result.append(ThinkingBlock(payload))
            else:
                slot = self._tools[payload]
                result.append(ToolUseBlock(slot["id"], slot["name"], parse_tool_arguments(slot["args"])))
        return result


class Agent:
    def __init__(self, transport: ModelTransport, tools: ToolRegistry, model: str,
                 session: Optional[Session] = None,
                 system_prompt: str = DEFAULT_SYSTEM_PROMPT,
                 permission_mode: Union[PermissionMode, str] = PermissionMode.DEFAULT,
                 policy_hook: Optional[PolicyHook] = None,
                 approval_channel: Optional[ApprovalChannel] = None,
                 approval_timeout: float = 60,
                 max_turns: int = DEFAULT_MAX_TURNS,
                 tool_parallelism: int = 4,
                 stream_responses: bool = True,
                 max_output_override: Optional[int] = None,
                 autocompact_pct_override: Optional[float] = None,
                 compact_enabled: bool = True,
                 microcompact_settings: MicrocompactSettings = MicrocompactSettings(),
                 memory_store: Optional[SessionMemoryStore] = None,
                 memory_settings: SessionMemorySettings = SessionMemorySettings(),
                 session_file: Optional[Union[str, Path]] = None,
                 agent_id: Optional[str] = None):
        self.transport = transport
        self.tools = tools
        self.model = model
        self.session = session or Session()
        self.system_prompt = system_prompt
        self._permission_mode = PermissionMode(permission_mode)
        self.permissions = PermissionEngine(
            mode_provider=lambda: self._permission_mode,
            memory=self.session.permissions,
            policy_hook=policy_hook,
            approval_channel=approval_channel,
            approval_timeout=approval_timeout,
            session_id=self.session.session_id,
        )
        self.max_turns = max(1, int(max_turns))
        self.tool_parallelism = max(1, int(tool_parallelism))
        self.stream_responses = stream_responses
        self.max_output_override = max_output_override
        self.autocompact_pct_override = autocompact_pct_override
        self.compact_enabled = compact_enabled
        self.microcompact_settings = microcompact_settings
        self.memory_store = memory_store
        self.memory_settings = memory_settings
        self.session_file = Path(session_file) if session_file else None
        self.agent_id = agent_id
        self.usage: Dict[str, int] = {"input_tokens": 0, "output_tokens": 0}
        self.rate_limit: Optional[RateLimitInfo] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config, tools: ToolRegistry,
                    transport: Optional[ModelTransport] = None,
                    session: Optional[Session] = None,
                    approval_channel: Optional[ApprovalChannel] = None,
                    configure_logging: bool = True) -> "Agent":
        """Build an agent from a loaded :class:`~turnloop.config.Config`.

        Also configures the ``turnloop`` loggers from ``config.verbose``
        unless ``configure_logging`` is False.
        """
        if configure_logging:
            setup_logger(verbose=config.verbose)
        preset = config.get_active_preset()
        if transport is None:
            transport = LiteLLMTransport(**preset.get_llm_kwargs())
        session = session or Session()
        memory_store = None
        if config.session_memory_enabled:
            memory_store = SessionMemoryStore(config.project_root or ".", session.session_id)
        return cls(
            transport=transport,
            tools=tools,
            model=preset.model,
            session=session,
            system_prompt=config.system_prompt or DEFAULT_SYSTEM_PROMPT,
            permission_mode=config.permission_mode,
            policy_hook=RulePolicyHook.from_config(config),
            approval_channel=approval_channel,
            approval_timeout=config.approval_timeout,
            max_turns=config.max_turns,
            tool_parallelism=config.tool_parallelism,
            max_output_override=config.max_output_tokens,
            autocompact_pct_override=config.autocompact_pct_override,
            compact_enabled=config.compact_enabled,
            microcompact_settings=MicrocompactSettings(enabled=config.microcompact_enabled),
            memory_store=memory_store,
            session_file=session_path(session.session_id) if config.auto_save else None,
        )

    # ── Live state ──────────────────────────────

    @property
    def permission_mode(self) -> PermissionMode:
        return self._permission_mode

    @permission_mode.setter
    def permission_mode(self, value: Union[PermissionMode, str]):
        self._permission_mode = PermissionMode(value)

    @property
    def messages(self) -> List[Message]:
        return self.session.messages

    def budget(self) -> TokenBudget:
        return compute_budget(self.model, self.max_output_override, self.autocompact_pct_override)

    def reset(self):
        """Forget the conversation, its compaction tracking id and session approvals."""
        if not self._lock.acquire(blocking=False):
            raise AgentBusyError()
        try:
            self.session.reset()
            self.usage = {"input_tokens": 0, "output_tokens": 0}
        finally:
            self._lock.release()

    def get_stats(self) -> Dict[str, Any]:
        budget = self.budget()
        return {
            "session_id": self.session.session_id,
            "messages": len(self.session),
            "model": self.model,
            "permission_mode": self._permission_mode.value,
            "context_window": budget.context_window_size,
            "auto_compact_threshold": budget.auto_compact_threshold,
            "last_compacted_id": self.session.last_compacted_id,
            **self.usage,
        }

    def _autosave(self):
        if self.session_file is None:
            return
        try:
            self.session.save(self.session_file)
        except OSError as e:
            _log.warning("Auto-save to %s failed: %s", self.session_file, e)

    # ── Public turn API ─────────────────────────

    def chat(self, user_input: Union[str, List[ContentBlock]],
             cancel: Optional[CancelToken] = None) -> TurnResult:
        """Run a full exchange for ``user_input`` and return its result."""
        result = None
        for event in self.stream(user_input, cancel):
            if event.kind == "done":
                result = event.data
        return result

    def stream(self, user_input: Union[str, List[ContentBlock]],
               cancel: Optional[CancelToken] = None) -> Iterator[LoopEvent]:
        """Like :meth:`chat`, yielding :class:`LoopEvent` s as the exchange progresses.

        The final event has kind ``done`` and carries the :class:`TurnResult`.
        """
        if not self._lock.acquire(blocking=False):
            raise AgentBusyError()
        try:
            self.session.append(user_message(user_input))
            yield from self._run(cancel or CancelToken())
        finally:
            self._lock.release()
            self._autosave()

    def compact(self, custom_instructions: Optional[str] = None) -> CompactionResult:
        """Summarize the conversation now, regardless of the token budget."""
        if not self._lock.acquire(blocking=False):
            raise AgentBusyError()
        try:
            history = repair_tool_results(self.session.messages)
            result = summarize_conversation(history, self.transport, trigger=TRIGGER_MANUAL,
                                            custom_instructions=custom_instructions)
            if result.compacted:
                self.session.replace(result.messages)
            return result
        finally:
            self._lock.release()
            self._autosave()

    # ── Turn loop ───────────────────────────────

    def _run(self, cancel: CancelToken) -> Generator[LoopEvent, None, None]:
        texts: List[str] = []
        tool_call_count = 0

        for turn in range(1, self.max_turns + 1):
            if cancel.cancelled:
                yield from self._finish(STOP_INTERRUPTED, texts, turn - 1, tool_call_count, interrupted=True)
                return

            history = yield from self._prepare_history()
            events = self._request(history)

            acc = _ResponseAccumulator()
            stop_reason = STOP_END_TURN
            interrupted = False
            try:
                for event in events:
                    if cancel.cancelled:
                        interrupted = True
                        break
                    if isinstance(event, TextDelta):
                        acc.add_text(event.text)
                        yield LoopEvent("text", text=event.text)
                    elif isinstance(event, ThinkingDelta):
                        acc.add_thinking(event.text)
                        yield LoopEvent("thinking", text=event.text)
                    elif isinstance(event, ToolCallStart):
                        acc.start_tool(event.index, event.id, event.name)
                    elif isinstance(event, ToolCallDelta):
                        acc.add_tool_arguments(event.index, event.arguments)
                    elif isinstance(event, UsageEvent):
                        self.usage["input_tokens"] += event.input_tokens
                        self.usage["output_tokens"] += event.output_tokens
                    elif isinstance(event, RateLimitEvent):
                        self._report_rate_limit(event.info)
                    elif isinstance(event, StopEvent):
                        stop_reason = event.reason
                    elif isinstance(event, ErrorEvent):
                        self._append_partial(acc.blocks())
                        raise TransportError(event.message, event.status_code)
                    else:
                        raise TypeError(f"Unknown stream event: {event!r}")
            finally:
                close = getattr(events, "close", None)
                if close is not None:
                    close()

            blocks = acc.blocks()
            if interrupted:
                self._append_partial(blocks)
                yield from self._finish(STOP_INTERRUPTED, texts + [_text(blocks)], turn,
                                        tool_call_count, interrupted=True)
                return

            assistant = Message(role=ASSISTANT, content=blocks)
            if _text(blocks):
                texts.append(_text(blocks))
            uses = tool_uses(assistant)
            if not uses:
                if blocks:
                    self.session.append(assistant)
                yield from self._finish(stop_reason, texts, turn, tool_call_count)
                return

            tool_call_count += len(uses)
            results, extra, tools_interrupted = yield from self._run_tools(uses, cancel)
            self.session.append(assistant)
            if results:
                self.session.append(Message(role=USER, content=results))
            if extra:
                self.session.append(*extra)
            if tools_interrupted:
                yield from self._finish(STOP_INTERRUPTED, texts, turn, tool_call_count, interrupted=True)
                return

        _log.warning("Reached max turns (%d)", self.max_turns)
        yield from self._finish(STOP_MAX_TURNS, texts, self.max_turns, tool_call_count)

    def _prepare_history(self) -> Generator[LoopEvent, None, List[Message]]:
        """Evict, repair and, if needed, compact the stored history."""
        snapshot = self.session.messages
        history = microcompact(snapshot, self.microcompact_settings).messages
        history = repair_tool_results(history)

        tracking_id = None
        if self.compact_enabled:
            result = auto_compact(
                history, self.budget(), self.transport,
                memory_store=self.memory_store,
                tracking_id=self.session.last_compacted_id,
                memory_settings=self.memory_settings,
                agent_id=self.agent_id,
            )
            if result.compacted:
                history = result.messages
                tracking_id = result.tracking_id
                yield LoopEvent("compacted", data=result)

        if history is not snapshot:
            self.session.replace(history, last_compacted_id=tracking_id)
        return history

    def _request(self, history: List[Message]) -> Iterator[StreamEvent]:
        options = {"max_tokens": self.budget().max_output_tokens}
        if self.stream_responses:
            return self.transport.stream(history, self.tools.schemas, self.system_prompt, options)
        response = self.transport.send(history, self.tools.schemas, self.system_prompt, options)
        return events_from_response(response)

    def _finish(self, stop_reason: str, texts: List[str], turns: int, tool_calls: int,
                interrupted: bool = False) -> Generator[LoopEvent, None, None]:
        if interrupted:
            yield LoopEvent("interrupted")
        result = TurnResult(
            text="\n".join(t for t in texts if t),
            stop_reason=stop_reason,
            turns=turns,
            tool_calls=tool_calls,
            usage=dict(self.usage),
        )
        yield LoopEvent("done", text=result.text, data=result)

    def _append_partial(self, blocks: List[ContentBlock]):
        """Keep whatever the model produced before an interruption or error."""
        if blocks:
            self.session.append(Message(role=ASSISTANT, content=blocks))

    def _report_rate_limit(self, info: RateLimitInfo):
        self.rate_limit = info
        if info.status == "rejected":
            _diag.warning("Rate limit reached (%s), resets at %s", info.rate_limit_type or "unknown",
                          info.resets_at)
        elif info.is_warning:
            util = f"{info.utilization:.0%}" if info.utilization is not None else "unknown"
            _diag.warning("Approaching rate limit (%s): %s used", info.rate_limit_type or "unknown", util)

    # ── Tool dispatch ───────────────────────────

    def _permission_callback(self, tool_name: str, tool_input: Dict[str, Any]) -> bool:
        return self.permissions.decide(tool_name, tool_input).allowed

    def _execute_tool(self, use: ToolUseBlock) -> ToolOutcome:
        t0 = time.monotonic()
        try:
            outcome = self.tools.execute(use.name, use.input, self._permission_callback)
        except Exception as e:
            outcome = ToolOutcome.fail(f"Tool execution error: {type(e).__name__}: {e}")
        if not outcome.success:
            _diag.warning("Tool %s (%s) failed: %s", use.name, use.id, outcome.error)
        _log.info("Tool %s finished in %.2fs", use.name, time.monotonic() - t0)
        return outcome

    def _can_batch_parallel(self, uses: List[ToolUseBlock]) -> bool:
        if len(uses) < 2 or self.tool_parallelism < 2:
            return False
        return all(self.tools.can_parallelize(u.name) for u in uses)

    def _run_parallel(self, uses: List[ToolUseBlock], cancel: CancelToken) -> Dict[str, ToolOutcome]:
        outcomes: Dict[str, ToolOutcome] = {}
        max_workers = min(self.tool_parallelism, len(uses))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tool") as pool:
            futures = {}
            for use in uses:
                if cancel.cancelled:
                    break
                denied = self._authorize(use)
                if denied is not None:
                    outcomes[use.id] = denied
                    continue
                futures[use.id] = pool.submit(self._execute_tool, use)
            for tool_id, future in futures.items():
                outcomes[tool_id] = future.result()
        return outcomes

    def _run_tools(self, uses: List[ToolUseBlock], cancel: CancelToken):
        """Execute ``uses`` in emission order.

        Returns ``(results, extra_messages, interrupted)``; calls skipped
        because of cancellation get no result here and are repaired before
        the next request.
        """
        parallel: Dict[str, ToolOutcome] = {}
        if self._can_batch_parallel(uses):
            parallel = self._run_parallel(uses, cancel)

        results: List[ToolResultBlock] = []
        extra: List[Message] = []
        for use in uses:
            if use.id in parallel:
                outcome = parallel[use.id]
                yield LoopEvent("tool_start", tool_name=use.name, tool_use_id=use.id, data=use.input)
            else:
                if cancel.cancelled:
                    return results, extra, True
                yield LoopEvent("tool_start", tool_name=use.name, tool_use_id=use.id, data=use.input)
                outcome = self._authorize_and_execute(use)

            results.append(ToolResultBlock(
                tool_use_id=use.id,
                content=format_tool_result(use.name, outcome),
                is_error=not outcome.success,
            ))
            extra.extend(outcome.extra_messages or [])
            yield LoopEvent("tool_end", tool_name=use.name, tool_use_id=use.id, data=outcome)
        return results, extra, False

    def _authorize(self, use: ToolUseBlock) -> Optional[ToolOutcome]:
        """A failed outcome when ``use`` is denied, else None."""
        decision = self.permissions.decide(use.name, use.input,
                                           needs_approval=self.tools.requires_permission(use.name))
        if decision.allowed:
            return None
        _diag.warning("Permission denied for %s: %s", use.name, decision.reason)
        return ToolOutcome.fail(f"Permission denied: {decision.reason}")

    def _authorize_and_execute(self, use: ToolUseBlock) -> ToolOutcome:
        denied = self._authorize(use)
        if denied is not None:
            return denied
        return self._execute_tool(use)


def _text(blocks: List[ContentBlock]) -> str:
    return "".join(b.text for b in blocks if isinstance(b, TextBlock))
