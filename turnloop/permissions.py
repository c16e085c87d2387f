"""Permission decisions for tool calls.

Resolution order, first conclusive step wins:

1. tools approved for the rest of the session,
2. the policy hook (allow / deny / defer),
3. the current permission mode,
4. the approval channel, bounded by a timeout.

The mode is fetched through a callable on every decision, so switching it
mid-turn changes the very next call's outcome.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Set, Union

from rich.console import Console

from .hooks import PolicyDecision, PolicyHook
from .logger import DIAGNOSTICS_LOGGER, get_logger

_diag = get_logger(DIAGNOSTICS_LOGGER)


class PermissionMode(str, Enum):
    DEFAULT = "default"
    BYPASS = "bypass"
    PLAN = "plan"
    ACCEPT_EDITS = "acceptEdits"
    DONT_ASK = "dontAsk"


READ_ONLY_TOOLS = frozenset({"Read", "Glob", "Grep", "WebSearch", "WebFetch"})
EDIT_TOOLS = frozenset({"Edit", "Write", "MultiEdit", "NotebookEdit"})

DEFAULT_APPROVAL_TIMEOUT = 60  # seconds


class ApprovalChoice(str, Enum):
    ALLOW_ONCE = "allow_once"
    DENY = "deny"
    ALLOW_ALWAYS = "allow_always"


@dataclass(frozen=True)
class ApprovalRequest:
    tool_name: str
    tool_input: Dict[str, Any] = field(default_factory=dict)
    session_id: str = ""
    mode: PermissionMode = PermissionMode.DEFAULT


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    reason: str
    source: str  # session | hook | mode | tool | user | timeout | error | none


class ApprovalChannel(Protocol):
    def request(self, request: ApprovalRequest) -> ApprovalChoice:
        ...


class SessionPermissionMemory:
    """Tool names approved for the rest of one session. Not persisted."""

    def __init__(self, names: Iterable[str] = ()):
        self._names: Set[str] = set(names)
        self._lock = threading.Lock()

    def allow_always(self, tool_name: str):
        with self._lock:
            self._names.add(tool_name)

    def __contains__(self, tool_name: str) -> bool:
        return tool_name in self._names

    def __len__(self) -> int:
        return len(self._names)

    @property
    def names(self) -> Set[str]:
        return set(self._names)

    def clear(self):
        with self._lock:
            self._names.clear()


class ConsoleApprovalChannel:
    """y / n / a prompt on a rich console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def request(self, request: ApprovalRequest) -> ApprovalChoice:
        detail = _request_detail(request.tool_input)
        self.console.print(f"  [bold]{request.tool_name}[/bold] [dim]{detail}[/dim]")
        try:
            ans = self.console.input(
                "  [yellow]?[/yellow] "
                "[bold](y)[/bold][dim]es[/dim] / "
                "[bold](n)[/bold][dim]o[/dim] / "
                "[bold](a)[/bold][dim]lways[/dim]: "
            ).strip().lower()
        except (KeyboardInterrupt, EOFError):
            return ApprovalChoice.DENY
        if ans in ("a", "always"):
            return ApprovalChoice.ALLOW_ALWAYS
        if ans in ("y", "yes"):
            return ApprovalChoice.ALLOW_ONCE
        return ApprovalChoice.DENY


def _request_detail(tool_input: Dict[str, Any]) -> str:
    for key in ("command", "file_path", "path", "url", "pattern", "query"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value[:80]
    return ""


ModeProvider = Callable[[], Union[PermissionMode, str]]


class PermissionEngine:
    def __init__(self, mode_provider: ModeProvider,
                 memory: Optional[SessionPermissionMemory] = None,
                 policy_hook: Optional[PolicyHook] = None,
                 approval_channel: Optional[ApprovalChannel] = None,
                 approval_timeout: float = DEFAULT_APPROVAL_TIMEOUT,
                 session_id: str = ""):
        self.mode_provider = mode_provider
        self.memory = memory if memory is not None else SessionPermissionMemory()
        self.policy_hook = policy_hook
        self.approval_channel = approval_channel
        self.approval_timeout = approval_timeout
        self.session_id = session_id

    @property
    def mode(self) -> PermissionMode:
        return PermissionMode(self.mode_provider())

    def decide(self, tool_name: str, tool_input: Optional[Dict[str, Any]] = None,
               needs_approval: bool = True) -> PermissionDecision:
        """Resolve one tool call.

        ``needs_approval=False`` marks a tool that never prompts: where the
        engine would ask, it allows instead. Session memory, the hook and
        the mode still apply.
        """
        tool_input = tool_input or {}

        if tool_name in self.memory:
            return PermissionDecision(True, "approved for this session", "session")

        if self.policy_hook is not None:
            try:
                result = self.policy_hook.evaluate(tool_name, tool_input, self.session_id)
            except Exception as e:
                _diag.warning("Policy hook failed for %s: %s", tool_name, e)
                return PermissionDecision(False, f"policy hook failed: {e}", "error")
            if result.decision == PolicyDecision.ALLOW:
                return PermissionDecision(True, result.message or "allowed by policy", "hook")
            if result.decision == PolicyDecision.DENY:
                _diag.warning("Policy denied %s: %s", tool_name, result.message)
                return PermissionDecision(False, result.message or "denied by policy", "hook")

        mode = self.mode
        if mode == PermissionMode.BYPASS:
            return PermissionDecision(True, "bypass mode", "mode")
        if mode == PermissionMode.PLAN:
            if tool_name in READ_ONLY_TOOLS:
                return PermissionDecision(True, "read-only tool in plan mode", "mode")
            return PermissionDecision(False, f"{tool_name} is not allowed in plan mode", "mode")
        if mode == PermissionMode.ACCEPT_EDITS and tool_name in EDIT_TOOLS:
            return PermissionDecision(True, "edit tool in acceptEdits mode", "mode")
        if not needs_approval:
            return PermissionDecision(True, f"{tool_name} needs no approval", "tool")
        if mode == PermissionMode.DONT_ASK:
            return PermissionDecision(False, f"{tool_name} needs approval and dontAsk mode is set", "mode")

        return self._ask(ApprovalRequest(tool_name, tool_input, self.session_id, mode))

    def _ask(self, request: ApprovalRequest) -> PermissionDecision:
        if self.approval_channel is None:
            return PermissionDecision(False, "no approval channel", "none")

        outcome: Dict[str, Any] = {}
        answered = threading.Event()

        def prompt():
            try:
                outcome["choice"] = self.approval_channel.request(request)
            except Exception as e:
                outcome["error"] = e
            finally:
                answered.set()

        # Daemon: an abandoned prompt must not block interpreter exit.
        threading.Thread(target=prompt, name="approval", daemon=True).start()
        if not answered.wait(self.approval_timeout):
            _diag.warning("Approval for %s timed out after %ss", request.tool_name, self.approval_timeout)
            return PermissionDecision(False, "approval timed out", "timeout")

        error = outcome.get("error")
        if error is None:
            try:
                choice = ApprovalChoice(outcome["choice"])
            except ValueError as e:
                error = e
        if error is not None:
            _diag.warning("Approval channel failed for %s: %s", request.tool_name, error)
            return PermissionDecision(False, f"approval failed: {error}", "error")

        if choice == ApprovalChoice.ALLOW_ALWAYS:
            self.memory.allow_always(request.tool_name)
            return PermissionDecision(True, "approved for the rest of the session", "user")
        if choice == ApprovalChoice.ALLOW_ONCE:
            return PermissionDecision(True, "approved once", "user")
        return PermissionDecision(False, "denied by user", "user")
