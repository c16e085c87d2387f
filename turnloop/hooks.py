"""Policy hooks consulted before a tool call is approved."""

from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple


class PolicyDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    DEFER = "defer"


@dataclass(frozen=True)
class PolicyResult:
    decision: PolicyDecision
    message: str = ""


DEFER = PolicyResult(PolicyDecision.DEFER)


class PolicyHook(Protocol):
    def evaluate(self, tool_name: str, tool_input: Dict[str, Any], session_id: str) -> PolicyResult:
        ...


def _parse_rule(rule: str) -> Tuple[str, Optional[str]]:
    """``"Bash(git *)"`` -> ``("Bash", "git *")``; ``"Read"`` -> ``("Read", None)``."""
    rule = rule.strip()
    if rule.endswith(")") and "(" in rule:
        name, _, rest = rule.partition("(")
        return name.strip(), rest[:-1]
    return rule, None


def _matches(rule: Tuple[str, Optional[str]], tool_name: str, tool_input: Dict[str, Any]) -> bool:
    name_pattern, arg_pattern = rule
    if not fnmatchcase(tool_name, name_pattern):
        return False
    if arg_pattern is None:
        return True
    return any(isinstance(v, str) and fnmatchcase(v, arg_pattern) for v in tool_input.values())


class RulePolicyHook:
    """Allow/deny lists of tool rules.

    A rule is a tool-name glob, optionally followed by an argument glob in
    parentheses that must match one of the call's string arguments, e.g.
    ``Bash(git status*)``. Deny rules win over allow rules; anything
    unmatched is deferred to the permission mode.
    """

    def __init__(self, allow: Iterable[str] = (), deny: Iterable[str] = ()):
        self.allow: List[Tuple[str, Optional[str]]] = [_parse_rule(r) for r in allow if r.strip()]
        self.deny: List[Tuple[str, Optional[str]]] = [_parse_rule(r) for r in deny if r.strip()]

    @classmethod
    def from_config(cls, config) -> "RulePolicyHook":
        return cls(allow=config.allowed_tools, deny=config.denied_tools)

    def evaluate(self, tool_name: str, tool_input: Dict[str, Any], session_id: str) -> PolicyResult:
        tool_input = tool_input or {}
        for rule in self.deny:
            if _matches(rule, tool_name, tool_input):
                return PolicyResult(PolicyDecision.DENY, f"{tool_name} is denied by configuration")
        for rule in self.allow:
            if _matches(rule, tool_name, tool_input):
                return PolicyResult(PolicyDecision.ALLOW, f"{tool_name} is allowed by configuration")
        return DEFER
