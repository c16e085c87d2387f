"""Tests for permission resolution: memory, hook, mode, approval channel."""

import logging
import threading
from unittest.mock import MagicMock

import pytest

from turnloop.hooks import PolicyDecision, PolicyResult, RulePolicyHook
from turnloop.permissions import (
    ApprovalChoice, ConsoleApprovalChannel, PermissionEngine, PermissionMode, SessionPermissionMemory,
)


def _channel(choice=ApprovalChoice.ALLOW_ONCE):
    channel = MagicMock()
    channel.request = MagicMock(return_value=choice)
    return channel


def _engine(mode="default", **kwargs):
    state = {"mode": mode}
    engine = PermissionEngine(mode_provider=lambda: state["mode"], **kwargs)
    return engine, state


class TestModes:

    def test_plan_mode_denies_bash_without_prompt(self):
        channel = _channel()
        engine, _ = _engine("plan", approval_channel=channel)

        decision = engine.decide("Bash", {"command": "rm -rf build"})

        assert decision.allowed is False
        assert decision.source == "mode"
        channel.request.assert_not_called()

    def test_plan_mode_allows_read_only(self):
        engine, _ = _engine("plan")
        assert engine.decide("Read", {"file_path": "a.py"}).allowed is True

    def test_bypass(self):
        engine, _ = _engine("bypass")
        assert engine.decide("Bash", {"command": "make"}).allowed is True

    def test_accept_edits(self):
        channel = _channel(ApprovalChoice.DENY)
        engine, _ = _engine("acceptEdits", approval_channel=channel)
        assert engine.decide("Edit", {"file_path": "a.py"}).allowed is True
        assert engine.decide("Bash", {"command": "make"}).allowed is False
        channel.request.assert_called_once()

    def test_dont_ask_denies_without_prompt(self):
        channel = _channel()
        engine, _ = _engine("dontAsk", approval_channel=channel)
        assert engine.decide("Bash", {}).allowed is False
        channel.request.assert_not_called()

    def test_mode_change_applies_to_next_decision(self):
        engine, state = _engine("plan")
        assert engine.decide("Write", {}).allowed is False
        state["mode"] = "bypass"
        assert engine.decide("Write", {}).allowed is True
        assert engine.mode == PermissionMode.BYPASS

    def test_unknown_mode_rejected(self):
        engine, _ = _engine("yolo")
        with pytest.raises(ValueError):
            engine.decide("Bash", {})


class TestResolutionOrder:

    def test_session_memory_wins_over_hook(self):
        memory = SessionPermissionMemory(["Bash"])
        hook = RulePolicyHook(deny=["Bash"])
        engine, _ = _engine("default", memory=memory, policy_hook=hook)
        decision = engine.decide("Bash", {})
        assert decision.allowed is True
        assert decision.source == "session"

    def test_hook_deny_beats_bypass(self):
        engine, _ = _engine("bypass", policy_hook=RulePolicyHook(deny=["Bash(rm *)"]))
        decision = engine.decide("Bash", {"command": "rm -rf /"})
        assert decision.allowed is False
        assert decision.source == "hook"

    def test_hook_allow_skips_prompt(self):
        channel = _channel()
        engine, _ = _engine(policy_hook=RulePolicyHook(allow=["Bash(git status*)"]),
                            approval_channel=channel)
        assert engine.decide("Bash", {"command": "git status -s"}).allowed is True
        channel.request.assert_not_called()

    def test_hook_defer_falls_through_to_mode(self):
        hook = MagicMock()
        hook.evaluate = MagicMock(return_value=PolicyResult(PolicyDecision.DEFER))
        engine, _ = _engine("plan", policy_hook=hook, session_id="s1")
        assert engine.decide("Bash", {"command": "ls"}).source == "mode"
        hook.evaluate.assert_called_once_with("Bash", {"command": "ls"}, "s1")

    def test_no_approval_needed_allows_where_it_would_ask(self):
        channel = _channel(ApprovalChoice.DENY)
        for mode in ("default", "dontAsk"):
            engine, _ = _engine(mode, approval_channel=channel)
            decision = engine.decide("Write", {}, needs_approval=False)
            assert decision.allowed is True
            assert decision.source == "tool"
        channel.request.assert_not_called()

    def test_no_approval_needed_still_bound_by_plan_and_hook(self):
        engine, _ = _engine("plan")
        assert engine.decide("Write", {}, needs_approval=False).allowed is False
        engine, _ = _engine("bypass", policy_hook=RulePolicyHook(deny=["Write"]))
        assert engine.decide("Write", {}, needs_approval=False).source == "hook"

    def test_failing_hook_denies(self, caplog):
        hook = MagicMock()
        hook.evaluate = MagicMock(side_effect=RuntimeError("rules unavailable"))
        channel = _channel()
        engine, _ = _engine("bypass", policy_hook=hook, approval_channel=channel)

        with caplog.at_level(logging.WARNING, logger="turnloop.diagnostics"):
            decision = engine.decide("Bash", {})

        assert decision.allowed is False
        assert decision.source == "error"
        assert "rules unavailable" in caplog.text
        channel.request.assert_not_called()


class TestApprovalChannel:

    def test_allow_always_remembered(self):
        channel = _channel(ApprovalChoice.ALLOW_ALWAYS)
        engine, _ = _engine(approval_channel=channel)

        assert engine.decide("Bash", {}).allowed is True
        assert engine.decide("Bash", {}).source == "session"
        assert "Bash" in engine.memory
        channel.request.assert_called_once()

    def test_allow_once_not_remembered(self):
        engine, _ = _engine(approval_channel=_channel(ApprovalChoice.ALLOW_ONCE))
        assert engine.decide("Bash", {}).allowed is True
        assert len(engine.memory) == 0

    def test_request_carries_context(self):
        channel = _channel()
        engine, _ = _engine(approval_channel=channel, session_id="s1")
        engine.decide("Bash", {"command": "make"})
        request = channel.request.call_args[0][0]
        assert request.tool_name == "Bash"
        assert request.tool_input == {"command": "make"}
        assert request.session_id == "s1"
        assert request.mode == PermissionMode.DEFAULT

    def test_no_channel_denies(self):
        engine, _ = _engine()
        decision = engine.decide("Bash", {})
        assert decision.allowed is False
        assert decision.source == "none"

    def test_timeout_denies(self):
        release = threading.Event()
        prompt_threads = []
        started = threading.Event()

        class SlowChannel:
            def request(self, request):
                prompt_threads.append(threading.current_thread())
                started.set()
                release.wait(5)
                return ApprovalChoice.ALLOW_ONCE

        engine, _ = _engine(approval_channel=SlowChannel(), approval_timeout=0.05)
        try:
            decision = engine.decide("Bash", {})
            assert started.wait(5)
            assert prompt_threads[0].daemon is True
        finally:
            release.set()
        assert decision.allowed is False
        assert decision.source == "timeout"

    def test_channel_error_denies(self):
        channel = MagicMock()
        channel.request = MagicMock(side_effect=RuntimeError("prompt crashed"))
        engine, _ = _engine(approval_channel=channel)
        decision = engine.decide("Bash", {})
        assert decision.allowed is False
        assert decision.source == "error"

    def test_invalid_answer_denies(self):
        engine, _ = _engine(approval_channel=_channel("maybe"))
        assert engine.decide("Bash", {}).source == "error"


class TestConsoleApprovalChannel:

    @pytest.mark.parametrize("answer,expected", [
        ("y", ApprovalChoice.ALLOW_ONCE),
        ("a", ApprovalChoice.ALLOW_ALWAYS),
        ("n", ApprovalChoice.DENY),
        ("", ApprovalChoice.DENY),
    ])
    def test_answers(self, mock_console, answer, expected):
        mock_console.input.return_value = answer
        engine, _ = _engine(approval_channel=ConsoleApprovalChannel(mock_console))
        decision = engine.decide("Bash", {"command": "make"})
        assert decision.allowed is (expected != ApprovalChoice.DENY)
        assert "make" in str(mock_console.print.call_args)

    def test_interrupt_denies(self, mock_console):
        mock_console.input.side_effect = KeyboardInterrupt
        channel = ConsoleApprovalChannel(mock_console)
        from turnloop.permissions import ApprovalRequest
        assert channel.request(ApprovalRequest("Bash")) == ApprovalChoice.DENY


class TestSessionPermissionMemory:

    def test_clear(self):
        memory = SessionPermissionMemory()
        memory.allow_always("Write")
        assert memory.names == {"Write"}
        memory.clear()
        assert "Write" not in memory
