"""Shared fixtures for turnloop tests."""

import logging
import os
from unittest.mock import MagicMock

import pytest
import yaml

from turnloop.llm import ModelResponse, events_from_response
from turnloop.messages import TextBlock, ToolUseBlock


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory and cd into it."""
    orig = os.getcwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(orig)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point every ~/.turnloop path at a temp dir and clear TURNLOOP_* env vars."""
    home = tmp_path / "home" / ".turnloop"
    import turnloop.config as config_module
    import turnloop.session as session_module
    import turnloop.compaction.session_memory as memory_module
    import turnloop.logger as logger_module

    monkeypatch.setattr(config_module, "CONFIG_DIR", home)
    monkeypatch.setattr(config_module, "CONFIG_FILE", home / "config.yml")
    monkeypatch.setattr(session_module, "SESSIONS_DIR", home / "sessions")
    monkeypatch.setattr(memory_module, "CONFIG_DIR", home)
    monkeypatch.setattr(logger_module, "DEFAULT_LOG_FILE", home / "logs" / "turnloop.log")
    for key in list(os.environ):
        if key.startswith("TURNLOOP_"):
            monkeypatch.delenv(key, raising=False)

    root = logging.getLogger("turnloop")
    saved = (list(root.handlers), root.level, root.propagate)
    yield home
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if handler not in saved[0]:
            handler.close()
    for handler in saved[0]:
        root.addHandler(handler)
    root.setLevel(saved[1])
    root.propagate = saved[2]


@pytest.fixture
def sample_config_data():
    """Minimal .turnloop.yml data dict."""
    return {
        "active-model": "local",
        "max-turns": 20,
        "permission-mode": "acceptEdits",
        "approval-timeout": 30,
        "tool-parallelism": 2,
        "compact-enabled": True,
        "microcompact-enabled": False,
        "session-memory-enabled": True,
        "max-output-tokens": 16000,
        "auto-save": False,
        "verbose": False,
        "permissions": {
            "allow": ["Bash(git status*)"],
            "deny": ["Bash(rm *)"],
        },
        "models": {
            "local": {
                "model": "openai/model",
                "description": "Local test model",
                "temperature": 0.0,
                "api-base": "http://localhost:8080/v1",
                "api-key": "not-needed",
            }
        },
    }


@pytest.fixture
def config_yaml_file(tmp_dir, sample_config_data):
    """Write a config YAML to tmp_dir and return its Path."""
    path = tmp_dir / ".turnloop.yml"
    with open(path, "w") as f:
        yaml.dump(sample_config_data, f, default_flow_style=False)
    return path


@pytest.fixture
def mock_console():
    """A mock Rich Console that silently accepts all print calls."""
    c = MagicMock()
    c.print = MagicMock()
    c.input = MagicMock(return_value="n")
    return c


class FakeTransport:
    """Scripted transport.

    Each ``send``/``stream`` call consumes the next scripted reply: a
    :class:`ModelResponse`, a list of stream events, or an exception to raise.
    When the script runs out it answers ``"done"``.
    """

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    def _next(self, kind, messages, tools, system, options):
        self.calls.append({"kind": kind, "messages": list(messages), "tools": tools,
                           "system": system, "options": options})
        if not self.replies:
            return text_reply("done")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def send(self, messages, tools, system, options=None):
        reply = self._next("send", messages, tools, system, options)
        if isinstance(reply, list):
            raise AssertionError("send() was scripted with stream events")
        return reply

    def stream(self, messages, tools, system, options=None):
        reply = self._next("stream", messages, tools, system, options)
        if isinstance(reply, ModelResponse):
            return events_from_response(reply)
        return iter(reply)


def text_reply(text, **kwargs):
    return ModelResponse(content=[TextBlock(text)], **kwargs)


def tool_reply(*calls, text=""):
    """``calls`` are ``(id, name, input)`` tuples."""
    content = [TextBlock(text)] if text else []
    content.extend(ToolUseBlock(tid, name, dict(args)) for tid, name, args in calls)
    return ModelResponse(content=content, stop_reason="tool_use")
