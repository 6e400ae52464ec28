"""Shared fixtures for ctxloop tests."""

import os
from typing import List, Optional

import pytest
import yaml

from ctxloop.messages import Message, ToolCall, Usage
from ctxloop.provider import CompletionChunk, CompletionResponse, Provider
from ctxloop.session_store import MemorySessionStore


@pytest.fixture(autouse=True)
def isolated_config_home(tmp_path, monkeypatch):
    """Keep Config.load away from the real ~/.ctxloop."""
    home = tmp_path / "home"
    monkeypatch.setattr("ctxloop.config.CONFIG_DIR", home)
    monkeypatch.setattr("ctxloop.config.CONFIG_FILE", home / "config.yml")
    for var in ("CTXLOOP_MODEL", "CTXLOOP_VERBOSE", "CTXLOOP_AUTONOMOUS"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory and cd into it."""
    orig = os.getcwd()
    work = tmp_path / "work"
    work.mkdir()
    os.chdir(work)
    yield work
    os.chdir(orig)


@pytest.fixture
def memory_store():
    return MemorySessionStore("test-session")


@pytest.fixture
def sample_config_data():
    """Minimal .ctxloop.yml data dict."""
    return {
        "active-model": "local",
        "auto-compact": True,
        "check-todo-staleness": True,
        "max-retry-attempts": 4,
        "autonomous-max-retry-attempts": 6,
        "autonomous": False,
        "acd-enabled": False,
        "max-iterations": 50,
        "tool-timeout": 30,
        "verbose": False,
        "models": {
            "local": {
                "provider": "openai",
                "model": "openai/model",
                "description": "Local test model",
                "temperature": 0.0,
                "max-tokens": 8192,
                "context-window": 128000,
                "api-base": "http://localhost:8080/v1",
                "api-key": "not-needed",
            },
            "sonnet": {
                "provider": "anthropic",
                "model": "anthropic/claude-sonnet-4-20250514",
                "max-tokens": 32000,
                "context-window": 200000,
                "thinking-budget": 8000,
                "cache-control": True,
                "native-tool-calls": True,
            },
        },
    }


@pytest.fixture
def config_yaml_file(tmp_dir, sample_config_data):
    """Write a config YAML to tmp_dir and return its Path."""
    path = tmp_dir / ".ctxloop.yml"
    with open(path, "w") as f:
        yaml.dump(sample_config_data, f, default_flow_style=False)
    return path


class FakeProvider(Provider):
    """Provider stub that replays scripted responses.

    Each entry in ``responses`` is either a list of text chunks, an exception
    to raise when the stream opens, or a ``(chunks, exception)`` pair that
    raises after yielding ``chunks``.
    """

    def __init__(self, responses=None, summaries=None, name="openai",
                 context_window=100_000, max_tokens=4096,
                 native_tool_calls=False, supports_cache_control=False,
                 thinking_budget: Optional[int] = None):
        self.name = name
        self.model = "fake/model"
        self.max_tokens = max_tokens
        self.temperature = 0.0
        self.thinking_budget = thinking_budget
        self.context_window = context_window
        self.has_native_tool_calling = native_tool_calls
        self.supports_cache_control = supports_cache_control
        self.responses = list(responses or [])
        self.summaries = list(summaries or [])
        self.stream_requests = []
        self.complete_requests = []

    async def stream(self, request):
        self.stream_requests.append(request)
        if not self.responses:
            raise AssertionError("FakeProvider ran out of scripted responses")
        item = self.responses.pop(0)
        error = None
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, tuple):
            item, error = item

        native: Optional[List[ToolCall]] = None
        stop_reason = "stop"
        for piece in item:
            if isinstance(piece, ToolCall):
                native = (native or []) + [piece]
            elif isinstance(piece, dict):
                stop_reason = piece.get("stop_reason", stop_reason)
            else:
                yield CompletionChunk(content=piece)
        if error is not None:
            raise error
        yield CompletionChunk(finished=True, tool_calls=native,
                              usage=Usage(10, 5, 15), stop_reason=stop_reason)

    async def complete(self, request):
        self.complete_requests.append(request)
        if not self.summaries:
            raise AssertionError("FakeProvider ran out of scripted summaries")
        item = self.summaries.pop(0)
        if isinstance(item, BaseException):
            raise item
        return CompletionResponse(content=item, usage=Usage(100, 50, 150))


@pytest.fixture
def fake_provider_cls():
    return FakeProvider


@pytest.fixture
def system_message():
    return Message.system("You are a careful coding agent.")
