#!/usr/bin/env python3
"""
Tests for the codex stream adapter and its progress vocabulary.
"""

from __future__ import annotations

import io
import json

import pytest

from conftest import drain
from dagent.agents import Provider
from dagent.errors import QuotaExceededError
from dagent.events import AgentChunk, Mailbox, Progress
from dagent.process_registry import PidRegistry
from dagent.providers import base as base_module
from dagent.providers.base import LINE_DELTA, LINE_PROGRESS, ParsedLine
from dagent.providers.codex import CodexAdapter, extract_progress, extract_text
from dagent.settings import CodexSettings


class _FakeProc:
    def __init__(self, lines, returncode=0, pid=5151):
        self.stdout = io.StringIO("".join(json.dumps(line) + "\n" for line in lines))
        self.returncode = returncode
        self.pid = pid

    def wait(self):
        return self.returncode


def _message(text: str) -> dict:
    return {"type": "item.completed", "item": {"type": "agent_message", "text": text}}


def test_commands() -> None:
    adapter = CodexAdapter(CodexSettings())
    assert adapter.stream_command("p") == [
        "codex",
        "--ask-for-approval",
        "never",
        "exec",
        "-s",
        "danger-full-access",
        "--json",
        "--skip-git-repo-check",
        "p",
    ]
    assert "--json" not in adapter.fallback_command("p")


def test_lifecycle_progress_wording() -> None:
    assert extract_progress({"type": "thread.started"}) == "codex session started"
    assert extract_progress({"type": "session.started"}) == "codex session started"
    assert extract_progress({"type": "turn.started"}) == "codex analyzing request"
    assert extract_progress({"type": "turn.completed"}) == "codex wrapping up response"
    assert extract_progress({"type": "error", "message": "x"}) == "codex emitted an error event"
    assert extract_progress({"type": "mystery"}) is None


def test_item_started_wording() -> None:
    started = "item.started"
    assert extract_progress({"type": started, "item": {"type": "command_execution", "command": "  ls -la  "}}) == (
        "codex exec: ls -la"
    )
    assert extract_progress({"type": started, "item": {"type": "reasoning"}}) == "codex thinking..."
    assert extract_progress({"type": started, "item": {"type": "function_call", "name": "grep"}}) == (
        "codex calling tool: grep"
    )
    assert extract_progress(
        {"type": started, "item": {"type": "tool_call", "name": "read", "arguments": {"path": "a.py"}}}
    ) == 'codex tool: read | {"path": "a.py"}'
    assert extract_progress({"type": started, "item": {"type": "web_search"}}) == "codex web search..."


def test_item_completed_wording() -> None:
    done = "item.completed"
    assert extract_progress({"type": done, "item": {"type": "reasoning", "text": "  check the tests  "}}) == (
        "codex thought: check the tests"
    )
    assert extract_progress(
        {
            "type": done,
            "item": {"type": "command_execution", "command": "ls", "exit_code": 0, "aggregated_output": "a\n\nb\nc\n"},
        }
    ) == "codex exec done (0): ls | a | b"
    assert extract_progress({"type": done, "item": {"type": "command_execution", "command": "ls", "status": "failed"}}) == (
        "codex exec failed: ls"
    )
    assert extract_progress({"type": done, "item": {"type": "function_call", "name": "grep"}}) == "codex finished: grep"
    assert extract_progress({"type": done, "item": {"type": "file_change"}}) == "codex finished file change"
    assert extract_progress(_message("hi")) is None


def test_long_command_preview_is_truncated() -> None:
    command = "x" * 200
    text = extract_progress({"type": "item.started", "item": {"type": "command_execution", "command": command}})
    assert text == "codex exec: " + "x" * 96 + "..."


def test_chinese_wording_when_prompt_has_cjk() -> None:
    adapter = CodexAdapter(CodexSettings())
    assert adapter.parse_line({"type": "turn.started"}, "修复这个测试") == ParsedLine(LINE_PROGRESS, "codex 正在分析需求")
    assert adapter.parse_line({"type": "turn.started"}, "fix this test") == ParsedLine(
        LINE_PROGRESS, "codex analyzing request"
    )


def test_agent_message_is_text() -> None:
    adapter = CodexAdapter(CodexSettings())
    assert adapter.parse_line(_message("line one\rline two"), "q") == ParsedLine(LINE_DELTA, "line one\nline two")
    assert extract_text({"type": "item.started", "item": {"type": "agent_message", "text": "x"}}) is None


def test_stream_emits_progress_and_blocks(monkeypatch) -> None:
    lines = [
        {"type": "thread.started"},
        {"type": "turn.started"},
        {"type": "item.started", "item": {"type": "reasoning"}},
        {"type": "item.started", "item": {"type": "reasoning"}},
        _message("first"),
        _message("second"),
        {"type": "turn.completed"},
    ]
    monkeypatch.setattr(base_module.subprocess, "Popen", lambda command, **kwargs: _FakeProc(lines))
    mailbox, registry = Mailbox(), PidRegistry()

    assert CodexAdapter(CodexSettings()).run("q", mailbox, registry) == ""

    assert drain(mailbox) == [
        Progress(Provider.CODEX, "codex session started"),
        Progress(Provider.CODEX, "codex analyzing request"),
        Progress(Provider.CODEX, "codex thinking..."),
        AgentChunk(Provider.CODEX, "first"),
        AgentChunk(Provider.CODEX, "second"),
        Progress(Provider.CODEX, "codex wrapping up response"),
    ]
    assert registry.snapshot() == [5151]


def test_quota_message_is_withheld_and_raised(monkeypatch) -> None:
    lines = [{"type": "turn.started"}, _message("You've hit your usage limit. Try again later.")]
    monkeypatch.setattr(base_module.subprocess, "Popen", lambda command, **kwargs: _FakeProc(lines))
    mailbox = Mailbox()

    with pytest.raises(QuotaExceededError) as exc:
        CodexAdapter(CodexSettings()).run("q", mailbox, PidRegistry())

    assert str(exc.value).startswith("codex quota/rate limit: ")
    assert drain(mailbox) == [Progress(Provider.CODEX, "codex analyzing request")]
