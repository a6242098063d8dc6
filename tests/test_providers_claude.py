#!/usr/bin/env python3
"""
Tests for the claude stream adapter (subprocess faked).
"""

from __future__ import annotations

import io
import json

import pytest

from conftest import drain
from dagent import process_registry
from dagent.agents import Provider
from dagent.errors import PermissionRejectedError, ProcessExitError, ProcessSpawnError, QuotaExceededError
from dagent.events import AgentChunk, Mailbox, Tool
from dagent.process_registry import PidRegistry
from dagent.providers import base as base_module
from dagent.providers.claude import ClaudeAdapter
from dagent.settings import ClaudeSettings

ROOT_STDERR = "--dangerously-skip-permissions cannot be used with root/sudo privileges for security reasons"


class _FakeProc:
    def __init__(self, *, lines=(), returncode=0, stdout="", stderr="", pid=4242):
        self.stdout = io.StringIO("".join(f"{line}\n" for line in lines))
        self.returncode = returncode
        self._out = stdout
        self._err = stderr
        self.pid = pid

    def wait(self):
        return self.returncode

    def communicate(self):
        return self._out, self._err


class _PopenScript:
    def __init__(self, *procs):
        self.procs = list(procs)
        self.commands: list[list[str]] = []
        self.kwargs: list[dict] = []

    def __call__(self, command, **kwargs):
        self.commands.append(command)
        self.kwargs.append(kwargs)
        return self.procs.pop(0)


def _delta(text: str) -> str:
    return json.dumps(
        {"type": "stream_event", "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}}}
    )


def _result(text: str) -> str:
    return json.dumps({"type": "result", "result": text})


def _install(monkeypatch, *procs) -> _PopenScript:
    script = _PopenScript(*procs)
    monkeypatch.setattr(base_module.subprocess, "Popen", script)
    return script


def test_stream_command_shape() -> None:
    adapter = ClaudeAdapter(ClaudeSettings())
    assert adapter.stream_command("hi") == [
        "claude",
        "--print",
        "--output-format",
        "stream-json",
        "--verbose",
        "--include-partial-messages",
        "--permission-mode",
        "acceptEdits",
        "--allowedTools",
        "Bash",
        "hi",
    ]
    assert adapter.fallback_command("hi") == ["claude", "--permission-mode", "acceptEdits", "--allowedTools", "Bash", "-p", "hi"]


def test_streamed_chunks_are_not_repeated_as_final_text(monkeypatch) -> None:
    script = _install(
        monkeypatch,
        _FakeProc(lines=[_delta("Hel"), _delta("lo"), _delta(" world"), _result("Hello world")], pid=77),
    )
    mailbox, registry = Mailbox(), PidRegistry()

    trailing = ClaudeAdapter(ClaudeSettings()).run("say hello", mailbox, registry)

    assert trailing == ""
    assert drain(mailbox) == [
        AgentChunk(Provider.CLAUDE, "Hel"),
        AgentChunk(Provider.CLAUDE, "lo"),
        AgentChunk(Provider.CLAUDE, " world"),
    ]
    assert registry.snapshot() == [77]
    kwargs = script.kwargs[0]
    assert kwargs["start_new_session"] is True
    assert kwargs["stdout"] is base_module.subprocess.PIPE
    assert kwargs["errors"] == "replace"


def test_final_text_used_when_nothing_streamed(monkeypatch) -> None:
    _install(monkeypatch, _FakeProc(lines=["not json", '{"type": "system"}', _result("final answer")]))
    mailbox = Mailbox()

    assert ClaudeAdapter(ClaudeSettings()).run("q", mailbox, PidRegistry()) == "final answer"
    assert drain(mailbox) == []


def test_assistant_message_text_is_a_final_text_source(monkeypatch) -> None:
    line = json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "from assistant"}]}})
    _install(monkeypatch, _FakeProc(lines=[line]))
    assert ClaudeAdapter(ClaudeSettings()).run("q", Mailbox(), PidRegistry()) == "from assistant"


def test_tool_use_becomes_tool_event(monkeypatch) -> None:
    tool_start = json.dumps(
        {"type": "stream_event", "event": {"type": "content_block_start", "content_block": {"type": "tool_use", "name": "Bash"}}}
    )
    _install(monkeypatch, _FakeProc(lines=[tool_start, _delta("ok")]))
    mailbox = Mailbox()

    ClaudeAdapter(ClaudeSettings()).run("q", mailbox, PidRegistry())

    assert drain(mailbox) == [Tool(Provider.CLAUDE, "claude calling tool: Bash"), AgentChunk(Provider.CLAUDE, "ok")]


def test_escape_sequences_are_sanitized_before_emitting(monkeypatch) -> None:
    _install(monkeypatch, _FakeProc(lines=[_delta("\x1b[1mbold\x1b[0m\r")]))
    mailbox = Mailbox()
    ClaudeAdapter(ClaudeSettings()).run("q", mailbox, PidRegistry())
    assert drain(mailbox) == [AgentChunk(Provider.CLAUDE, "bold\n")]


def test_quota_result_on_clean_exit_raises(monkeypatch) -> None:
    _install(monkeypatch, _FakeProc(lines=[_result("Credit balance is too low")]))
    mailbox = Mailbox()

    with pytest.raises(QuotaExceededError) as exc:
        ClaudeAdapter(ClaudeSettings()).run("q", mailbox, PidRegistry())

    assert "quota/rate limit" in str(exc.value)
    assert drain(mailbox) == []


def test_quota_delta_is_withheld(monkeypatch) -> None:
    _install(monkeypatch, _FakeProc(lines=[_delta("You've hit your limit")]))
    mailbox = Mailbox()

    with pytest.raises(QuotaExceededError) as exc:
        ClaudeAdapter(ClaudeSettings()).run("q", mailbox, PidRegistry())

    assert str(exc.value) == "claude quota/rate limit: You've hit your limit"
    assert drain(mailbox) == []


def test_nonzero_exit_runs_one_shot_fallback(monkeypatch) -> None:
    script = _install(
        monkeypatch,
        _FakeProc(lines=[], returncode=1, pid=10),
        _FakeProc(returncode=0, stdout="fallback text\n", pid=11),
    )
    registry = PidRegistry()

    assert ClaudeAdapter(ClaudeSettings()).run("q", Mailbox(), registry) == "fallback text"
    assert script.commands[1][-2:] == ["-p", "q"]
    assert registry.snapshot() == [10, 11]


def test_fallback_failure_raises_exit_error(monkeypatch) -> None:
    _install(monkeypatch, _FakeProc(returncode=1), _FakeProc(returncode=2, stderr="boom\n"))

    with pytest.raises(ProcessExitError) as exc:
        ClaudeAdapter(ClaudeSettings()).run("q", Mailbox(), PidRegistry())

    assert str(exc.value) == "claude failed: boom"
    assert exc.value.returncode == 2


def test_bypass_mode_under_root_downgrades_once(monkeypatch) -> None:
    script = _install(
        monkeypatch,
        _FakeProc(returncode=1),
        _FakeProc(returncode=1, stderr=ROOT_STDERR),
        _FakeProc(returncode=0, stdout="edited\n"),
    )
    mailbox = Mailbox()
    adapter = ClaudeAdapter(ClaudeSettings(permission_mode="bypassPermissions"))

    assert adapter.run("q", mailbox, PidRegistry()) == "edited"
    assert "bypassPermissions" in script.commands[1]
    assert "acceptEdits" in script.commands[2]
    assert drain(mailbox) == [
        Tool(Provider.CLAUDE, "claude bypassPermissions blocked under root; retrying with acceptEdits")
    ]


def test_root_refusal_without_bypass_mode_is_rejected(monkeypatch) -> None:
    _install(monkeypatch, _FakeProc(returncode=1), _FakeProc(returncode=1, stderr=ROOT_STDERR))

    with pytest.raises(PermissionRejectedError):
        ClaudeAdapter(ClaudeSettings()).run("q", Mailbox(), PidRegistry())


def test_spawn_failure(monkeypatch) -> None:
    def _missing(command, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", command[0])

    monkeypatch.setattr(base_module.subprocess, "Popen", _missing)

    with pytest.raises(ProcessSpawnError) as exc:
        ClaudeAdapter(ClaudeSettings()).run("q", Mailbox(), PidRegistry())
    assert str(exc.value).startswith("claude spawn failed:")


def test_signal_exit_skips_the_fallback(monkeypatch) -> None:
    script = _install(monkeypatch, _FakeProc(returncode=-15, pid=10), _FakeProc(returncode=0, stdout="again\n"))

    with pytest.raises(ProcessExitError) as exc:
        ClaudeAdapter(ClaudeSettings()).run("q", Mailbox(), PidRegistry())

    assert str(exc.value) == "claude stopped by signal 15"
    assert exc.value.returncode == -15
    assert len(script.commands) == 1


def test_cancelled_registry_skips_the_fallback(monkeypatch) -> None:
    monkeypatch.setattr(process_registry, "terminate_pid", lambda pid: None)
    registry = PidRegistry()

    class _CancelledProc(_FakeProc):
        def wait(self):
            registry.terminate_all()
            return 1

    script = _install(monkeypatch, _CancelledProc(pid=10), _FakeProc(returncode=0, stdout="again\n"))

    with pytest.raises(ProcessExitError, match="claude run cancelled"):
        ClaudeAdapter(ClaudeSettings()).run("q", Mailbox(), registry)
    assert len(script.commands) == 1


def test_closed_registry_refuses_to_spawn(monkeypatch) -> None:
    script = _install(monkeypatch)
    registry = PidRegistry()
    registry.terminate_all()

    with pytest.raises(ProcessExitError, match="claude run cancelled"):
        ClaudeAdapter(ClaudeSettings()).run("q", Mailbox(), registry)
    with pytest.raises(ProcessExitError, match="claude run cancelled"):
        ClaudeAdapter(ClaudeSettings()).run_once(["claude", "-p", "q"], registry)
    assert script.commands == []


def test_spawn_uses_the_adapter_working_directory(monkeypatch, tmp_path) -> None:
    script = _install(monkeypatch, _FakeProc(lines=[_result("done")]))
    adapter = ClaudeAdapter(ClaudeSettings())
    adapter.cwd = tmp_path

    assert adapter.run("q", Mailbox(), PidRegistry()) == "done"
    assert script.kwargs[0]["cwd"] == tmp_path
