"""
Test configuration and fixtures for pytest
"""

from __future__ import annotations

import stat
import time

import pytest

from dagent.errors import MemoryStoreError
from dagent.events import MailboxDisconnected

_DAGENT_ENV = (
    "DAGENT_PRIMARY",
    "DAGENT_CLAUDE_PERMISSION_MODE",
    "DAGENT_CLAUDE_ALLOWED_TOOLS",
    "DAGENT_CODEX_APPROVAL_POLICY",
    "DAGENT_CODEX_SANDBOX",
    "DAGENT_MEMORY",
    "DAGENT_LOG_DIR",
    "DAGENT_LOG_MAX_FIELD_CHARS",
    "DAGENT_DEBUG",
)


@pytest.fixture(autouse=True)
def _isolated_state(tmp_path, monkeypatch):
    """Keep unit tests deterministic and side-effect free."""
    for name in _DAGENT_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DAGENT_STATE_DIR", str(tmp_path / ".dagent"))
    monkeypatch.setenv("DAGENT_LOG_EVENTS", "0")
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def fake_bin(tmp_path):
    """
    Factory for fake agent binaries. Returns the PATH string containing them.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _make(*names: str, script: str = "#!/bin/sh\nexit 0\n") -> str:
        for name in names:
            path = bin_dir / name
            path.write_text(script, encoding="utf-8")
            path.chmod(path.stat().st_mode | stat.S_IXUSR)
        return str(bin_dir)

    return _make


class RecordingMemory:
    """MemoryStore double that records calls and can be told to fail."""

    def __init__(
        self,
        *,
        fail_append: bool = False,
        fail_context: bool = False,
        fail_clear: bool = False,
        fail_read: bool = False,
    ) -> None:
        self.appended: list[tuple[str, str, str | None, str]] = []
        self.context_calls: list[tuple[str, str]] = []
        self.cleared: list[str] = []
        self.fail_append = fail_append
        self.fail_context = fail_context
        self.fail_clear = fail_clear
        self.fail_read = fail_read
        self.pruned: list[tuple[str, int]] = []

    def append_message(self, session_id: str, role: str, agent: str | None, text: str) -> None:
        if self.fail_append:
            raise MemoryStoreError("disk full while writing session memory")
        self.appended.append((session_id, role, agent, text))

    def build_context(self, session_id: str, prompt: str) -> str:
        self.context_calls.append((session_id, prompt))
        if self.fail_context:
            raise MemoryStoreError("memory unreadable")
        return f"[ctx] {prompt}"

    def clear_session(self, session_id: str) -> None:
        if self.fail_clear:
            raise MemoryStoreError("permission denied")
        self.cleared.append(session_id)

    def message_count(self, session_id: str) -> int:
        if self.fail_read:
            raise MemoryStoreError("database is locked")
        return sum(1 for sid, *_rest in self.appended if sid == session_id)

    def recent_lines(self, session_id: str, limit: int) -> list[str]:
        if self.fail_read:
            raise MemoryStoreError("database is locked")
        rows = [(role, text) for sid, role, _agent, text in self.appended if sid == session_id]
        return [f"#{i} {role}: {text}" for i, (role, text) in enumerate(rows, start=1)][-limit:]

    def prune_session(self, session_id: str, keep: int) -> int:
        self.pruned.append((session_id, keep))
        rows = [row for row in self.appended if row[0] == session_id]
        removed = max(0, len(rows) - keep)
        for row in rows[:removed]:
            self.appended.remove(row)
        return removed


def drain(mailbox) -> list[object]:
    """Every queued event; a trailing "closed" marks the close sentinel."""
    events: list[object] = []
    while True:
        try:
            event = mailbox.try_recv()
        except MailboxDisconnected:
            events.append("closed")
            return events
        if event is None:
            return events
        events.append(event)


def run_until_idle(session, *, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while session.state.running:
        if time.monotonic() > deadline:
            raise AssertionError("run did not finish in time")
        session.tick()
        time.sleep(0.005)


def wait_for(predicate, *, timeout: float = 5.0, tick=None) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        if tick is not None:
            tick()
        time.sleep(0.005)
