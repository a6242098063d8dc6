"""
Session memory: the message history agents see as shared context on the next request.

Two stores share the same context-building rules:
- `InMemoryStore`: process-local, nothing persisted.
- `JSONLMemoryStore`: append-only `<state_dir>/memory/<session_id>.jsonl` files.
"""

from __future__ import annotations

import contextlib
import json
import os
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from dagent.errors import MemoryStoreError
from dagent.state_paths import memory_dir as _default_memory_dir
from dagent.utils.text_utils import squash_whitespace, truncate

RECENT_LIMIT = 2
SEARCH_LIMIT = 8
CONTEXT_CHAR_LIMIT = 2000
MAX_LINE_CHARS = 500
PREVIEW_LINE_CHARS = 180

_WORD_RE = re.compile(r"[\w']+", re.UNICODE)
_MIN_TERM_CHARS = 3


@dataclass(frozen=True)
class MemoryMessage:
    id: int
    role: str
    agent: str | None
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "role": self.role, "agent": self.agent, "content": self.content}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "MemoryMessage | None":
        msg_id = raw.get("id")
        role = raw.get("role")
        content = raw.get("content")
        agent = raw.get("agent")
        if not isinstance(msg_id, int) or not isinstance(role, str) or not isinstance(content, str):
            return None
        return cls(id=msg_id, role=role, agent=agent if isinstance(agent, str) else None, content=content)


class MemoryStore(Protocol):
    def append_message(self, session_id: str, role: str, agent: str | None, text: str) -> None: ...

    def build_context(self, session_id: str, prompt: str) -> str: ...

    def clear_session(self, session_id: str) -> None: ...

    def message_count(self, session_id: str) -> int: ...

    def recent_lines(self, session_id: str, limit: int) -> list[str]: ...

    def prune_session(self, session_id: str, keep: int) -> int: ...


def _query_terms(text: str) -> set[str]:
    return {w.lower() for w in _WORD_RE.findall(text) if len(w) >= _MIN_TERM_CHARS}


def _format_line(message: MemoryMessage, limit: int = MAX_LINE_CHARS) -> str | None:
    content = squash_whitespace(message.content)
    if not content:
        return None
    actor = message.role
    if message.role == "assistant" and message.agent:
        actor = f"assistant({message.agent})"
    return f"{actor}: {truncate(content, limit)}"


def preview_lines(messages: list[MemoryMessage], limit: int) -> list[str]:
    """`#<id> <actor>: <content>` for the newest `limit` messages, oldest first."""
    out: list[str] = []
    for message in messages[-max(1, limit) :]:
        line = _format_line(message, PREVIEW_LINE_CHARS)
        if line:
            out.append(f"#{message.id} {line}")
    return out


def build_context_from_messages(messages: list[MemoryMessage], prompt: str) -> str:
    """
    Build a contextual prompt: the most recent messages plus keyword hits, oldest first,
    capped at `CONTEXT_CHAR_LIMIT` (newest lines win). The current prompt is not repeated.
    """
    items = messages[-RECENT_LIMIT:]
    seen = {m.id for m in items}

    terms = _query_terms(prompt)
    if terms:
        hits = 0
        for message in reversed(messages):
            if hits >= SEARCH_LIMIT:
                break
            if message.id in seen or not (terms & _query_terms(message.content)):
                continue
            items.append(message)
            seen.add(message.id)
            hits += 1

    if not items:
        return prompt
    items.sort(key=lambda m: m.id)

    prompt_norm = squash_whitespace(prompt)
    filtered: list[MemoryMessage] = []
    skipped_current_prompt = False
    for message in reversed(items):
        if (
            not skipped_current_prompt
            and message.role == "user"
            and prompt_norm
            and squash_whitespace(message.content) == prompt_norm
        ):
            skipped_current_prompt = True
            continue
        filtered.append(message)
    filtered.reverse()

    lines = [line for line in (_format_line(m) for m in filtered) if line]
    if not lines:
        return prompt

    selected: list[str] = []
    used = 0
    for line in reversed(lines):
        delta = len(line) + 1
        if used + delta > CONTEXT_CHAR_LIMIT and selected:
            break
        used += delta
        selected.append(line)
    selected.reverse()

    return "Shared session memory:\n" + "\n".join(selected) + "\n\nCurrent user request:\n" + prompt


class InMemoryStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, list[MemoryMessage]] = {}
        self._next_id = 1

    def append_message(self, session_id: str, role: str, agent: str | None, text: str) -> None:
        content = text.strip()
        if not content:
            return
        with self._lock:
            message = MemoryMessage(id=self._next_id, role=role, agent=agent, content=content)
            self._next_id += 1
            self._sessions.setdefault(session_id, []).append(message)

    def messages(self, session_id: str) -> list[MemoryMessage]:
        with self._lock:
            return list(self._sessions.get(session_id, []))

    def build_context(self, session_id: str, prompt: str) -> str:
        return build_context_from_messages(self.messages(session_id), prompt)

    def clear_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def message_count(self, session_id: str) -> int:
        return len(self.messages(session_id))

    def recent_lines(self, session_id: str, limit: int) -> list[str]:
        return preview_lines(self.messages(session_id), limit)

    def prune_session(self, session_id: str, keep: int) -> int:
        with self._lock:
            messages = self._sessions.get(session_id, [])
            removed = max(0, len(messages) - max(0, keep))
            if removed:
                self._sessions[session_id] = messages[removed:]
            return removed


class JSONLMemoryStore:
    """
    Project-local memory under `<state_dir>/memory/`.

    Default state dir is `.dagent/` in the current working directory; override via `DAGENT_STATE_DIR`.
    One append-only JSONL file per session; unreadable lines are skipped on load.
    The last id per session is read from disk once and cached for later appends.
    """

    def __init__(self, root_dir: Path | None = None) -> None:
        self.root_dir = root_dir or _default_memory_dir()
        self._lock = threading.Lock()
        self._last_ids: dict[str, int] = {}

    def _path(self, session_id: str) -> Path:
        sid = (session_id or "").strip()
        if not sid or "/" in sid or sid.startswith("."):
            raise MemoryStoreError(f"invalid session id: {session_id!r}")
        return self.root_dir / f"{sid}.jsonl"

    def _records(self, path: Path) -> list[tuple[dict[str, Any], MemoryMessage]]:
        if not path.exists():
            return []
        try:
            raw_lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as exc:
            raise MemoryStoreError(f"read memory {path}: {exc}") from exc
        out: list[tuple[dict[str, Any], MemoryMessage]] = []
        for raw_line in raw_lines:
            if not raw_line.strip():
                continue
            with contextlib.suppress(ValueError):
                payload = json.loads(raw_line)
                if isinstance(payload, dict):
                    message = MemoryMessage.from_dict(payload)
                    if message is not None:
                        out.append((payload, message))
        return out

    def messages(self, session_id: str) -> list[MemoryMessage]:
        return [message for _payload, message in self._records(self._path(session_id))]

    def append_message(self, session_id: str, role: str, agent: str | None, text: str) -> None:
        content = text.strip()
        if not content:
            return
        path = self._path(session_id)
        with self._lock:
            last_id = self._last_ids.get(session_id)
            if last_id is None:
                existing = self.messages(session_id)
                last_id = existing[-1].id if existing else 0
            next_id = last_id + 1
            payload = MemoryMessage(id=next_id, role=role, agent=agent, content=content).to_dict()
            payload["ts"] = time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime())
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as fh:
                    fh.write(json.dumps(payload, ensure_ascii=False) + "\n")
            except OSError as exc:
                raise MemoryStoreError(f"write memory {path}: {exc}") from exc
            self._last_ids[session_id] = next_id

    def build_context(self, session_id: str, prompt: str) -> str:
        return build_context_from_messages(self.messages(session_id), prompt)

    def clear_session(self, session_id: str) -> None:
        path = self._path(session_id)
        with self._lock:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise MemoryStoreError(f"clear memory {path}: {exc}") from exc
            self._last_ids.pop(session_id, None)

    def message_count(self, session_id: str) -> int:
        return len(self.messages(session_id))

    def recent_lines(self, session_id: str, limit: int) -> list[str]:
        return preview_lines(self.messages(session_id), limit)

    def prune_session(self, session_id: str, keep: int) -> int:
        """Keep the newest `keep` messages, rewriting the file in place. Returns how many were removed."""
        path = self._path(session_id)
        with self._lock:
            records = self._records(path)
            removed = max(0, len(records) - max(0, keep))
            if not removed:
                return 0
            kept = records[removed:]
            tmp = path.with_suffix(".jsonl.tmp")
            try:
                with tmp.open("w", encoding="utf-8") as fh:
                    for payload, _message in kept:
                        fh.write(json.dumps(payload, ensure_ascii=False) + "\n")
                os.replace(tmp, path)
            except OSError as exc:
                raise MemoryStoreError(f"prune memory {path}: {exc}") from exc
            if not kept:
                self._last_ids.pop(session_id, None)
            return removed
