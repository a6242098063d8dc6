from __future__ import annotations

import enum
import re
from dataclasses import dataclass

WORKING_PLACEHOLDER = "(thinking...)"

NO_OUTPUT = "(no output)"
FAILED = "(failed)"
CANCELLED = "(cancelled)"
INTERRUPTED = "(interrupted)"
DISCONNECTED = "(disconnected)"

SENTINELS = frozenset({NO_OUTPUT, FAILED, CANCELLED, INTERRUPTED, DISCONNECTED})

_AGENT_MARKER_RE = re.compile(r"^\[([A-Za-z0-9_-]+)\]$")


class EntryKind(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"
    ERROR = "error"


@dataclass
class TranscriptEntry:
    kind: EntryKind
    text: str
    elapsed_secs: int | None = None


def agent_entry_text(agent: str, body: str = WORKING_PLACEHOLDER) -> str:
    return f"[{agent}]\n{body}"


def extract_agent_marker(line: str) -> str | None:
    match = _AGENT_MARKER_RE.match(line.strip())
    return match.group(1) if match else None


def assistant_body(entry: TranscriptEntry) -> str:
    """Text after the marker line, or "" when the entry holds only a marker."""
    lines = entry.text.splitlines()
    if lines and extract_agent_marker(lines[0]) is not None:
        return "\n".join(lines[1:])
    return entry.text


def text_for_model(entry: TranscriptEntry) -> str:
    """Entry text as a later prompt or the memory store should see it (no `[name]` marker)."""
    return assistant_body(entry) if entry.kind is EntryKind.ASSISTANT else entry.text


def is_placeholder_only(entry: TranscriptEntry) -> bool:
    """An assistant entry whose body is still nothing but the placeholder."""
    if entry.kind is not EntryKind.ASSISTANT or WORKING_PLACEHOLDER not in entry.text:
        return False
    return not text_for_model(entry).replace(WORKING_PLACEHOLDER, "", 1).strip()


def replace_placeholder(entry: TranscriptEntry, replacement: str) -> bool:
    """Swap the placeholder (or an empty body) for `replacement`. Returns whether the entry changed."""
    if WORKING_PLACEHOLDER in entry.text:
        entry.text = entry.text.replace(WORKING_PLACEHOLDER, replacement, 1)
        return True
    if not entry.text.strip():
        entry.text = replacement
        return True
    return False
