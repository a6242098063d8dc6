from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field

from dagent.agents import Provider
from dagent.events import Mailbox
from dagent.process_registry import PidRegistry
from dagent.transcript import EntryKind, TranscriptEntry

MAX_ACTIVITY_LOG_LINES = 7


@dataclass
class RunState:
    """Bookkeeping for one in-flight dispatch. Replaced wholesale when the next run starts."""

    target_label: str
    providers: list[Provider]
    mailbox: Mailbox | None
    registry: PidRegistry
    worker: threading.Thread | None = None
    started_at: float = field(default_factory=time.monotonic)
    agent_entries: dict[Provider, int] = field(default_factory=dict)
    shared_entry: int | None = None
    active_provider: Provider | None = None
    agent_started_at: dict[Provider, float] = field(default_factory=dict)
    agent_chars: dict[Provider, int] = field(default_factory=dict)
    agent_had_chunk: dict[Provider, bool] = field(default_factory=dict)
    agent_tool_event: dict[Provider, str] = field(default_factory=dict)
    agent_last_progress: dict[Provider, str] = field(default_factory=dict)
    agent_finished: set[Provider] = field(default_factory=set)
    stream_had_chunk: bool = False

    def elapsed_secs(self) -> int:
        return max(0, int(time.monotonic() - self.started_at))


@dataclass
class AppState:
    primary: Provider
    available: list[Provider]
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    entries: list[TranscriptEntry] = field(default_factory=list)
    run: RunState | None = None
    activity: deque[str] = field(default_factory=lambda: deque(maxlen=MAX_ACTIVITY_LOG_LINES))
    last_status: str = "idle"
    last_tool_event: str = ""
    finished_elapsed_secs: int = 0
    finished_provider_name: str = ""
    generation: int = 0
    needs_screen_clear: bool = False
    should_quit: bool = False

    @property
    def running(self) -> bool:
        return self.run is not None

    @property
    def running_providers(self) -> list[Provider]:
        return list(self.run.providers) if self.run is not None else []

    def invalidate(self) -> None:
        """Mark the transcript as changed so cached layout is rebuilt."""
        self.generation += 1

    def push_entry(self, kind: EntryKind, text: str) -> int:
        self.entries.append(TranscriptEntry(kind=kind, text=text))
        self.invalidate()
        return len(self.entries) - 1

    def last_system_entry_is(self, text: str) -> bool:
        for entry in reversed(self.entries):
            if entry.kind is EntryKind.SYSTEM:
                return entry.text == text
        return False

    def push_system_once(self, text: str) -> None:
        if not self.last_system_entry_is(text):
            self.push_entry(EntryKind.SYSTEM, text)

    def push_activity(self, text: str) -> None:
        self.activity.append(text)

    def clear_transcript(self) -> None:
        self.entries.clear()
        self.activity.clear()
        self.needs_screen_clear = True
        self.invalidate()

    def active_entry_indices(self) -> set[int]:
        if self.run is None:
            return set()
        indices = set(self.run.agent_entries.values())
        if self.run.shared_entry is not None:
            indices.add(self.run.shared_entry)
        return indices
