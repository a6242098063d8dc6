"""
Append-only scrollback.

The terminal history is written once and never rewritten, so every flush has to decide which
of the current display lines are new relative to what was already written. Two policies:

- conservative (idle): only a strict extension of the flushed lines is appended;
- running: anything after the longest common prefix is appended, so a streaming entry that
  re-wraps its last line still reaches the log.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from dagent.layout import render_transcript_lines
from dagent.state import AppState
from dagent.transcript import is_placeholder_only

Range = tuple[int, int]


def compute_append_ranges(flushed: Sequence[str], current: Sequence[str]) -> list[Range]:
    if list(flushed) == list(current):
        return []
    if len(flushed) < len(current) and list(current[: len(flushed)]) == list(flushed):
        return [(len(flushed), len(current))]
    return []


def compute_running_append_ranges(flushed: Sequence[str], current: Sequence[str]) -> list[Range]:
    if len(flushed) > len(current):
        return []
    common = 0
    for old, new in zip(flushed, current):
        if old != new:
            break
        common += 1
    if common == len(current):
        return []
    return [(common, len(current))]


def compute_flush_append_ranges(
    flushed: Sequence[str],
    current: Sequence[str],
    *,
    is_running: bool,
    last_flush_was_running: bool,
) -> list[Range]:
    if is_running or last_flush_was_running:
        return compute_running_append_ranges(flushed, current)
    return compute_append_ranges(flushed, current)


@dataclass
class ScrollbackState:
    flushed: list[str] = field(default_factory=list)
    last_flush_was_running: bool = False

    def reset(self) -> None:
        self.flushed = []
        self.last_flush_was_running = False

    def flush(self, current: Sequence[str], is_running: bool) -> list[str]:
        """Return the lines to append, then remember `current` as written."""
        if not current:
            self.reset()
            return []
        ranges = compute_flush_append_ranges(
            self.flushed,
            current,
            is_running=is_running,
            last_flush_was_running=self.last_flush_was_running,
        )
        out: list[str] = []
        for start, end in ranges:
            out.extend(current[start:end])
        self.flushed = list(current)
        self.last_flush_was_running = is_running
        return out


class LineCache:
    """Memoized layout keyed on (generation, width, height)."""

    def __init__(self) -> None:
        self._key: tuple[int, int, int] | None = None
        self._lines: list[str] = []
        self.builds = 0

    def get(self, generation: int, width: int, height: int, build: Callable[[], list[str]]) -> list[str]:
        key = (generation, width, height)
        if key != self._key:
            self._lines = build()
            self._key = key
            self.builds += 1
        return self._lines

    def clear(self) -> None:
        self._key = None
        self._lines = []


def hidden_entry_indices(state: AppState) -> set[int]:
    """Active entries that still show only the placeholder; kept out of scrollback while running."""
    return {idx for idx in state.active_entry_indices() if is_placeholder_only(state.entries[idx])}


def visible_lines(state: AppState, width: int) -> list[str]:
    skip = hidden_entry_indices(state) if state.running else set()
    return render_transcript_lines(state.entries, width, skip=skip)
