from __future__ import annotations

import io
from collections.abc import Collection, Sequence

from rich.console import Console
from rich.text import Text

from dagent.transcript import EntryKind, TranscriptEntry

_PREFIXES = {
    EntryKind.USER: "> ",
    EntryKind.ASSISTANT: "",
    EntryKind.SYSTEM: "* ",
    EntryKind.TOOL: "  ",
    EntryKind.ERROR: "error: ",
}

_console: Console | None = None


def _layout_console() -> Console:
    # Only used for wrap defaults; nothing is ever printed to it.
    global _console
    if _console is None:
        _console = Console(file=io.StringIO(), color_system=None, force_terminal=False, width=80)
    return _console


def wrap_line(line: str, width: int) -> list[str]:
    if not line.strip():
        return [""]
    lines = Text(line).wrap(_layout_console(), max(1, width), overflow="fold")
    return [part.plain.rstrip() for part in lines] or [""]


def entry_lines(entry: TranscriptEntry, width: int) -> list[str]:
    prefix = _PREFIXES.get(entry.kind, "")
    out: list[str] = []
    for index, raw in enumerate(entry.text.rstrip("\n").split("\n")):
        line = (prefix if index == 0 or entry.kind is EntryKind.TOOL else "") + raw
        out.extend(wrap_line(line, width))
    return out


def render_transcript_lines(
    entries: Sequence[TranscriptEntry],
    width: int,
    *,
    skip: Collection[int] = (),
) -> list[str]:
    """Flatten entries into wrapped display lines, one blank line between entries."""
    lines: list[str] = []
    for index, entry in enumerate(entries):
        if index in skip:
            continue
        if lines:
            lines.append("")
        lines.extend(entry_lines(entry, width))
    return lines
