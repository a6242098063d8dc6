"""Custom Textual widgets for the DAgent TUI."""

from __future__ import annotations

from collections.abc import Iterable

from textual.widgets import Static


class StatusBar(Static):
    """One-line bar showing run state, primary agent, per-agent notices and elapsed time."""

    DEFAULT_CSS = """
    StatusBar {
        dock: bottom;
        height: 1;
        padding: 0 1;
        background: $surface;
        color: $text-muted;
    }
    """

    def __init__(self, **kwargs: object) -> None:
        super().__init__("", **kwargs)
        self._state: str = "idle"
        self._running: bool = False
        self._primary: str = ""
        self._elapsed: int = 0
        self._notices: list[str] = []

    def set_state(self, state: str, *, running: bool) -> None:
        self._state = state
        self._running = running
        self.refresh_display()

    def set_primary(self, name: str) -> None:
        self._primary = name
        self.refresh_display()

    def set_elapsed(self, secs: int) -> None:
        self._elapsed = secs
        self.refresh_display()

    def set_notices(self, notices: Iterable[str]) -> None:
        self._notices = [n for n in notices if n]
        self.refresh_display()

    def refresh_display(self) -> None:
        icon = "\u25b6" if self._running else "\u23f8"  # ▶ / ⏸
        parts = [f"{icon} {self._state}", f"primary: {self._primary or '?'}", f"{self._elapsed}s"]
        parts.extend(self._notices)
        self.update(" | ".join(parts))


class ActivityPanel(Static):
    """Most recent tool and progress lines; older lines scroll off the top."""

    DEFAULT_CSS = """
    ActivityPanel {
        height: auto;
        max-height: 9;
        padding: 0 1;
        border-top: solid $surface-lighten-1;
        color: $text-muted;
    }
    """

    def __init__(self, **kwargs: object) -> None:
        super().__init__("", markup=False, **kwargs)
        self._lines: tuple[str, ...] = ()

    def set_lines(self, lines: Iterable[str]) -> None:
        snapshot = tuple(lines)
        if snapshot == self._lines:
            return
        self._lines = snapshot
        self.update("\n".join(snapshot))
        self.display = bool(snapshot)
