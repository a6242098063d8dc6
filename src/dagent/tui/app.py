"""Textual front end for `dagent`: append-only transcript log, activity panel, status bar, prompt."""

from __future__ import annotations

import importlib
import sys
import time
from typing import Any

from rich.text import Text

from dagent.session import ChatSession


def run_tui(session: ChatSession) -> int:
    """Run the full-screen TUI if Textual is installed."""
    try:
        textual_app = importlib.import_module("textual.app")
        textual_widgets = importlib.import_module("textual.widgets")
    except ImportError:
        print(
            "Textual is required for `dagent`.\n"
            'Install with: pip install "dagent[tui]"\n'
            'For editable installs in this repo: pip install -e ".[tui]"',
            file=sys.stderr,
        )
        return 1

    AppBase = textual_app.App
    Input = textual_widgets.Input
    RichLog = textual_widgets.RichLog

    from dagent.tui.widgets import ActivityPanel, StatusBar

    ui = session.settings.ui

    class DagentTUI(AppBase):
        CSS = """
        Screen {
            layout: vertical;
        }

        #transcript {
            height: 1fr;
            padding: 0 1;
        }

        #prompt {
            dock: bottom;
            margin-bottom: 1;
        }
        """
        BINDINGS = [
            ("escape", "interrupt_run", "Interrupt run"),
            ("ctrl+d", "quit", "Quit"),
        ]

        _last_draw: float = 0.0
        _is_shutting_down: bool = False

        def compose(self) -> Any:
            yield RichLog(id="transcript", wrap=False, markup=False, highlight=False, auto_scroll=True)
            yield ActivityPanel(id="activity")
            yield StatusBar(id="status_bar")
            yield Input(placeholder="Ask claude/codex, @claude/@codex to target, /help for commands", id="prompt")

        def on_mount(self) -> None:
            self.title = "DAgent"
            session.welcome()
            self.query_one("#prompt", Input).focus()
            self._draw(force=True)
            self._schedule_tick()

        # -- polling --------------------------------------------------------

        def _schedule_tick(self) -> None:
            if self._is_shutting_down:
                return
            self.set_timer(session.poll_interval_ms() / 1000.0, self._tick)

        def _tick(self) -> None:
            changed = session.tick()
            self._draw(force=changed and not session.state.running)
            self._schedule_tick()

        def _viewport(self) -> tuple[int, int]:
            log = self.query_one("#transcript", RichLog)
            region = log.scrollable_content_region
            width = region.width or max(20, self.size.width - 2)
            height = region.height or max(1, self.size.height)
            return width, height

        def _draw(self, *, force: bool = False) -> None:
            now = time.monotonic()
            if session.state.running and not force:
                if (now - self._last_draw) * 1000.0 < ui.running_draw_interval_ms:
                    return
            self._last_draw = now

            log = self.query_one("#transcript", RichLog)
            if session.take_screen_clear():
                log.clear()
            width, height = self._viewport()
            for line in session.flush_lines(width, height):
                log.write(Text(line))
            self._refresh_status()

        def _refresh_status(self) -> None:
            state = session.state
            status = self.query_one("#status_bar", StatusBar)
            status.set_primary(state.primary.value)
            if state.run is not None:
                status.set_elapsed(state.run.elapsed_secs())
                status.set_notices(state.run.agent_tool_event.get(p, "") for p in state.run.providers)
            else:
                status.set_elapsed(state.finished_elapsed_secs)
                status.set_notices([state.last_tool_event] if state.last_tool_event else [])
            status.set_state(state.last_status, running=state.running)
            self.query_one("#activity", ActivityPanel).set_lines(state.activity)

        # -- input ----------------------------------------------------------

        def on_input_submitted(self, event: Any) -> None:
            text = event.value or ""
            event.input.value = ""
            result = session.submit_line(text)
            self._draw(force=True)
            if result.should_exit or session.state.should_quit:
                self.action_quit()

        def action_interrupt_run(self) -> None:
            if session.interrupt():
                self._draw(force=True)

        def action_quit(self) -> None:
            self._is_shutting_down = True
            session.shutdown()
            self.exit(return_code=0)

    try:
        DagentTUI().run()
    except KeyboardInterrupt:
        session.shutdown()
        return 130
    return 0
