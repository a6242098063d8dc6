"""
Chat session controller: everything between an input line and the scrollback, minus the widgets.

`ChatSession` owns the `AppState`, the memory store and the event log. The TUI calls
`submit_line` on Enter, `tick` on its poll timer and `flush_lines` to get the lines it should
append to its log.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence
from pathlib import Path

from dagent.agents import Provider, detect_available_providers, provider_from_name, providers_label
from dagent.commands import CommandDispatchResult, CommandInvocation, CommandRegistry
from dagent.dispatch import (
    Primary,
    ProviderTarget,
    missing_providers_message,
    parse_dispatch_override,
    resolve_dispatch_providers,
    target_providers,
)
from dagent.errors import DispatchError, MemoryStoreError
from dagent.event_log import JSONLEventLog
from dagent.events import Mailbox
from dagent.memory import MemoryStore
from dagent.orchestrator import StreamRunner, start_run
from dagent.process_registry import PidRegistry
from dagent.reducer import cancel_run, poll_worker
from dagent.scrollback import LineCache, ScrollbackState, visible_lines
from dagent.settings import DagentSettings, default_settings_template
from dagent.state import AppState, RunState
from dagent.transcript import (
    INTERRUPTED,
    SENTINELS,
    EntryKind,
    TranscriptEntry,
    agent_entry_text,
    is_placeholder_only,
    text_for_model,
)
from dagent.utils.text_utils import squash_whitespace, truncate

logger = logging.getLogger(__name__)

CONTEXT_MAX_ENTRIES = 18
CONTEXT_MAX_CHARS = 6000
MEMORY_ERROR_PREVIEW_CHARS = 80
MEM_SHOW_DEFAULT_LIMIT = 20
MEM_SHOW_MAX_LIMIT = 200
MEM_PRUNE_DEFAULT_KEEP = 200
MEM_USAGE = "\n".join(
    [
        "memory commands",
        "  /mem                     show summary",
        "  /mem show [n]            show latest n records (default 20)",
        "  /mem prune [keep]        keep latest N records (default 200)",
        "  /mem clear               clear memory only (keep transcript)",
    ]
)
TASK_RUNNING_MESSAGE = "task is running, wait..."


def _context_line(entry: TranscriptEntry) -> str | None:
    if entry.kind not in (EntryKind.USER, EntryKind.ASSISTANT):
        return None
    if is_placeholder_only(entry):
        return None
    text = squash_whitespace(text_for_model(entry))
    if not text or text in SENTINELS:
        return None
    if entry.kind is EntryKind.USER:
        return f"user: {text}"
    return f"assistant: {text}"


def build_transcript_context(entries: Sequence[TranscriptEntry], prompt: str) -> str:
    """Contextual prompt from earlier transcript entries, newest kept first when trimming."""
    lines = [line for line in (_context_line(e) for e in entries) if line]
    lines = lines[-CONTEXT_MAX_ENTRIES:]

    selected: list[str] = []
    used = 0
    for line in reversed(lines):
        if used + len(line) + 1 > CONTEXT_MAX_CHARS:
            break
        used += len(line) + 1
        selected.append(line)
    if not selected:
        return prompt
    selected.reverse()
    return (
        "Conversation context from this DAgent session:\n"
        + "\n".join(selected)
        + "\n\nCurrent user request:\n"
        + prompt
    )


def _parse_count(args: list[str], *, default: int, minimum: int) -> int | None:
    if not args:
        return default
    if len(args) > 1 or not args[0].isdigit():
        return None
    value = int(args[0])
    return value if value >= minimum else None


def _usage_error(args: list[str], bad_number: str, too_many: str) -> str:
    return too_many if len(args) > 1 and args[0].isdigit() else bad_number


def choose_primary(preferred: Provider | None, available: Sequence[Provider]) -> Provider:
    if preferred is not None and (preferred in available or not available):
        return preferred
    if available:
        return available[0]
    return Provider.CLAUDE


class ChatSession:
    def __init__(
        self,
        *,
        settings: DagentSettings | None = None,
        available: Sequence[Provider] | None = None,
        primary: Provider | None = None,
        memory: MemoryStore | None = None,
        event_log: JSONLEventLog | None = None,
        session_id: str | None = None,
        runner: StreamRunner | None = None,
        path_env: str | None = None,
        workspace: Path | None = None,
    ) -> None:
        self.settings = settings or default_settings_template()
        self.path_env = path_env
        found = list(available) if available is not None else detect_available_providers(path_env=path_env)
        preferred = primary or provider_from_name(self.settings.primary)
        self.state = AppState(primary=choose_primary(preferred, found), available=found)
        self.state.activity = deque(maxlen=self.settings.ui.activity_log_lines)
        if session_id:
            self.state.session_id = session_id
        self.memory = memory
        self.event_log = event_log
        self.runner = runner
        self.workspace = (workspace or Path.cwd()).resolve()
        self.scrollback = ScrollbackState()
        self.line_cache = LineCache()
        self.commands = CommandRegistry()
        self._register_commands()

    # -- output helpers ---------------------------------------------------

    def system(self, text: str) -> None:
        self.state.push_entry(EntryKind.SYSTEM, text)

    def error(self, text: str, *, status: str | None = None) -> None:
        self.state.push_entry(EntryKind.ERROR, text)
        if status is not None:
            self.state.last_status = status

    def welcome(self) -> None:
        if not self.state.available:
            self.system("no agents found on PATH; install claude or codex, then /agents")
            return
        self.system(
            f"primary: {self.state.primary.value} | agents: {providers_label(self.state.available)} | /help for commands"
        )

    # -- commands ---------------------------------------------------------

    def _register_commands(self) -> None:
        def _help(_session: ChatSession, _inv: CommandInvocation) -> CommandDispatchResult:
            lines = ["commands:"]
            lines.extend(f"  {line}" for line in self.commands.help_lines())
            lines.append("  @claude / @codex <task>: send to one agent; mention both to run them together")
            self.system("\n".join(lines))
            return CommandDispatchResult(handled=True)

        def _exit(_session: ChatSession, _inv: CommandInvocation) -> CommandDispatchResult:
            self.state.should_quit = True
            return CommandDispatchResult(handled=True, should_exit=True)

        def _clear(_session: ChatSession, _inv: CommandInvocation) -> CommandDispatchResult:
            self.state.clear_transcript()
            self.scrollback.reset()
            self.line_cache.clear()
            if self.memory is not None:
                try:
                    self.memory.clear_session(self.state.session_id)
                except MemoryStoreError as exc:
                    self.system(f"memory clear failed: {truncate(str(exc), MEMORY_ERROR_PREVIEW_CHARS)}")
            return CommandDispatchResult(handled=True)

        def _primary(_session: ChatSession, inv: CommandInvocation) -> CommandDispatchResult:
            if not inv.args:
                self.system(
                    f"primary: {self.state.primary.value} (available: {providers_label(self.state.available)})"
                )
                return CommandDispatchResult(handled=True)
            name = inv.args[0]
            provider = provider_from_name(name)
            if provider is None:
                self.system(f"unknown agent {name}; use claude or codex")
            elif provider not in self.state.available:
                self.system(f"{provider.value} not available on PATH")
            else:
                self.state.primary = provider
                self.system(f"primary set to {provider.value}")
            return CommandDispatchResult(handled=True)

        def _agents(_session: ChatSession, _inv: CommandInvocation) -> CommandDispatchResult:
            self.state.available = detect_available_providers(path_env=self.path_env)
            self.system(f"available agents: {providers_label(self.state.available)}")
            if self.state.available and self.state.primary not in self.state.available:
                self.system(f"primary {self.state.primary.value} not available; use /primary <name>")
            return CommandDispatchResult(handled=True)

        def _cancel(_session: ChatSession, _inv: CommandInvocation) -> CommandDispatchResult:
            if not self.cancel("cancelled by user"):
                self.system("nothing is running")
            return CommandDispatchResult(handled=True)

        self.commands.register("help", _help, help="show this help")
        self.commands.register("exit", _exit, help="quit dagent", aliases=("quit",))
        self.commands.register("clear", _clear, help="clear the transcript and session memory")
        self.commands.register(
            "primary", _primary, help="show or set the primary agent", usage="[claude|codex]", aliases=("provider",)
        )
        self.commands.register("agents", _agents, help="rescan PATH for agent binaries")
        self.commands.register("cancel", _cancel, help="stop the running task")
        self.commands.register(
            "mem",
            lambda _s, inv: self._memory_command(inv.args),
            help="inspect session memory",
            usage="[show|prune|clear]",
        )
        self.commands.register(
            "workspace",
            lambda _s, inv: self._workspace_command(inv.args),
            help="show or change the agents' working directory",
            usage="[path]",
        )

    def _workspace_command(self, args: list[str]) -> CommandDispatchResult:
        if not args:
            self.system(f"workspace: {self.workspace}")
            return CommandDispatchResult(handled=True)
        target = Path(" ".join(args)).expanduser()
        if not target.is_absolute():
            target = self.workspace / target
        target = target.resolve()
        if not target.is_dir():
            self.error(f"workspace: {target} is not a directory")
            return CommandDispatchResult(handled=True)
        self.workspace = target
        self.system(f"workspace: {target}")
        self.state.last_status = f"workspace {target}"
        return CommandDispatchResult(handled=True)

    def _memory_command(self, args: list[str]) -> CommandDispatchResult:
        memory = self.memory
        if memory is None:
            self.error("memory backend unavailable", status="memory unavailable")
            return CommandDispatchResult(handled=True)
        sid = self.state.session_id
        sub = args[0] if args else ""
        rest = args[1:]
        try:
            if sub in ("", "help"):
                count = memory.message_count(sid)
                self.system(f"session memory: {count} records\n{MEM_USAGE}")
                self.state.last_status = f"memory {count} records"
            elif sub == "show":
                limit = _parse_count(rest, default=MEM_SHOW_DEFAULT_LIMIT, minimum=1)
                if limit is None:
                    message = _usage_error(rest, "usage: /mem show [positive-number]", "usage: /mem show [n]")
                    self.error(message, status="memory usage")
                    return CommandDispatchResult(handled=True)
                lines = memory.recent_lines(sid, min(limit, MEM_SHOW_MAX_LIMIT))
                if lines:
                    self.system(f"memory (latest {len(lines)}):\n" + "\n".join(lines))
                    self.state.last_status = f"memory show {len(lines)}"
                else:
                    self.system("memory is empty")
                    self.state.last_status = "memory empty"
            elif sub in ("prune", "trim"):
                keep = _parse_count(rest, default=MEM_PRUNE_DEFAULT_KEEP, minimum=0)
                if keep is None:
                    message = _usage_error(rest, "usage: /mem prune [non-negative-number]", "usage: /mem prune [keep]")
                    self.error(message, status="memory usage")
                    return CommandDispatchResult(handled=True)
                removed = memory.prune_session(sid, keep)
                remaining = memory.message_count(sid)
                self.system(f"memory pruned: removed {removed}, remaining {remaining}")
                self.state.last_status = f"memory pruned {removed}"
            elif sub == "clear":
                memory.clear_session(sid)
                self.system("memory cleared for current session")
                self.state.last_status = "memory cleared"
            else:
                self.error("usage: /mem [show|prune|clear]", status="memory usage")
        except MemoryStoreError as exc:
            action = {"prune": "prune", "trim": "prune", "clear": "clear"}.get(sub, "read")
            self.error(f"memory {action} failed: {truncate(str(exc), MEMORY_ERROR_PREVIEW_CHARS)}", status="memory error")
        return CommandDispatchResult(handled=True)

    def _dispatch_command(self, invocation: CommandInvocation) -> CommandDispatchResult:
        spec = self.commands.resolve(invocation.name)
        if spec is None:
            self.system(f"unknown command: /{invocation.name}. Type /help for options.")
            return CommandDispatchResult(handled=True)
        return spec.handler(self, invocation)

    # -- input ------------------------------------------------------------

    def submit_line(self, text: str) -> CommandDispatchResult:
        line = (text or "").strip()
        if not line:
            return CommandDispatchResult(handled=False)

        invocation = self.commands.parse(line)
        if self.state.running:
            spec = self.commands.resolve(invocation.name) if invocation is not None else None
            if invocation is not None and spec is not None and spec.name == "cancel":
                return self._dispatch_command(invocation)
            if invocation is not None:
                self.state.push_system_once(TASK_RUNNING_MESSAGE)
                return CommandDispatchResult(handled=True)
            self._refuse_busy(line)
            return CommandDispatchResult(handled=True)

        if invocation is not None:
            return self._dispatch_command(invocation)

        self.dispatch(line)
        return CommandDispatchResult(handled=True)

    def _refuse_busy(self, line: str) -> None:
        running = self.state.running_providers
        try:
            parsed = parse_dispatch_override(line)
        except DispatchError:
            parsed = None
        requested = target_providers(parsed[0], self.state.primary) if parsed else [self.state.primary]
        busy = [p for p in requested if p in running]
        if busy:
            self.state.push_system_once(f"{providers_label(busy)} is running, wait...")
        else:
            self.state.push_system_once(TASK_RUNNING_MESSAGE)

    def dispatch(self, line: str) -> bool:
        """Plan and start a run for `line`. Returns whether a run was started."""
        try:
            parsed = parse_dispatch_override(line)
        except DispatchError as exc:
            self.system(str(exc))
            return False
        target, prompt = parsed if parsed is not None else (Primary(), line)

        providers = resolve_dispatch_providers(self.state.primary, self.state.available, target)
        if not providers:
            self.system(missing_providers_message(self.state.primary, self.state.available, target))
            return False

        history = list(self.state.entries)
        self.state.push_entry(EntryKind.USER, line)
        self._remember("user", None, prompt)
        contextual_prompt = self.contextual_prompt(prompt, history)

        label = providers[0].value if isinstance(target, (Primary, ProviderTarget)) else providers_label(providers)
        mailbox = Mailbox()
        run = RunState(target_label=label, providers=providers, mailbox=mailbox, registry=PidRegistry())
        if len(providers) == 1:
            run.shared_entry = self.state.push_entry(EntryKind.ASSISTANT, agent_entry_text(providers[0].value))
        else:
            for provider in providers:
                run.agent_entries[provider] = self.state.push_entry(EntryKind.ASSISTANT, agent_entry_text(provider.value))
        self.state.run = run
        self.state.last_status = f"{label} running"

        if self.event_log is not None:
            self.event_log.log("run_start", target=label, prompt=prompt, contextual=contextual_prompt != prompt)
        run.worker = start_run(
            self.state.primary,
            self.state.available,
            contextual_prompt,
            target,
            mailbox,
            run.registry,
            settings=self.settings,
            runner=self.runner,
            cwd=self.workspace,
        )
        return True

    def _remember(self, role: str, agent: str | None, text: str) -> None:
        if self.memory is None:
            return
        try:
            self.memory.append_message(self.state.session_id, role, agent, text)
        except MemoryStoreError as exc:
            self.system(f"memory write failed: {truncate(str(exc), MEMORY_ERROR_PREVIEW_CHARS)}")

    def contextual_prompt(self, prompt: str, history: Sequence[TranscriptEntry]) -> str:
        if self.memory is not None:
            try:
                return self.memory.build_context(self.state.session_id, prompt)
            except MemoryStoreError as exc:
                logger.debug("memory context unavailable, using transcript: %s", exc)
        return build_transcript_context(history, prompt)

    # -- run control ------------------------------------------------------

    def cancel(self, reason: str, *, interrupted: bool = False) -> bool:
        if interrupted:
            return cancel_run(self.state, reason, sentinel=INTERRUPTED, event_log=self.event_log)
        return cancel_run(self.state, reason, event_log=self.event_log)

    def interrupt(self) -> bool:
        return self.cancel("interrupted", interrupted=True)

    def shutdown(self) -> None:
        if self.state.running:
            self.cancel("session closed")

    # -- polling / rendering ----------------------------------------------

    def poll_interval_ms(self) -> int:
        ui = self.settings.ui
        return ui.active_poll_ms if self.state.running else ui.idle_poll_ms

    def tick(self) -> bool:
        """Apply pending worker events. Returns whether the state changed."""
        return poll_worker(self.state, memory=self.memory, event_log=self.event_log)

    def lines(self, width: int, height: int) -> list[str]:
        return self.line_cache.get(
            self.state.generation, width, height, lambda: visible_lines(self.state, width)
        )

    def take_screen_clear(self) -> bool:
        if not self.state.needs_screen_clear:
            return False
        self.state.needs_screen_clear = False
        return True

    def flush_lines(self, width: int, height: int) -> list[str]:
        """Lines to append to the scrollback since the last flush."""
        return self.scrollback.flush(self.lines(width, height), self.state.running)
