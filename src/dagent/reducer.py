"""
Apply worker events to `AppState` on the UI thread.

`poll_worker` drains whatever the current run's mailbox holds and dispatches each event to a
small reducer function. Terminal events (`Done`, `Error`, a closed mailbox) end the run; any
event read after that in the same drain is dropped with the mailbox.
"""

from __future__ import annotations

import logging
import time

from dagent.agents import Provider
from dagent.errors import MemoryStoreError
from dagent.event_log import JSONLEventLog
from dagent.events import (
    AgentChunk,
    AgentDone,
    AgentStart,
    Done,
    Error,
    MailboxDisconnected,
    NormalizedEvent,
    Progress,
    PromotePrimary,
    Tool,
)
from dagent.memory import MemoryStore
from dagent.sanitize import sanitize_runtime_text
from dagent.state import AppState, RunState
from dagent.transcript import (
    CANCELLED,
    DISCONNECTED,
    FAILED,
    INTERRUPTED,
    NO_OUTPUT,
    SENTINELS,
    EntryKind,
    agent_entry_text,
    is_placeholder_only,
    replace_placeholder,
    text_for_model,
)
from dagent.utils.text_utils import squash_whitespace, truncate

logger = logging.getLogger(__name__)

# Providers that emit whole message blocks rather than token deltas.
BLOCK_STRUCTURED_PROVIDERS = frozenset({Provider.CODEX})

MEMORY_ERROR_PREVIEW_CHARS = 80


def format_elapsed(secs: int) -> str:
    secs = max(0, int(secs))
    return f"{secs // 60:02d}:{secs % 60:02d}"


def _log(event_log: JSONLEventLog | None, event: str, **payload: object) -> None:
    if event_log is not None:
        event_log.log(event, **payload)


def _set_tool_event(state: AppState, provider: Provider | None, text: str) -> None:
    state.last_tool_event = text
    if state.run is not None and provider is not None:
        state.run.agent_tool_event[provider] = text


def _entry_index_for(state: AppState, run: RunState, provider: Provider) -> int:
    idx = run.agent_entries.get(provider)
    if idx is not None:
        return idx
    if run.shared_entry is not None:
        return run.shared_entry
    idx = state.push_entry(EntryKind.ASSISTANT, agent_entry_text(provider.value))
    run.agent_entries[provider] = idx
    return idx


def _in_flight_indices(run: RunState) -> list[int]:
    """Entries whose producer has not reported `AgentDone` yet."""
    indices = [idx for provider, idx in run.agent_entries.items() if provider not in run.agent_finished]
    if run.shared_entry is not None and not set(run.providers) <= run.agent_finished:
        indices.append(run.shared_entry)
    return sorted(set(indices))


def end_run(state: AppState, *, status: str) -> None:
    run = state.run
    if run is None:
        return
    state.finished_elapsed_secs = run.elapsed_secs()
    state.finished_provider_name = run.target_label
    run.registry.drain()
    run.mailbox = None
    state.run = None
    state.last_status = status
    state.invalidate()


# -- per-event reducers -----------------------------------------------------


def on_agent_start(state: AppState, event: AgentStart, *, event_log: JSONLEventLog | None = None) -> None:
    run = state.run
    if run is None:
        return
    provider = event.provider
    run.agent_started_at[provider] = time.monotonic()
    run.agent_chars[provider] = 0
    run.agent_had_chunk[provider] = False
    run.active_provider = provider
    _entry_index_for(state, run, provider)
    _set_tool_event(state, provider, f"agent {provider.value} started")
    state.last_status = f"{provider.value} running"
    _log(event_log, "agent_start", provider=provider.value)


def on_agent_chunk(state: AppState, event: AgentChunk) -> None:
    run = state.run
    if run is None:
        return
    text = sanitize_runtime_text(event.text)
    if not text.strip():
        return
    provider = event.provider
    idx = _entry_index_for(state, run, provider)
    entry = state.entries[idx]

    shared = idx == run.shared_entry
    had_chunk = run.stream_had_chunk if shared else run.agent_had_chunk.get(provider, False)
    if not had_chunk:
        replace_placeholder(entry, "")
    elif provider in BLOCK_STRUCTURED_PROVIDERS and not entry.text.endswith("\n"):
        entry.text += "\n"
    entry.text += text

    run.agent_had_chunk[provider] = True
    run.stream_had_chunk = True
    run.agent_chars[provider] = run.agent_chars.get(provider, 0) + len(text)
    run.active_provider = provider
    state.last_status = f"{provider.value} streaming"
    state.invalidate()


def on_agent_done(
    state: AppState,
    event: AgentDone,
    *,
    memory: MemoryStore | None = None,
    event_log: JSONLEventLog | None = None,
) -> None:
    run = state.run
    if run is None:
        return
    provider = event.provider
    idx = _entry_index_for(state, run, provider)
    entry = state.entries[idx]

    started = run.agent_started_at.get(provider, run.started_at)
    elapsed = max(0, int(time.monotonic() - started))
    entry.elapsed_secs = elapsed
    if not run.agent_had_chunk.get(provider, False):
        replace_placeholder(entry, NO_OUTPUT)
    run.agent_finished.add(provider)
    if run.active_provider is provider:
        run.active_provider = None

    _set_tool_event(state, provider, f"agent {provider.value} completed ({format_elapsed(elapsed)})")
    state.invalidate()
    _log(event_log, "agent_done", provider=provider.value, elapsed_s=elapsed, chars=run.agent_chars.get(provider, 0))

    content = text_for_model(entry).strip()
    if memory is None or not content or content in SENTINELS:
        return
    if content.startswith(f"{provider.value} error: "):
        return
    try:
        memory.append_message(state.session_id, "assistant", provider.value, content)
    except MemoryStoreError as exc:
        state.push_entry(EntryKind.SYSTEM, f"memory write failed: {truncate(str(exc), MEMORY_ERROR_PREVIEW_CHARS)}")


def on_tool(state: AppState, event: Tool) -> None:
    text = squash_whitespace(sanitize_runtime_text(event.text))
    if not text:
        return
    provider = event.provider
    if provider is None and state.run is not None:
        provider = state.run.active_provider
    state.push_activity(text)
    _set_tool_event(state, provider, text)
    state.last_status = f"tool {provider.value}: {text}" if provider is not None else f"tool: {text}"


def on_progress(state: AppState, event: Progress) -> None:
    run = state.run
    text = squash_whitespace(sanitize_runtime_text(event.text))
    if not text or run is None:
        return
    if run.agent_last_progress.get(event.provider) == text:
        return
    run.agent_last_progress[event.provider] = text
    state.push_activity(text)
    _set_tool_event(state, event.provider, text)
    state.last_status = f"progress {event.provider.value}: {text}"


def on_promote_primary(state: AppState, event: PromotePrimary, *, event_log: JSONLEventLog | None = None) -> None:
    if event.provider is state.primary:
        return
    reason = squash_whitespace(sanitize_runtime_text(event.reason))
    state.primary = event.provider
    state.push_entry(EntryKind.SYSTEM, f"primary auto-switched to {event.provider.value} ({reason})")
    state.last_status = f"primary -> {event.provider.value}"
    _log(event_log, "promote_primary", provider=event.provider.value, reason=reason)


def on_done(state: AppState, event: Done, *, event_log: JSONLEventLog | None = None) -> None:
    run = state.run
    if run is None:
        return
    trailing = sanitize_runtime_text(event.text).strip()
    if trailing:
        idx = run.shared_entry
        if idx is None:
            owner = state.primary if state.primary in run.agent_entries else next(iter(run.agent_entries), None)
            idx = run.agent_entries.get(owner) if owner is not None else None
        if idx is not None:
            entry = state.entries[idx]
            body = text_for_model(entry).strip()
            if is_placeholder_only(entry) or body in SENTINELS:
                entry.text = entry.text.replace(body, trailing, 1) if body else entry.text + trailing
            elif not body.endswith(trailing):
                entry.text = entry.text.rstrip("\n") + "\n" + trailing
    # Entries whose agent never produced anything still need a sentinel.
    in_flight = set(_in_flight_indices(run))
    for idx in _run_entry_indices(run):
        entry = state.entries[idx]
        if is_placeholder_only(entry):
            replace_placeholder(entry, FAILED if idx in in_flight else NO_OUTPUT)
    _log(event_log, "run_done", target=run.target_label, elapsed_s=run.elapsed_secs())
    end_run(state, status="done")


def _run_entry_indices(run: RunState) -> list[int]:
    indices = set(run.agent_entries.values())
    if run.shared_entry is not None:
        indices.add(run.shared_entry)
    return sorted(indices)


def _fail_in_flight(state: AppState, run: RunState, sentinel: str) -> None:
    for idx in _run_entry_indices(run):
        entry = state.entries[idx]
        if is_placeholder_only(entry):
            replace_placeholder(entry, sentinel)


def on_error(state: AppState, event: Error, *, event_log: JSONLEventLog | None = None) -> None:
    run = state.run
    if run is None:
        return
    message = sanitize_runtime_text(event.text).strip() or "request failed"
    _fail_in_flight(state, run, FAILED)
    state.push_entry(EntryKind.ERROR, message)
    _log(event_log, "run_error", target=run.target_label, error=message)
    end_run(state, status="error")


def on_disconnect(state: AppState, *, event_log: JSONLEventLog | None = None) -> None:
    run = state.run
    if run is None:
        return
    logger.debug("run %s lost its worker before a terminal event", run.target_label)
    _fail_in_flight(state, run, DISCONNECTED)
    _log(event_log, "run_disconnected", target=run.target_label)
    end_run(state, status="disconnected")


def apply_event(
    state: AppState,
    event: NormalizedEvent,
    *,
    memory: MemoryStore | None = None,
    event_log: JSONLEventLog | None = None,
) -> None:
    if isinstance(event, AgentStart):
        on_agent_start(state, event, event_log=event_log)
    elif isinstance(event, AgentChunk):
        on_agent_chunk(state, event)
    elif isinstance(event, AgentDone):
        on_agent_done(state, event, memory=memory, event_log=event_log)
    elif isinstance(event, Tool):
        on_tool(state, event)
    elif isinstance(event, Progress):
        on_progress(state, event)
    elif isinstance(event, PromotePrimary):
        on_promote_primary(state, event, event_log=event_log)
    elif isinstance(event, Done):
        on_done(state, event, event_log=event_log)
    elif isinstance(event, Error):
        on_error(state, event, event_log=event_log)
    else:
        logger.debug("ignoring unknown event %r", event)


def poll_worker(
    state: AppState,
    *,
    memory: MemoryStore | None = None,
    event_log: JSONLEventLog | None = None,
) -> bool:
    """
    Drain the current run's mailbox without blocking. Returns whether anything was processed.

    A closed mailbox, or a dead orchestrator thread with nothing left queued, counts as a
    disconnect when no terminal event has been seen.
    """
    processed = False
    while state.run is not None and state.run.mailbox is not None:
        run = state.run
        mailbox = run.mailbox
        try:
            event = mailbox.try_recv()
            if event is None and run.worker is not None and not run.worker.is_alive():
                event = mailbox.try_recv()
                if event is None:
                    raise MailboxDisconnected()
        except MailboxDisconnected:
            on_disconnect(state, event_log=event_log)
            return True
        if event is None:
            break
        apply_event(state, event, memory=memory, event_log=event_log)
        processed = True
    return processed


def cancel_run(
    state: AppState,
    reason: str,
    *,
    sentinel: str = CANCELLED,
    event_log: JSONLEventLog | None = None,
) -> bool:
    """
    Abandon the current run: SIGTERM every registered process, mark in-flight entries, drop the mailbox.

    Entries still showing the placeholder become `sentinel`; partial output keeps its text and
    gets the sentinel on its own line. Returns False when nothing was running.
    """
    run = state.run
    if run is None:
        return False
    pids = run.registry.terminate_all()
    logger.debug("cancel %s: signalled %d process(es)", run.target_label, len(pids))
    run.mailbox = None

    for idx in _in_flight_indices(run):
        entry = state.entries[idx]
        if replace_placeholder(entry, sentinel):
            continue
        body = text_for_model(entry).strip()
        if body and body not in SENTINELS:
            entry.text = entry.text.rstrip("\n") + f"\n{sentinel}"

    state.push_entry(EntryKind.SYSTEM, reason)
    _log(event_log, "run_cancelled", target=run.target_label, reason=reason, pids=len(pids))
    end_run(state, status="interrupted" if sentinel == INTERRUPTED else "cancelled")
    return True
