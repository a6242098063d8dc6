from __future__ import annotations

import threading

from conftest import drain
from dagent.agents import Provider
from dagent.dispatch import Primary, ProviderSet, ProviderTarget
from dagent.errors import ProcessExitError, QuotaExceededError
from dagent.events import AgentChunk, AgentDone, AgentStart, Done, Error, Mailbox, PromotePrimary
from dagent.orchestrator import ALL_FAILED_MESSAGE, execute_line, start_run
from dagent.process_registry import PidRegistry

CLAUDE = Provider.CLAUDE
CODEX = Provider.CODEX
QUOTA_REASON = "claude quota/rate limit: credit balance is too low"


def _runner(script):
    """Runner double: `script[provider]` is a callable(mailbox) returning trailing text or raising."""

    def _run(provider, prompt, mailbox, registry):
        return script[provider](mailbox)

    return _run


def _for(events, provider):
    return [e for e in events if getattr(e, "provider", None) is provider and not isinstance(e, PromotePrimary)]


def test_single_provider_three_chunks() -> None:
    def _claude(mailbox):
        for text in ("Hel", "lo", " world"):
            mailbox.send(AgentChunk(CLAUDE, text))
        return ""

    mailbox = Mailbox()
    ok = execute_line(CLAUDE, [CLAUDE], "hi", Primary(), mailbox, PidRegistry(), runner=_runner({CLAUDE: _claude}))

    assert ok is True
    assert drain(mailbox) == [
        AgentStart(CLAUDE),
        AgentChunk(CLAUDE, "Hel"),
        AgentChunk(CLAUDE, "lo"),
        AgentChunk(CLAUDE, " world"),
        AgentDone(CLAUDE),
        Done(""),
        "closed",
    ]


def test_trailing_text_is_sent_as_one_final_chunk() -> None:
    mailbox = Mailbox()
    execute_line(CLAUDE, [CLAUDE], "hi", Primary(), mailbox, PidRegistry(), runner=_runner({CLAUDE: lambda m: "  answer \n"}))
    assert drain(mailbox) == [AgentStart(CLAUDE), AgentChunk(CLAUDE, "answer"), AgentDone(CLAUDE), Done(""), "closed"]


def test_two_provider_quota_promotion() -> None:
    def _claude(mailbox):
        raise QuotaExceededError(QUOTA_REASON, provider="claude")

    def _codex(mailbox):
        mailbox.send(AgentChunk(CODEX, "done by codex"))
        return ""

    mailbox = Mailbox()
    ok = execute_line(
        CLAUDE,
        [CLAUDE, CODEX],
        "task",
        ProviderSet((CLAUDE, CODEX)),
        mailbox,
        PidRegistry(),
        runner=_runner({CLAUDE: _claude, CODEX: _codex}),
    )
    events = drain(mailbox)

    assert ok is True
    assert events[-2:] == [Done(""), "closed"]
    claude_events = _for(events, CLAUDE)
    assert claude_events == [AgentStart(CLAUDE), AgentChunk(CLAUDE, f"claude error: {QUOTA_REASON}"), AgentDone(CLAUDE)]
    assert _for(events, CODEX) == [AgentStart(CODEX), AgentChunk(CODEX, "done by codex"), AgentDone(CODEX)]
    promote = [e for e in events if isinstance(e, PromotePrimary)]
    assert promote == [PromotePrimary(CODEX, QUOTA_REASON)]
    # The advisory precedes the failure text for that agent.
    assert events.index(promote[0]) < events.index(AgentChunk(CLAUDE, f"claude error: {QUOTA_REASON}"))


def test_primary_quota_failure_promotes_and_reports_all_failed() -> None:
    def _claude(mailbox):
        raise QuotaExceededError(QUOTA_REASON, provider="claude")

    mailbox = Mailbox()
    ok = execute_line(CLAUDE, [CLAUDE, CODEX], "task", Primary(), mailbox, PidRegistry(), runner=_runner({CLAUDE: _claude}))

    assert ok is False
    assert drain(mailbox) == [
        AgentStart(CLAUDE),
        PromotePrimary(CODEX, QUOTA_REASON),
        AgentChunk(CLAUDE, f"claude error: {QUOTA_REASON}"),
        AgentDone(CLAUDE),
        Error(ALL_FAILED_MESSAGE),
        "closed",
    ]


def test_non_quota_failure_does_not_promote() -> None:
    def _codex(mailbox):
        raise ProcessExitError("codex failed: boom", provider="codex", returncode=1)

    mailbox = Mailbox()
    execute_line(CLAUDE, [CLAUDE, CODEX], "t", ProviderTarget(CODEX), mailbox, PidRegistry(), runner=_runner({CODEX: _codex}))
    events = drain(mailbox)

    assert not any(isinstance(e, PromotePrimary) for e in events)
    assert AgentChunk(CODEX, "codex error: codex failed: boom") in events
    assert events[-2:] == [Error(ALL_FAILED_MESSAGE), "closed"]


def test_unavailable_target_reports_missing_without_starting() -> None:
    mailbox = Mailbox()
    ok = execute_line(CLAUDE, [CLAUDE], "t", ProviderSet((CLAUDE, CODEX)), mailbox, PidRegistry(), runner=_runner({}))

    assert ok is False
    assert drain(mailbox) == [Error("requested agents not available on PATH: codex"), "closed"]


def test_start_run_uses_a_background_thread() -> None:
    release = threading.Event()

    def _claude(mailbox):
        release.wait(5)
        return "late"

    mailbox = Mailbox()
    thread = start_run(CLAUDE, [CLAUDE], "t", Primary(), mailbox, PidRegistry(), runner=_runner({CLAUDE: _claude}))

    assert thread.daemon is True
    assert thread.is_alive()
    release.set()
    thread.join(5)
    assert drain(mailbox)[-3:] == [AgentDone(CLAUDE), Done(""), "closed"]


def test_unexpected_worker_exception_still_reports_done(caplog) -> None:
    def _codex(mailbox):
        raise RuntimeError("parser bug")

    mailbox = Mailbox()
    runner = _runner({CLAUDE: lambda m: "ok from claude", CODEX: _codex})
    ok = execute_line(CLAUDE, [CLAUDE, CODEX], "t", ProviderSet((CLAUDE, CODEX)), mailbox, PidRegistry(), runner=runner)
    events = drain(mailbox)

    assert ok is True
    assert _for(events, CODEX) == [AgentStart(CODEX), AgentChunk(CODEX, "codex error: codex crashed: parser bug"), AgentDone(CODEX)]
    assert events[-2:] == [Done(""), "closed"]
    assert "codex worker crashed" in caplog.text
