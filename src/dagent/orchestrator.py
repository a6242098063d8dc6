from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from pathlib import Path

from dagent.agents import Provider
from dagent.dispatch import DispatchTarget, missing_providers_message, resolve_dispatch_providers
from dagent.errors import ProviderError
from dagent.events import AgentChunk, AgentDone, AgentStart, Done, Error, Mailbox, PromotePrimary
from dagent.process_registry import PidRegistry
from dagent.providers import pick_promoted_provider, run_provider_stream
from dagent.settings import DagentSettings

logger = logging.getLogger(__name__)

ALL_FAILED_MESSAGE = "all available agents failed for this request"

StreamRunner = Callable[[Provider, str, Mailbox, PidRegistry], str]


def _default_runner(settings: DagentSettings | None, cwd: Path | None = None) -> StreamRunner:
    def _run(provider: Provider, prompt: str, mailbox: Mailbox, registry: PidRegistry) -> str:
        return run_provider_stream(provider, prompt, mailbox, registry, settings=settings, cwd=cwd)

    return _run


def run_agent(
    provider: Provider,
    prompt: str,
    *,
    available: Sequence[Provider],
    mailbox: Mailbox,
    registry: PidRegistry,
    runner: StreamRunner,
) -> bool:
    """Worker body for one agent. Always ends with `AgentDone`; returns whether the agent succeeded."""
    mailbox.send(AgentStart(provider))
    try:
        trailing = runner(provider, prompt, mailbox, registry).strip()
        if trailing:
            mailbox.send(AgentChunk(provider, trailing))
        return True
    except ProviderError as exc:
        reason = str(exc)
        promoted = pick_promoted_provider(provider, available, reason)
        if promoted is not None:
            mailbox.send(PromotePrimary(promoted, reason))
        mailbox.send(AgentChunk(provider, f"{provider.value} error: {reason}"))
        return False
    except Exception as exc:
        logger.exception("%s worker crashed", provider.value)
        mailbox.send(AgentChunk(provider, f"{provider.value} error: {provider.value} crashed: {exc}"))
        return False
    finally:
        mailbox.send(AgentDone(provider))


def execute_line(
    primary: Provider,
    available: Sequence[Provider],
    prompt: str,
    target: DispatchTarget,
    mailbox: Mailbox,
    registry: PidRegistry,
    *,
    settings: DagentSettings | None = None,
    runner: StreamRunner | None = None,
    cwd: Path | None = None,
) -> bool:
    """
    Run `prompt` on every planned agent concurrently and report one outcome on `mailbox`.

    One thread per agent; this call blocks until all of them finish, so callers run it on
    its own thread. Emits `Done("")` if any agent succeeded, otherwise `Error(...)`.
    The mailbox is always closed on exit so the consumer can detect a lost run.
    """
    try:
        providers = resolve_dispatch_providers(primary, available, target)
        if not providers:
            mailbox.send(Error(missing_providers_message(primary, available, target)))
            return False

        runner = runner or _default_runner(settings, cwd)
        results: dict[Provider, bool] = {}

        def _worker(provider: Provider) -> None:
            results[provider] = run_agent(
                provider,
                prompt,
                available=available,
                mailbox=mailbox,
                registry=registry,
                runner=runner,
            )

        threads = [
            threading.Thread(target=_worker, args=(provider,), daemon=True, name=f"dagent-agent-{provider.value}")
            for provider in providers
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        if any(results.get(provider) for provider in providers):
            mailbox.send(Done(""))
            return True
        mailbox.send(Error(ALL_FAILED_MESSAGE))
        return False
    finally:
        mailbox.close()


def start_run(
    primary: Provider,
    available: Sequence[Provider],
    prompt: str,
    target: DispatchTarget,
    mailbox: Mailbox,
    registry: PidRegistry,
    *,
    settings: DagentSettings | None = None,
    runner: StreamRunner | None = None,
    cwd: Path | None = None,
) -> threading.Thread:
    thread = threading.Thread(
        target=execute_line,
        args=(primary, list(available), prompt, target, mailbox, registry),
        kwargs={"settings": settings, "runner": runner, "cwd": cwd},
        daemon=True,
        name="dagent-orchestrator",
    )
    thread.start()
    return thread
