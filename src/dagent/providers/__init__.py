"""Stream adapters for the supported agent binaries."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from dagent.agents import Provider
from dagent.error_classification import classify_failure
from dagent.events import Mailbox
from dagent.process_registry import PidRegistry
from dagent.providers.base import StreamAdapter
from dagent.providers.claude import ClaudeAdapter
from dagent.providers.codex import CodexAdapter
from dagent.settings import DagentSettings, load_settings

__all__ = [
    "ClaudeAdapter",
    "CodexAdapter",
    "StreamAdapter",
    "build_adapter",
    "pick_promoted_provider",
    "run_provider_stream",
]


def build_adapter(
    provider: Provider,
    settings: DagentSettings | None = None,
    *,
    cwd: Path | None = None,
) -> StreamAdapter:
    settings = settings or load_settings()
    adapter: StreamAdapter
    if provider is Provider.CLAUDE:
        adapter = ClaudeAdapter(settings.claude)
    elif provider is Provider.CODEX:
        adapter = CodexAdapter(settings.codex)
    else:
        raise ValueError(f"Unsupported provider: {provider!r}")
    adapter.cwd = cwd
    return adapter


def run_provider_stream(
    provider: Provider,
    prompt: str,
    mailbox: Mailbox,
    registry: PidRegistry,
    *,
    settings: DagentSettings | None = None,
    cwd: Path | None = None,
) -> str:
    return build_adapter(provider, settings, cwd=cwd).run(prompt, mailbox, registry)


def pick_promoted_provider(current: Provider, available: Iterable[Provider], reason: str) -> Provider | None:
    """Suggest another available agent when `current` failed on quota/rate limits."""
    if not classify_failure(reason)["promotable"]:
        return None
    for provider in available:
        if provider is not current:
            return provider
    return None
