"""Resolve `@agent` mentions in a submitted line into the set of agents to run."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Union

from dagent.agents import Provider, provider_from_name
from dagent.errors import DispatchError


@dataclass(frozen=True)
class Primary:
    pass


@dataclass(frozen=True)
class ProviderTarget:
    provider: Provider


@dataclass(frozen=True)
class ProviderSet:
    providers: tuple[Provider, ...]


DispatchTarget = Union[Primary, ProviderTarget, ProviderSet]


def target_providers(target: DispatchTarget, primary: Provider) -> list[Provider]:
    if isinstance(target, ProviderTarget):
        return [target.provider]
    if isinstance(target, ProviderSet):
        return list(target.providers)
    return [primary]


def parse_dispatch_override(line: str) -> tuple[DispatchTarget, str] | None:
    """
    Split `@name` mentions from the prompt.

    Returns None when the line has no mentions (dispatch to the primary agent). Otherwise
    returns the target and the remaining prompt text.

    Raises:
        DispatchError: unknown mention, or nothing left to send once mentions are removed.
    """
    tokens = line.split()
    if not tokens:
        return None

    mentions = [token for token in tokens if token.startswith("@")]
    if not mentions:
        return None

    prompt = " ".join(token for token in tokens if not token.startswith("@"))
    if not prompt.strip():
        raise DispatchError(f"usage: {' '.join(mentions)} <task>")

    providers: list[Provider] = []
    for mention in mentions:
        provider = provider_from_name(mention.lstrip("@"))
        if provider is None:
            raise DispatchError(f"unknown dispatch target {mention}; use @claude or @codex")
        if provider not in providers:
            providers.append(provider)

    if len(providers) == 1:
        return ProviderTarget(providers[0]), prompt
    return ProviderSet(tuple(providers)), prompt


def resolve_dispatch_providers(
    primary: Provider,
    available: Sequence[Provider],
    target: DispatchTarget,
) -> list[Provider]:
    """Providers to run, in order. Empty when any requested provider is unavailable."""
    requested = target_providers(target, primary)
    if any(provider not in available for provider in requested):
        return []
    return requested


def missing_providers_message(primary: Provider, available: Sequence[Provider], target: DispatchTarget) -> str:
    if isinstance(target, ProviderTarget):
        return f"{target.provider.value} not available on PATH"
    if isinstance(target, ProviderSet):
        missing = [p.value for p in target.providers if p not in available]
        if not missing:
            return "requested agents not available on PATH"
        return f"requested agents not available on PATH: {','.join(missing)}"
    return f"primary agent {primary.value} not available on PATH"
