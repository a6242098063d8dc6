"""
Normalized events passed from worker threads to the UI thread.

Every provider adapter is translated into this vocabulary before anything reaches the reducer.
"""

from __future__ import annotations

import queue
from dataclasses import dataclass
from typing import Union

from dagent.agents import Provider


@dataclass(frozen=True)
class AgentStart:
    provider: Provider


@dataclass(frozen=True)
class AgentChunk:
    provider: Provider
    text: str


@dataclass(frozen=True)
class AgentDone:
    provider: Provider


@dataclass(frozen=True)
class Tool:
    provider: Provider | None
    text: str


@dataclass(frozen=True)
class Progress:
    provider: Provider
    text: str


@dataclass(frozen=True)
class Done:
    text: str = ""


@dataclass(frozen=True)
class PromotePrimary:
    provider: Provider
    reason: str


@dataclass(frozen=True)
class Error:
    text: str


NormalizedEvent = Union[AgentStart, AgentChunk, AgentDone, Tool, Progress, Done, PromotePrimary, Error]


class MailboxDisconnected(Exception):
    """The producing side closed the mailbox before sending a terminal event."""


_CLOSED = object()


class Mailbox:
    """
    Multi-producer, single-consumer event queue for one run.

    Producers call `send`; the orchestrator calls `close` when it exits. The UI thread
    polls with `try_recv`, which never blocks. Dropping the consumer's reference is how a
    run is abandoned: late sends still succeed but are never observed.
    """

    def __init__(self) -> None:
        self._queue: queue.SimpleQueue[object] = queue.SimpleQueue()

    def send(self, event: NormalizedEvent) -> None:
        self._queue.put(event)

    def close(self) -> None:
        self._queue.put(_CLOSED)

    def try_recv(self) -> NormalizedEvent | None:
        try:
            item = self._queue.get_nowait()
        except queue.Empty:
            return None
        if item is _CLOSED:
            raise MailboxDisconnected()
        return item  # type: ignore[return-value]
