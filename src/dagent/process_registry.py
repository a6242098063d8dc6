from __future__ import annotations

import contextlib
import os
import signal
import threading


def terminate_pid(pid: int) -> None:
    """Send SIGTERM to a spawned agent and its process group."""
    if os.name == "posix" and hasattr(os, "killpg"):
        with contextlib.suppress(OSError):
            os.killpg(pid, signal.SIGTERM)
            return
    with contextlib.suppress(OSError):
        os.kill(pid, signal.SIGTERM)


class PidRegistry:
    """
    Process ids spawned for one run.

    Shared by the worker threads (register) and the UI thread (drain/terminate). The lock is
    only held to copy or swap the list, never while a process is waited on or signalled.

    `terminate_all` closes the registry: adapters check `closed` before spawning, and a pid
    registered after the close is terminated on the spot.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pids: list[int] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def register(self, pid: int) -> bool:
        """Track `pid`. Returns False (and terminates it) when the run was already cancelled."""
        with self._lock:
            accepted = not self._closed
            if accepted:
                self._pids.append(pid)
        if not accepted:
            terminate_pid(pid)
        return accepted

    def snapshot(self) -> list[int]:
        with self._lock:
            return list(self._pids)

    def drain(self) -> list[int]:
        with self._lock:
            pids, self._pids = self._pids, []
        return pids

    def terminate_all(self) -> list[int]:
        with self._lock:
            self._closed = True
            pids, self._pids = self._pids, []
        for pid in pids:
            terminate_pid(pid)
        return pids

    def __len__(self) -> int:
        with self._lock:
            return len(self._pids)
