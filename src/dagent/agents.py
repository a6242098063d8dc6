"""Agent binaries DAgent can dispatch to, and PATH discovery for them."""

from __future__ import annotations

import enum
import os
from collections.abc import Iterable
from pathlib import Path


class Provider(str, enum.Enum):
    CLAUDE = "claude"
    CODEX = "codex"

    @property
    def binary(self) -> str:
        return self.value

    @classmethod
    def all(cls) -> list["Provider"]:
        return [cls.CLAUDE, cls.CODEX]

    def __str__(self) -> str:
        return self.value


def provider_from_name(name: str) -> Provider | None:
    try:
        return Provider(name.strip().lower())
    except ValueError:
        return None


def providers_label(providers: Iterable[Provider]) -> str:
    names = [p.value for p in providers]
    return ",".join(names) if names else "none"


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def command_available(binary: str, *, path_env: str | None = None) -> bool:
    raw = os.environ.get("PATH", "") if path_env is None else path_env
    for directory in raw.split(os.pathsep):
        if directory and _is_executable(Path(directory) / binary):
            return True
    return False


def detect_available_providers(*, path_env: str | None = None) -> list[Provider]:
    return [p for p in Provider.all() if command_available(p.binary, path_env=path_env)]
