from __future__ import annotations

import os
from pathlib import Path

_TRUTHY_VALUES = {"1", "true", "t", "yes", "y", "on", "enabled", "enable"}


def truthy(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY_VALUES


def truthy_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return truthy(value)


def env_str(name: str, default: str | None = None) -> str | None:
    """Return a stripped env value, treating blank values as unset."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def load_env_file(path: str | Path = ".env", *, override: bool = False) -> bool:
    """
    Load `KEY=VALUE` pairs from a dotenv-style file into the environment.

    Comments and malformed lines are skipped. Existing variables win unless `override=True`.
    Returns True when the file existed.
    """
    env_path = Path(path)
    if not env_path.is_file():
        return False

    for raw_line in env_path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key.startswith("DAGENT_"):
            continue
        if not override and key in os.environ:
            continue
        os.environ[key] = value.strip().strip('"').strip("'")

    return True
