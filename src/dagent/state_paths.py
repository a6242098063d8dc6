from __future__ import annotations

import os
from pathlib import Path


def state_dir(*, cwd: Path | None = None) -> Path:
    """
    Return the base directory for DAgent runtime state (settings/logs/memory).

    Default: `<cwd>/.dagent`
    Override: `DAGENT_STATE_DIR` (relative values resolve against `cwd`).

    Directories are not created here; writers mkdir as needed.
    """
    base = (cwd or Path.cwd()).expanduser().resolve()

    raw = os.getenv("DAGENT_STATE_DIR")
    if isinstance(raw, str) and raw.strip():
        p = Path(raw.strip()).expanduser()
        if not p.is_absolute():
            p = base / p
        return p.resolve()

    return base / ".dagent"


def settings_path(*, cwd: Path | None = None) -> Path:
    return state_dir(cwd=cwd) / "settings.json"


def logs_dir(*, cwd: Path | None = None) -> Path:
    return state_dir(cwd=cwd) / "logs"


def memory_dir(*, cwd: Path | None = None) -> Path:
    return state_dir(cwd=cwd) / "memory"
