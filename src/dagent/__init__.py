"""DAgent package."""

from __future__ import annotations

import importlib

__version__ = "0.4.0"

__all__ = ["__version__"]


def __getattr__(name: str):  # type: ignore[no-untyped-def]
    # Keep `import dagent` cheap; the CLI and TUI pull in argparse/textual on demand.
    if name in {"cli", "session"}:
        module = importlib.import_module(f"{__name__}.{name}")
        globals()[name] = module
        return module
    raise AttributeError(name)
