from __future__ import annotations

import argparse
import logging
import sys

from dagent import __version__
from dagent.agents import Provider, provider_from_name
from dagent.event_log import JSONLEventLog
from dagent.memory import JSONLMemoryStore, MemoryStore
from dagent.session import ChatSession
from dagent.settings import load_settings
from dagent.state_paths import logs_dir
from dagent.utils.env_utils import load_env_file, truthy_env


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dagent",
        description="DAgent - dispatch one prompt to claude and/or codex from a single terminal",
    )
    parser.add_argument("--version", action="version", version=f"dagent {__version__}")
    parser.add_argument(
        "--primary",
        choices=[p.value for p in Provider.all()],
        default=None,
        help="Agent that receives prompts without an @mention (overrides DAGENT_PRIMARY)",
    )
    parser.add_argument(
        "--session",
        dest="session_id",
        default=None,
        help="Session id for shared memory; reuse one to continue an earlier conversation",
    )
    parser.add_argument(
        "--no-memory",
        action="store_true",
        help="Do not persist or read session memory (context comes from this run's transcript only)",
    )
    return parser


def build_session(args: argparse.Namespace) -> ChatSession:
    settings = load_settings()
    memory: MemoryStore | None = None
    if settings.memory and not args.no_memory:
        memory = JSONLMemoryStore()
    session = ChatSession(
        settings=settings,
        primary=provider_from_name(args.primary) if args.primary else None,
        memory=memory,
        session_id=args.session_id,
    )
    session.event_log = JSONLEventLog(session.state.session_id, enabled=settings.log_events)
    return session


def _configure_debug_logging() -> None:
    # The TUI owns the terminal, so diagnostics go to a file next to the event logs.
    log_dir = logs_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG,
        filename=str(log_dir / "dagent-debug.log"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> int:
    load_env_file()
    args = build_parser().parse_args(argv)
    if truthy_env("DAGENT_DEBUG", False):
        _configure_debug_logging()

    session = build_session(args)

    from dagent.tui.app import run_tui

    return run_tui(session)


if __name__ == "__main__":
    sys.exit(main())
