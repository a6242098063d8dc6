from __future__ import annotations

import shlex
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

COMMAND_PREFIX = "/"


@dataclass(frozen=True)
class CommandInvocation:
    name: str
    args: list[str]
    raw: str


@dataclass(frozen=True)
class CommandDispatchResult:
    handled: bool
    should_exit: bool = False


CommandHandler = Callable[[Any, CommandInvocation], CommandDispatchResult]


@dataclass(frozen=True)
class CommandSpec:
    name: str
    handler: CommandHandler
    help: str
    usage: str | None = None


class CommandRegistry:
    def __init__(self) -> None:
        self._commands: dict[str, CommandSpec] = {}
        self._aliases: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        *,
        help: str,
        usage: str | None = None,
        aliases: tuple[str, ...] = (),
    ) -> None:
        key = (name or "").strip().lstrip(COMMAND_PREFIX).lower()
        if not key:
            raise ValueError("Command name is required")
        self._commands[key] = CommandSpec(name=key, handler=handler, help=help, usage=usage)
        for alias in aliases:
            self._aliases[alias.strip().lstrip(COMMAND_PREFIX).lower()] = key

    def list_commands(self) -> list[CommandSpec]:
        return sorted(self._commands.values(), key=lambda c: c.name)

    def resolve(self, name: str) -> CommandSpec | None:
        key = self._aliases.get(name, name)
        return self._commands.get(key)

    def parse(self, line: str) -> CommandInvocation | None:
        raw = (line or "").strip()
        if not raw.startswith(COMMAND_PREFIX):
            return None

        try:
            parts = shlex.split(raw)
        except ValueError:
            parts = raw.split()

        if not parts:
            return None

        name = parts[0].lstrip(COMMAND_PREFIX).strip().lower()
        return CommandInvocation(name=name, args=parts[1:], raw=raw)

    def help_lines(self) -> list[str]:
        lines: list[str] = []
        for spec in self.list_commands():
            usage = f"{COMMAND_PREFIX}{spec.name} {spec.usage}".strip() if spec.usage else f"{COMMAND_PREFIX}{spec.name}"
            lines.append(f"{usage}: {spec.help}")
        return lines
