from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dagent.agents import Provider
from dagent.error_classification import is_quota_error_text, is_root_bypass_error
from dagent.errors import PermissionRejectedError, ProcessExitError, ProcessSpawnError, ProviderError, QuotaExceededError
from dagent.events import AgentChunk, Mailbox, Progress, Tool
from dagent.process_registry import PidRegistry
from dagent.sanitize import sanitize_runtime_text

logger = logging.getLogger(__name__)

LINE_DELTA = "delta"
LINE_TOOL = "tool"
LINE_PROGRESS = "progress"


@dataclass(frozen=True)
class ParsedLine:
    kind: str
    text: str


def parse_json_line(line: str) -> dict[str, Any] | None:
    try:
        value = json.loads(line)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def json_get(value: Any, *keys: str) -> Any:
    """Walk nested dict keys, returning None on the first miss."""
    for key in keys:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def json_str(value: Any, *keys: str) -> str | None:
    found = json_get(value, *keys)
    return found if isinstance(found, str) else None


class StreamAdapter:
    """
    Runs one agent binary for one prompt and translates its JSONL stdout into events.

    Lifecycle: spawned -> streaming -> exit 0 (done) or non-zero (one blocking fallback run).
    Subclasses provide the command lines and the per-line shape parsing.
    """

    provider: Provider
    # Working directory for the spawned binary; None inherits ours.
    cwd: Path | None = None
    # Some agents report quota problems on lines that carry no text delta.
    scan_raw_lines_for_quota = False

    @property
    def name(self) -> str:
        return self.provider.value

    # -- provider specifics -------------------------------------------------

    def stream_command(self, prompt: str) -> list[str]:
        raise NotImplementedError

    def fallback_command(self, prompt: str) -> list[str]:
        raise NotImplementedError

    def parse_line(self, value: dict[str, Any], prompt: str) -> ParsedLine | None:
        raise NotImplementedError

    def final_text(self, value: dict[str, Any]) -> str | None:
        return None

    # -- shared lifecycle ---------------------------------------------------

    def run(self, prompt: str, mailbox: Mailbox, registry: PidRegistry) -> str:
        """
        Stream one prompt. Returns trailing text not already sent as chunks (often "").

        Raises:
            ProviderError: spawn, exit or quota failure after the fallback attempt.
        """
        self._check_open(registry)
        try:
            proc = subprocess.Popen(
                self.stream_command(prompt),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                cwd=self.cwd,
                start_new_session=True,
            )
        except OSError as exc:
            raise ProcessSpawnError(f"{self.name} spawn failed: {exc}", provider=self.name) from exc
        if not registry.register(proc.pid):
            proc.wait()
            raise self._cancelled_error()

        raw_lines: list[dict[str, Any]] = []
        quota_message = ""
        saw_quota = False
        emitted = False
        last_progress = ""

        if proc.stdout is None:
            raise ProviderError(f"{self.name} stdout missing", provider=self.name)
        try:
            for raw_line in proc.stdout:
                line = raw_line.rstrip("\r\n")
                if not line.strip():
                    continue
                if self.scan_raw_lines_for_quota and is_quota_error_text(line):
                    saw_quota = True
                value = parse_json_line(line)
                if value is None:
                    logger.debug("%s: skipping non-JSON line: %.120s", self.name, line)
                    continue
                raw_lines.append(value)

                parsed = self.parse_line(value, prompt)
                if parsed is None:
                    continue
                text = sanitize_runtime_text(parsed.text)
                if parsed.kind == LINE_TOOL:
                    mailbox.send(Tool(self.provider, text))
                elif parsed.kind == LINE_PROGRESS:
                    if text != last_progress:
                        mailbox.send(Progress(self.provider, text))
                        last_progress = text
                elif parsed.kind == LINE_DELTA:
                    if not text.strip():
                        continue
                    if is_quota_error_text(text):
                        saw_quota = True
                        quota_message = quota_message or text
                        continue
                    emitted = True
                    mailbox.send(AgentChunk(self.provider, text))
        except OSError as exc:
            raise ProviderError(f"{self.name} stream read failed: {exc}", provider=self.name) from exc

        returncode = proc.wait()
        if returncode == 0:
            if saw_quota and not emitted:
                raise QuotaExceededError(self._quota_message(quota_message), provider=self.name)
            if emitted:
                return ""
            for value in reversed(raw_lines):
                final = self.final_text(value)
                if final is None:
                    continue
                if is_quota_error_text(final):
                    raise QuotaExceededError(self._quota_message(final), provider=self.name)
                return final
            return ""

        if returncode < 0 or registry.closed:
            # Signal exit or cancelled run: no fallback.
            raise ProcessExitError(
                f"{self.name} stopped by signal {-returncode}" if returncode < 0 else f"{self.name} run cancelled",
                provider=self.name,
                returncode=returncode,
            )
        logger.debug("%s stream exited with %s; running fallback", self.name, returncode)
        return self.run_fallback(prompt, mailbox, registry)

    def run_fallback(self, prompt: str, mailbox: Mailbox, registry: PidRegistry) -> str:
        returncode, stdout, stderr = self.run_once(self.fallback_command(prompt), registry)
        return self.finish_fallback(returncode, stdout, stderr)

    def run_once(self, command: list[str], registry: PidRegistry) -> tuple[int, str, str]:
        """Blocking single-shot invocation; the pid is registered so cancellation can reach it."""
        self._check_open(registry)
        try:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=self.cwd,
                start_new_session=True,
            )
        except OSError as exc:
            raise ProcessSpawnError(f"{self.name} fallback failed: {exc}", provider=self.name) from exc
        if not registry.register(proc.pid):
            proc.communicate()
            raise self._cancelled_error()
        stdout, stderr = proc.communicate()
        return proc.returncode, stdout or "", stderr or ""

    def finish_fallback(self, returncode: int, stdout: str, stderr: str) -> str:
        if returncode != 0:
            message = f"{self.name} failed: {stderr.strip()}"
            if is_root_bypass_error(stderr):
                raise PermissionRejectedError(message, provider=self.name)
            raise ProcessExitError(message, provider=self.name, returncode=returncode)
        text = stdout.strip()
        if is_quota_error_text(text):
            raise QuotaExceededError(self._quota_message(text), provider=self.name)
        return text

    def _check_open(self, registry: PidRegistry) -> None:
        if registry.closed:
            raise self._cancelled_error()

    def _cancelled_error(self) -> ProcessExitError:
        return ProcessExitError(f"{self.name} run cancelled", provider=self.name)

    def _quota_message(self, text: str) -> str:
        if not text.strip():
            return f"{self.name} quota/rate limit reached"
        return f"{self.name} quota/rate limit: {text.strip()}"
