from __future__ import annotations

import json
from typing import Any

from dagent.agents import Provider
from dagent.error_classification import is_root_bypass_error
from dagent.events import Mailbox, Tool
from dagent.process_registry import PidRegistry
from dagent.providers.base import LINE_DELTA, LINE_TOOL, ParsedLine, StreamAdapter, json_get, json_str
from dagent.settings import ClaudeSettings, load_settings
from dagent.utils.text_utils import truncate

BYPASS_MODE = "bypassPermissions"
DOWNGRADE_MODE = "acceptEdits"

_TOOL_PREVIEW_CHARS = 80


def _tool_input_preview(value: Any) -> str:
    if isinstance(value, dict) and isinstance(value.get("command"), str):
        return value["command"]
    if value is None:
        return ""
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


class ClaudeAdapter(StreamAdapter):
    """`claude --print --output-format stream-json` event stream."""

    provider = Provider.CLAUDE
    scan_raw_lines_for_quota = True

    def __init__(self, settings: ClaudeSettings | None = None) -> None:
        self.settings = settings or load_settings().claude

    def _permission_args(self, permission_mode: str) -> list[str]:
        args = ["--permission-mode", permission_mode]
        if self.settings.allowed_tools:
            args += ["--allowedTools", self.settings.allowed_tools]
        return args

    def stream_command(self, prompt: str) -> list[str]:
        return [
            self.provider.binary,
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
            *self._permission_args(self.settings.permission_mode),
            prompt,
        ]

    def fallback_command(self, prompt: str, *, permission_mode: str | None = None) -> list[str]:
        mode = permission_mode or self.settings.permission_mode
        return [self.provider.binary, *self._permission_args(mode), "-p", prompt]

    def parse_line(self, value: dict[str, Any], prompt: str) -> ParsedLine | None:
        event_type = value.get("type")
        if event_type == "stream_event":
            inner_type = json_str(value, "event", "type")
            if inner_type == "content_block_delta":
                delta_type = json_get(value, "event", "delta", "type")
                if isinstance(delta_type, str) and delta_type != "text_delta":
                    return None
                text = json_str(value, "event", "delta", "text")
                return ParsedLine(LINE_DELTA, text) if text is not None else None
            if inner_type == "content_block_start":
                if json_get(value, "event", "content_block", "type") != "tool_use":
                    return None
                name = json_str(value, "event", "content_block", "name") or "unknown"
                return ParsedLine(LINE_TOOL, f"claude calling tool: {name}")
            return None

        if event_type in {"tool_use", "tool"}:
            name = json_str(value, "name") or json_str(value, "tool") or "unknown"
            input_preview = _tool_input_preview(value.get("input"))
            if not input_preview:
                return ParsedLine(LINE_TOOL, f"claude tool: {name}")
            return ParsedLine(LINE_TOOL, f"claude tool: {name} | {truncate(input_preview, _TOOL_PREVIEW_CHARS)}")

        return None

    def final_text(self, value: dict[str, Any]) -> str | None:
        event_type = value.get("type")
        if event_type == "assistant":
            content = json_get(value, "message", "content")
            if not isinstance(content, list):
                return None
            for item in content:
                if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str):
                    return item["text"]
            return None
        if event_type == "result":
            return json_str(value, "result")
        return None

    def run_fallback(self, prompt: str, mailbox: Mailbox, registry: PidRegistry) -> str:
        mode = self.settings.permission_mode
        returncode, stdout, stderr = self.run_once(self.fallback_command(prompt, permission_mode=mode), registry)
        if returncode != 0 and mode == BYPASS_MODE and is_root_bypass_error(stderr):
            mailbox.send(
                Tool(self.provider, f"claude {BYPASS_MODE} blocked under root; retrying with {DOWNGRADE_MODE}")
            )
            returncode, stdout, stderr = self.run_once(
                self.fallback_command(prompt, permission_mode=DOWNGRADE_MODE), registry
            )
        return self.finish_fallback(returncode, stdout, stderr)
