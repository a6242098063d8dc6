from __future__ import annotations

import json
from typing import Any

from dagent.agents import Provider
from dagent.providers.base import LINE_DELTA, LINE_PROGRESS, ParsedLine, StreamAdapter, json_get, json_str
from dagent.settings import CodexSettings, load_settings
from dagent.utils.text_utils import has_cjk, preview, truncate

_COMMAND_PREVIEW_CHARS = 96
_ARGS_PREVIEW_CHARS = 80
_THOUGHT_PREVIEW_CHARS = 110
_OUTPUT_PREVIEW_CHARS = 88

# (english, chinese) wording pairs for progress notices.
_MESSAGES: dict[str, tuple[str, str]] = {
    "session": ("codex session started", "codex 会话已开始"),
    "turn_started": ("codex analyzing request", "codex 正在分析需求"),
    "turn_completed": ("codex wrapping up response", "codex 正在整理回复"),
    "thinking": ("codex thinking...", "codex 思考中..."),
    "error": ("codex emitted an error event", "codex 运行中出现错误事件"),
    "exec": ("codex exec: {cmd}", "codex 正在执行: {cmd}"),
    "call": ("codex calling tool: {name}", "codex 正在调用工具: {name}"),
    "call_args": ("codex tool: {name} | {args}", "codex 工具调用: {name} | {args}"),
    "step_started": ("codex {step}...", "codex 正在处理: {step}"),
    "thought": ("codex thought: {thought}", "codex 思路: {thought}"),
    "exec_code": ("codex exec done ({code}): {cmd}", "codex 执行完成({code}): {cmd}"),
    "exec_status": ("codex exec {status}: {cmd}", "codex 执行{status}: {cmd}"),
    "exec_output": (" | {output}", " | 输出: {output}"),
    "call_done": ("codex finished: {name}", "codex 工具完成: {name}"),
    "step_done": ("codex finished {step}", "codex 已完成: {step}"),
}


def _msg(key: str, zh: bool, **kwargs: Any) -> str:
    english, chinese = _MESSAGES[key]
    return (chinese if zh else english).format(**kwargs)


def humanize_item_type(raw: str) -> str:
    return raw.replace("_", " ").replace("-", " ")


def _command_preview(item: dict[str, Any]) -> str:
    command = item.get("command")
    if isinstance(command, str):
        return preview(command, _COMMAND_PREVIEW_CHARS) or "command"
    return "command"


def _call_name(item: dict[str, Any], default: str) -> str:
    return json_str(item, "name") or json_str(item, "function", "name") or default


def _call_args(item: dict[str, Any]) -> str:
    args = item.get("arguments")
    if args is None:
        args = json_get(item, "function", "arguments")
    if args is None:
        return ""
    if isinstance(args, str):
        return args
    try:
        return json.dumps(args, ensure_ascii=False)
    except (TypeError, ValueError):
        return ""


def _output_preview(item: dict[str, Any]) -> str:
    output = item.get("aggregated_output")
    if not isinstance(output, str):
        return ""
    lines = [line.strip() for line in output.splitlines() if line.strip()][:2]
    return preview(" | ".join(lines), _OUTPUT_PREVIEW_CHARS)


def extract_progress(value: dict[str, Any], *, zh: bool = False) -> str | None:
    """Map a codex JSON event to a one-line progress notice (None for silent events)."""
    event_type = value.get("type")
    if event_type in {"session.started", "thread.started"}:
        return _msg("session", zh)
    if event_type == "turn.started":
        return _msg("turn_started", zh)
    if event_type == "turn.completed":
        return _msg("turn_completed", zh)
    if event_type == "error":
        return _msg("error", zh)

    item = value.get("item")
    if not isinstance(item, dict):
        return None
    item_type = item.get("type") if isinstance(item.get("type"), str) else "step"

    if event_type == "item.started":
        if item_type == "command_execution":
            return _msg("exec", zh, cmd=_command_preview(item))
        if item_type in {"function_call", "tool_call"}:
            name = _call_name(item, "unknown")
            args = _call_args(item)
            if not args:
                return _msg("call", zh, name=name)
            return _msg("call_args", zh, name=name, args=truncate(args, _ARGS_PREVIEW_CHARS))
        if item_type == "reasoning":
            return _msg("thinking", zh)
        return _msg("step_started", zh, step=humanize_item_type(item_type))

    if event_type == "item.completed":
        if item_type == "agent_message":
            return None
        if item_type == "reasoning":
            thought = item.get("text")
            thought = preview(thought, _THOUGHT_PREVIEW_CHARS) if isinstance(thought, str) else ""
            return _msg("thought", zh, thought=thought) if thought else _msg("thinking", zh)
        if item_type == "command_execution":
            cmd = _command_preview(item)
            exit_code = item.get("exit_code")
            if isinstance(exit_code, int) and not isinstance(exit_code, bool):
                message = _msg("exec_code", zh, code=exit_code, cmd=cmd)
            else:
                status = item.get("status") if isinstance(item.get("status"), str) else "completed"
                message = _msg("exec_status", zh, status=status, cmd=cmd)
            output = _output_preview(item)
            if output:
                message += _msg("exec_output", zh, output=output)
            return message
        if item_type in {"function_call", "tool_call"}:
            return _msg("call_done", zh, name=_call_name(item, "tool"))
        return _msg("step_done", zh, step=humanize_item_type(item_type))

    return None


def extract_text(value: dict[str, Any]) -> str | None:
    if value.get("type") != "item.completed":
        return None
    if json_get(value, "item", "type") != "agent_message":
        return None
    text = json_str(value, "item", "text")
    return text.replace("\r", "\n") if text is not None else None


class CodexAdapter(StreamAdapter):
    """`codex exec --json` event stream."""

    provider = Provider.CODEX

    def __init__(self, settings: CodexSettings | None = None) -> None:
        self.settings = settings or load_settings().codex

    def _base_args(self) -> list[str]:
        return [
            self.provider.binary,
            "--ask-for-approval",
            self.settings.approval_policy,
            "exec",
            "-s",
            self.settings.sandbox,
        ]

    def stream_command(self, prompt: str) -> list[str]:
        return [*self._base_args(), "--json", "--skip-git-repo-check", prompt]

    def fallback_command(self, prompt: str) -> list[str]:
        return [*self._base_args(), "--skip-git-repo-check", prompt]

    def parse_line(self, value: dict[str, Any], prompt: str) -> ParsedLine | None:
        text = extract_text(value)
        if text is not None:
            return ParsedLine(LINE_DELTA, text)
        progress = extract_progress(value, zh=has_cjk(prompt))
        if progress is not None:
            return ParsedLine(LINE_PROGRESS, progress)
        return None

    def final_text(self, value: dict[str, Any]) -> str | None:
        return extract_text(value)
