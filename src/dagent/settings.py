from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from dagent.state_paths import settings_path as _default_settings_path
from dagent.utils.env_utils import env_str, truthy

_PROVIDER_NAMES = ("claude", "codex")


def _deep_merge_dict(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dicts (override wins). Lists are replaced, not merged."""
    out: dict[str, Any] = dict(base)
    for key, value in override.items():
        out_value = out.get(key)
        if isinstance(value, dict) and isinstance(out_value, dict):
            out[key] = _deep_merge_dict(out_value, value)
        else:
            out[key] = value
    return out


def _str_or(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    if isinstance(value, str) and value.strip().isdigit() and int(value.strip()) > 0:
        return int(value.strip())
    return default


@dataclass(frozen=True)
class ClaudeSettings:
    permission_mode: str = "acceptEdits"
    allowed_tools: str | None = "Bash"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ClaudeSettings":
        allowed = raw.get("allowed_tools")
        return cls(
            permission_mode=_str_or(raw.get("permission_mode"), "acceptEdits"),
            allowed_tools=allowed.strip() if isinstance(allowed, str) and allowed.strip() else None,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"permission_mode": self.permission_mode}
        if self.allowed_tools:
            out["allowed_tools"] = self.allowed_tools
        return out


@dataclass(frozen=True)
class CodexSettings:
    approval_policy: str = "never"
    sandbox: str = "danger-full-access"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CodexSettings":
        return cls(
            approval_policy=_str_or(raw.get("approval_policy"), "never"),
            sandbox=_str_or(raw.get("sandbox"), "danger-full-access"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"approval_policy": self.approval_policy, "sandbox": self.sandbox}


@dataclass(frozen=True)
class UISettings:
    active_poll_ms: int = 33
    idle_poll_ms: int = 100
    running_draw_interval_ms: int = 33
    activity_log_lines: int = 7

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "UISettings":
        return cls(
            active_poll_ms=_positive_int(raw.get("active_poll_ms"), 33),
            idle_poll_ms=_positive_int(raw.get("idle_poll_ms"), 100),
            running_draw_interval_ms=_positive_int(raw.get("running_draw_interval_ms"), 33),
            activity_log_lines=_positive_int(raw.get("activity_log_lines"), 7),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_poll_ms": self.active_poll_ms,
            "idle_poll_ms": self.idle_poll_ms,
            "running_draw_interval_ms": self.running_draw_interval_ms,
            "activity_log_lines": self.activity_log_lines,
        }


@dataclass(frozen=True)
class DagentSettings:
    primary: str = "claude"
    memory: bool = True
    log_events: bool = True
    claude: ClaudeSettings = field(default_factory=ClaudeSettings)
    codex: CodexSettings = field(default_factory=CodexSettings)
    ui: UISettings = field(default_factory=UISettings)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "DagentSettings":
        primary = _str_or(raw.get("primary"), "claude").lower()
        if primary not in _PROVIDER_NAMES:
            primary = "claude"
        memory = raw.get("memory")
        log_events = raw.get("log_events")
        claude_raw = raw.get("claude")
        codex_raw = raw.get("codex")
        ui_raw = raw.get("ui")
        return cls(
            primary=primary,
            memory=truthy(memory) if memory is not None else True,
            log_events=truthy(log_events) if log_events is not None else True,
            claude=ClaudeSettings.from_dict(claude_raw) if isinstance(claude_raw, dict) else ClaudeSettings(),
            codex=CodexSettings.from_dict(codex_raw) if isinstance(codex_raw, dict) else CodexSettings(),
            ui=UISettings.from_dict(ui_raw) if isinstance(ui_raw, dict) else UISettings(),
            raw=raw,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary": self.primary,
            "memory": self.memory,
            "log_events": self.log_events,
            "claude": self.claude.to_dict(),
            "codex": self.codex.to_dict(),
            "ui": self.ui.to_dict(),
        }


def load_settings(path: Path | None = None) -> DagentSettings:
    """
    Load DAgent settings from `.dagent/settings.json` (project-local).

    Environment overrides (applied to the returned value, never persisted):
    - DAGENT_PRIMARY: default agent (claude|codex)
    - DAGENT_CLAUDE_PERMISSION_MODE / DAGENT_CLAUDE_ALLOWED_TOOLS
    - DAGENT_CODEX_APPROVAL_POLICY / DAGENT_CODEX_SANDBOX
    - DAGENT_MEMORY: enable/disable session memory
    - DAGENT_LOG_EVENTS: enable/disable the JSONL event log
    """
    settings_file = path or _default_settings_path()
    raw: dict[str, Any] = {}
    if settings_file.is_file():
        try:
            loaded = json.loads(settings_file.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            loaded = {}
        raw = loaded if isinstance(loaded, dict) else {}

    defaults = default_settings_template().to_dict()
    merged = _deep_merge_dict(defaults, raw) if raw else defaults
    settings = DagentSettings.from_dict(merged)

    primary = env_str("DAGENT_PRIMARY")
    if primary and primary.lower() in _PROVIDER_NAMES:
        settings = replace(settings, primary=primary.lower())

    claude = settings.claude
    permission_mode = env_str("DAGENT_CLAUDE_PERMISSION_MODE")
    if permission_mode:
        claude = replace(claude, permission_mode=permission_mode)
    allowed_tools = env_str("DAGENT_CLAUDE_ALLOWED_TOOLS")
    if allowed_tools:
        claude = replace(claude, allowed_tools=allowed_tools)

    codex = settings.codex
    approval_policy = env_str("DAGENT_CODEX_APPROVAL_POLICY")
    if approval_policy:
        codex = replace(codex, approval_policy=approval_policy)
    sandbox = env_str("DAGENT_CODEX_SANDBOX")
    if sandbox:
        codex = replace(codex, sandbox=sandbox)

    memory = os.getenv("DAGENT_MEMORY")
    log_events = os.getenv("DAGENT_LOG_EVENTS")
    return replace(
        settings,
        claude=claude,
        codex=codex,
        memory=truthy(memory) if memory is not None else settings.memory,
        log_events=truthy(log_events) if log_events is not None else settings.log_events,
    )


def save_settings(settings: DagentSettings, path: Path | None = None) -> Path:
    settings_file = path or _default_settings_path()
    settings_file.parent.mkdir(parents=True, exist_ok=True)
    settings_file.write_text(json.dumps(settings.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return settings_file


def default_settings_template() -> DagentSettings:
    # Precedence (highest -> lowest): CLI args, env, `.dagent/settings.json`, these built-ins.
    return DagentSettings(
        primary="claude",
        memory=True,
        log_events=True,
        claude=ClaudeSettings(permission_mode="acceptEdits", allowed_tools="Bash"),
        codex=CodexSettings(approval_policy="never", sandbox="danger-full-access"),
        ui=UISettings(),
        raw={},
    )
