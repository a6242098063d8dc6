from __future__ import annotations

import json
from pathlib import Path

import pytest

from dagent.event_log import JSONLEventLog


def _records(log: JSONLEventLog) -> list[dict]:
    return [json.loads(line) for line in log.log_path.read_text(encoding="utf-8").splitlines()]


def test_event_log_writes_one_record_per_event(tmp_path: Path) -> None:
    log = JSONLEventLog("s1", enabled=True, log_dir=tmp_path / "logs")
    log.log("run_start", target="claude", prompt_chars=5)
    log.log("run_done", status="done")

    records = _records(log)
    assert [r["event"] for r in records] == ["run_start", "run_done"]
    assert records[0]["target"] == "claude"
    assert records[0]["prompt_chars"] == 5
    assert all(r["session_id"] == "s1" and r["ts"] for r in records)
    assert log.log_path.name.endswith("_s1.jsonl")


def test_event_log_truncates_long_string_fields(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DAGENT_LOG_MAX_FIELD_CHARS", "10")
    log = JSONLEventLog("s1", enabled=True, log_dir=tmp_path)
    log.log("run_error", message="x" * 25)

    assert _records(log)[0]["message"] == "x" * 10 + "...[truncated 15 chars]"


def test_event_log_disabled_by_env(tmp_path: Path) -> None:
    log = JSONLEventLog("s1", log_dir=tmp_path / "logs")
    assert log.enabled is False
    log.log("run_start")
    assert not (tmp_path / "logs").exists()


def test_event_log_dir_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DAGENT_LOG_EVENTS", "true")
    monkeypatch.setenv("DAGENT_LOG_DIR", str(tmp_path / "elsewhere"))
    log = JSONLEventLog("s2")
    log.log("agent_start", provider="codex")

    assert log.log_path.parent == tmp_path / "elsewhere"
    assert _records(log)[0]["provider"] == "codex"


def test_event_log_turns_itself_off_when_unwritable(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    log = JSONLEventLog("s1", enabled=True, log_dir=blocker)

    log.log("run_start")

    assert log.enabled is False
