from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path
from typing import Any

from dagent.state_paths import logs_dir
from dagent.utils.env_utils import truthy_env


def _iso_ts() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime())


def _truncate(value: str, limit: int) -> str:
    if limit <= 0:
        return value
    if len(value) <= limit:
        return value
    return value[:limit] + f"...[truncated {len(value) - limit} chars]"


def _max_field_chars() -> int:
    try:
        return int(os.getenv("DAGENT_LOG_MAX_FIELD_CHARS", "8000"))
    except ValueError:
        return 8000


class JSONLEventLog:
    """
    Lightweight JSONL logging of run lifecycle events for replay and timing.

    Writes one JSON object per line to a session log file in `.dagent/logs/`.
    Disabled with `DAGENT_LOG_EVENTS=0`; `DAGENT_LOG_DIR` moves the directory.
    """

    def __init__(self, session_id: str, *, enabled: bool | None = None, log_dir: Path | None = None) -> None:
        self.enabled = truthy_env("DAGENT_LOG_EVENTS", True) if enabled is None else enabled
        raw_dir = os.getenv("DAGENT_LOG_DIR")
        self.log_dir = log_dir or (Path(raw_dir) if raw_dir and raw_dir.strip() else logs_dir())
        self.session_id = session_id
        self.max_field_chars = _max_field_chars()

        self._lock = threading.Lock()
        self.log_path = self.log_dir / f"{time.strftime('%Y%m%d_%H%M%S')}_{self.session_id}.jsonl"

    def _write_append(self, line: str) -> None:
        with self._lock:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.write("\n")

    def log(self, event: str, **payload: Any) -> None:
        if not self.enabled:
            return
        record: dict[str, Any] = {}
        for key, value in payload.items():
            record[key] = _truncate(value, self.max_field_chars) if isinstance(value, str) else value
        record.update({"ts": _iso_ts(), "event": event, "session_id": self.session_id})
        try:
            self._write_append(json.dumps(record, ensure_ascii=False, default=str))
        except OSError:
            # A full disk or read-only state dir turns logging off for the rest of the session.
            self.enabled = False
