from __future__ import annotations

from typing import Any

FAILURE_CATEGORY_QUOTA = "quota"
FAILURE_CATEGORY_PERMISSION = "permission"
FAILURE_CATEGORY_SPAWN = "spawn"
FAILURE_CATEGORY_EXIT = "exit"
FAILURE_CATEGORY_UNKNOWN = "unknown"

_QUOTA_MARKERS = (
    "hit your limit",
    "rate_limit",
    "rate limit",
    "quota",
    "credit balance is too low",
    "insufficient credits",
    "usage limit",
)

_ROOT_MARKERS = ("root", "sudo")

_BYPASS_FLAG = "--dangerously-skip-permissions"

_SPAWN_MARKERS = (
    "spawn failed",
    "no such file or directory",
    "permission denied",
)


def is_quota_error_text(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _QUOTA_MARKERS)


def is_root_bypass_error(text: str) -> bool:
    """True when the agent refused bypass-permission mode because it runs as root/sudo."""
    lowered = (text or "").lower()
    return _BYPASS_FLAG in lowered and any(marker in lowered for marker in _ROOT_MARKERS)


def classify_failure(message: str) -> dict[str, Any]:
    """
    Classify a provider failure reason.

    Returns:
      {
        "category": "quota"|"permission"|"spawn"|"exit"|"unknown",
        "promotable": bool,   # worth switching the primary agent
      }
    """
    text = str(message or "").strip()
    if not text:
        return {"category": FAILURE_CATEGORY_UNKNOWN, "promotable": False}
    if is_quota_error_text(text):
        return {"category": FAILURE_CATEGORY_QUOTA, "promotable": True}
    if is_root_bypass_error(text):
        return {"category": FAILURE_CATEGORY_PERMISSION, "promotable": False}
    lowered = text.lower()
    if any(marker in lowered for marker in _SPAWN_MARKERS):
        return {"category": FAILURE_CATEGORY_SPAWN, "promotable": False}
    if " failed:" in lowered:
        return {"category": FAILURE_CATEGORY_EXIT, "promotable": False}
    return {"category": FAILURE_CATEGORY_UNKNOWN, "promotable": False}
