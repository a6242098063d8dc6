from __future__ import annotations


def truncate(text: str, max_chars: int) -> str:
    """Cut `text` to `max_chars` characters, marking the cut with `...`."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def preview(text: str, max_chars: int) -> str:
    stripped = text.strip()
    if not stripped:
        return ""
    return truncate(stripped, max_chars)


def squash_whitespace(text: str) -> str:
    return " ".join(text.split())


def has_cjk(text: str) -> bool:
    return any("\u4e00" <= ch <= "\u9fff" or "\u3400" <= ch <= "\u4dbf" for ch in text)
