"""Strip terminal control sequences from provider text before it reaches app state."""

from __future__ import annotations

_ESC = "\x1b"


def sanitize_runtime_text(text: str) -> str:
    """
    Remove escape introducers and CSI sequences, fold carriage returns into newlines,
    and drop control characters other than newline and tab.
    """
    out: list[str] = []
    in_escape = False
    in_csi = False

    for ch in text:
        if in_escape:
            if in_csi:
                # CSI final byte is in 0x40..0x7E.
                if "@" <= ch <= "~":
                    in_escape = False
                    in_csi = False
                continue
            if ch == "[":
                in_csi = True
                continue
            in_escape = False
            continue

        if ch == _ESC:
            in_escape = True
            continue

        if ch == "\r":
            if not out or out[-1] != "\n":
                out.append("\n")
            continue

        if _is_control(ch) and ch not in "\n\t":
            continue

        out.append(ch)

    return "".join(out)


def _is_control(ch: str) -> bool:
    code = ord(ch)
    return code < 0x20 or 0x7F <= code <= 0x9F
