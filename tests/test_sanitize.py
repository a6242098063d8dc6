from __future__ import annotations

from dagent.sanitize import sanitize_runtime_text


def test_strips_csi_color_sequences() -> None:
    assert sanitize_runtime_text("a\x1b[31mred\x1b[0m done") == "ared done"


def test_csi_with_parameters_and_private_marker() -> None:
    assert sanitize_runtime_text("\x1b[?25lhidden cursor\x1b[2K") == "hidden cursor"


def test_non_csi_escape_consumes_one_character() -> None:
    # ESC followed by anything other than "[" ends the escape after that character.
    assert sanitize_runtime_text("\x1b]x") == "x"
    assert sanitize_runtime_text("\x1b7saved") == "saved"


def test_carriage_return_becomes_newline_once() -> None:
    assert sanitize_runtime_text("a\rb") == "a\nb"
    assert sanitize_runtime_text("a\r\nb") == "a\n\nb"
    assert sanitize_runtime_text("a\n\rb") == "a\nb"
    assert sanitize_runtime_text("\rstart") == "\nstart"


def test_drops_control_characters_but_keeps_newline_and_tab() -> None:
    assert sanitize_runtime_text("a\tb\x00c\x07d\x7fe\x85f\ng") == "a\tbcdef\ng"


def test_unicode_text_passes_through() -> None:
    text = "héllo 你好 ok"
    assert sanitize_runtime_text(text) == text


def test_unterminated_escape_at_end_is_dropped() -> None:
    assert sanitize_runtime_text("tail\x1b[12") == "tail"
