"""Tests for free-text sanitization."""
import pytest

from utils.security_utils import sanitize_text, sanitized_length

SAMPLES = [
    "",
    "   plain   text  ",
    "<b>bold</b> move",
    "<scr<b>ipt>alert(1)</script>",
    "click javascript:alert(1)",
    "JaVaScRiPt :void(0) and vbscript:x and data:text/html",
    "javajavascript:script:alert(1)",
    "<<a>a href='javascript:1'>>",
    "line\none\r\n\ttwo",
    "x" * 1200,
    ("word " * 300),
    "nul\x00byte",
]


def test_strips_tags():
    assert sanitize_text("<p>Hello <em>there</em></p>") == "Hello there"


def test_neutralizes_script_schemes():
    assert "javascript" not in sanitize_text("go to javascript:alert(1)").lower()
    assert "vbscript:" not in sanitize_text("VBScript:msgbox").lower()
    assert "data:" not in sanitize_text("data:text/html;base64,xx").lower()


def test_nested_payload_cannot_reassemble():
    result = sanitize_text("javajavascript:script:alert(1)")
    assert "javascript:" not in result.lower()


def test_collapses_whitespace_and_trims():
    assert sanitize_text("  a \n\n b\t\tc  ") == "a b c"


def test_clamps_length():
    assert len(sanitize_text("y" * 5000)) == 1000
    assert len(sanitize_text("y" * 50, max_length=10)) == 10


def test_clamp_does_not_leave_trailing_space():
    text = ("a" * 999) + " bcd"
    result = sanitize_text(text)
    assert not result.endswith(" ")
    assert len(result) == 999


def test_none_is_empty():
    assert sanitize_text(None) == ""


@pytest.mark.parametrize("sample", SAMPLES)
def test_sanitize_is_idempotent(sample):
    once = sanitize_text(sample)
    assert sanitize_text(once) == once


def test_sanitized_length_counts_after_cleanup():
    # 24 visible characters padded with markup and whitespace
    text = "   <i>abcdefghijklmnopqrstuvwx</i>    "
    assert sanitized_length(text) == 24
