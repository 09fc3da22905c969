"""
Text normalization tests.

Covers HTML → text conversion, entity decoding, the plain-text path,
whitespace collapse and prompt trimming.
"""

from schoolsync.services.text_cleaner import (
    collapse_whitespace,
    looks_like_html,
    normalize,
    preview,
    trim_for_prompt,
)


def test_html_sample_keeps_text_and_bullets():
    result = normalize("<p>Pickup at <b>3pm</b></p><ul><li>Bring snacks</li></ul>")

    assert "Pickup at 3pm" in result
    assert "<" not in result and ">" not in result

    lines = result.split("\n")
    pickup_line = next(i for i, line in enumerate(lines) if "Pickup at 3pm" in line)
    assert any(line.startswith("• Bring snacks") for line in lines[pickup_line + 1:])


def test_block_tags_become_line_breaks():
    result = normalize("<div>Field trip</div><div>Permission slip due</div><br>Thanks")

    assert result == "Field trip\n\nPermission slip due\n\nThanks"


def test_entities_are_decoded():
    result = normalize("<p>Tom &amp; Jerry&nbsp;Show &#8211; Room &#x41;1 &lt;Gym&gt;</p>")

    assert result == "Tom & Jerry Show – Room A1 <Gym>"


def test_script_and_style_content_dropped():
    result = normalize("<html><head><style>p {color: red}</style></head>"
                       "<body><div>Hello<script>alert(1)</script></div></body></html>")

    assert result == "Hello"


def test_plain_text_only_collapses_whitespace():
    result = normalize("Line 1\r\n\r\n\r\n\r\nLine   2\t\tend  ")

    assert result == "Line 1\n\nLine 2 end"


def test_plain_text_leaves_entities_alone():
    assert normalize("Fish &amp; chips on Friday") == "Fish &amp; chips on Friday"


def test_empty_input():
    assert normalize("") == ""
    assert normalize(None) == ""


def test_normalize_is_deterministic():
    body = "<table><tr><td>Mon</td><td>Pizza</td></tr></table>"
    assert normalize(body) == normalize(body)


def test_looks_like_html():
    assert looks_like_html("<b>x</b>")
    assert not looks_like_html("Grades: 3 < 4")
    assert not looks_like_html("")


def test_comparisons_are_not_markup():
    text = "Grades: 5 < 7 and 9 > 3"

    assert not looks_like_html(text)
    assert normalize(text) == text
    assert looks_like_html("</p>")


def test_collapse_whitespace_limits_blank_lines():
    assert collapse_whitespace("a\n\n\n\n\nb") == "a\n\nb"
    assert collapse_whitespace("  a  \n  b  ") == "a\nb"


def test_trim_for_prompt_cuts_on_line_boundary():
    text = "\n".join(f"line {i:04d}" for i in range(2000))

    trimmed = trim_for_prompt(text, max_chars=1000)

    assert len(trimmed) <= 1000
    assert trimmed.split("\n")[-1] in text.split("\n")
    assert text.startswith(trimmed)


def test_trim_for_prompt_short_text_unchanged():
    assert trim_for_prompt("short", max_chars=100) == "short"


def test_preview_truncates():
    assert preview("x" * 600) == "x" * 500
    assert preview("abc", max_chars=2) == "ab"
    assert preview(None) == ""
