"""
Text Normalization Module for Email Processing Pipeline.

Handles:
1. HTML detection
2. HTML → Plain Text conversion (block tags to newlines, list bullets)
3. Entity decoding
4. Whitespace collapse

Everything here is deterministic and side-effect free: the normalized body
feeds both the content fingerprint and the LLM prompt.
"""

import re
from bs4 import BeautifulSoup

# Maximum body characters sent to the LLM (1 token ≈ 4 chars)
MAX_PROMPT_CHARS = 12000  # ~3000 tokens

# A tag starts with a letter (or "/" + letter); "3 < 4 and 5 > 2" is not markup
HTML_TAG_PATTERN = re.compile(r"</?[a-zA-Z][^>]*>")

BLOCK_TAGS = ["div", "p", "br", "h1", "h2", "h3", "h4", "h5", "h6", "tr", "td", "th"]

# Tags whose content is never readable text
DROP_TAGS = ["script", "style", "head"]


def looks_like_html(body: str) -> bool:
    """True if the body contains at least one HTML tag."""
    return bool(HTML_TAG_PATTERN.search(body or ""))


def collapse_whitespace(text: str) -> str:
    """
    Normalize line endings and runs of whitespace.

    CRLF/CR → LF, runs of spaces/tabs → one space, no spaces around
    newlines, 3+ newlines → 2, trimmed.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def html_to_text(raw_html: str) -> str:
    """
    Convert HTML email content to clean plain text.

    Block-level tags become line breaks, list items get a leading bullet,
    every other tag is dropped and entities are decoded.

    Args:
        raw_html: Raw HTML string from email body

    Returns:
        Plain text with normalized whitespace
    """
    if not raw_html:
        return ""

    soup = BeautifulSoup(raw_html, "html.parser")

    for tag in soup(DROP_TAGS):
        tag.decompose()

    # List items on their own bulleted line
    for li in soup.find_all("li"):
        li.insert_before("\n• ")
        li.insert_after("\n")

    for tag in soup.find_all(BLOCK_TAGS):
        tag.insert_before("\n")
        tag.insert_after("\n")

    # html.parser has already decoded named and numeric entities
    text = soup.get_text()
    text = text.replace("\xa0", " ")

    return collapse_whitespace(text)


def normalize(body: str) -> str:
    """
    Turn a raw (text or HTML) message body into clean plain text.

    Never raises; empty input yields an empty string.
    """
    if not body:
        return ""
    if looks_like_html(body):
        return html_to_text(body)
    return collapse_whitespace(body)


def trim_for_prompt(text: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    """Cut text to the prompt budget on a line boundary where possible."""
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    last_newline = cut.rfind("\n")
    if last_newline > max_chars // 2:
        cut = cut[:last_newline]
    return cut.rstrip()


def preview(text: str, max_chars: int = 500) -> str:
    """Truncated normalized text stored alongside the processed email."""
    return (text or "")[:max_chars]
