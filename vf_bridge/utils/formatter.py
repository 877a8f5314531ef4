from __future__ import annotations

import html
import re
from typing import Optional


_ZERO_WIDTH = re.compile("[\\u200b\\u200c\\u200d\\u2060\\ufeff]")
_LITERAL_NEWLINE = re.compile(r"(?:\\r)?\\n")
_NBSP = re.compile("&nbsp;|\\u00a0", flags=re.IGNORECASE)
_TRAILING_WS = re.compile(r"[ \t]+$", flags=re.MULTILINE)
_EXCESS_BLANKS = re.compile(r"\n{3,}")

# [![alt](image)](target) - a linked image is a link, not media
_LINKED_IMAGE = re.compile(r"\[!\[([^\]]*)\]\((https?://[^\s)]+)\)\]\((https?://[^\s)]+)\)")
# [text](url) but NOT ![alt](url)
_LINK = re.compile(r"(?<!!)\[([^\]]+?)\]\((https?://[^\s)]+)\)")
_BOLD = re.compile(r"\*\*(.+?)\*\*")
_ITALIC = re.compile(r"(^|[^*])\*(?!\s)(.+?)\*(?!\*)")
_HTML_TAG = re.compile(r"</?[a-zA-Z][^>]*>")


def esc(text: str) -> str:
    """Escape the three characters Telegram's HTML parse mode cares about."""
    return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _href(url: str) -> str:
    # url comes from already-escaped text; only quotes still need care
    return url.replace('"', "&quot;")


def normalize_spacing(text: Optional[str]) -> str:
    """Trim trailing spaces per line, collapse 3+ newlines to a blank line, strip."""
    if not text:
        return ""
    text = _TRAILING_WS.sub("", text)
    return _EXCESS_BLANKS.sub("\n\n", text).strip()


def clean_backend_text(raw: Optional[str]) -> str:
    """Remove the artifacts the conversational backend leaves in message text.

    - CRLF / CR to LF, literal "\\n" escapes to real newlines
    - zero-width characters dropped, non-breaking spaces to plain spaces
    - trailing whitespace trimmed, blank-line runs collapsed
    """
    text = "" if raw is None else str(raw)
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _LITERAL_NEWLINE.sub("\n", text)
    text = _ZERO_WIDTH.sub("", text)
    text = _NBSP.sub(" ", text)
    return normalize_spacing(text)


def md_to_html(raw: Optional[str]) -> str:
    """Markdown to Telegram HTML: bold, italic and hyperlinks only.

    Everything else is escaped and shown literally. Image syntax is left alone;
    the content segmenter pulls images out before text reaches this point.
    """
    if not raw:
        return ""
    s = esc(raw)

    s = _LINKED_IMAGE.sub(
        lambda m: f'<a href="{_href(m.group(3))}">{m.group(1) or "image"}</a>', s
    )
    s = _LINK.sub(lambda m: f'<a href="{_href(m.group(2))}">{m.group(1)}</a>', s)
    s = _BOLD.sub(r"<b>\1</b>", s)
    s = _ITALIC.sub(lambda m: f"{m.group(1)}<i>{m.group(2)}</i>", s)
    return s


def html_to_plain(markup: str) -> str:
    """Strip tags and unescape entities; used when Telegram rejects our markup."""
    return html.unescape(_HTML_TAG.sub("", markup or ""))
