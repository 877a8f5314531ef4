"""
Content segmentation: split message text into ordered text / image segments.

Two image conventions are recognised:
  ![alt](https://host/pic.png)          markdown image, anywhere in the text
  Image: https://host/pic.png           a whole line, label then URL
                                        (labels: image, photo, picture, gif, animation)

Images inside an anchor (`[![alt](img)](target)` or `<a ...>...</a>`) are
links and stay in the text for the markup normalizer. While text is still
streaming, an anchor that has not closed yet is held back as a whole, so the
image inside it is never mistaken for media.

Finished (non-streamed) text can also be read as a gallery: an image alone
on its line takes the line above it as its caption, and an optional
"[View Menu](url)" line right after it as a caption link.
"""

from __future__ import annotations

import re
from typing import List, Optional, Tuple, Union

from ..enums import SegmentKind
from ..models import GalleryItem, Segment

GALLERY_TITLE_MAX_CHARS = 200

_MD_IMAGE = re.compile(r"!\[[^\]\n]*\]\((https?://[^\s)]+)\)")
_LABELED_IMAGE = re.compile(
    r"^[ \t]*(?:image|photo|picture|gif|animation)[ \t]*:[ \t]*<?(https?://[^\s>]+)>?[ \t]*$",
    flags=re.IGNORECASE | re.MULTILINE,
)
_LABEL_PREFIX = re.compile(r"^[ \t]*(?:image|photo|picture|gif|animation)[ \t]*:", flags=re.IGNORECASE)
_LINKED_IMAGE = re.compile(r"\[!\[[^\]]*\]\([^)\s]*\)\]\([^)\s]*\)")
_HTML_ANCHOR = re.compile(r"<a\b[^>]*>.*?</a>", flags=re.IGNORECASE | re.DOTALL)
# An image marker still being streamed: "![alt", "![alt](", "![alt](https://ho"
_PARTIAL_IMAGE_TAIL = re.compile(r"\[?!\[[^\]\n]*(?:\](?:\([^)\s]*)?)?$")
# "[![alt](img)", "[![alt](img)](", "[![alt](img)](https://ta"
_PARTIAL_LINKED_IMAGE = re.compile(r"\[!\[[^\]\n]*\]\([^)\s]*\)(?:\](?:\([^)\s]*)?)?$")
# "<a href=...", or an opened <a ...> whose </a> has not arrived
_PARTIAL_HTML_ANCHOR = re.compile(r"<a\b[^>]*(?:>(?:(?!</a>)[\s\S])*)?$", flags=re.IGNORECASE)

_GALLERY_IMAGE_LINE = re.compile(r"^[ \t]*!\[[^\]\n]*\]\((https?://[^\s)]+)\)[ \t]*$")
_MENU_LINK_LINE = re.compile(r"^[ \t]*\[View Menu\]\((https?://[^\s)]+)\)[ \t]*$", flags=re.IGNORECASE)


def _anchor_spans(text: str) -> List[Tuple[int, int]]:
    spans = [m.span() for m in _LINKED_IMAGE.finditer(text)]
    spans.extend(m.span() for m in _HTML_ANCHOR.finditer(text))
    return spans


def _inside(span: Tuple[int, int], blocked: List[Tuple[int, int]]) -> bool:
    start, end = span
    return any(b_start <= start and end <= b_end for b_start, b_end in blocked)


def strip_partial_tail(text: str) -> str:
    """Drop an unfinished image marker or anchor from the end of still-growing text."""
    stripped = _PARTIAL_HTML_ANCHOR.sub("", text, count=1)
    stripped = _PARTIAL_LINKED_IMAGE.sub("", stripped, count=1)
    stripped = _PARTIAL_IMAGE_TAIL.sub("", stripped, count=1)
    if not stripped.endswith("\n"):
        head, _, last_line = stripped.rpartition("\n")
        if _LABEL_PREFIX.match(last_line):
            stripped = head
    return stripped


def find_images(text: str) -> List[Tuple[int, int, str]]:
    """(start, end, url) of every media marker, in source order."""
    blocked = _anchor_spans(text)
    found: List[Tuple[int, int, str]] = []
    for rx in (_MD_IMAGE, _LABELED_IMAGE):
        for m in rx.finditer(text):
            if not _inside(m.span(), blocked):
                found.append((m.start(), m.end(), m.group(1)))
    found.sort(key=lambda item: item[0])

    # a match can't start inside the previous one
    out: List[Tuple[int, int, str]] = []
    for item in found:
        if out and item[0] < out[-1][1]:
            continue
        out.append(item)
    return out


def split_segments(text: str, partial: bool = False) -> List[Tuple[Segment, int]]:
    """Like segment_content, paired with the offset in `text` where each segment ends."""
    if not text:
        return []
    if partial:
        text = strip_partial_tail(text)

    out: List[Tuple[Segment, int]] = []
    cursor = 0
    for start, end, url in find_images(text):
        before = text[cursor:start].strip()
        if before:
            out.append((Segment(SegmentKind.TEXT, before), start))
        out.append((Segment(SegmentKind.IMAGE, url), end))
        cursor = end

    tail = text[cursor:].strip()
    if tail:
        out.append((Segment(SegmentKind.TEXT, tail), len(text)))
    return out


def segment_content(text: str, partial: bool = False) -> List[Segment]:
    """Split text into alternating text and image segments.

    `partial` is for text that is still being streamed: an unfinished image
    marker at the end is held back instead of being shown as text.
    """
    return [segment for segment, _ in split_segments(text, partial)]


def _take_title(lines: List[str]) -> str:
    """Pop the nearest non-blank line off `lines` if it reads like a caption."""
    index = len(lines) - 1
    while index >= 0 and not lines[index].strip():
        index -= 1
    if index < 0:
        return ""
    candidate = lines[index].strip()
    if len(candidate) > GALLERY_TITLE_MAX_CHARS or find_images(candidate):
        return ""
    del lines[index:]
    return candidate


def split_gallery(text: str) -> List[Union[str, GalleryItem]]:
    """Split finished text into plain text blocks and captioned gallery items, in order.

    Text with no image alone on a line comes back as a single block.
    """
    lines = text.split("\n")
    blocks: List[Union[str, GalleryItem]] = []
    pending: List[str] = []
    i = 0
    while i < len(lines):
        match = _GALLERY_IMAGE_LINE.match(lines[i])
        if match is None:
            pending.append(lines[i])
            i += 1
            continue

        title = _take_title(pending)
        menu_url: Optional[str] = None
        if i + 1 < len(lines):
            link = _MENU_LINK_LINE.match(lines[i + 1])
            if link is not None:
                menu_url = link.group(1)
                i += 1
        block = "\n".join(pending).strip()
        if block:
            blocks.append(block)
        pending = []
        blocks.append(GalleryItem(image_url=match.group(1), title=title, menu_url=menu_url))
        i += 1

    block = "\n".join(pending).strip()
    if block:
        blocks.append(block)
    return blocks
