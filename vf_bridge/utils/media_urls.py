from __future__ import annotations

import re
from typing import Optional

IMG_EXT = re.compile(r"\.(png|jpg|jpeg|webp|bmp|heic|heif)(\?|#|$)", flags=re.IGNORECASE)
GIF_EXT = re.compile(r"\.(gif|webm|mp4)(\?|#|$)", flags=re.IGNORECASE)

_GDRIVE_VIEW = re.compile(r"https?://drive\.google\.com/file/d/([^/]+)/view", flags=re.IGNORECASE)
_DROPBOX_SHARE = re.compile(r"https?://www\.dropbox\.com/s/", flags=re.IGNORECASE)
_IMGUR_GIFV = re.compile(r"https?://i\.imgur\.com/.+\.gifv$", flags=re.IGNORECASE)


def is_image_like(url: Optional[str]) -> bool:
    return isinstance(url, str) and bool(IMG_EXT.search(url))


def is_gif_like(url: Optional[str]) -> bool:
    return isinstance(url, str) and bool(GIF_EXT.search(url))


def looks_like_media(url: Optional[str]) -> bool:
    return is_image_like(url) or is_gif_like(url)


def normalize_direct_url(url: Optional[str]) -> str:
    """Rewrite share/preview links to their direct-download form."""
    if not url:
        return ""
    m = _GDRIVE_VIEW.search(url)
    if m:
        return f"https://drive.google.com/uc?export=download&id={m.group(1)}"
    if _DROPBOX_SHARE.search(url):
        return url.replace("www.dropbox.com", "dl.dropboxusercontent.com").replace("?dl=0", "")
    if _IMGUR_GIFV.search(url):
        return url[: -len(".gifv")] + ".mp4"
    return url


def cache_key_for(url: Optional[str]) -> str:
    return normalize_direct_url(url).strip().lower()
