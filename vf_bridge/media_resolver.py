"""
Media resolver: get a media URL into the chat, whatever it takes.

Strategies run in order until one produces a message:
  1. cached    re-send a previously issued file_id (evicted on failure)
  2. url       let Telegram fetch the URL itself (skipped when MEDIA_FORCE_UPLOAD)
  3. upload    download into memory and upload the bytes
  4. (always)  the URL as plain text
Within `url` and `upload`, animated formats try animation → document → photo,
everything else photo → document. Every native send that succeeds stores the
issued file_id for reuse.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union

import aiohttp

from .config import get_config
from .enums import MediaKind
from .exceptions import MediaDownloadError, PlatformError
from .media_cache import MediaCache
from .models import MediaBuffer, SentMessage
from .telegram_sink import ChatSink
from .utils.formatter import esc
from .utils.media_urls import is_gif_like, is_image_like, normalize_direct_url

log = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (TelegramBot)"

ANIMATED_ORDER: Tuple[MediaKind, ...] = (MediaKind.ANIMATION, MediaKind.DOCUMENT, MediaKind.PHOTO)
STILL_ORDER: Tuple[MediaKind, ...] = (MediaKind.PHOTO, MediaKind.DOCUMENT)

_CONTENT_TYPE_EXT = (
    ("gif", ".gif"),
    ("webm", ".webm"),
    ("mp4", ".mp4"),
    ("png", ".png"),
    ("jpeg", ".jpg"),
    ("jpg", ".jpg"),
    ("webp", ".webp"),
)


def methods_for(url: str) -> Tuple[MediaKind, ...]:
    return ANIMATED_ORDER if is_gif_like(url) else STILL_ORDER


def filename_for(url: str, content_type: str) -> str:
    ct = (content_type or "").lower()
    for needle, ext in _CONTENT_TYPE_EXT:
        if needle in ct:
            return f"media{ext}"
    if is_gif_like(url):
        return "media.gif"
    return "media.jpg" if is_image_like(url) else "media"


class MediaDownloader:
    """Fetches media bytes over a shared aiohttp session."""

    def __init__(
        self,
        session_factory: Callable[[], Awaitable[aiohttp.ClientSession]],
        max_bytes: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self.max_bytes = max_bytes if max_bytes is not None else get_config().MEDIA_MAX_DOWNLOAD_BYTES

    async def fetch(self, url: str) -> MediaBuffer:
        session = await self._session_factory()
        try:
            async with session.get(url, headers={"User-Agent": USER_AGENT}) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise MediaDownloadError(f"GET {url} returned {resp.status}")
                if resp.content_length is not None and resp.content_length > self.max_bytes:
                    raise MediaDownloadError(f"GET {url} is {resp.content_length} bytes")
                data = bytearray()
                async for chunk in resp.content.iter_chunked(64 * 1024):
                    data.extend(chunk)
                    if len(data) > self.max_bytes:
                        raise MediaDownloadError(f"GET {url} exceeds {self.max_bytes} bytes")
                content_type = resp.headers.get("Content-Type", "")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MediaDownloadError(f"GET {url} failed: {e}") from e
        return MediaBuffer(data=bytes(data), filename=filename_for(url, content_type))


Strategy = Callable[[ChatSink, int, str, Optional[str]], Awaitable[Optional[SentMessage]]]


class MediaResolver:
    def __init__(
        self,
        cache: MediaCache,
        downloader: Optional[MediaDownloader] = None,
        *,
        force_upload: Optional[bool] = None,
        debug: Optional[bool] = None,
    ) -> None:
        cfg = get_config()
        self.cache = cache
        self.downloader = downloader
        self.force_upload = cfg.MEDIA_FORCE_UPLOAD if force_upload is None else force_upload
        self.debug = cfg.DEBUG_MEDIA if debug is None else debug
        self.strategies: List[Tuple[str, Strategy]] = [
            ("cached", self._send_cached),
            ("url", self._send_by_url),
            ("upload", self._send_by_upload),
        ]

    def _log(self, message: str) -> None:
        if self.debug:
            log.info(message)
        else:
            log.debug(message)

    async def send(
        self, sink: ChatSink, chat_id: int, url: str, caption: Optional[str] = None
    ) -> SentMessage:
        """Send `url` as media with an optional HTML caption; never fails over to the caller."""
        direct = normalize_direct_url(url)
        self._log(f"MEDIA_SEND | url={direct} | caption={bool(caption)}")

        for name, strategy in self.strategies:
            sent = await strategy(sink, chat_id, direct, caption)
            if sent is not None:
                self._log(f"MEDIA_SENT | strategy={name} | url={direct}")
                return sent

        log.info(f"MEDIA_FALLBACK_TEXT | url={direct}")
        return await sink.send_text(chat_id, esc(direct))

    async def _send_cached(
        self, sink: ChatSink, chat_id: int, url: str, caption: Optional[str]
    ) -> Optional[SentMessage]:
        entry = self.cache.get(url)
        if entry is None:
            return None
        try:
            return await sink.send_media(chat_id, entry.kind, entry.file_id, caption=caption)
        except PlatformError as e:
            self._log(f"MEDIA_CACHED_FAILED | kind={entry.kind.value} | error={e}")
            self.cache.evict(url)
            return None

    async def _send_by_url(
        self, sink: ChatSink, chat_id: int, url: str, caption: Optional[str]
    ) -> Optional[SentMessage]:
        if self.force_upload:
            return None
        return await self._try_kinds(sink, chat_id, url, url, caption, "url")

    async def _send_by_upload(
        self, sink: ChatSink, chat_id: int, url: str, caption: Optional[str]
    ) -> Optional[SentMessage]:
        if self.downloader is None:
            return None
        try:
            buffer = await self.downloader.fetch(url)
        except MediaDownloadError as e:
            self._log(f"MEDIA_DOWNLOAD_FAILED | url={url} | error={e}")
            return None
        return await self._try_kinds(sink, chat_id, url, buffer, caption, "upload")

    async def _try_kinds(
        self,
        sink: ChatSink,
        chat_id: int,
        url: str,
        media: Union[str, MediaBuffer],
        caption: Optional[str],
        strategy: str,
        kinds: Optional[Sequence[MediaKind]] = None,
    ) -> Optional[SentMessage]:
        for kind in kinds or methods_for(url):
            try:
                sent = await sink.send_media(chat_id, kind, media, caption=caption)
            except PlatformError as e:
                self._log(f"MEDIA_STRATEGY_FAILED | strategy={strategy} | kind={kind.value} | error={e}")
                continue
            file_id = sent.handles.get(kind)
            if file_id:
                self.cache.remember(url, kind, file_id)
            return sent
        return None
