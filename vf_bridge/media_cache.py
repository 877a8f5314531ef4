"""
URL → Telegram file_id cache.

Keys are normalized, case-folded URLs. The map is bounded; when full, the
oldest inserted key is evicted (insertion order, not LRU). The whole map is
rewritten as one JSON object after a short quiet period following a change.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union

from .config import get_config
from .enums import MediaKind
from .models import MediaCacheEntry
from .streaming.deferred import Debouncer
from .utils.media_urls import cache_key_for

log = logging.getLogger(__name__)

_SAVE_KEY = "media-cache-save"


class MediaCache:
    def __init__(
        self,
        path: Union[str, Path, None] = None,
        *,
        max_entries: Optional[int] = None,
        save_delay: Optional[float] = None,
        debug: Optional[bool] = None,
    ) -> None:
        cfg = get_config()
        self.path = Path(path) if path is not None else Path(cfg.MEDIA_CACHE_PATH)
        self.max_entries = max_entries if max_entries is not None else cfg.MEDIA_CACHE_MAX_ENTRIES
        self.save_delay = save_delay if save_delay is not None else cfg.MEDIA_CACHE_SAVE_DELAY
        self.debug = cfg.DEBUG_MEDIA if debug is None else debug
        self._entries: Dict[str, MediaCacheEntry] = {}
        self._saver = Debouncer()
        self.load()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, url: str) -> bool:
        return cache_key_for(url) in self._entries

    def load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning(f"MEDIA_CACHE_LOAD_FAILED | path={self.path} | error={e}")
            return
        if not isinstance(raw, dict):
            log.warning(f"MEDIA_CACHE_LOAD_FAILED | path={self.path} | error=not a JSON object")
            return
        for key, value in raw.items():
            try:
                self._entries[key] = MediaCacheEntry.from_dict(value)
            except (KeyError, TypeError, ValueError):
                log.debug(f"MEDIA_CACHE_SKIP_ENTRY | key={key}")
        if self.debug:
            log.info(f"MEDIA_CACHE_LOADED | entries={len(self._entries)}")

    def get(self, url: str) -> Optional[MediaCacheEntry]:
        return self._entries.get(cache_key_for(url))

    def remember(self, url: str, kind: MediaKind, file_id: str) -> None:
        key = cache_key_for(url)
        if not key or not file_id:
            return
        if len(self._entries) >= self.max_entries and key not in self._entries:
            oldest = next(iter(self._entries), None)
            if oldest is not None:
                del self._entries[oldest]
        self._entries[key] = MediaCacheEntry(kind=kind, file_id=file_id)
        if self.debug:
            log.info(f"MEDIA_CACHE_STORE | kind={kind.value} | key={key}")
        self._save_soon()

    def evict(self, url: str) -> None:
        if self._entries.pop(cache_key_for(url), None) is not None:
            self._save_soon()

    def flush(self) -> None:
        """Write the cache now (atomic replace)."""
        self._saver.cancel(_SAVE_KEY)
        payload = {key: entry.to_dict() for key, entry in self._entries.items()}
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(payload), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            log.warning(f"MEDIA_CACHE_SAVE_FAILED | path={self.path} | error={e}")
            return
        if self.debug:
            log.info(f"MEDIA_CACHE_SAVED | entries={len(payload)} | path={self.path}")

    def _save_soon(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # no loop to defer on (startup / scripts)
            self.flush()
            return

        async def _save() -> None:
            self.flush()

        self._saver.schedule(_SAVE_KEY, self.save_delay, _save)
