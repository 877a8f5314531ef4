"""
Callback-payload stash.

Telegram caps callback_data at 64 bytes. Longer payloads are parked here and
the button carries a short `CB:` token instead. Tokens are single use, only
redeemable by the user they were issued to, and expire after a fixed TTL.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, Dict, Optional

from .config import get_config
from .models import StashEntry

log = logging.getLogger(__name__)

CALLBACK_PREFIX = "CB:"  # oversized payload store
REQUEST_PREFIX = "RQ:"   # serialized backend request
MAX_CALLBACK_BYTES = 64


class CallbackStash:
    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.time):
        self.ttl = float(ttl_seconds if ttl_seconds is not None else get_config().CALLBACK_TTL_SECONDS)
        self._clock = clock
        self._entries: Dict[str, StashEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def put(self, owner_id: int, payload: str) -> str:
        token = f"{CALLBACK_PREFIX}{uuid.uuid4().hex[:12]}"
        self._entries[token] = StashEntry(owner_id=owner_id, payload=payload, created_at=self._clock())
        log.debug(f"STASH_PUT | owner={owner_id} | token={token} | bytes={len(payload.encode('utf-8'))}")
        return token

    def take(self, token: str, owner_id: int) -> Optional[str]:
        entry = self._entries.get(token)
        if entry is None:
            log.info(f"STASH_MISS | owner={owner_id} | token={token}")
            return None
        if self._expired(entry, self._clock()):
            del self._entries[token]
            log.info(f"STASH_EXPIRED | owner={owner_id} | token={token}")
            return None
        if entry.owner_id != owner_id:
            log.warning(f"STASH_OWNER_MISMATCH | owner={entry.owner_id} | caller={owner_id} | token={token}")
            return None
        del self._entries[token]
        return entry.payload

    def sweep(self) -> int:
        now = self._clock()
        expired = [token for token, entry in self._entries.items() if self._expired(entry, now)]
        for token in expired:
            del self._entries[token]
        if expired:
            log.info(f"STASH_SWEEP | removed={len(expired)} | remaining={len(self._entries)}")
        return len(expired)

    def _expired(self, entry: StashEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl
