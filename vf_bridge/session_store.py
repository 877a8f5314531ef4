"""
Conversation session store: decides when a user's backend dialog is stale.

A session resets when the user has never been seen, has been idle longer than
SESSION_RESET_HOURS, or (optionally) their local calendar day changed.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import redis.asyncio as aioredis

from .config import get_config
from .models import SessionRecord
from .utils.helpers import local_day_stamp

log = logging.getLogger(__name__)


class SessionPolicy:
    def __init__(
        self,
        reset_hours: Optional[float] = None,
        reset_on_day_change: Optional[bool] = None,
        utc_offset_hours: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        cfg = get_config()
        self.reset_hours = cfg.SESSION_RESET_HOURS if reset_hours is None else reset_hours
        self.reset_on_day_change = cfg.SESSION_RESET_ON_DAY_CHANGE if reset_on_day_change is None else reset_on_day_change
        self.utc_offset_hours = cfg.LOCAL_UTC_OFFSET_HOURS if utc_offset_hours is None else utc_offset_hours
        self.clock = clock

    def fresh_record(self) -> SessionRecord:
        now = self.clock()
        return SessionRecord(last_ts=now, last_day=local_day_stamp(now, self.utc_offset_hours))

    def is_stale(self, record: Optional[SessionRecord]) -> bool:
        if record is None:
            return True
        now = self.clock()
        if self.reset_hours > 0 and now - record.last_ts > self.reset_hours * 3600:
            return True
        if self.reset_on_day_change and local_day_stamp(now, self.utc_offset_hours) != record.last_day:
            return True
        return False


class MemorySessionStore:
    """Process-local sessions."""

    def __init__(self, policy: Optional[SessionPolicy] = None) -> None:
        self.policy = policy or SessionPolicy()
        self._records: Dict[int, SessionRecord] = {}

    async def get(self, user_id: int) -> Optional[SessionRecord]:
        return self._records.get(user_id)

    async def should_reset(self, user_id: int) -> bool:
        return self.policy.is_stale(await self.get(user_id))

    async def touch(self, user_id: int) -> None:
        self._records[user_id] = self.policy.fresh_record()

    async def ping(self) -> bool:
        return True

    async def evict(self) -> int:
        """Drop records that would reset anyway."""
        stale = [user_id for user_id, record in self._records.items() if self.policy.is_stale(record)]
        for user_id in stale:
            del self._records[user_id]
        if stale:
            log.info(f"SESSION_EVICT | removed={len(stale)} | remaining={len(self._records)}")
        return len(stale)

    async def close(self) -> None:
        return None


class RedisSessionStore:
    """Sessions in Redis, one JSON value per user with a key TTL."""

    KEY_PREFIX = "vf_bridge:session:"

    def __init__(self, client: Optional[aioredis.Redis] = None, policy: Optional[SessionPolicy] = None) -> None:
        cfg = get_config()
        self.policy = policy or SessionPolicy()
        self.redis = client or aioredis.Redis(
            host=cfg.REDIS_HOST,
            port=cfg.REDIS_PORT,
            db=cfg.REDIS_DB,
            decode_responses=True,
        )
        if self.policy.reset_hours > 0:
            self.ttl_seconds = int(self.policy.reset_hours * 3600)
        else:
            self.ttl_seconds = cfg.REDIS_TTL_SECONDS

    def _key(self, user_id: int) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    async def get(self, user_id: int) -> Optional[SessionRecord]:
        raw = await self.redis.get(self._key(user_id))
        if not raw:
            return None
        try:
            data: Dict[str, Any] = json.loads(raw)
            return SessionRecord(last_ts=float(data["last_ts"]), last_day=str(data["last_day"]))
        except (ValueError, KeyError, TypeError) as e:
            log.warning(f"SESSION_DECODE_FAILED | user={user_id} | error={e}")
            return None

    async def should_reset(self, user_id: int) -> bool:
        return self.policy.is_stale(await self.get(user_id))

    async def touch(self, user_id: int) -> None:
        record = self.policy.fresh_record()
        await self.redis.set(self._key(user_id), json.dumps(record.to_dict()), ex=self.ttl_seconds)

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except Exception as e:  # noqa: BLE001
            log.warning(f"REDIS_PING_FAILED | error={e}")
            return False

    async def evict(self) -> int:
        # key TTL does it
        return 0

    async def close(self) -> None:
        await self.redis.aclose()


def build_session_store(backend: Optional[str] = None):
    backend = (backend or get_config().SESSION_BACKEND).lower()
    if backend == "redis":
        log.info("SESSION_STORE | backend=redis")
        return RedisSessionStore()
    log.info("SESSION_STORE | backend=memory")
    return MemorySessionStore()
