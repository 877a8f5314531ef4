"""
Voiceflow Dialog Manager runtime client (aiohttp).

Buffered mode:  POST {runtime}/state/user/{user}/interact        -> JSON traces
Streaming mode: POST {runtime}/v2/project/{project}/user/{user}/interact/stream
                                                                  -> SSE `trace` events, then `end`
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from .config import get_config
from .exceptions import BackendError
from .utils.helpers import traces_of
from .utils.sse import SSERecord, iter_sse

log = logging.getLogger(__name__)

Action = Dict[str, Any]


class VoiceflowClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        runtime_url: Optional[str] = None,
        *,
        project_id: Optional[str] = None,
        version_id: Optional[str] = None,
        use_version_header: Optional[bool] = None,
        timeout: Optional[float] = None,
        user_prefix: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        cfg = get_config()
        self.api_key = api_key if api_key is not None else cfg.VF_API_KEY
        self.runtime_url = (runtime_url if runtime_url is not None else cfg.VF_RUNTIME_URL).rstrip("/")
        self.project_id = project_id if project_id is not None else cfg.VF_PROJECT_ID
        self.version_id = version_id if version_id is not None else cfg.VF_VERSION_ID
        self.use_version_header = cfg.VF_USE_VERSION_HEADER if use_version_header is None else use_version_header
        self.timeout = cfg.VF_TIMEOUT_SECONDS if timeout is None else timeout
        self.user_prefix = cfg.VF_USER_PREFIX if user_prefix is None else user_prefix
        self._session = session
        self._owns_session = session is None

    async def session(self) -> aiohttp.ClientSession:
        """Shared HTTP session, created on first use on the running loop."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def user_key(self, user_id: int) -> str:
        return f"{self.user_prefix}{user_id}"

    def headers(self, streaming: bool = False) -> Dict[str, str]:
        headers = {"Authorization": self.api_key, "Content-Type": "application/json"}
        if self.use_version_header and self.version_id:
            headers["versionID"] = self.version_id
        if streaming:
            headers["Accept"] = "text/event-stream"
        return headers

    def _state_url(self, user_id: int) -> str:
        return f"{self.runtime_url}/state/user/{self.user_key(user_id)}"

    def _stream_url(self, user_id: int) -> str:
        return (
            f"{self.runtime_url}/v2/project/{self.project_id}/user/{self.user_key(user_id)}"
            f"/interact/stream?completion_events=true"
        )

    # ═══════════════════════════════════════════════════════════
    # BUFFERED INTERACTION
    # ═══════════════════════════════════════════════════════════

    async def reset(self, user_id: int) -> None:
        """Delete the user's dialog state; failures are logged, never raised."""
        session = await self.session()
        try:
            async with session.delete(
                self._state_url(user_id),
                headers=self.headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status >= 300:
                    log.warning(f"VF_RESET_FAILED | user={user_id} | status={resp.status}")
                    return
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning(f"VF_RESET_FAILED | user={user_id} | error={e}")
            return
        log.info(f"VF_RESET | user={user_id}")

    async def launch(self, user_id: int) -> List[Dict[str, Any]]:
        return await self.interact(user_id, {"type": "launch"})

    async def interact_text(self, user_id: int, text: str) -> List[Dict[str, Any]]:
        return await self.interact(user_id, {"type": "text", "payload": text})

    async def send_request(self, user_id: int, request: Action) -> List[Dict[str, Any]]:
        return await self.interact(user_id, request)

    async def interact(self, user_id: int, action: Action) -> List[Dict[str, Any]]:
        session = await self.session()
        url = f"{self._state_url(user_id)}/interact"
        log.debug(f"VF_INTERACT | user={user_id} | action={action.get('type')}")
        try:
            async with session.post(
                url,
                json={"action": action},
                headers=self.headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status < 200 or resp.status >= 300:
                    body = await resp.text()
                    raise BackendError(f"interact failed: {body[:200]}", status=resp.status)
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise BackendError(f"interact timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise BackendError(f"interact failed: {e}") from e

        traces = traces_of(data)
        log.info(f"VF_INTERACT_OK | user={user_id} | action={action.get('type')} | traces={len(traces)}")
        return traces

    # ═══════════════════════════════════════════════════════════
    # STREAMING INTERACTION
    # ═══════════════════════════════════════════════════════════

    async def stream(self, user_id: int, action: Action) -> AsyncIterator[SSERecord]:
        """Yield SSE records for one interaction; the last one is end-of-stream.

        The timeout bounds each read, not the whole answer.
        """
        session = await self.session()
        log.debug(f"VF_STREAM | user={user_id} | action={action.get('type')}")
        try:
            async with session.post(
                self._stream_url(user_id),
                json={"action": action},
                headers=self.headers(streaming=True),
                timeout=aiohttp.ClientTimeout(total=None, sock_read=self.timeout),
            ) as resp:
                if resp.status < 200 or resp.status >= 300:
                    body = await resp.text()
                    raise BackendError(f"stream failed: {body[:200]}", status=resp.status)
                async for record in iter_sse(resp.content.iter_any()):
                    yield record
        except asyncio.TimeoutError as e:
            raise BackendError(f"stream stalled for {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise BackendError(f"stream failed: {e}") from e
