"""
Bridge runtime: one asyncio loop in a background thread.

Everything that touches per-user state (aiogram handlers, render queues,
debounce timers, the periodic sweep) runs on that loop. The Flask side only
hands work over with run_coroutine_threadsafe.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Coroutine, Dict, List, Optional

from aiogram import Bot, Dispatcher, F, Router
from aiogram.exceptions import TelegramAPIError
from aiogram.filters import CommandStart
from aiogram.types import CallbackQuery, Message

from .bridge import Bridge, Transcriber
from .callback_stash import CallbackStash
from .config import BaseConfig, get_config
from .media_cache import MediaCache
from .media_resolver import MediaDownloader, MediaResolver
from .models import TurnContext
from .session_store import build_session_store
from .streaming.completion import CompletionStreamer
from .telegram_sink import TelegramSink
from .trace_dispatcher import KeyboardTargetTracker, TraceDispatcher
from .voiceflow_client import VoiceflowClient

log = logging.getLogger(__name__)


def _message_ctx(message: Message) -> TurnContext:
    user_id = message.from_user.id if message.from_user else message.chat.id
    return TurnContext(user_id=user_id, chat_id=message.chat.id)


def build_router(bridge: Bridge) -> Router:
    router = Router(name="vf_bridge")

    @router.message(CommandStart())
    async def on_start(message: Message) -> None:
        await bridge.enqueue(_message_ctx(message), bridge.handle_start)

    @router.callback_query()
    async def on_callback(query: CallbackQuery) -> None:
        try:
            await query.answer()
        except TelegramAPIError as e:
            log.debug(f"CALLBACK_ANSWER_FAILED | user={query.from_user.id} | error={e}")
        chat_id = query.message.chat.id if query.message else query.from_user.id
        ctx = TurnContext(user_id=query.from_user.id, chat_id=chat_id)
        await bridge.enqueue(ctx, bridge.handle_callback, query.data)

    @router.message(F.voice)
    async def on_voice(message: Message, bot: Bot) -> None:
        audio: Optional[bytes] = None
        if bridge.transcriber is not None:
            buffer = await bot.download(message.voice)
            audio = buffer.read() if buffer is not None else None
        await bridge.enqueue(_message_ctx(message), bridge.handle_voice, audio)

    @router.message(F.text)
    async def on_text(message: Message) -> None:
        await bridge.enqueue(_message_ctx(message), bridge.handle_text, message.text)

    return router


class BridgeRuntime:
    def __init__(self, config: Optional[BaseConfig] = None, transcriber: Optional[Transcriber] = None) -> None:
        self.cfg = config or get_config()
        self.transcriber = transcriber
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.bot: Optional[Bot] = None
        self.dp: Optional[Dispatcher] = None
        self.bridge: Optional[Bridge] = None
        self.client: Optional[VoiceflowClient] = None
        self.media_cache: Optional[MediaCache] = None
        self._thread: Optional[threading.Thread] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self.loop is not None and self.loop.is_running() and self.bridge is not None

    # ═══════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════

    def start(self, timeout: float = 30.0) -> None:
        if self._thread is not None:
            return
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="vf-bridge-loop", daemon=True)
        self._thread.start()
        self.submit(self._startup()).result(timeout=timeout)
        log.info(f"RUNTIME_STARTED | mode={self.cfg.BOT_MODE} | streaming={self.cfg.VF_STREAMING}")

    def stop(self, timeout: float = 10.0) -> None:
        if self.loop is None or self._thread is None:
            return
        try:
            self.submit(self._shutdown()).result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            log.warning("RUNTIME_SHUTDOWN_TIMEOUT")
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=timeout)
        self._thread = None
        log.info("RUNTIME_STOPPED")

    def submit(self, coro: Coroutine[Any, Any, Any]) -> "concurrent.futures.Future[Any]":
        if self.loop is None:
            raise RuntimeError("runtime not started")
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    async def _startup(self) -> None:
        cfg = self.cfg

        # ────────────────────────────────────────────────────────
        # STEP 1: Platform + backend clients
        # ────────────────────────────────────────────────────────
        self.bot = Bot(token=cfg.TELEGRAM_BOT_TOKEN)
        sink = TelegramSink(self.bot)
        self.client = VoiceflowClient()

        # ────────────────────────────────────────────────────────
        # STEP 2: Rendering pipeline
        # ────────────────────────────────────────────────────────
        self.media_cache = MediaCache()
        resolver = MediaResolver(self.media_cache, MediaDownloader(self.client.session))
        stash = CallbackStash()
        tracker = KeyboardTargetTracker()
        streamer = CompletionStreamer(sink, resolver, tracker)
        dispatcher = TraceDispatcher(sink, resolver, stash, tracker, streamer)
        sessions = build_session_store()
        self.bridge = Bridge(
            self.client, sink, dispatcher, streamer, sessions, stash, transcriber=self.transcriber
        )

        # ────────────────────────────────────────────────────────
        # STEP 3: Update routing + housekeeping
        # ────────────────────────────────────────────────────────
        self.dp = Dispatcher()
        self.dp.include_router(build_router(self.bridge))
        self._tasks.append(asyncio.ensure_future(self._sweep_forever()))

        if cfg.BOT_MODE == "webhook":
            if not cfg.WEBHOOK_URL:
                raise RuntimeError("BOT_MODE=webhook needs WEBHOOK_URL")
            await self.bot.set_webhook(cfg.WEBHOOK_URL, secret_token=cfg.WEBHOOK_SECRET or None)
            log.info(f"WEBHOOK_SET | url={cfg.WEBHOOK_URL}")
        else:
            await self.bot.delete_webhook()
            self._tasks.append(
                asyncio.ensure_future(self.dp.start_polling(self.bot, handle_signals=False, close_bot_session=False))
            )
            log.info("POLLING_STARTED")

    async def _shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self.bridge is not None:
            self.bridge.streamer.cancel_all()
            await self.bridge.sessions.close()
        if self.media_cache is not None:
            self.media_cache.flush()
        if self.client is not None:
            await self.client.close()
        if self.bot is not None:
            await self.bot.session.close()

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.cfg.SWEEP_INTERVAL_SECONDS)
            try:
                await self.bridge.sweep()
            except Exception as e:  # noqa: BLE001
                log.error(f"SWEEP_ERROR | error={e}", exc_info=True)

    # ═══════════════════════════════════════════════════════════
    # CALLS FROM THE HTTP THREAD
    # ═══════════════════════════════════════════════════════════

    def feed_webhook_update(self, update: Dict[str, Any]) -> "concurrent.futures.Future[Any]":
        """Hand a raw Telegram update to the dispatcher; the turn runs in the background."""
        future = self.submit(self.dp.feed_raw_update(self.bot, update))
        future.add_done_callback(_log_update_failure)
        return future

    def health_check(self, timeout: float = 5.0) -> Dict[str, Any]:
        if not self.running:
            return {"status": "unhealthy", "loop": "stopped", "mode": self.cfg.BOT_MODE}
        try:
            sessions_ok = self.submit(self.bridge.sessions.ping()).result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            sessions_ok = False
        return {
            "status": "healthy" if sessions_ok else "degraded",
            "loop": "running",
            "mode": self.cfg.BOT_MODE,
            "sessions": "ok" if sessions_ok else "unreachable",
            "media_cache_entries": len(self.media_cache) if self.media_cache is not None else 0,
        }

    def diagnostics(self, user_id: int, timeout: float = 5.0) -> Dict[str, Any]:
        return self.submit(self.bridge.diagnostics(user_id)).result(timeout=timeout)


def _log_update_failure(future: "concurrent.futures.Future[Any]") -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        log.error(f"WEBHOOK_UPDATE_FAILED | error={error}", exc_info=error)
