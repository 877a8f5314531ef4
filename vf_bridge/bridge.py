"""
Inbound handling: one turn per user update.

    update → (auto reset?) → backend interaction → completion frames to the
    streamer as they arrive → wait for the streamer → dispatch the full trace
    list → touch the session

Turns for the same user run one after another in arrival order; different
users never wait on each other.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from .callback_stash import CALLBACK_PREFIX, REQUEST_PREFIX, CallbackStash
from .config import get_config
from .enums import TraceType
from .exceptions import PlatformError
from .models import TurnContext
from .streaming.completion import CompletionStreamer
from .streaming.deferred import SerialTaskQueue
from .telegram_sink import ChatSink
from .trace_dispatcher import TraceDispatcher
from .utils.formatter import esc
from .utils.smart_logger import get_smart_logger, log_method
from .voiceflow_client import Action, VoiceflowClient

log = logging.getLogger(__name__)

Transcriber = Callable[[TurnContext, bytes], Awaitable[Optional[str]]]

START_COMMAND = "/start"


def route_callback(data: Optional[str], user_id: int, stash: CallbackStash) -> Action:
    """Turn button callback data into a backend action.

    CB:<token>      stashed payload (an unknown or foreign token becomes "")
    RQ:<json>       a serialized backend request, sent as-is
    {"type": ...}   a bare JSON request
    anything else   user text
    Malformed JSON is sent as text.
    """
    data = "" if data is None else str(data)
    if data.startswith(CALLBACK_PREFIX):
        data = stash.take(data, user_id) or ""

    if data.startswith(REQUEST_PREFIX):
        try:
            request = json.loads(data[len(REQUEST_PREFIX):])
        except ValueError:
            log.warning(f"CALLBACK_BAD_REQUEST | user={user_id} | data={data[:80]}")
        else:
            if isinstance(request, dict):
                return request
            log.warning(f"CALLBACK_BAD_REQUEST | user={user_id} | data={data[:80]}")

    if data.strip().startswith("{"):
        try:
            obj = json.loads(data)
        except ValueError:
            obj = None
        if isinstance(obj, dict) and obj.get("type"):
            return obj

    return {"type": "text", "payload": data}


@contextlib.asynccontextmanager
async def typing_indicator(sink: ChatSink, chat_id: int, interval: float) -> AsyncIterator[None]:
    """Keep the "typing…" status up while the body runs."""

    async def _loop() -> None:
        while True:
            await sink.send_typing(chat_id)
            await asyncio.sleep(interval)

    task = asyncio.ensure_future(_loop())
    try:
        yield
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


class Bridge:
    def __init__(
        self,
        client: VoiceflowClient,
        sink: ChatSink,
        dispatcher: TraceDispatcher,
        streamer: CompletionStreamer,
        sessions: Any,
        stash: CallbackStash,
        *,
        streaming: Optional[bool] = None,
        typing_interval: Optional[float] = None,
        error_reply_text: Optional[str] = None,
        voice_unsupported_text: Optional[str] = None,
        transcriber: Optional[Transcriber] = None,
    ) -> None:
        cfg = get_config()
        self.client = client
        self.sink = sink
        self.dispatcher = dispatcher
        self.streamer = streamer
        self.sessions = sessions
        self.stash = stash
        self.streaming = cfg.VF_STREAMING if streaming is None else streaming
        self.typing_interval = cfg.TYPING_INTERVAL if typing_interval is None else typing_interval
        self.error_reply_text = error_reply_text or cfg.ERROR_REPLY_TEXT
        self.voice_unsupported_text = voice_unsupported_text or cfg.VOICE_UNSUPPORTED_TEXT
        self.transcriber = transcriber
        self.smart_log = get_smart_logger("bridge")
        self._turns = SerialTaskQueue("turns")

    # ═══════════════════════════════════════════════════════════
    # ENTRY POINTS (called from the platform handlers)
    # ═══════════════════════════════════════════════════════════

    def enqueue(self, ctx: TurnContext, handler: Callable[..., Awaitable[Any]], *args: Any) -> "asyncio.Task[Any]":
        """Run `handler(ctx, *args)` after this user's earlier turns, guarded."""
        return self._turns.submit(ctx.user_id, lambda: self.run_guarded(ctx, lambda: handler(ctx, *args)))

    async def run_guarded(self, ctx: TurnContext, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Top-level wrapper: any failure is logged and answered with an apology."""
        try:
            return await fn()
        except Exception as e:  # noqa: BLE001
            log.error(f"HANDLER_ERROR | user={ctx.user_id} | error={e}", exc_info=True)
            self.smart_log.error_occurred(ctx.user_id, type(e).__name__, "turn", str(e))
            try:
                await self.sink.send_text(ctx.chat_id, esc(self.error_reply_text))
            except PlatformError as reply_error:
                log.error(f"ERROR_REPLY_FAILED | user={ctx.user_id} | error={reply_error}")
            return None

    @log_method("start")
    async def handle_start(self, ctx: TurnContext) -> None:
        self.smart_log.flow_decision(ctx.user_id, "RESET", reason="start command")
        await self.client.reset(ctx.user_id)
        await self._turn(ctx, {"type": "launch"}, START_COMMAND)

    @log_method("text")
    async def handle_text(self, ctx: TurnContext, text: str) -> None:
        if text.strip() == START_COMMAND:
            return
        if await self._maybe_auto_reset(ctx):
            return
        await self._turn(ctx, {"type": "text", "payload": text}, text)

    @log_method("callback")
    async def handle_callback(self, ctx: TurnContext, data: Optional[str]) -> None:
        if await self._maybe_auto_reset(ctx):
            return
        action = route_callback(data, ctx.user_id, self.stash)
        self.smart_log.flow_decision(ctx.user_id, "CALLBACK", reason=str(action.get("type")))
        await self._turn(ctx, action, action.get("payload") if isinstance(action.get("payload"), str) else None)

    @log_method("voice")
    async def handle_voice(self, ctx: TurnContext, audio: Optional[bytes]) -> None:
        if self.transcriber is None or not audio:
            await self.sink.send_text(ctx.chat_id, esc(self.voice_unsupported_text))
            return
        text = await self.transcriber(ctx, audio)
        if not text or not text.strip():
            self.smart_log.warning(ctx.user_id, "EMPTY_TRANSCRIPT")
            await self.sink.send_text(ctx.chat_id, esc(self.voice_unsupported_text))
            return
        await self.handle_text(ctx, text)

    # ═══════════════════════════════════════════════════════════
    # TURN PIPELINE
    # ═══════════════════════════════════════════════════════════

    async def _maybe_auto_reset(self, ctx: TurnContext) -> bool:
        """Restart a stale conversation; the inbound input is dropped when this fires."""
        if not await self.sessions.should_reset(ctx.user_id):
            return False
        self.smart_log.flow_decision(ctx.user_id, "AUTO_RESET", reason="stale session")
        await self.client.reset(ctx.user_id)
        await self._turn(ctx, {"type": "launch"}, None)
        return True

    async def _turn(self, ctx: TurnContext, action: Action, preview: Optional[str]) -> None:
        started = time.perf_counter()
        self.smart_log.turn_start(ctx.user_id, str(action.get("type")), preview)

        async with typing_indicator(self.sink, ctx.chat_id, self.typing_interval):
            operation = "stream" if self.streaming else "interact"
            self.smart_log.api_call(ctx.user_id, "voiceflow", operation)
            try:
                if self.streaming:
                    traces = await self._interact_streaming(ctx, action)
                else:
                    traces = await self._interact_buffered(ctx, action)
            finally:
                # a completion cut off before its end frame still gets flushed
                self.streamer.close(ctx)
            self.smart_log.api_call(ctx.user_id, "voiceflow", operation, status="success")
            await self.streamer.drain(ctx.user_id)
            handled = await self.dispatcher.dispatch(ctx, traces)

        await self.sessions.touch(ctx.user_id)
        self.smart_log.turn_complete(ctx.user_id, handled, time.perf_counter() - started)

    async def _interact_buffered(self, ctx: TurnContext, action: Action) -> List[Dict[str, Any]]:
        traces = await self.client.send_request(ctx.user_id, action)
        for trace in traces:
            self._feed_streamer(ctx, trace)
        return traces

    async def _interact_streaming(self, ctx: TurnContext, action: Action) -> List[Dict[str, Any]]:
        traces: List[Dict[str, Any]] = []
        records = self.client.stream(ctx.user_id, action)
        try:
            async for record in records:
                if record.event == "trace" and isinstance(record.data, dict):
                    traces.append(record.data)
                    self._feed_streamer(ctx, record.data)
                elif record.event == "end" or record.is_end_of_stream:
                    break
                else:
                    log.debug(f"VF_STREAM_EVENT_IGNORED | user={ctx.user_id} | event={record.event}")
        finally:
            await records.aclose()
        return traces

    def _feed_streamer(self, ctx: TurnContext, trace: Dict[str, Any]) -> None:
        if trace.get("type") != TraceType.COMPLETION.value:
            return
        payload = trace.get("payload")
        if isinstance(payload, dict):
            self.streamer.push(ctx, payload)

    # ═══════════════════════════════════════════════════════════
    # HOUSEKEEPING
    # ═══════════════════════════════════════════════════════════

    async def sweep(self, user_state_ttl: Optional[float] = None) -> Dict[str, int]:
        """Drop expired stash tokens and per-user state idle past the TTL."""
        ttl = get_config().USER_STATE_TTL_SECONDS if user_state_ttl is None else user_state_ttl
        removed = {
            "stash": self.stash.sweep(),
            "completion": self.streamer.evict_idle(ttl),
            "targets": self.dispatcher.tracker.evict_idle(ttl),
            "sessions": await self.sessions.evict(),
        }
        log.debug(f"SWEEP_DONE | {removed}")
        return removed

    async def diagnostics(self, user_id: int) -> Dict[str, Any]:
        session = await self.sessions.get(user_id)
        state = self.streamer.state_for(user_id)
        target = self.dispatcher.tracker.get(user_id)
        return {
            "user_id": user_id,
            "session": session.to_dict() if session else None,
            "completion": state.summary() if state else None,
            "last_message": target.to_dict() if target else None,
            "turn_running": self._turns.busy(user_id),
            "stash_size": len(self.stash),
        }
