"""
Streamed completion rendering.

One CompletionState per user tracks the single message that is currently
being "typed" by the backend. Completion traces arrive as start / content /
end frames; content frames carry either the full text so far or a delta.

Each render pass segments the accumulated text from the character offset where
finalized output ends, so a segment list that shrinks between frames (an
anchor closing around an image, a line turning into a button) never skips
anything:
  image            send the image, never revisit it
  text, not last   send or final-edit it, then detach (never edited again)
  text, last       the live bubble: created once it reads like a sentence,
                   then edited at most once per STREAM_MIN_EDIT_INTERVAL,
                   with a trailing debounced edit for anything in between

All work for one user runs on a SerialTaskQueue, so frames render strictly in
arrival order even when they arrive faster than Telegram answers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from ..config import get_config
from ..enums import CompletionPhase
from ..exceptions import PlatformError
from ..keyboards import extract_synthetic_buttons
from ..media_resolver import MediaResolver
from ..models import CompletionState, Segment, TurnContext
from ..telegram_sink import ChatSink
from ..trace_dispatcher import KeyboardTargetTracker
from ..utils.formatter import clean_backend_text, md_to_html
from ..utils.helpers import squash
from ..utils.smart_logger import get_smart_logger
from .deferred import Debouncer, SerialTaskQueue
from .segmenter import split_segments

log = logging.getLogger(__name__)

TERMINAL_PUNCTUATION = (".", "!", "?", "…")


def merge_stream_text(current: str, incoming: str) -> str:
    """Merge one content frame into the accumulated text.

    Works for both cumulative snapshots and deltas: a frame that extends the
    current text replaces it, a frame the current text already contains is
    stale, anything else is appended as a delta. Deltas that happen to be a
    prefix of the text so far are indistinguishable from stale snapshots.
    """
    if not incoming:
        return current
    if incoming.startswith(current):
        return incoming
    if current.startswith(incoming):
        return current
    return current + incoming


def _display_text(raw: str) -> str:
    text, _ = extract_synthetic_buttons(clean_backend_text(raw))
    return text


class CompletionStreamer:
    def __init__(
        self,
        sink: ChatSink,
        resolver: MediaResolver,
        tracker: KeyboardTargetTracker,
        *,
        min_first_chars: Optional[int] = None,
        first_force_chars: Optional[int] = None,
        min_edit_interval: Optional[float] = None,
        debounce_delay: Optional[float] = None,
        dedup_window: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = get_config()
        self.sink = sink
        self.resolver = resolver
        self.tracker = tracker
        self.min_first_chars = cfg.STREAM_MIN_FIRST_CHARS if min_first_chars is None else min_first_chars
        self.first_force_chars = cfg.STREAM_FIRST_FORCE_CHARS if first_force_chars is None else first_force_chars
        self.min_edit_interval = cfg.STREAM_MIN_EDIT_INTERVAL if min_edit_interval is None else min_edit_interval
        self.debounce_delay = cfg.STREAM_DEBOUNCE_DELAY if debounce_delay is None else debounce_delay
        self.dedup_window = cfg.STREAM_DEDUP_WINDOW if dedup_window is None else dedup_window
        self._clock = clock
        self._states: Dict[int, CompletionState] = {}
        self._debouncer = Debouncer()
        self._queue = SerialTaskQueue("completion")
        self.smart_log = get_smart_logger("completion")

    def __len__(self) -> int:
        return len(self._states)

    def state_for(self, user_id: int) -> Optional[CompletionState]:
        return self._states.get(user_id)

    # ═══════════════════════════════════════════════════════════
    # ENTRY POINTS
    # ═══════════════════════════════════════════════════════════

    def push(self, ctx: TurnContext, payload: Dict[str, Any]) -> "asyncio.Task[None]":
        """Queue one completion frame behind everything already queued for this user.

        A content frame only renders if no newer content frame was pushed
        before its turn came; its text is merged either way.
        """
        seq: Optional[int] = None
        if _phase_of(payload) is CompletionPhase.CONTENT:
            state = self._ensure(ctx)
            state.content_seq += 1
            seq = state.content_seq

        async def _job() -> None:
            render = True
            if seq is not None:
                state = self._states.get(ctx.user_id)
                render = state is None or state.content_seq == seq
            await self.handle(ctx, payload, render=render)

        return self._queue.submit(ctx.user_id, _job)

    async def drain(self, user_id: int) -> None:
        await self._queue.drain(user_id)

    def close(self, ctx: TurnContext) -> "asyncio.Task[None]":
        """Queue an end for a completion the backend left open.

        Runs behind every frame already queued, so it only acts when the turn's
        stream stopped (error, disconnect, missing end frame) mid-completion.
        """
        async def _job() -> None:
            state = self._states.get(ctx.user_id)
            if state is None or not state.is_streaming:
                return
            log.warning(
                f"STREAM_CLOSED_WITHOUT_END | user={ctx.user_id} | chars={len(state.accumulated_text)}"
            )
            await self.handle(ctx, {"state": CompletionPhase.END.value})

        return self._queue.submit(ctx.user_id, _job)

    async def handle(self, ctx: TurnContext, payload: Dict[str, Any], render: bool = True) -> None:
        """Apply one completion frame now (callers that bypass the queue must serialize)."""
        phase = _phase_of(payload)
        try:
            if phase is CompletionPhase.START:
                self._on_start(ctx)
            elif phase is CompletionPhase.CONTENT:
                await self._on_content(ctx, payload.get("content"), render)
            elif phase is CompletionPhase.END:
                await self._on_end(ctx)
            else:
                log.debug(f"COMPLETION_UNKNOWN_STATE | user={ctx.user_id} | state={payload.get('state')}")
        except PlatformError as e:
            self.smart_log.error_occurred(ctx.user_id, type(e).__name__, f"completion_{payload.get('state')}", str(e))

    # ═══════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════

    def _ensure(self, ctx: TurnContext) -> CompletionState:
        state = self._states.get(ctx.user_id)
        if state is None:
            state = CompletionState(chat_id=ctx.chat_id)
            self._states[ctx.user_id] = state
        state.chat_id = ctx.chat_id
        state.touched_at = self._clock()
        return state

    def _on_start(self, ctx: TurnContext) -> None:
        state = self._ensure(ctx)
        self._debouncer.cancel(ctx.user_id)
        state.target_message = None
        state.last_rendered_markup = ""
        state.pending_markup = None
        state.accumulated_text = ""
        state.sent_image_urls = set()
        state.finalized_offset = 0
        state.has_any_content = False
        state.stream_ended_at = None
        state.is_streaming = True
        self.smart_log.stream_phase(ctx.user_id, "start")

    async def _on_content(self, ctx: TurnContext, content: Any, render: bool) -> None:
        state = self._ensure(ctx)
        if not state.is_streaming:
            log.info(f"STREAM_IMPLICIT_START | user={ctx.user_id}")
            self._on_start(ctx)
        incoming = "" if content is None else str(content)
        state.accumulated_text = merge_stream_text(state.accumulated_text, incoming)
        if state.accumulated_text.strip():
            state.has_any_content = True
        if render:
            await self._render(ctx, state, force=False)

    async def _on_end(self, ctx: TurnContext) -> None:
        state = self._ensure(ctx)
        state.is_streaming = False
        state.stream_ended_at = self._clock()
        self._debouncer.cancel(ctx.user_id)
        self.smart_log.stream_phase(ctx.user_id, "end", chars=len(state.accumulated_text))
        if state.has_any_content:
            await self._render(ctx, state, force=True)
        state.pending_markup = None

    # ═══════════════════════════════════════════════════════════
    # RENDER PASS
    # ═══════════════════════════════════════════════════════════

    async def _render(self, ctx: TurnContext, state: CompletionState, force: bool) -> None:
        display = _display_text(state.accumulated_text)
        offset = min(state.finalized_offset, len(display))
        parts = split_segments(display[offset:], partial=not force)
        live_shown = False
        for index, (segment, end) in enumerate(parts):
            if segment.is_image:
                if segment.value not in state.sent_image_urls:
                    await self._drop_open_bubble(ctx, state)
                    sent = await self.resolver.send(self.sink, state.chat_id, segment.value)
                    self.tracker.record(ctx.user_id, sent.ref())
                    state.sent_image_urls.add(segment.value)
                state.finalized_offset = offset + end
                continue

            if index < len(parts) - 1:
                await self._finish_text(ctx, state, md_to_html(segment.value))
                state.finalized_offset = offset + end
                continue

            await self._render_live(ctx, state, segment, force)
            live_shown = True

        if force and not live_shown:
            # whatever the open bubble showed is no longer part of the answer
            await self._drop_open_bubble(ctx, state)

    def _ready_for_first_message(self, text: str) -> bool:
        text = text.strip()
        if len(text) < self.min_first_chars:
            return False
        return text.endswith(TERMINAL_PUNCTUATION) or len(text) >= self.first_force_chars

    async def _render_live(self, ctx: TurnContext, state: CompletionState, segment: Segment, force: bool) -> None:
        markup = md_to_html(segment.value)
        if not markup:
            return

        if state.target_message is None:
            if not force and not self._ready_for_first_message(segment.value):
                return
            sent = await self.sink.send_text(state.chat_id, markup)
            state.target_message = sent.ref()
            state.last_rendered_markup = markup
            state.last_edit_at = self._clock()
            self.tracker.record(ctx.user_id, state.target_message)
            self.smart_log.stream_phase(ctx.user_id, "bubble_open", chars=len(segment.value))
            return

        if markup == state.last_rendered_markup and not force:
            return

        if force or self._clock() - state.last_edit_at >= self.min_edit_interval:
            self._debouncer.cancel(ctx.user_id)
            state.pending_markup = None
            await self._edit(state, markup)
            return

        # too soon: keep only the newest markup for the single pending timer
        state.pending_markup = markup
        if not self._debouncer.pending(ctx.user_id):
            self._debouncer.schedule(ctx.user_id, self.debounce_delay, lambda: self._enqueue_pending(ctx))

    async def _enqueue_pending(self, ctx: TurnContext) -> None:
        self._queue.submit(ctx.user_id, lambda: self._apply_pending(ctx))

    async def _apply_pending(self, ctx: TurnContext) -> None:
        state = self._states.get(ctx.user_id)
        if state is None or state.target_message is None or state.pending_markup is None:
            return
        markup, state.pending_markup = state.pending_markup, None
        if markup != state.last_rendered_markup:
            try:
                await self._edit(state, markup)
            except PlatformError as e:
                self.smart_log.warning(ctx.user_id, "DEBOUNCED_EDIT_FAILED", str(e))

    async def _edit(self, state: CompletionState, markup: str) -> None:
        ref = state.target_message
        await self.sink.edit_text(ref.chat_id, ref.message_id, markup)
        state.last_rendered_markup = markup
        state.last_edit_at = self._clock()

    async def _finish_text(self, ctx: TurnContext, state: CompletionState, markup: str) -> None:
        """Render a text segment in its final form and detach it."""
        self._debouncer.cancel(ctx.user_id)
        if markup:
            if state.target_message is None:
                sent = await self.sink.send_text(state.chat_id, markup)
                self.tracker.record(ctx.user_id, sent.ref())
            elif markup != state.last_rendered_markup:
                await self._edit(state, markup)
        self._detach(state)

    async def _drop_open_bubble(self, ctx: TurnContext, state: CompletionState) -> None:
        """Delete an open bubble whose text no longer appears in the answer.

        Text that survives is always finished before anything after it, so a
        bubble still open at this point only holds text that has since turned
        into something else (a synthetic button, an image marker).
        """
        ref = state.target_message
        if ref is None:
            return
        self._debouncer.cancel(ctx.user_id)
        self._detach(state)
        self.tracker.forget(ctx.user_id, ref)
        try:
            await self.sink.delete_message(ref.chat_id, ref.message_id)
        except PlatformError as e:
            self.smart_log.warning(ctx.user_id, "STALE_BUBBLE_DELETE_FAILED", str(e))
            return
        log.info(f"STREAM_BUBBLE_DROPPED | user={ctx.user_id} | message={ref.message_id}")

    @staticmethod
    def _detach(state: CompletionState) -> None:
        state.target_message = None
        state.last_rendered_markup = ""
        state.pending_markup = None

    # ═══════════════════════════════════════════════════════════
    # DUPLICATE SUPPRESSION / HOUSEKEEPING
    # ═══════════════════════════════════════════════════════════

    def already_rendered(self, user_id: int, text: str) -> bool:
        """True if `text` was just shown in full by a finished stream for this user."""
        state = self._states.get(user_id)
        if state is None or not state.has_any_content or state.is_streaming:
            return False
        if state.stream_ended_at is None or self._clock() - state.stream_ended_at > self.dedup_window:
            return False
        needle = squash(_display_text(text))
        return bool(needle) and needle in squash(_display_text(state.accumulated_text))

    def evict_idle(self, ttl_seconds: float) -> int:
        """Forget users untouched for `ttl_seconds`; a stream with no frames that long counts as idle."""
        now = self._clock()
        idle = [
            user_id
            for user_id, state in self._states.items()
            if not self._queue.busy(user_id)
            and not self._debouncer.pending(user_id)
            and now - state.touched_at > ttl_seconds
        ]
        for user_id in idle:
            del self._states[user_id]
        if idle:
            log.info(f"COMPLETION_EVICT | removed={len(idle)} | remaining={len(self._states)}")
        return len(idle)

    def cancel_all(self) -> None:
        self._debouncer.cancel_all()


def _phase_of(payload: Dict[str, Any]) -> Optional[CompletionPhase]:
    try:
        return CompletionPhase(str(payload.get("state") or "").lower())
    except ValueError:
        return None
