"""
Trace dispatcher: replay a finished trace list into Telegram messages.

The tracker remembers, per user, the last message the bot produced and what
kind of keyboard it carries. A `choice` trace attaches its buttons to that
message instead of posting a separate prompt, unless the message holds card
buttons, which are never overwritten.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .callback_stash import CallbackStash
from .config import get_config
from .enums import KeyboardKind, TraceType
from .exceptions import PlatformError
from .keyboards import extract_synthetic_buttons, make_card_keyboard, make_choice_keyboard
from .media_resolver import MediaResolver
from .models import GalleryItem, MessageRef, SentMessage, TurnContext
from .streaming.segmenter import segment_content, split_gallery
from .telegram_sink import ChatSink
from .utils.formatter import clean_backend_text, esc, md_to_html, normalize_spacing
from .utils.helpers import text_of_trace
from .utils.media_urls import looks_like_media
from .utils.smart_logger import get_smart_logger

if TYPE_CHECKING:
    from .streaming.completion import CompletionStreamer

log = logging.getLogger(__name__)

Trace = Dict[str, Any]


class KeyboardTargetTracker:
    """Last bot message per user, with the kind of keyboard it carries."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._targets: Dict[int, Tuple[MessageRef, float]] = {}

    def __len__(self) -> int:
        return len(self._targets)

    def get(self, user_id: int) -> Optional[MessageRef]:
        entry = self._targets.get(user_id)
        return entry[0] if entry else None

    def record(self, user_id: int, ref: MessageRef) -> None:
        self._targets[user_id] = (ref, self._clock())

    def set_keyboard(self, user_id: int, ref: MessageRef, kind: KeyboardKind) -> MessageRef:
        updated = MessageRef(ref.chat_id, ref.message_id, kind)
        self.record(user_id, updated)
        return updated

    def forget(self, user_id: int, ref: MessageRef) -> None:
        """Drop the target if it is `ref` (the message is gone)."""
        current = self.get(user_id)
        if current is not None and current.message_id == ref.message_id and current.chat_id == ref.chat_id:
            del self._targets[user_id]

    def evict_idle(self, ttl_seconds: float) -> int:
        now = self._clock()
        idle = [user_id for user_id, (_, seen) in self._targets.items() if now - seen > ttl_seconds]
        for user_id in idle:
            del self._targets[user_id]
        return len(idle)


def _buttons_of(payload: Any) -> List[Dict[str, Any]]:
    buttons = payload.get("buttons") if isinstance(payload, dict) else None
    return [b for b in buttons if isinstance(b, dict)] if isinstance(buttons, list) else []


def _description_text(description: Any) -> str:
    if isinstance(description, str):
        return description
    if isinstance(description, dict):
        return str(description.get("text") or "")
    return ""


def _join(parts: Sequence[Optional[str]], sep: str) -> str:
    return sep.join(p for p in parts if p)


def _gallery_caption(item: GalleryItem) -> Optional[str]:
    menu_link = f"[View Menu]({item.menu_url})" if item.menu_url else None
    return md_to_html(_join([item.title, menu_link], "\n")) or None


class TraceDispatcher:
    def __init__(
        self,
        sink: ChatSink,
        resolver: MediaResolver,
        stash: CallbackStash,
        tracker: KeyboardTargetTracker,
        streamer: Optional["CompletionStreamer"] = None,
        *,
        keyboard_retry_delay: Optional[float] = None,
        carousel_card_delay: Optional[float] = None,
        choice_prompt_text: Optional[str] = None,
    ) -> None:
        cfg = get_config()
        self.sink = sink
        self.resolver = resolver
        self.stash = stash
        self.tracker = tracker
        self.streamer = streamer
        self.keyboard_retry_delay = cfg.KEYBOARD_RETRY_DELAY if keyboard_retry_delay is None else keyboard_retry_delay
        self.carousel_card_delay = cfg.CAROUSEL_CARD_DELAY if carousel_card_delay is None else carousel_card_delay
        self.choice_prompt_text = choice_prompt_text or cfg.CHOICE_PROMPT_TEXT
        self.smart_log = get_smart_logger("trace_dispatcher")
        self._handlers: Dict[str, Callable[[TurnContext, Trace], Awaitable[None]]] = {
            TraceType.CHOICE.value: self._render_choice,
            TraceType.VISUAL.value: self._render_visual,
            TraceType.IMAGE.value: self._render_visual,
            TraceType.CARD_V2.value: self._render_card_v2,
            TraceType.CARD.value: self._render_card,
            TraceType.CAROUSEL.value: self._render_carousel,
        }

    async def dispatch(self, ctx: TurnContext, traces: List[Trace]) -> int:
        """Render traces in order; returns how many were handled (a text+choice pair counts once)."""
        handled = 0
        i = 0
        while i < len(traces):
            trace = traces[i]
            trace_type = str(trace.get("type") or "")
            if trace_type == TraceType.TEXT.value:
                nxt = traces[i + 1] if i + 1 < len(traces) else None
                choice = nxt if nxt is not None and nxt.get("type") == TraceType.CHOICE.value else None
                consumed = await self._render_text(ctx, trace, choice)
                i += 2 if consumed else 1
                handled += 1
                continue

            handler = self._handlers.get(trace_type)
            if handler is None:
                # completion frames were rendered by the streamer
                log.debug(f"TRACE_SKIPPED | user={ctx.user_id} | type={trace_type}")
            else:
                await handler(ctx, trace)
                handled += 1
            i += 1
        return handled

    def _record(self, ctx: TurnContext, sent: SentMessage) -> MessageRef:
        ref = sent.ref()
        self.tracker.record(ctx.user_id, ref)
        return ref

    # ═══════════════════════════════════════════════════════════
    # TEXT / CHOICE
    # ═══════════════════════════════════════════════════════════

    async def _render_text(self, ctx: TurnContext, trace: Trace, choice: Optional[Trace]) -> bool:
        """Render a text trace; returns True if the following choice was consumed."""
        raw = clean_backend_text(text_of_trace(trace))
        text, synthetic = extract_synthetic_buttons(raw)
        buttons = (_buttons_of(choice.get("payload")) if choice else []) + synthetic

        if self.streamer is not None and self.streamer.already_rendered(ctx.user_id, raw):
            self.smart_log.trace_rendered(ctx.user_id, "text", suppressed=True)
            if not synthetic:
                return False
            await self._attach_choice(ctx, buttons)
            return choice is not None

        last: Optional[MessageRef] = None
        messages = 0
        for block in split_gallery(text):
            if isinstance(block, GalleryItem):
                caption = _gallery_caption(block)
                last = self._record(ctx, await self.resolver.send(self.sink, ctx.chat_id, block.image_url, caption=caption))
                messages += 1
                continue
            for segment in segment_content(block):
                if segment.is_image:
                    sent = await self.resolver.send(self.sink, ctx.chat_id, segment.value)
                else:
                    sent = await self.sink.send_text(ctx.chat_id, md_to_html(segment.value))
                last = self._record(ctx, sent)
                messages += 1
        self.smart_log.trace_rendered(ctx.user_id, "text", messages=messages)

        if not buttons:
            return False
        await self._attach_choice(ctx, buttons, preferred=last)
        return choice is not None

    async def _render_choice(self, ctx: TurnContext, trace: Trace) -> None:
        buttons = _buttons_of(trace.get("payload"))
        if buttons:
            await self._attach_choice(ctx, buttons)

    async def _attach_choice(
        self, ctx: TurnContext, buttons: List[Dict[str, Any]], preferred: Optional[MessageRef] = None
    ) -> None:
        markup = make_choice_keyboard(ctx.user_id, buttons, self.stash)
        target = preferred or self.tracker.get(ctx.user_id)

        if target is not None and target.keyboard_kind is not KeyboardKind.CARD:
            try:
                await self.sink.edit_keyboard(target.chat_id, target.message_id, markup)
                self.tracker.set_keyboard(ctx.user_id, target, KeyboardKind.CHOICE)
                self.smart_log.keyboard_attached(ctx.user_id, "choice", f"message:{target.message_id}")
                return
            except PlatformError as e:
                self.smart_log.warning(ctx.user_id, "CHOICE_ATTACH_FAILED", str(e))

        sent = await self.sink.send_text(ctx.chat_id, esc(self.choice_prompt_text), reply_markup=markup)
        self.tracker.record(ctx.user_id, sent.ref(KeyboardKind.CHOICE))
        self.smart_log.keyboard_attached(ctx.user_id, "choice", "standalone")

    # ═══════════════════════════════════════════════════════════
    # MEDIA / CARDS
    # ═══════════════════════════════════════════════════════════

    async def _render_visual(self, ctx: TurnContext, trace: Trace) -> None:
        payload = trace.get("payload") or {}
        url = payload.get("image") or payload.get("url") or payload.get("src")
        if not url:
            return
        self._record(ctx, await self.resolver.send(self.sink, ctx.chat_id, str(url)))
        self.smart_log.trace_rendered(ctx.user_id, trace.get("type"), messages=1)

    async def _render_card_v2(self, ctx: TurnContext, trace: Trace) -> None:
        payload = trace.get("payload") or {}
        title = str(payload.get("title") or "")
        description = _description_text(payload.get("description"))
        media_url = str(payload.get("imageUrl") or "")

        ref: Optional[MessageRef] = None
        if description and media_url:
            ref = self._record(ctx, await self.sink.send_text(ctx.chat_id, md_to_html(normalize_spacing(description))))
        elif not media_url and (title or description):
            body = normalize_spacing(_join([title, description], "\n\n"))
            ref = self._record(ctx, await self.sink.send_text(ctx.chat_id, md_to_html(body)))

        if media_url:
            sent = await self.resolver.send(self.sink, ctx.chat_id, media_url, caption=md_to_html(title) or None)
            ref = self._record(ctx, sent)

        await self._attach_card_buttons(ctx, ref, _buttons_of(payload))
        self.smart_log.trace_rendered(ctx.user_id, "cardV2")

    async def _render_card(self, ctx: TurnContext, trace: Trace) -> None:
        payload = trace.get("payload") or {}
        title = str(payload.get("title") or "")
        description = _description_text(payload.get("description"))
        link = payload.get("url")
        link = str(link) if link and not looks_like_media(str(link)) else None
        media_url = payload.get("image") or payload.get("imageUrl") or payload.get("thumbnail") or payload.get("media")

        ref: Optional[MessageRef] = None
        parts = [description, link] if media_url else [title, description, link]
        top = normalize_spacing(_join(parts, "\n"))
        if top:
            ref = self._record(ctx, await self.sink.send_text(ctx.chat_id, md_to_html(top)))

        if media_url:
            sent = await self.resolver.send(self.sink, ctx.chat_id, str(media_url), caption=md_to_html(title) or None)
            ref = self._record(ctx, sent)

        await self._attach_card_buttons(ctx, ref, _buttons_of(payload))
        self.smart_log.trace_rendered(ctx.user_id, "card")

    async def _render_carousel(self, ctx: TurnContext, trace: Trace) -> None:
        payload = trace.get("payload") or {}
        cards = [c for c in (payload.get("cards") or []) if isinstance(c, dict)]
        for index, card in enumerate(cards):
            if index:
                await asyncio.sleep(self.carousel_card_delay)
            title = str(card.get("title") or "")
            description = _description_text(card.get("description"))
            media_url = card.get("imageUrl") or card.get("image") or card.get("mediaUrl") or card.get("thumbnail")
            caption = md_to_html(normalize_spacing(_join([title, description], "\n\n"))) or None

            ref: Optional[MessageRef] = None
            if media_url:
                ref = self._record(ctx, await self.resolver.send(self.sink, ctx.chat_id, str(media_url), caption=caption))
            elif caption:
                ref = self._record(ctx, await self.sink.send_text(ctx.chat_id, caption))

            await self._attach_card_buttons(ctx, ref, _buttons_of(card))
        self.smart_log.trace_rendered(ctx.user_id, "carousel", messages=len(cards))

    async def _attach_card_buttons(
        self, ctx: TurnContext, ref: Optional[MessageRef], buttons: List[Dict[str, Any]]
    ) -> None:
        """Best effort: one retry after a short pause, then give up."""
        if not buttons or ref is None:
            return
        markup = make_card_keyboard(ctx.user_id, buttons, self.stash)
        for attempt in (1, 2):
            try:
                await self.sink.edit_keyboard(ref.chat_id, ref.message_id, markup)
            except PlatformError as e:
                if attempt == 1:
                    await asyncio.sleep(self.keyboard_retry_delay)
                    continue
                self.smart_log.warning(ctx.user_id, "CARD_KEYBOARD_FAILED", str(e))
                return
            self.tracker.set_keyboard(ctx.user_id, ref, KeyboardKind.CARD)
            self.smart_log.keyboard_attached(ctx.user_id, "card", f"message:{ref.message_id}")
            return
