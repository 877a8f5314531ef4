"""
Platform sink: every outbound Telegram call goes through here.

The rest of the bridge only sees SentMessage / PlatformError, never aiogram
types, so renderers can be tested against a recording fake.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol, Union

from aiogram import Bot
from aiogram.enums import ChatAction, ParseMode
from aiogram.exceptions import TelegramAPIError, TelegramBadRequest
from aiogram.types import BufferedInputFile, InlineKeyboardMarkup, LinkPreviewOptions, Message

from .enums import MediaKind
from .exceptions import PlatformError
from .models import MediaBuffer, SentMessage
from .utils.formatter import html_to_plain

log = logging.getLogger(__name__)

NOT_MODIFIED = "message is not modified"
NOT_FOUND = "message to edit not found"
DELETE_NOT_FOUND = "message to delete not found"
BAD_MARKUP = "can't parse entities"

_NO_PREVIEW = LinkPreviewOptions(is_disabled=True)


class ChatSink(Protocol):
    async def send_text(
        self, chat_id: int, html: str, reply_markup: Optional[InlineKeyboardMarkup] = None
    ) -> SentMessage: ...

    async def edit_text(self, chat_id: int, message_id: int, html: str) -> None: ...

    async def edit_keyboard(
        self, chat_id: int, message_id: int, reply_markup: Optional[InlineKeyboardMarkup]
    ) -> None: ...

    async def send_media(
        self,
        chat_id: int,
        kind: MediaKind,
        media: Union[str, MediaBuffer],
        caption: Optional[str] = None,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> SentMessage: ...

    async def delete_message(self, chat_id: int, message_id: int) -> None: ...

    async def send_typing(self, chat_id: int) -> None: ...


def _handles_of(message: Message) -> Dict[MediaKind, str]:
    handles: Dict[MediaKind, str] = {}
    if message.photo:
        # largest size last
        handles[MediaKind.PHOTO] = message.photo[-1].file_id
    if message.animation:
        handles[MediaKind.ANIMATION] = message.animation.file_id
    if message.document:
        handles[MediaKind.DOCUMENT] = message.document.file_id
    return handles


def _sent(message: Message) -> SentMessage:
    return SentMessage(chat_id=message.chat.id, message_id=message.message_id, handles=_handles_of(message))


class TelegramSink:
    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def send_text(
        self, chat_id: int, html: str, reply_markup: Optional[InlineKeyboardMarkup] = None
    ) -> SentMessage:
        try:
            message = await self.bot.send_message(
                chat_id,
                html,
                parse_mode=ParseMode.HTML,
                reply_markup=reply_markup,
                link_preview_options=_NO_PREVIEW,
            )
        except TelegramBadRequest as e:
            if BAD_MARKUP not in e.message.lower():
                raise PlatformError("send_text", e.message) from e
            log.warning(f"SEND_TEXT_MARKUP_REJECTED | chat={chat_id} | error={e.message}")
            try:
                message = await self.bot.send_message(
                    chat_id,
                    html_to_plain(html),
                    parse_mode=None,
                    reply_markup=reply_markup,
                    link_preview_options=_NO_PREVIEW,
                )
            except TelegramAPIError as plain_error:
                raise PlatformError("send_text", str(plain_error)) from plain_error
        except TelegramAPIError as e:
            raise PlatformError("send_text", str(e)) from e
        return _sent(message)

    async def edit_text(self, chat_id: int, message_id: int, html: str) -> None:
        try:
            await self.bot.edit_message_text(
                text=html,
                chat_id=chat_id,
                message_id=message_id,
                parse_mode=ParseMode.HTML,
                link_preview_options=_NO_PREVIEW,
            )
        except TelegramBadRequest as e:
            reason = e.message.lower()
            if NOT_MODIFIED in reason:
                return
            if NOT_FOUND in reason:
                log.warning(f"EDIT_TARGET_GONE | chat={chat_id} | message={message_id}")
                return
            if BAD_MARKUP in reason:
                log.warning(f"EDIT_TEXT_MARKUP_REJECTED | chat={chat_id} | message={message_id}")
                await self._edit_plain(chat_id, message_id, html)
                return
            raise PlatformError("edit_text", e.message) from e
        except TelegramAPIError as e:
            raise PlatformError("edit_text", str(e)) from e

    async def _edit_plain(self, chat_id: int, message_id: int, html: str) -> None:
        try:
            await self.bot.edit_message_text(
                text=html_to_plain(html),
                chat_id=chat_id,
                message_id=message_id,
                parse_mode=None,
                link_preview_options=_NO_PREVIEW,
            )
        except TelegramAPIError as e:
            if NOT_MODIFIED in str(e).lower():
                return
            raise PlatformError("edit_text", str(e)) from e

    async def edit_keyboard(
        self, chat_id: int, message_id: int, reply_markup: Optional[InlineKeyboardMarkup]
    ) -> None:
        try:
            await self.bot.edit_message_reply_markup(
                chat_id=chat_id, message_id=message_id, reply_markup=reply_markup
            )
        except TelegramBadRequest as e:
            if NOT_MODIFIED in e.message.lower():
                return
            raise PlatformError("edit_keyboard", e.message) from e
        except TelegramAPIError as e:
            raise PlatformError("edit_keyboard", str(e)) from e

    async def send_media(
        self,
        chat_id: int,
        kind: MediaKind,
        media: Union[str, MediaBuffer],
        caption: Optional[str] = None,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> SentMessage:
        payload = BufferedInputFile(media.data, filename=media.filename) if isinstance(media, MediaBuffer) else media
        options = {
            "caption": caption or None,
            "parse_mode": ParseMode.HTML if caption else None,
            "reply_markup": reply_markup,
        }
        try:
            if kind is MediaKind.PHOTO:
                message = await self.bot.send_photo(chat_id, photo=payload, **options)
            elif kind is MediaKind.ANIMATION:
                message = await self.bot.send_animation(chat_id, animation=payload, **options)
            else:
                message = await self.bot.send_document(chat_id, document=payload, **options)
        except TelegramAPIError as e:
            raise PlatformError(f"send_{kind.value}", str(e)) from e
        return _sent(message)

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        try:
            await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
        except TelegramBadRequest as e:
            if DELETE_NOT_FOUND in e.message.lower():
                log.warning(f"DELETE_TARGET_GONE | chat={chat_id} | message={message_id}")
                return
            raise PlatformError("delete_message", e.message) from e
        except TelegramAPIError as e:
            raise PlatformError("delete_message", str(e)) from e

    async def send_typing(self, chat_id: int) -> None:
        try:
            await self.bot.send_chat_action(chat_id, action=ChatAction.TYPING)
        except TelegramAPIError as e:
            log.debug(f"TYPING_FAILED | chat={chat_id} | error={e}")
