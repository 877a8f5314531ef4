"""
Inline keyboards for backend buttons.

Backend button shape: {"name": "Label", "request": {"type": "...", "payload": ...}}
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Tuple

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from .callback_stash import MAX_CALLBACK_BYTES, REQUEST_PREFIX, CallbackStash
from .utils.helpers import byte_len

MAX_LABEL_CHARS = 64

# a whole line "[[Label]]"
_SYNTHETIC_LINE = re.compile(r"^[ \t]*\[\[([^\[\]\n]+)\]\][ \t]*$\n?", flags=re.MULTILINE)
# inline "[Label](button:payload)"
_SYNTHETIC_LINK = re.compile(r"\[([^\]\n]+)\]\(button:([^)\n]+)\)")


def button_label(button: Dict[str, Any]) -> str:
    request = button.get("request") or {}
    payload = request.get("payload") if isinstance(request, dict) else None
    label: Any = button.get("name")
    if label is None and isinstance(payload, dict):
        label = payload.get("query") if payload.get("query") is not None else payload.get("text")
    if label is None:
        label = payload
    if label is None or isinstance(label, (dict, list)):
        label = "Option"
    return str(label)[:MAX_LABEL_CHARS]


def semantic_payload(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, bool):
        return "true" if payload else "false"
    if isinstance(payload, (int, float)):
        return str(payload)
    if isinstance(payload, dict):
        for key in ("intent", "query", "text"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return ""


def button_payload(button: Dict[str, Any]) -> str:
    request = button.get("request") or {}
    if not isinstance(request, dict):
        request = {}
    semantic = semantic_payload(request.get("payload"))
    if semantic:
        return semantic
    if str(request.get("type") or "").lower() == "path" and button.get("name"):
        return str(button["name"])
    return str(button.get("name") or "")


def _fit(data: str, owner_id: int, stash: CallbackStash) -> str:
    return data if byte_len(data) <= MAX_CALLBACK_BYTES else stash.put(owner_id, data)


def make_choice_keyboard(owner_id: int, buttons: List[Dict[str, Any]], stash: CallbackStash) -> InlineKeyboardMarkup:
    rows = []
    for button in buttons:
        text = button_label(button)
        data = button_payload(button) or text
        rows.append([InlineKeyboardButton(text=text, callback_data=_fit(data, owner_id, stash))])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def make_card_keyboard(owner_id: int, buttons: List[Dict[str, Any]], stash: CallbackStash) -> InlineKeyboardMarkup:
    """Card buttons carry the whole backend request so it can be replayed verbatim."""
    rows = []
    for button in buttons:
        label = str(button.get("name") or "Option")[:MAX_LABEL_CHARS]
        request = button.get("request") or {}
        data = REQUEST_PREFIX + json.dumps(request, ensure_ascii=False, separators=(",", ":"))
        rows.append([InlineKeyboardButton(text=label, callback_data=_fit(data, owner_id, stash))])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def extract_synthetic_buttons(text: str) -> Tuple[str, List[Dict[str, Any]]]:
    """Pull `[[Label]]` lines and `[Label](button:payload)` links out of text.

    Returns the text without them and the buttons in order of appearance.
    """
    if not text:
        return "", []

    found: List[Tuple[int, Dict[str, Any]]] = []
    for m in _SYNTHETIC_LINE.finditer(text):
        label = m.group(1).strip()
        found.append((m.start(), {"name": label, "request": {"type": "text", "payload": label}}))
    for m in _SYNTHETIC_LINK.finditer(text):
        label, payload = m.group(1).strip(), m.group(2).strip()
        found.append((m.start(), {"name": label, "request": {"type": "text", "payload": payload}}))

    if not found:
        return text, []
    found.sort(key=lambda item: item[0])
    cleaned = _SYNTHETIC_LINK.sub("", _SYNTHETIC_LINE.sub("", text))
    return cleaned, [button for _, button in found]
