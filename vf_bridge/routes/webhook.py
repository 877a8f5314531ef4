# vf_bridge/routes/webhook.py
"""
Telegram webhook receiver (BOT_MODE=webhook).

Telegram posts each update as JSON. The update is handed to the bridge loop
and acknowledged right away; the turn itself runs in the background.
"""

from __future__ import annotations

import hmac
import logging

from flask import Blueprint, current_app, jsonify, request

from ..config import get_config

log = logging.getLogger(__name__)
bp = Blueprint("telegram_webhook", __name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


@bp.post("/telegram/webhook")
def telegram_webhook():
    secret = get_config().WEBHOOK_SECRET
    if secret and not hmac.compare_digest(request.headers.get(SECRET_HEADER, ""), secret):
        log.warning(f"WEBHOOK_REJECTED | reason=bad_secret | remote={request.remote_addr}")
        return jsonify({"ok": False, "error": "forbidden"}), 403

    update = request.get_json(silent=True)
    if not isinstance(update, dict):
        return jsonify({"ok": False, "error": "update must be a JSON object"}), 400

    runtime = current_app.extensions.get("runtime")
    if runtime is None:
        return jsonify({"ok": False, "error": "runtime not initialized"}), 503

    runtime.feed_webhook_update(update)
    log.debug(f"WEBHOOK_UPDATE | update_id={update.get('update_id')}")
    return jsonify({"ok": True}), 200
