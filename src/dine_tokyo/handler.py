from __future__ import annotations

import json
import logging
from typing import Any

from linebot.v3.webhook import SignatureValidator

from dine_tokyo import activity, line_api, messages, repositories
from dine_tokyo.config import get_line_channel_secret, get_log_level
from dine_tokyo.db import transaction
from dine_tokyo.web import get_body, get_header, response

logger = logging.getLogger(__name__)
logger.setLevel(get_log_level())


class SignatureError(RuntimeError):
    pass


def _verify(signature: str | None, body: str) -> None:
    if not signature:
        raise SignatureError("Missing X-Line-Signature header")
    if not SignatureValidator(get_line_channel_secret()).validate(body, signature):
        raise SignatureError("Bad signature")


def _reply(reply_token: str | None, text: str) -> None:
    if not reply_token or not line_api.is_configured():
        return
    try:
        line_api.reply_text(reply_token, text)
    except Exception:
        logger.exception("Failed to reply to LINE event")


def _handle_verification_image(line_event: dict) -> None:
    line_user_id = (line_event.get("source") or {}).get("userId")
    message_id = (line_event.get("message") or {}).get("id")
    reply_token = line_event.get("replyToken")
    if not line_user_id or not message_id:
        return

    with transaction() as cursor:
        user = repositories.get_user_by_line_id(cursor, line_user_id)
        if not user:
            reply = messages.VERIFICATION_USER_NOT_FOUND
        elif user.get("is_identity_verified"):
            reply = messages.VERIFICATION_ALREADY_VERIFIED
        elif repositories.get_pending_verification(cursor, user["id"]):
            reply = messages.VERIFICATION_ALREADY_PENDING
        else:
            request_row = repositories.create_verification_request(cursor, user["id"], line_user_id, message_id)
            activity.log_activity(
                user["id"], "verification_submit", {"request_id": str(request_row["id"])}, cursor=cursor
            )
            reply = messages.VERIFICATION_RECEIVED
    _reply(reply_token, reply)


def lambda_handler(event: dict, context: Any) -> dict:
    body = get_body(event)
    signature = get_header(event, "X-Line-Signature")
    if not signature:
        return response({"error": "Missing signature"}, status=400)

    try:
        _verify(signature, body)
    except SignatureError as exc:
        logger.warning("Signature verification failed: %s", exc)
        return response({"error": "Invalid signature"}, status=401)

    try:
        payload = json.loads(body or "{}")
    except ValueError:
        return response({"error": "Invalid JSON"}, status=400)

    for line_event in payload.get("events") or []:
        if line_event.get("type") != "message":
            continue
        if (line_event.get("message") or {}).get("type") != "image":
            continue
        try:
            _handle_verification_image(line_event)
        except Exception:
            logger.exception("Failed to handle LINE image message")

    return response({"received": True})
