from __future__ import annotations

import requests

from dine_tokyo.config import get_line_access_token, get_line_channel_id, get_line_login_secret

API_BASE = "https://api.line.me"
DATA_API_BASE = "https://api-data.line.me"
AUTHORIZE_URL = "https://access.line.me/oauth2/v2.1/authorize"


class LineApiError(RuntimeError):
    pass


def is_configured() -> bool:
    return bool(get_line_access_token())


def _headers() -> dict[str, str]:
    token = get_line_access_token()
    if not token:
        raise LineApiError("LINE_CHANNEL_ACCESS_TOKEN is required for Messaging API calls")
    return {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }


def push_text(to: str, text: str) -> None:
    url = f"{API_BASE}/v2/bot/message/push"
    payload = {"to": to, "messages": [{"type": "text", "text": text}]}
    response = requests.post(url, headers=_headers(), json=payload, timeout=10)
    if response.status_code >= 300:
        raise LineApiError(f"Push failed: {response.status_code} {response.text}")


def reply_text(reply_token: str, text: str) -> None:
    url = f"{API_BASE}/v2/bot/message/reply"
    payload = {"replyToken": reply_token, "messages": [{"type": "text", "text": text}]}
    response = requests.post(url, headers=_headers(), json=payload, timeout=10)
    if response.status_code >= 300:
        raise LineApiError(f"Reply failed: {response.status_code} {response.text}")


def get_message_content(message_id: str) -> tuple[bytes, str]:
    url = f"{DATA_API_BASE}/v2/bot/message/{message_id}/content"
    headers = {"Authorization": _headers()["Authorization"]}
    response = requests.get(url, headers=headers, timeout=10)
    if response.status_code >= 300:
        raise LineApiError(f"Content fetch failed: {response.status_code} {response.text}")
    return response.content, response.headers.get("Content-Type") or "application/octet-stream"


def exchange_code(code: str, redirect_uri: str) -> dict:
    response = requests.post(
        f"{API_BASE}/oauth2/v2.1/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": get_line_channel_id(),
            "client_secret": get_line_login_secret(),
        },
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        timeout=10,
    )
    if response.status_code >= 300:
        raise LineApiError(f"LINE token exchange failed: {response.status_code} {response.text}")
    return response.json()


def get_profile(access_token: str) -> dict:
    response = requests.get(
        f"{API_BASE}/v2/profile",
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=10,
    )
    if response.status_code >= 300:
        raise LineApiError(f"LINE profile fetch failed: {response.status_code} {response.text}")
    return response.json()
