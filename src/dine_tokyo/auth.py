from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import jwt

from dine_tokyo import repositories
from dine_tokyo.config import get_app_url, get_line_channel_id, get_line_login_secret, get_session_ttl_days
from dine_tokyo.line_api import AUTHORIZE_URL
from dine_tokyo.web import HttpError

SESSION_TOKEN_PREFIX = "dt_sess_"
LINE_LOGIN_SCOPE = "profile openid email"
LINE_ISSUER = "https://access.line.me"
ID_TOKEN_ALGORITHM = "HS256"


class AuthError(HttpError):
    pass


def bearer_token(headers: dict[str, Any]) -> str | None:
    auth = headers.get("authorization") or headers.get("Authorization")
    if not auth:
        return None
    parts = auth.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def create_session(cursor, user_id: str) -> str:
    token = f"{SESSION_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"
    expires_at = datetime.now(timezone.utc) + timedelta(days=get_session_ttl_days())
    repositories.create_auth_session(cursor, token, user_id, expires_at)
    return token


def resolve_user(cursor, headers: dict[str, Any]) -> dict:
    token = bearer_token(headers)
    if not token or not token.startswith(SESSION_TOKEN_PREFIX):
        raise AuthError(401, "Unauthorized")
    user = repositories.get_session_user(cursor, token)
    if not user:
        raise AuthError(401, "Unauthorized")
    return user


def has_active_subscription(user: dict, now: datetime | None = None) -> bool:
    status = user.get("subscription_status")
    if status == "active":
        return True
    if status == "canceled":
        period_end = user.get("subscription_period_end")
        if period_end is None:
            return False
        if period_end.tzinfo is None:
            period_end = period_end.replace(tzinfo=timezone.utc)
        return period_end > (now or datetime.now(timezone.utc))
    return False


def require_active_subscription(user: dict) -> None:
    if not has_active_subscription(user):
        raise AuthError(403, "Active subscription required")


def require_admin(user: dict) -> None:
    if not user.get("is_admin"):
        raise AuthError(403, "Admin access required")


def callback_url() -> str:
    return f"{get_app_url()}/api/auth/callback"


def build_authorize_url(state: str, nonce: str) -> str:
    params = {
        "response_type": "code",
        "client_id": get_line_channel_id(),
        "redirect_uri": callback_url(),
        "state": state,
        "scope": LINE_LOGIN_SCOPE,
        "nonce": nonce,
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


def decode_id_token(id_token: str) -> dict:
    """Verifies a LINE Login id_token (HS256 over the channel secret) and
    returns its claims. Raises `jwt.InvalidTokenError` on a bad signature,
    audience, issuer or an expired token; the nonce is checked by the caller.
    """
    return jwt.decode(
        id_token,
        get_line_login_secret(),
        algorithms=[ID_TOKEN_ALGORITHM],
        audience=get_line_channel_id(),
        issuer=LINE_ISSUER,
    )
