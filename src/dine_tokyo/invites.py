from __future__ import annotations

import re
import secrets
import string
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

INVITE_TOKEN_LENGTH = 32
SHORT_CODE_LENGTH = 6
MAX_GROUP_SIZE = 3
ENTRY_CLOSE_HOURS = 48

_TOKEN_ALPHABET = string.ascii_letters + string.digits
_SHORT_CODE_ALPHABET = string.ascii_uppercase + string.digits
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9]+$")


def generate_invite_token() -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(INVITE_TOKEN_LENGTH))


def generate_short_code() -> str:
    return "".join(secrets.choice(_SHORT_CODE_ALPHABET) for _ in range(SHORT_CODE_LENGTH))


def extract_invite_token(value) -> str | None:
    """Accepts an invite URL (``/invite/<token>`` or ``?token=``), a short code
    or a bare token and returns the code part."""
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if "/" in raw or "?" in raw:
        parsed = urlparse(raw)
        token = (parse_qs(parsed.query).get("token") or [""])[0]
        if not token:
            parts = [p for p in parsed.path.split("/") if p]
            if "invite" in parts and parts.index("invite") + 1 < len(parts):
                token = parts[parts.index("invite") + 1]
        raw = token.strip()
    if not raw or not _TOKEN_PATTERN.match(raw):
        return None
    return raw


def looks_like_short_code(value: str) -> bool:
    return len(value) == SHORT_CODE_LENGTH


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def is_entry_closed(event_date: datetime, now: datetime | None = None) -> bool:
    """True from 48 hours before the event start onward, including after it has started."""
    now = now or datetime.now(timezone.utc)
    remaining = _as_aware(event_date) - now
    return remaining <= timedelta(hours=ENTRY_CLOSE_HOURS)


def hours_until(event_date: datetime, now: datetime | None = None) -> float:
    now = now or datetime.now(timezone.utc)
    return (_as_aware(event_date) - now).total_seconds() / 3600
