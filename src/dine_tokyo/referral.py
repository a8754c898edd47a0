from __future__ import annotations

import base64
import binascii
import re
import secrets
import string

AFFILIATE_CODE_LENGTH = 8
AFFILIATE_CODE_PATTERN = re.compile(r"^[A-Z0-9]{8}$")
_AFFILIATE_ALPHABET = string.ascii_uppercase + string.digits


def encode_referral_code(user_id: str) -> str:
    raw = base64.urlsafe_b64encode(str(user_id).encode("utf-8")).decode("ascii")
    return raw.rstrip("=")


def decode_referral_code(code: str | None) -> str | None:
    if not code or not isinstance(code, str):
        return None
    padded = code.strip() + "=" * (-len(code.strip()) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None
    return decoded or None


def normalize_affiliate_code(value) -> str | None:
    if not isinstance(value, str):
        return None
    code = value.strip().upper()
    if not AFFILIATE_CODE_PATTERN.match(code):
        return None
    return code


def generate_affiliate_code() -> str:
    return "".join(secrets.choice(_AFFILIATE_ALPHABET) for _ in range(AFFILIATE_CODE_LENGTH))
