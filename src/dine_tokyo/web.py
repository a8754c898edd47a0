from __future__ import annotations

import base64
import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from dine_tokyo.config import get_log_level

logger = logging.getLogger(__name__)
logger.setLevel(get_log_level())


class HttpError(RuntimeError):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def cors_headers() -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Headers": "*",
        "Access-Control-Allow-Methods": "GET,POST,PUT,PATCH,DELETE,OPTIONS",
    }


def response(payload: dict | list | None, status: int = 200) -> dict:
    body = "" if payload is None else json.dumps(payload, default=_json_default, ensure_ascii=False)
    headers = {"Content-Type": "application/json", **cors_headers()}
    return {"statusCode": status, "headers": headers, "body": body}


def error(message: str, status: int) -> dict:
    return response({"error": message}, status=status)


def method_not_allowed() -> dict:
    return error("method not allowed", 405)


def get_method(event: dict) -> str:
    return event.get("httpMethod") or ((event.get("requestContext") or {}).get("http") or {}).get("method") or ""


def get_path(event: dict) -> str:
    return event.get("rawPath") or event.get("path") or ""


def get_headers(event: dict) -> dict[str, Any]:
    return event.get("headers") or {}


def get_header(event: dict, name: str) -> str | None:
    lowered = name.lower()
    for key, value in get_headers(event).items():
        if key.lower() == lowered:
            return value
    return None


def get_query_params(event: dict) -> dict[str, Any]:
    return event.get("queryStringParameters") or {}


def get_body(event: dict) -> str:
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            decoded = base64.b64decode(body)
        except Exception:
            logger.exception("Failed to decode base64 request body")
            return ""
        try:
            return decoded.decode("utf-8")
        except Exception:
            logger.exception("Failed to decode request body as UTF-8")
            return ""
    return body


def parse_json_body(event: dict) -> dict:
    raw = get_body(event).strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except Exception:
        logger.exception("Failed to parse JSON request body")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def path_parts(path: str, prefix: str) -> list[str]:
    rest = path[len(prefix):].strip("/")
    return [p for p in rest.split("/") if p]


def parse_int(value: Any, default: int | None = None) -> int | None:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except Exception:
        return default


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float, Decimal)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return False


def clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""
