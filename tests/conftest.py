from __future__ import annotations

import contextlib
import json
import os

os.environ.setdefault("AWS_DEFAULT_REGION", "ap-northeast-1")
os.environ.setdefault("APP_URL", "https://dine.example.com")
os.environ.setdefault("LINE_CHANNEL_ID", "1234567890")
os.environ.setdefault("LINE_CHANNEL_SECRET", "line-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_dummy")
os.environ.setdefault("STRIPE_PRICE_ID", "price_dummy")

import pytest

from dine_tokyo import activity, admin_api, api, handler, repositories

SESSION_TOKEN = "dt_sess_test-token"
USER_ID = "11111111-1111-1111-1111-111111111111"


class FakeCursor:
    """Records statements and hands out queued rows from fetchone()."""

    def __init__(self, rows=None):
        self.statements: list[tuple[str, object]] = []
        self.rows = list(rows or [])

    def execute(self, sql, params=None):
        self.statements.append((sql, params))

    def fetchone(self):
        return self.rows.pop(0) if self.rows else None


@pytest.fixture
def cursor(monkeypatch):
    fake = FakeCursor()

    @contextlib.contextmanager
    def fake_transaction():
        yield fake

    for module in (api, admin_api, handler, activity):
        monkeypatch.setattr(module, "transaction", fake_transaction)
    monkeypatch.setattr(repositories, "insert_activity_log", lambda *args, **kwargs: None)
    return fake


@pytest.fixture
def member():
    return {
        "id": USER_ID,
        "display_name": "Taro",
        "avatar_url": None,
        "gender": "male",
        "birth_date": "1990-01-01",
        "job": "Engineer",
        "personality_type": "Leader",
        "subscription_status": "active",
        "subscription_period_end": None,
        "member_stage": "bronze",
        "stage_points": 40,
        "is_admin": False,
        "is_identity_verified": False,
        "line_user_id": "Uline-taro",
        "stripe_customer_id": "cus_123",
        "referred_by": None,
        "has_used_invite_coupon": False,
        "pending_invite_token": None,
    }


@pytest.fixture
def login(monkeypatch):
    """Makes SESSION_TOKEN resolve to the given user row."""

    def _login(user: dict) -> dict:
        monkeypatch.setattr(
            repositories, "get_session_user", lambda _cursor, token: user if token == SESSION_TOKEN else None
        )
        return user

    return _login


def make_event(method: str, path: str, body=None, query=None, headers=None, token: str | None = SESSION_TOKEN):
    all_headers = {"content-type": "application/json"}
    if token:
        all_headers["authorization"] = f"Bearer {token}"
    all_headers.update(headers or {})
    return {
        "httpMethod": method,
        "path": path,
        "headers": all_headers,
        "queryStringParameters": query,
        "body": body if isinstance(body, str) or body is None else json.dumps(body),
        "isBase64Encoded": False,
    }


def body_of(resp: dict):
    return json.loads(resp["body"]) if resp["body"] else None
