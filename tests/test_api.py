from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone

import jwt
import psycopg2
import pytest
import stripe

from conftest import USER_ID, body_of, make_event
from dine_tokyo import api, billing, line_api, repositories

NOW = datetime(2026, 11, 1, 3, 0, tzinfo=timezone.utc)
EVENT_ID = "22222222-2222-2222-2222-222222222222"
MATCH_ID = "33333333-3333-3333-3333-333333333333"
OTHER_ID = "44444444-4444-4444-4444-444444444444"


@pytest.fixture(autouse=True)
def frozen_now(monkeypatch):
    monkeypatch.setattr(api, "_now", lambda: NOW)


def _call(event):
    return api.lambda_handler(event, None)


def _event_row(hours_ahead=72, status="open", required_stage="bronze"):
    return {
        "id": EVENT_ID,
        "event_date": NOW + timedelta(hours=hours_ahead),
        "area": "shibuya",
        "status": status,
        "required_stage": required_stage,
    }


# plumbing

def test_ping_and_preflight():
    assert body_of(_call(make_event("GET", "/api/ping", token=None))) == {"ok": True}
    preflight = _call(make_event("OPTIONS", "/api/me", token=None))
    assert preflight["statusCode"] == 204
    assert "DELETE" in preflight["headers"]["Access-Control-Allow-Methods"]


def test_unknown_route_is_404(cursor):
    assert _call(make_event("GET", "/api/nope"))["statusCode"] == 404


def test_missing_session_is_401(cursor, monkeypatch):
    monkeypatch.setattr(repositories, "get_session_user", lambda _c, token: None)
    resp = _call(make_event("GET", "/api/me"))
    assert resp["statusCode"] == 401
    assert body_of(resp) == {"error": "Unauthorized"}


def test_wrong_method_is_405(cursor):
    assert _call(make_event("POST", "/api/me"))["statusCode"] == 405


# auth

def test_auth_line_returns_authorize_url():
    resp = _call(make_event("GET", "/api/auth/line", token=None))
    payload = body_of(resp)
    assert payload["url"].startswith("https://access.line.me/oauth2/v2.1/authorize?")
    assert f"state={payload['state']}" in payload["url"]
    assert "redirect_uri=https%3A%2F%2Fdine.example.com%2Fapi%2Fauth%2Fcallback" in payload["url"]


def _id_token(claims, secret="line-secret", **overrides):
    payload = {
        "iss": "https://access.line.me",
        "aud": "1234567890",
        "sub": "Unew",
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
        **claims,
        **overrides,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def test_auth_callback_rejects_state_mismatch(cursor):
    resp = _call(make_event("POST", "/api/auth/callback", {"code": "c", "state": "a", "expectedState": "b"}, token=None))
    assert resp["statusCode"] == 400
    assert body_of(resp)["error"] == "Invalid state"


def test_auth_callback_creates_referred_user(cursor, monkeypatch):
    referrer = "55555555-5555-5555-5555-555555555555"
    monkeypatch.setattr(line_api, "exchange_code", lambda code, uri: {"id_token": _id_token({"nonce": "n1"}), "access_token": "at"})
    monkeypatch.setattr(line_api, "get_profile", lambda token: {"userId": "Unew", "displayName": "Hana", "pictureUrl": None})
    monkeypatch.setattr(repositories, "get_user_by_line_id", lambda _c, line_id: None)
    monkeypatch.setattr(repositories, "get_user", lambda _c, uid: {"id": uid})
    created = {}

    def fake_create(_c, line_user_id, display_name, avatar_url, referred_by):
        created.update(line_user_id=line_user_id, display_name=display_name, referred_by=referred_by)
        return {"id": USER_ID}

    referrals = []
    sessions = []
    monkeypatch.setattr(repositories, "create_line_user", fake_create)
    monkeypatch.setattr(repositories, "create_referral", lambda _c, a, b: referrals.append((a, b)))
    monkeypatch.setattr(repositories, "create_auth_session", lambda _c, token, uid, exp: sessions.append(token))
    body = {
        "code": "c", "state": "s1", "expectedState": "s1", "nonce": "n1",
        "referralCode": base64.urlsafe_b64encode(referrer.encode()).decode().rstrip("="),
    }

    payload = body_of(_call(make_event("POST", "/api/auth/callback", body, token=None)))

    assert created == {"line_user_id": "Unew", "display_name": "Hana", "referred_by": referrer}
    assert referrals == [(referrer, USER_ID)]
    assert payload["needsOnboarding"] is True
    assert payload["sessionToken"] == sessions[0]
    assert payload["sessionToken"].startswith("dt_sess_")


def test_auth_callback_rejects_forged_id_token(cursor, monkeypatch):
    forged = _id_token({"nonce": "n1"}, secret="someone-else")
    monkeypatch.setattr(line_api, "exchange_code", lambda code, uri: {"id_token": forged, "access_token": "at"})
    body = {"code": "c", "state": "s1", "expectedState": "s1", "nonce": "n1"}

    resp = _call(make_event("POST", "/api/auth/callback", body, token=None))

    assert resp["statusCode"] == 400
    assert body_of(resp)["error"] == "Invalid id_token"


def test_auth_callback_rejects_nonce_mismatch(cursor, monkeypatch):
    monkeypatch.setattr(line_api, "exchange_code", lambda code, uri: {"id_token": _id_token({"nonce": "other"}), "access_token": "at"})
    body = {"code": "c", "state": "s1", "expectedState": "s1", "nonce": "n1"}
    resp = _call(make_event("POST", "/api/auth/callback", body, token=None))
    assert resp["statusCode"] == 400
    assert body_of(resp)["error"] == "Invalid nonce"


# profile

def test_me_returns_stage_and_badges(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "list_user_badges", lambda _c, uid: [{"slug": "founding_member"}])
    monkeypatch.setattr(repositories, "list_user_participations", lambda _c, uid: [])

    payload = body_of(_call(make_event("GET", "/api/me")))

    assert payload["user"]["displayName"] == "Taro"
    assert payload["stage"]["stage"] == "bronze"
    assert payload["stage"]["pointsToNext"] == 60
    assert payload["badges"] == [{"slug": "founding_member"}]
    assert payload["hasActiveSubscription"] is True


@pytest.mark.parametrize(
    "body, message",
    [
        ({"display_name": "Taro", "gender": "male", "birth_date": "1990-01-01"}, "Missing required fields"),
        ({"display_name": "Taro", "gender": "other", "birth_date": "1990-01-01", "job": "x"}, "Invalid gender"),
        ({"display_name": "Taro", "gender": "male", "birth_date": "1990-02-30", "job": "x"}, "Missing required fields"),
        ({"display_name": "T" * 51, "gender": "male", "birth_date": "1990-01-01", "job": "x"}, "表示名は50文字以内で入力してください"),
    ],
)
def test_onboarding_validation(cursor, login, member, body, message):
    login(member)
    resp = _call(make_event("POST", "/api/onboarding", body))
    assert resp["statusCode"] == 400
    assert body_of(resp)["error"] == message


def test_personality_from_quiz_answers(cursor, login, member, monkeypatch):
    login(member)
    updates = []
    monkeypatch.setattr(repositories, "update_user", lambda _c, uid, fields: updates.append(fields))
    answers = ["I", "S", "A", "T", "C", "DEEP", "PASSIVE", "HARMONY", "SOLO", "SOLVE"]

    payload = body_of(_call(make_event("PUT", "/api/profile/personality", {"answers": answers})))

    assert payload == {"success": True, "personality_type": "Analyst"}
    assert updates == [{"personality_type": "Analyst"}]


def test_avatar_upload_puts_object(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setenv("UPLOAD_BUCKET_NAME", "bucket")
    monkeypatch.setenv("UPLOAD_PUBLIC_BASE_URL", "https://cdn.example.com/")
    puts = []

    class FakeS3:
        def put_object(self, **kwargs):
            puts.append(kwargs)

    monkeypatch.setattr(api, "_s3_client", FakeS3())
    monkeypatch.setattr(repositories, "update_user", lambda _c, uid, fields: fields)
    data_url = "data:image/png;base64," + base64.b64encode(b"\x89PNG fake").decode()

    resp = _call(make_event("POST", "/api/profile/avatar", {"dataUrl": data_url}))

    assert resp["statusCode"] == 201
    payload = body_of(resp)
    assert payload["key"].startswith(f"uploads/avatar/{USER_ID}/")
    assert payload["key"].endswith(".png")
    assert payload["url"] == f"https://cdn.example.com/{payload['key']}"
    assert puts[0]["Bucket"] == "bucket"
    assert puts[0]["ContentType"] == "image/png"


def test_avatar_upload_rejects_unknown_type(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setenv("UPLOAD_BUCKET_NAME", "bucket")
    monkeypatch.setenv("UPLOAD_PUBLIC_BASE_URL", "https://cdn.example.com")
    resp = _call(make_event("POST", "/api/profile/avatar", {"dataBase64": "AAAA", "contentType": "image/gif"}))
    assert resp["statusCode"] == 400


def test_referral_link(cursor, login, member):
    login(member)
    payload = body_of(_call(make_event("GET", "/api/referral/link")))
    assert payload["referralUrl"] == f"https://dine.example.com?ref={payload['referralCode']}"


# events

def test_events_list_filters_by_stage(cursor, login, member, monkeypatch):
    login(member)
    gold_only = {**_event_row(), "id": "gold", "required_stage": "gold"}
    monkeypatch.setattr(repositories, "list_open_events", lambda _c, since: [_event_row(), gold_only])

    payload = body_of(_call(make_event("GET", "/api/events")))

    assert [e["id"] for e in payload["events"]] == [EVENT_ID]
    assert payload["events"][0]["areaLabel"] == "渋谷"
    assert payload["events"][0]["entryClosed"] is False


def test_next_event_looks_two_days_ahead(cursor, monkeypatch):
    seen = []

    def fake_next(_c, since):
        seen.append(since)
        return {"area": "ginza", "event_date": datetime(2026, 11, 7, 10, 0, tzinfo=timezone.utc)}

    monkeypatch.setattr(repositories, "get_next_open_event", fake_next)

    payload = body_of(_call(make_event("GET", "/api/next-event", token=None)))

    assert payload == {"nextEvent": {"area": "銀座", "date": "11/7(土)"}}
    # NOW is 12:00 JST on 1 Nov; the cutoff is midnight JST on 3 Nov
    assert seen[0] == datetime(2026, 11, 2, 15, 0, tzinfo=timezone.utc)


def _entry_body(**overrides):
    return {"event_id": EVENT_ID, "entry_type": "pair", "mood": "lively", "budget_level": 2, **overrides}


def test_entry_requires_subscription(cursor, login, member):
    login({**member, "subscription_status": "none"})
    resp = _call(make_event("POST", "/api/events/entry", _entry_body()))
    assert resp["statusCode"] == 403
    assert body_of(resp)["error"] == "Active subscription required"


def test_entry_rejected_inside_48_hours(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_event", lambda _c, eid: _event_row(hours_ahead=30))
    resp = _call(make_event("POST", "/api/events/entry", _entry_body()))
    assert resp["statusCode"] == 400


def test_entry_rejected_after_start_of_open_event(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_event", lambda _c, eid: _event_row(hours_ahead=-5))
    created = []
    monkeypatch.setattr(repositories, "create_participation", lambda *args: created.append(args))

    resp = _call(make_event("POST", "/api/events/entry", _entry_body()))

    assert resp["statusCode"] == 400
    assert created == []


def test_invite_accept_rejected_after_start(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_participation_by_invite",
                        lambda _c, invite_token=None, short_code=None: _inviter())
    monkeypatch.setattr(repositories, "get_event", lambda _c, eid: _event_row(hours_ahead=-1))
    monkeypatch.setattr(repositories, "count_active_group_members", lambda _c, gid: 1)

    body = {"token": "T" * 32, "mood": "lively", "budget_level": 1}
    resp = _call(make_event("POST", "/api/invite/accept", body))

    assert resp["statusCode"] == 400
    assert "招待参加はできません" in body_of(resp)["error"]


def test_entry_rejects_duplicate(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_event", lambda _c, eid: _event_row())
    monkeypatch.setattr(repositories, "get_participation", lambda _c, uid, eid: {"id": "p1", "status": "pending"})
    resp = _call(make_event("POST", "/api/events/entry", _entry_body()))
    assert body_of(resp) == {"error": "Already entered this event"}


def test_pair_entry_returns_invite_codes(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_event", lambda _c, eid: _event_row())
    monkeypatch.setattr(repositories, "get_participation", lambda _c, uid, eid: {"id": "p1", "status": "canceled"})
    reactivated = []
    monkeypatch.setattr(repositories, "reactivate_participation", lambda _c, pid, *args: reactivated.append((pid, args)))

    payload = body_of(_call(make_event("POST", "/api/events/entry", _entry_body())))

    assert payload["success"] is True
    assert len(payload["invite_token"]) == 32
    assert len(payload["short_code"]) == 6
    pid, args = reactivated[0]
    assert pid == "p1"
    assert args[1:] == ("pair", payload["invite_token"], payload["short_code"], "lively", None, 2)


def test_solo_entry_hides_invite_codes(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_event", lambda _c, eid: _event_row())
    monkeypatch.setattr(repositories, "get_participation", lambda _c, uid, eid: None)
    monkeypatch.setattr(repositories, "create_participation", lambda *args: {"id": "p2"})

    payload = body_of(_call(make_event("POST", "/api/events/entry", _entry_body(entry_type="solo"))))

    assert payload == {"success": True, "invite_token": None, "short_code": None}


def test_entry_cancel_refuses_matched(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_participation_by_id", lambda _c, pid, uid: {"id": pid, "status": "matched"})
    resp = _call(make_event("DELETE", "/api/events/entry", {"participation_id": "p1"}))
    assert resp["statusCode"] == 400


def test_attendance_late_cancel_penalty(cursor, login, member, monkeypatch):
    login(member)
    participation = {"id": "p1", "status": "matched", "attendance_status": "attending",
                     "event_date": NOW + timedelta(hours=5)}
    monkeypatch.setattr(repositories, "get_participation_by_id", lambda _c, pid, uid: participation)
    attendance = []
    points = []
    monkeypatch.setattr(repositories, "update_attendance", lambda _c, *args: attendance.append(args))
    monkeypatch.setattr(repositories, "add_stage_points", lambda _c, *args: points.append(args))

    payload = body_of(_call(make_event("PATCH", "/api/events/attendance", {"participation_id": "p1", "action": "cancel"})))

    assert payload["penalty_points"] == -50
    assert attendance == [("p1", "canceled", None, None)]
    assert points == [(USER_ID, -50, "late_cancel", "p1")]


def test_attendance_closed_after_event(cursor, login, member, monkeypatch):
    login(member)
    participation = {"id": "p1", "status": "matched", "event_date": NOW - timedelta(hours=4)}
    monkeypatch.setattr(repositories, "get_participation_by_id", lambda _c, pid, uid: participation)
    body = {"participation_id": "p1", "action": "late", "late_minutes": 15}
    assert _call(make_event("PATCH", "/api/events/attendance", body))["statusCode"] == 400


# invites

def _inviter():
    return {"id": "p0", "user_id": OTHER_ID, "event_id": EVENT_ID, "group_id": "grp", "invite_token": "T" * 32}


def test_invite_resolve_by_short_code_without_login(cursor, monkeypatch):
    monkeypatch.setattr(repositories, "get_session_user", lambda _c, token: None)
    lookups = []

    def fake_lookup(_c, invite_token=None, short_code=None):
        lookups.append((invite_token, short_code))
        return _inviter() if short_code == "ABC123" else None

    monkeypatch.setattr(repositories, "get_participation_by_invite", fake_lookup)
    monkeypatch.setattr(repositories, "get_event", lambda _c, eid: _event_row())
    monkeypatch.setattr(repositories, "count_active_group_members", lambda _c, gid: 1)
    monkeypatch.setattr(repositories, "get_user", lambda _c, uid: {"display_name": "Hana"})

    payload = body_of(_call(make_event("POST", "/api/invite/resolve", {"input": "ABC123"}, token=None)))

    assert lookups == [(None, "ABC123")]
    assert payload["inviterName"] == "Hana"
    assert payload["token"] == "T" * 32
    assert payload["isEligibleForCoupon"] is True


def test_invite_resolve_full_group(cursor, monkeypatch):
    monkeypatch.setattr(repositories, "get_participation_by_invite", lambda _c, invite_token=None, short_code=None: _inviter())
    monkeypatch.setattr(repositories, "get_event", lambda _c, eid: _event_row())
    monkeypatch.setattr(repositories, "count_active_group_members", lambda _c, gid: 3)

    resp = _call(make_event("POST", "/api/invite/resolve", {"input": "ABC123"}, token=None))

    assert resp["statusCode"] == 400
    assert "グループ上限" in body_of(resp)["error"]


def test_invite_accept_refuses_self(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_participation_by_invite",
                        lambda _c, invite_token=None, short_code=None: {**_inviter(), "user_id": USER_ID})
    monkeypatch.setattr(repositories, "get_event", lambda _c, eid: _event_row())
    monkeypatch.setattr(repositories, "count_active_group_members", lambda _c, gid: 1)

    body = {"token": "T" * 32, "mood": "lively", "budget_level": 1}
    resp = _call(make_event("POST", "/api/invite/accept", body))

    assert body_of(resp) == {"error": "自分自身を招待することはできません"}


def test_invite_accept_joins_group(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_participation_by_invite", lambda _c, invite_token=None, short_code=None: _inviter())
    monkeypatch.setattr(repositories, "get_event", lambda _c, eid: _event_row())
    monkeypatch.setattr(repositories, "count_active_group_members", lambda _c, gid: 2)
    monkeypatch.setattr(repositories, "get_participation", lambda _c, uid, eid: None)
    created = []
    monkeypatch.setattr(repositories, "create_participation", lambda _c, *args: created.append(args))

    body = {"token": "T" * 32, "mood": "relaxed", "budget_level": 3}
    assert body_of(_call(make_event("POST", "/api/invite/accept", body))) == {"success": True}
    assert created[0][:4] == (USER_ID, EVENT_ID, "grp", "pair")


# reviews

def _match(hours_ago=3):
    return {
        "id": MATCH_ID,
        "event_date": NOW - timedelta(hours=hours_ago),
        "area": "ebisu",
        "restaurant_name": "Bistro",
        "table_members": [USER_ID, OTHER_ID, "guest:g1"],
    }


def test_review_not_open_yet(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: _match(hours_ago=1))
    body = {"match_id": MATCH_ID, "target_user_id": OTHER_ID, "rating": 4}
    assert _call(make_event("POST", "/api/reviews", body))["statusCode"] == 403


def test_review_requires_table_membership(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: {**_match(), "table_members": [OTHER_ID]})
    body = {"match_id": MATCH_ID, "target_user_id": OTHER_ID, "rating": 4}
    assert _call(make_event("POST", "/api/reviews", body))["statusCode"] == 403


def test_review_awards_points(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: _match())
    monkeypatch.setattr(repositories, "review_exists", lambda *args: False)
    reviews = []

    def fake_create(_c, *args):
        reviews.append(args)
        return {"id": "r1"}

    points = []
    monkeypatch.setattr(repositories, "create_review", fake_create)
    monkeypatch.setattr(repositories, "add_stage_points", lambda _c, *args: points.append(args))
    body = {"match_id": MATCH_ID, "target_user_id": OTHER_ID, "rating": 2, "comment": "…"}

    resp = _call(make_event("POST", "/api/reviews", body))

    assert resp["statusCode"] == 201
    # rating 2 always blocks
    assert reviews[0][6] is True
    assert points == [(USER_ID, 20, "review_sent", "r1"), (OTHER_ID, 10, "review_received", "r1")]


def test_no_show_review_penalises_target(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: _match())
    monkeypatch.setattr(repositories, "review_exists", lambda *args: False)
    monkeypatch.setattr(repositories, "create_review", lambda _c, *args: {"id": "r2"})
    points = []
    monkeypatch.setattr(repositories, "add_stage_points", lambda _c, *args: points.append(args))
    body = {"match_id": MATCH_ID, "target_user_id": OTHER_ID, "rating": 0, "is_no_show": True}

    assert _call(make_event("POST", "/api/reviews", body))["statusCode"] == 201
    assert points[1] == (OTHER_ID, -100, "no_show", "r2")


def test_reviews_list_excludes_self_and_guests(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: _match())
    requested = []

    def fake_users(_c, ids):
        requested.extend(ids)
        return [{"id": OTHER_ID, "display_name": "Hana"}]

    monkeypatch.setattr(repositories, "get_users_by_ids", fake_users)
    monkeypatch.setattr(repositories, "list_reviews_by_reviewer", lambda *args: [{"target_user_id": OTHER_ID}])

    payload = body_of(_call(make_event("GET", "/api/reviews", query={"match_id": MATCH_ID})))

    assert requested == [OTHER_ID]
    assert payload["members"] == [{"id": OTHER_ID, "displayName": "Hana", "avatarUrl": None, "reviewed": True}]
    assert payload["reviewsOpen"] is True


# billing

def test_stripe_webhook_requires_signature(cursor):
    resp = _call(make_event("POST", "/api/webhooks/stripe", "{}", token=None))
    assert resp["statusCode"] == 400
    assert body_of(resp) == {"error": "Missing stripe signature"}


def test_stripe_webhook_rejects_bad_signature(cursor, monkeypatch):
    def fake_construct(payload, signature):
        raise stripe.SignatureVerificationError("bad", signature)

    monkeypatch.setattr(billing, "construct_event", fake_construct)
    event = make_event("POST", "/api/webhooks/stripe", "{}", token=None, headers={"Stripe-Signature": "t=1,v1=x"})
    assert _call(event)["statusCode"] == 400


def test_stripe_webhook_dispatches(cursor, monkeypatch):
    handled = []
    monkeypatch.setattr(billing, "construct_event", lambda payload, sig: {"type": "invoice.paid"})
    monkeypatch.setattr(billing, "handle_event", lambda _c, evt: handled.append(evt["type"]))
    event = make_event("POST", "/api/webhooks/stripe", "{}", token=None, headers={"stripe-signature": "t=1,v1=x"})

    assert body_of(_call(event)) == {"received": True}
    assert handled == ["invoice.paid"]


def test_stripe_webhook_handler_failure_is_500(cursor, monkeypatch):
    monkeypatch.setattr(billing, "construct_event", lambda payload, sig: {"type": "x"})

    def boom(_c, evt):
        raise RuntimeError("db down")

    monkeypatch.setattr(billing, "handle_event", boom)
    event = make_event("POST", "/api/webhooks/stripe", "{}", token=None, headers={"Stripe-Signature": "sig"})
    assert _call(event)["statusCode"] == 500


def test_create_checkout_passes_pending_invite(cursor, login, member, monkeypatch):
    login({**member, "pending_invite_token": "Pending1"})
    seen = {}

    def fake_checkout(user, event_entry=None, invite_token=None):
        seen.update(event_entry=event_entry, invite_token=invite_token)
        return "https://checkout.stripe.com/x"

    monkeypatch.setattr(billing, "create_checkout_session", fake_checkout)
    body = {"event_entry": {"event_id": EVENT_ID, "entry_type": "solo", "mood": "relaxed", "budget_level": 1}}

    assert body_of(_call(make_event("POST", "/api/stripe/create-checkout", body))) == {"url": "https://checkout.stripe.com/x"}
    assert seen["invite_token"] == "Pending1"
    assert seen["event_entry"]["event_id"] == EVENT_ID


def test_affiliate_apply_once(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_affiliate_code", lambda _c, code: {"id": "a1", "name": "Partner", "is_active": True})
    monkeypatch.setattr(repositories, "affiliate_use_exists", lambda _c, aid, uid: True)
    resp = _call(make_event("POST", "/api/affiliate/apply", {"code": "abcd1234"}))
    assert body_of(resp) == {"error": "このコードは既に適用済みです"}


def test_account_delete_cancels_stripe_first(cursor, login, member, monkeypatch):
    login(member)
    order = []
    monkeypatch.setattr(billing, "cancel_customer_subscriptions", lambda cid: order.append(("stripe", cid)))
    monkeypatch.setattr(repositories, "delete_user_data", lambda _c, uid: order.append(("delete", uid)))

    assert body_of(_call(make_event("DELETE", "/api/account"))) == {"success": True}
    assert order == [("stripe", "cus_123"), ("delete", USER_ID)]


# icebreaker

def _session(status="waiting", game_type="word_wolf", host=USER_ID, game_data=None):
    return {"id": "s1", "match_id": MATCH_ID, "game_type": game_type, "status": status,
            "host_user_id": host, "current_round": 0, "game_data": game_data or {}}


def _ice_players(*ids, data=None):
    return [{"user_id": uid, "display_name": uid, "is_ready": True, "player_data": (data or {}).get(uid, {})}
            for uid in ids]


def test_icebreaker_games_catalog(cursor):
    payload = body_of(_call(make_event("GET", "/api/icebreaker/games")))
    assert len(payload["games"]) == 9


def test_session_create_joins_active_session(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: _match())
    monkeypatch.setattr(repositories, "get_active_ice_session", lambda _c, mid: _session(host=OTHER_ID))
    joined = []
    monkeypatch.setattr(repositories, "add_ice_player", lambda _c, sid, uid, is_ready=False: joined.append(uid) or True)
    monkeypatch.setattr(repositories, "list_ice_players", lambda _c, sid: _ice_players(OTHER_ID, USER_ID))

    resp = _call(make_event("POST", "/api/icebreaker/session", {"match_id": MATCH_ID, "game_type": "questions"}))

    assert resp["statusCode"] == 200
    assert body_of(resp)["joinedExisting"] is True
    assert joined == [USER_ID]


def test_session_create_joins_session_created_concurrently(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: _match())
    lookups = iter([None, _session(host=OTHER_ID)])
    monkeypatch.setattr(repositories, "get_active_ice_session", lambda _c, mid: next(lookups))

    def fake_create(_c, mid, game_type, host):
        raise psycopg2.IntegrityError("duplicate key value violates unique constraint")

    monkeypatch.setattr(repositories, "create_ice_session", fake_create)
    joined = []
    monkeypatch.setattr(repositories, "add_ice_player",
                        lambda _c, sid, uid, is_ready=False: joined.append((sid, uid, is_ready)) or True)
    monkeypatch.setattr(repositories, "list_ice_players", lambda _c, sid: _ice_players(OTHER_ID, USER_ID))

    resp = _call(make_event("POST", "/api/icebreaker/session", {"match_id": MATCH_ID, "game_type": "questions"}))

    assert resp["statusCode"] == 200
    assert body_of(resp)["joinedExisting"] is True
    assert joined == [("s1", USER_ID, False)]
    sql = [stmt for stmt, _ in cursor.statements]
    assert sql == ["SAVEPOINT ice_session", "ROLLBACK TO SAVEPOINT ice_session"]


def test_session_start_checks_player_count(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: _match())
    monkeypatch.setattr(repositories, "get_ice_session", lambda _c, sid, for_update=False: _session())
    monkeypatch.setattr(repositories, "list_ice_players", lambda _c, sid: _ice_players(USER_ID, OTHER_ID))

    resp = _call(make_event("PATCH", "/api/icebreaker/session", {"session_id": "s1", "op": "start"}))

    assert resp["statusCode"] == 400
    assert body_of(resp) == {"error": "Invalid player count for this game"}


def test_session_action_persists_state_and_scores(cursor, login, member, monkeypatch):
    login(member)
    wolf_state = {"majorityWord": "犬", "minorityWord": "猫", "wolfId": OTHER_ID, "votingPhase": True,
                  "resultRevealed": False, "pointsAwarded": False}
    players = _ice_players(USER_ID, OTHER_ID, "u3", "u4",
                           data={USER_ID: {"vote": OTHER_ID}, "u3": {"vote": OTHER_ID}, "u4": {"vote": USER_ID}})
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: _match())
    monkeypatch.setattr(repositories, "get_ice_session",
                        lambda _c, sid, for_update=False: _session(status="playing", game_data=wolf_state))
    monkeypatch.setattr(repositories, "list_ice_players", lambda _c, sid: players)
    saved = {}

    def fake_update(_c, sid, **fields):
        saved.update(fields)
        return _session(status="playing", game_data=fields["game_data"])

    scores = []
    monkeypatch.setattr(repositories, "update_ice_session", fake_update)
    monkeypatch.setattr(repositories, "add_ice_score", lambda _c, mid, uid, pts: scores.append((uid, pts)))

    body = {"session_id": "s1", "op": "action", "action": "reveal"}
    payload = body_of(_call(make_event("PATCH", "/api/icebreaker/session", body)))

    assert saved["game_data"]["wolfCaught"] is True
    assert sorted(scores) == sorted([(USER_ID, 1), ("u3", 1)])
    assert payload["session"]["gameData"]["resultRevealed"] is True


def test_session_action_rejects_invalid_action(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: _match())
    monkeypatch.setattr(repositories, "get_ice_session", lambda _c, sid, for_update=False: _session(status="playing"))
    monkeypatch.setattr(repositories, "list_ice_players", lambda _c, sid: _ice_players(USER_ID))

    body = {"session_id": "s1", "op": "action", "action": "reveal"}
    assert _call(make_event("PATCH", "/api/icebreaker/session", body))["statusCode"] == 400


def test_only_host_ends_session(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_ice_session", lambda _c, sid, for_update=False: _session(host=OTHER_ID))
    resp = _call(make_event("DELETE", "/api/icebreaker/session", query={"session_id": "s1"}))
    assert resp["statusCode"] == 403


def test_session_view_hides_other_players_private_data(cursor, login, member, monkeypatch):
    login(member)
    players = _ice_players(USER_ID, OTHER_ID, data={OTHER_ID: {"myStory": "secret", "answer": "A"}})
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: _match())
    monkeypatch.setattr(repositories, "get_active_ice_session", lambda _c, mid: _session(status="playing"))
    monkeypatch.setattr(repositories, "list_ice_players", lambda _c, sid: players)
    monkeypatch.setattr(repositories, "list_ice_scores", lambda _c, mid: [])

    payload = body_of(_call(make_event("GET", "/api/icebreaker/session", query={"match_id": MATCH_ID})))

    other = next(p for p in payload["session"]["players"] if p["userId"] == OTHER_ID)
    assert other["playerData"] == {"answer": "A"}
    assert other["submitted"] == ["answer", "myStory"]


def test_player_update_rejects_unknown_keys(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: _match())
    monkeypatch.setattr(repositories, "get_ice_session", lambda _c, sid, for_update=False: _session(status="playing"))
    monkeypatch.setattr(repositories, "list_ice_players", lambda _c, sid: _ice_players(USER_ID))

    body = {"session_id": "s1", "player_data": {"score": 99}}
    assert _call(make_event("PATCH", "/api/icebreaker/player", body))["statusCode"] == 400


def test_score_award_must_target_table_member(cursor, login, member, monkeypatch):
    login(member)
    monkeypatch.setattr(repositories, "get_match", lambda _c, mid: _match())
    body = {"match_id": MATCH_ID, "awards": [{"user_id": "stranger", "points": 1}]}
    assert _call(make_event("POST", "/api/icebreaker/score", body))["statusCode"] == 400

    body = {"match_id": MATCH_ID, "awards": [{"user_id": OTHER_ID, "points": 50}]}
    assert _call(make_event("POST", "/api/icebreaker/score", body))["statusCode"] == 400
