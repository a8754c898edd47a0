from __future__ import annotations

import base64
import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import boto3
import jwt
import psycopg2
import stripe

from dine_tokyo import (
    activity,
    auth,
    billing,
    invites,
    line_api,
    member_stage,
    personality,
    ratings,
    referral,
    repositories,
)
from dine_tokyo.admin_api import handle_admin
from dine_tokyo.auth import AuthError
from dine_tokyo.config import get_app_url, get_log_level, get_upload_bucket_name, get_upload_public_base_url
from dine_tokyo.db import savepoint, transaction
from dine_tokyo.icebreaker import engine
from dine_tokyo.icebreaker.games import GAME_DEFINITIONS, is_known_game, is_valid_player_count
from dine_tokyo.messages import JST, area_label, format_short_date
from dine_tokyo.web import (
    HttpError,
    clean_str,
    coerce_bool,
    error,
    get_body,
    get_header,
    get_headers,
    get_method,
    get_path,
    get_query_params,
    method_not_allowed,
    parse_int,
    parse_json_body,
    response,
)

logger = logging.getLogger(__name__)
logger.setLevel(get_log_level())

ALLOWED_UPLOAD_CONTENT_TYPES: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}
MAX_UPLOAD_BYTES = 2 * 1024 * 1024
MAX_DISPLAY_NAME_LENGTH = 50
ATTENDANCE_WINDOW = timedelta(hours=3)
MAX_SCORE_AWARD = 10

GENDERS = ("male", "female")
MOODS = ("lively", "relaxed", "inspire", "other")
ENTRY_TYPES = ("solo", "pair")
# Keys other players may see in a player's data before the round is revealed.
PUBLIC_PLAYER_KEYS = {"answer", "sharedItems", "introduction"}

_s3_client = boto3.client("s3")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _current_user(event: dict, cursor) -> dict:
    return auth.resolve_user(cursor, get_headers(event))


def _optional_user(event: dict, cursor) -> dict | None:
    try:
        return _current_user(event, cursor)
    except AuthError:
        return None


def _user_to_ui(user: dict) -> dict:
    return {
        "id": str(user["id"]),
        "displayName": user.get("display_name"),
        "avatarUrl": user.get("avatar_url"),
        "gender": user.get("gender"),
        "birthDate": user.get("birth_date"),
        "job": user.get("job"),
        "personalityType": user.get("personality_type"),
        "subscriptionStatus": user.get("subscription_status"),
        "subscriptionPeriodEnd": user.get("subscription_period_end"),
        "memberStage": user.get("member_stage"),
        "stagePoints": user.get("stage_points") or 0,
        "isAdmin": bool(user.get("is_admin")),
        "isIdentityVerified": bool(user.get("is_identity_verified")),
        "hasLineLinked": bool(user.get("line_user_id")),
    }


def _require_match_member(cursor, match_id: str, user_id: str) -> dict:
    match = repositories.get_match(cursor, match_id)
    if not match:
        raise HttpError(404, "Match not found")
    members = [str(m) for m in match.get("table_members") or []]
    if str(user_id) not in members:
        raise HttpError(403, "Not a match participant")
    return match


# auth

def _handle_auth_line(event: dict) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    state = secrets.token_urlsafe(16)
    nonce = secrets.token_urlsafe(16)
    return response({"url": auth.build_authorize_url(state, nonce), "state": state, "nonce": nonce})


def _handle_auth_callback(event: dict) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()

    body = parse_json_body(event)
    code = clean_str(body.get("code"))
    state = clean_str(body.get("state"))
    expected_state = clean_str(body.get("expectedState") or body.get("expected_state"))
    expected_nonce = clean_str(body.get("nonce"))
    if not code or not state:
        return error("Missing code or state", 400)
    if not expected_state or not secrets.compare_digest(state, expected_state):
        return error("Invalid state", 400)

    try:
        tokens = line_api.exchange_code(code, auth.callback_url())
        id_token = tokens.get("id_token")
        if not id_token:
            return error("LINE token response missing id_token", 502)
        try:
            claims = auth.decode_id_token(id_token)
        except jwt.InvalidTokenError as exc:
            logger.warning("Rejected LINE id_token: %s", exc)
            return error("Invalid id_token", 400)
        if not expected_nonce or claims.get("nonce") != expected_nonce:
            return error("Invalid nonce", 400)
        profile = line_api.get_profile(tokens["access_token"])
    except line_api.LineApiError as exc:
        logger.exception("LINE login failed")
        return error(str(exc), 502)

    line_user_id = profile["userId"]
    picture_url = profile.get("pictureUrl")
    with transaction() as cursor:
        user = repositories.get_user_by_line_id(cursor, line_user_id)
        if user:
            if picture_url and picture_url != user.get("avatar_url"):
                user = repositories.update_user(cursor, user["id"], {"avatar_url": picture_url})
            needs_onboarding = not user.get("personality_type")
            activity.log_activity(user["id"], "login", cursor=cursor)
        else:
            referrer_id = referral.decode_referral_code(body.get("referralCode") or body.get("referral_code"))
            if referrer_id and (not _is_uuid(referrer_id) or not repositories.get_user(cursor, referrer_id)):
                referrer_id = None
            user = repositories.create_line_user(
                cursor, line_user_id, profile.get("displayName") or "ゲスト", picture_url, referrer_id
            )
            needs_onboarding = True
            if referrer_id:
                repositories.create_referral(cursor, referrer_id, user["id"])
            activity.log_activity(
                user["id"], "signup", {"referred_by": referrer_id} if referrer_id else None, cursor=cursor
            )

        pending_invite = invites.extract_invite_token(body.get("pendingInvite") or body.get("pending_invite"))
        if pending_invite and repositories.get_participation_by_invite(cursor, invite_token=pending_invite):
            repositories.update_user(cursor, user["id"], {"pending_invite_token": pending_invite})

        session_token = auth.create_session(cursor, user["id"])

    return response(
        {"sessionToken": session_token, "userId": str(user["id"]), "needsOnboarding": needs_onboarding}
    )


def _handle_auth_logout(event: dict) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()
    token = auth.bearer_token(get_headers(event))
    if not token:
        return error("Missing Authorization: Bearer <token>", 401)
    with transaction() as cursor:
        repositories.delete_auth_session(cursor, token)
    return response({"success": True})


# profile

def _handle_me(event: dict) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    with transaction() as cursor:
        user = _current_user(event, cursor)
        badges = repositories.list_user_badges(cursor, user["id"])
        entries = repositories.list_user_participations(cursor, user["id"])
    return response(
        {
            "user": _user_to_ui(user),
            "stage": member_stage.stage_info(user.get("stage_points") or 0),
            "badges": badges,
            "entries": entries,
            "hasActiveSubscription": auth.has_active_subscription(user),
        }
    )


def _parse_birth_date(value: Any) -> str | None:
    raw = clean_str(value)
    if not re.match(r"^\d{4}-\d{2}-\d{2}$", raw):
        return None
    try:
        datetime.strptime(raw, "%Y-%m-%d")
    except ValueError:
        return None
    return raw


def _handle_onboarding(event: dict) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()

    body = parse_json_body(event)
    display_name = clean_str(body.get("display_name"))
    gender = body.get("gender")
    birth_date = _parse_birth_date(body.get("birth_date"))
    job = clean_str(body.get("job"))
    personality_type = body.get("personality_type")
    if not display_name or not gender or not birth_date or not job:
        return error("Missing required fields", 400)
    if len(display_name) > MAX_DISPLAY_NAME_LENGTH:
        return error("表示名は50文字以内で入力してください", 400)
    if gender not in GENDERS:
        return error("Invalid gender", 400)
    if personality_type and not personality.is_valid_type(personality_type):
        return error("有効なパーソナリティタイプを選択してください", 400)

    fields = {"display_name": display_name, "gender": gender, "birth_date": birth_date, "job": job}
    if personality_type:
        fields["personality_type"] = personality_type

    with transaction() as cursor:
        user = _current_user(event, cursor)
        repositories.update_user(cursor, user["id"], fields)
        activity.log_activity(
            user["id"], "onboarding_complete",
            {"gender": gender, "personality_type": personality_type}, cursor=cursor,
        )
    return response({"success": True})


def _handle_profile_update(event: dict) -> dict:
    if get_method(event) != "PUT":
        return method_not_allowed()

    body = parse_json_body(event)
    display_name = clean_str(body.get("display_name"))
    job = clean_str(body.get("job"))
    if not display_name:
        return error("表示名は必須です", 400)
    if len(display_name) > MAX_DISPLAY_NAME_LENGTH:
        return error("表示名は50文字以内で入力してください", 400)
    if not job:
        return error("職業は必須です", 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        updated = repositories.update_user(cursor, user["id"], {"display_name": display_name, "job": job})
        activity.log_activity(user["id"], "profile_update", {"display_name": display_name, "job": job}, cursor=cursor)
    return response({"success": True, "user": _user_to_ui(updated or user)})


def _handle_personality(event: dict) -> dict:
    if get_method(event) != "PUT":
        return method_not_allowed()

    body = parse_json_body(event)
    personality_type = body.get("personality_type")
    answers = body.get("answers")
    if answers is not None:
        if not isinstance(answers, list) or not answers:
            return error("answers must be a non-empty list", 400)
        try:
            personality_type = personality.calculate_type([str(a) for a in answers])
        except ValueError as exc:
            return error(str(exc), 400)
    if not personality.is_valid_type(personality_type):
        return error("有効なパーソナリティタイプを選択してください", 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        repositories.update_user(cursor, user["id"], {"personality_type": personality_type})
    return response({"success": True, "personality_type": personality_type})


def _handle_avatar_upload(event: dict) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()

    bucket = (get_upload_bucket_name() or "").strip()
    public_base_url = (get_upload_public_base_url() or "").strip().rstrip("/")
    if not bucket or not public_base_url:
        return error("Upload is not configured (set UPLOAD_BUCKET_NAME and UPLOAD_PUBLIC_BASE_URL)", 501)

    body = parse_json_body(event)
    raw_b64 = body.get("dataBase64") or body.get("data_base64") or body.get("data")
    content_type = body.get("contentType") or body.get("content_type")
    data_url = body.get("dataUrl") or body.get("data_url")

    if not raw_b64 and isinstance(data_url, str):
        m = re.match(r"^data:(?P<ct>[^;]+);base64,(?P<data>.+)$", data_url.strip())
        if m:
            content_type = content_type or m.group("ct")
            raw_b64 = m.group("data")

    if not isinstance(raw_b64, str) or not raw_b64.strip():
        return error("Missing image data (dataBase64 or dataUrl)", 400)
    if not isinstance(content_type, str) or not content_type.strip():
        return error("Missing contentType (e.g. image/jpeg)", 400)

    content_type = content_type.strip().lower()
    ext = ALLOWED_UPLOAD_CONTENT_TYPES.get(content_type)
    if not ext:
        return error(f"Unsupported contentType: {content_type}", 400)

    try:
        data = base64.b64decode(raw_b64, validate=True)
    except Exception:
        return error("Invalid base64 payload", 400)
    if len(data) > MAX_UPLOAD_BYTES:
        return error(f"Payload too large (max {MAX_UPLOAD_BYTES} bytes)", 413)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        key = f"uploads/avatar/{user['id']}/{uuid.uuid4().hex}.{ext}"
        try:
            _s3_client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl="public, max-age=31536000, immutable",
            )
        except Exception as exc:
            logger.exception("S3 put_object failed")
            return error(f"Upload failed: {exc}", 502)
        avatar_url = f"{public_base_url}/{key}"
        repositories.update_user(cursor, user["id"], {"avatar_url": avatar_url})
    return response({"url": avatar_url, "key": key}, status=201)


def _handle_member_stage(event: dict) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    with transaction() as cursor:
        user = _current_user(event, cursor)
    return response(member_stage.stage_info(user.get("stage_points") or 0))


def _handle_referral_link(event: dict) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    with transaction() as cursor:
        user = _current_user(event, cursor)
    code = referral.encode_referral_code(str(user["id"]))
    return response({"referralCode": code, "referralUrl": f"{get_app_url()}?ref={code}"})


# events

def _event_to_ui(event_row: dict, user: dict | None = None) -> dict:
    ui = {
        "id": str(event_row["id"]),
        "eventDate": event_row["event_date"],
        "area": event_row["area"],
        "areaLabel": area_label(event_row["area"]),
        "status": event_row["status"],
        "requiredStage": event_row.get("required_stage") or "bronze",
        "entryClosed": invites.is_entry_closed(event_row["event_date"], _now()),
    }
    if user is not None:
        ui["canEnter"] = member_stage.can_access_event(user.get("member_stage"), ui["requiredStage"])
    return ui


def _handle_events_list(event: dict) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    with transaction() as cursor:
        user = _current_user(event, cursor)
        rows = repositories.list_open_events(cursor, _now())
    events = [_event_to_ui(r, user) for r in rows]
    return response({"events": [e for e in events if e["canEnter"]]})


def _handle_next_event(event: dict) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    today = _now().astimezone(JST).replace(hour=0, minute=0, second=0, microsecond=0)
    cutoff = today + timedelta(days=2)
    with transaction() as cursor:
        row = repositories.get_next_open_event(cursor, cutoff)
    if not row:
        return response({"nextEvent": None})
    return response(
        {"nextEvent": {"area": area_label(row["area"]), "date": format_short_date(row["event_date"])}}
    )


def _validate_entry_fields(body: dict) -> tuple[dict | None, str | None]:
    entry_type = body.get("entry_type") or "solo"
    mood = body.get("mood")
    budget_level = parse_int(body.get("budget_level"))
    mood_text = clean_str(body.get("mood_text")) or None
    if entry_type not in ENTRY_TYPES:
        return None, "Invalid entry_type"
    if mood not in MOODS:
        return None, "Invalid mood"
    if budget_level not in (1, 2, 3):
        return None, "budget_level must be 1, 2 or 3"
    return {"entry_type": entry_type, "mood": mood, "mood_text": mood_text, "budget_level": budget_level}, None


def _handle_entry(event: dict) -> dict:
    method = get_method(event)
    if method == "POST":
        return _handle_entry_create(event)
    if method == "DELETE":
        return _handle_entry_cancel(event)
    return method_not_allowed()


def _handle_entry_create(event: dict) -> dict:
    body = parse_json_body(event)
    event_id = clean_str(body.get("event_id"))
    if not event_id:
        return error("event_id is required", 400)
    fields, problem = _validate_entry_fields(body)
    if problem:
        return error(problem, 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        auth.require_active_subscription(user)

        event_row = repositories.get_event(cursor, event_id)
        if not event_row or event_row["status"] != "open":
            return error("Event not found or not open", 404)
        if invites.is_entry_closed(event_row["event_date"], _now()):
            return error("開催48時間前を過ぎているため応募できません", 400)
        if not member_stage.can_access_event(user.get("member_stage"), event_row.get("required_stage")):
            return error("このイベントに参加するにはステージが不足しています", 403)

        existing = repositories.get_participation(cursor, user["id"], event_id)
        if existing and existing["status"] != "canceled":
            return error("Already entered this event", 400)

        invite_token = invites.generate_invite_token()
        short_code = invites.generate_short_code()
        group_id = str(uuid.uuid4())
        if existing:
            repositories.reactivate_participation(
                cursor, existing["id"], group_id, fields["entry_type"], invite_token, short_code,
                fields["mood"], fields["mood_text"], fields["budget_level"],
            )
        else:
            repositories.create_participation(
                cursor, user["id"], event_id, group_id, fields["entry_type"], invite_token, short_code,
                fields["mood"], fields["mood_text"], fields["budget_level"],
            )
        activity.log_activity(
            user["id"], "event_join",
            {"event_id": event_id, "entry_type": fields["entry_type"], "mood": fields["mood"]}, cursor=cursor,
        )

    is_pair = fields["entry_type"] == "pair"
    return response(
        {
            "success": True,
            "invite_token": invite_token if is_pair else None,
            "short_code": short_code if is_pair else None,
        }
    )


def _handle_entry_cancel(event: dict) -> dict:
    body = parse_json_body(event)
    participation_id = clean_str(body.get("participation_id"))
    if not participation_id:
        return error("participation_id is required", 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        participation = repositories.get_participation_by_id(cursor, participation_id, user["id"])
        if not participation:
            return error("Participation not found", 404)
        if participation["status"] == "matched":
            return error("マッチング済みのためキャンセルできません", 400)
        if participation["status"] == "canceled":
            return error("Already canceled", 400)
        repositories.set_participation_status(cursor, participation_id, "canceled")
        activity.log_activity(
            user["id"], "event_cancel",
            {"participation_id": participation_id, "event_id": str(participation["event_id"])}, cursor=cursor,
        )
    return response({"success": True})


def _handle_attendance(event: dict) -> dict:
    if get_method(event) != "PATCH":
        return method_not_allowed()

    body = parse_json_body(event)
    participation_id = clean_str(body.get("participation_id"))
    action = body.get("action")
    late_minutes = parse_int(body.get("late_minutes"))
    cancel_reason = clean_str(body.get("cancel_reason")) or None
    if not participation_id or action not in ("cancel", "late"):
        return error("participation_id and action are required", 400)
    if action == "late" and (not late_minutes or late_minutes <= 0):
        return error("late_minutes is required for late action", 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        participation = repositories.get_participation_by_id(cursor, participation_id, user["id"])
        if not participation:
            return error("Participation not found", 404)
        if participation["status"] != "matched":
            return error("マッチング確定後のみ出欠を変更できます", 400)
        now = _now()
        event_date = participation["event_date"]
        if event_date.tzinfo is None:
            event_date = event_date.replace(tzinfo=timezone.utc)
        if now > event_date + ATTENDANCE_WINDOW:
            return error("イベント終了後は出欠を変更できません", 400)
        if participation.get("attendance_status") == "canceled":
            return error("既にキャンセル済みです", 400)

        penalty = 0
        if action == "cancel":
            penalty, reason = member_stage.cancel_penalty(invites.hours_until(event_date, now))
            repositories.update_attendance(cursor, participation_id, "canceled", None, cancel_reason)
            activity.award_stage_points(cursor, user["id"], penalty, reason, participation_id)
            message = f"キャンセルしました。{penalty}ポイントが減算されました。"
        else:
            repositories.update_attendance(cursor, participation_id, "late", late_minutes, None)
            message = "遅刻連絡を登録しました。他のメンバーにダッシュボードで表示されます。"
        activity.log_activity(
            user["id"], f"attendance_{action}", {"participation_id": participation_id}, cursor=cursor
        )
    return response({"success": True, "penalty_points": penalty, "message": message})


# invites

def _find_invite(cursor, raw: Any) -> dict | None:
    code = invites.extract_invite_token(raw)
    if not code:
        return None
    participation = None
    if invites.looks_like_short_code(code):
        participation = repositories.get_participation_by_invite(cursor, short_code=code)
    if not participation:
        participation = repositories.get_participation_by_invite(cursor, invite_token=code)
    return participation


def _check_invite_joinable(cursor, inviter: dict, event_row: dict, user: dict | None) -> str | None:
    if repositories.count_active_group_members(cursor, inviter["group_id"]) >= invites.MAX_GROUP_SIZE:
        return "この招待リンクは既に使用されています（グループ上限: 3人）"
    if event_row["status"] != "open":
        return "このイベントは終了しました"
    if invites.is_entry_closed(event_row["event_date"], _now()):
        return "開催2日前を過ぎたため、このイベントへの招待参加はできません"
    if user is None:
        return None
    if str(user["id"]) == str(inviter["user_id"]):
        return "自分自身を招待することはできません"
    existing = repositories.get_participation(cursor, user["id"], inviter["event_id"])
    if existing and existing["status"] != "canceled":
        return "このイベントには既にエントリーしています"
    return None


def _handle_invite_resolve(event: dict) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()

    body = parse_json_body(event)
    raw = body.get("input")
    if not isinstance(raw, str) or not raw.strip():
        return error("招待コードを入力してください", 400)

    with transaction() as cursor:
        user = _optional_user(event, cursor)
        inviter = _find_invite(cursor, raw)
        if not inviter:
            return error("招待コードが見つかりません。コードを確認してください。", 404)
        event_row = repositories.get_event(cursor, inviter["event_id"])
        problem = _check_invite_joinable(cursor, inviter, event_row, user)
        if problem:
            return error(problem, 400)
        inviter_user = repositories.get_user(cursor, inviter["user_id"])
        group_size = repositories.count_active_group_members(cursor, inviter["group_id"])

    return response(
        {
            "token": inviter["invite_token"],
            "inviterName": (inviter_user or {}).get("display_name") or "友達",
            "eventDate": event_row["event_date"],
            "area": event_row["area"],
            "groupMemberCount": group_size or 1,
            "maxGroupSize": invites.MAX_GROUP_SIZE,
            "isEligibleForCoupon": user is None or not user.get("has_used_invite_coupon"),
            "hasActiveSubscription": bool(user and auth.has_active_subscription(user)),
        }
    )


def _handle_invite_accept(event: dict) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()

    body = parse_json_body(event)
    token = invites.extract_invite_token(body.get("token"))
    if not token:
        return error("token is required", 400)
    fields, problem = _validate_entry_fields({**body, "entry_type": "pair"})
    if problem:
        return error(problem, 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        auth.require_active_subscription(user)
        inviter = repositories.get_participation_by_invite(cursor, invite_token=token)
        if not inviter:
            return error("Invalid invite token", 404)
        event_row = repositories.get_event(cursor, inviter["event_id"])
        problem = _check_invite_joinable(cursor, inviter, event_row, user)
        if problem:
            return error(problem, 400)

        invite_token = invites.generate_invite_token()
        short_code = invites.generate_short_code()
        existing = repositories.get_participation(cursor, user["id"], inviter["event_id"])
        if existing:
            repositories.reactivate_participation(
                cursor, existing["id"], inviter["group_id"], "pair", invite_token, short_code,
                fields["mood"], fields["mood_text"], fields["budget_level"],
            )
        else:
            repositories.create_participation(
                cursor, user["id"], inviter["event_id"], inviter["group_id"], "pair", invite_token, short_code,
                fields["mood"], fields["mood_text"], fields["budget_level"],
            )
        activity.log_activity(
            user["id"], "invite_accept",
            {"event_id": str(inviter["event_id"]), "group_id": str(inviter["group_id"])}, cursor=cursor,
        )
    return response({"success": True})


# reviews

def _handle_reviews(event: dict) -> dict:
    method = get_method(event)
    if method == "GET":
        return _handle_reviews_list(event)
    if method == "POST":
        return _handle_review_create(event)
    return method_not_allowed()


def _handle_reviews_list(event: dict) -> dict:
    match_id = clean_str(get_query_params(event).get("match_id"))
    if not match_id:
        return error("match_id is required", 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        match = _require_match_member(cursor, match_id, user["id"])
        other_ids = [
            str(m) for m in match.get("table_members") or []
            if str(m) != str(user["id"]) and not str(m).startswith("guest:")
        ]
        members = repositories.get_users_by_ids(cursor, other_ids)
        reviews = repositories.list_reviews_by_reviewer(cursor, user["id"], match_id)

    reviewed = {str(r["target_user_id"]) for r in reviews}
    return response(
        {
            "matchId": match_id,
            "eventDate": match["event_date"],
            "area": match["area"],
            "restaurantName": match.get("restaurant_name"),
            "reviewsOpen": ratings.reviews_open(match["event_date"], _now()),
            "ratings": ratings.RATING_DEFINITIONS,
            "members": [
                {
                    "id": str(m["id"]),
                    "displayName": m.get("display_name"),
                    "avatarUrl": m.get("avatar_url"),
                    "reviewed": str(m["id"]) in reviewed,
                }
                for m in members
            ],
            "myReviews": reviews,
        }
    )


def _handle_review_create(event: dict) -> dict:
    body = parse_json_body(event)
    match_id = clean_str(body.get("match_id"))
    target_user_id = clean_str(body.get("target_user_id"))
    rating = body.get("rating")
    is_no_show = coerce_bool(body.get("is_no_show"))
    if not match_id or not target_user_id:
        return error("match_id and target_user_id are required", 400)
    problem = ratings.validate_rating(rating, is_no_show)
    if problem:
        return error(problem, 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        match = _require_match_member(cursor, match_id, user["id"])
        if not ratings.reviews_open(match["event_date"], _now()):
            return error("Reviews are not yet available. Please wait until 2 hours after the event starts.", 403)
        members = [str(m) for m in match.get("table_members") or []]
        if target_user_id not in members:
            return error("Target user is not part of this match", 400)
        if target_user_id == str(user["id"]):
            return error("Cannot review yourself", 400)
        if repositories.review_exists(cursor, user["id"], target_user_id, match_id):
            return error("Already reviewed this user for this match", 400)

        block_flag = coerce_bool(body.get("block_flag")) or ratings.is_block_rating(rating)
        review = repositories.create_review(
            cursor, user["id"], target_user_id, match_id, rating,
            clean_str(body.get("comment")) or None, clean_str(body.get("memo")) or None,
            block_flag, is_no_show,
        )
        review_id = str(review["id"])
        activity.award_stage_points(cursor, user["id"], member_stage.REVIEW_SENT_POINTS, "review_sent", review_id)
        if is_no_show:
            activity.award_stage_points(cursor, target_user_id, member_stage.NO_SHOW_PENALTY, "no_show", review_id)
        else:
            activity.award_stage_points(
                cursor, target_user_id, member_stage.review_received_points(rating), "review_received", review_id
            )
        activity.log_activity(
            user["id"], "review_submit", {"match_id": match_id, "rating": rating, "no_show": is_no_show},
            cursor=cursor,
        )
    return response({"success": True, "reviewId": review_id}, status=201)


# billing

def _handle_create_checkout(event: dict) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()

    body = parse_json_body(event)
    entry = body.get("event_entry") if isinstance(body.get("event_entry"), dict) else None
    if entry:
        fields, problem = _validate_entry_fields(entry)
        if problem:
            return error(problem, 400)
        entry = {**fields, "event_id": clean_str(entry.get("event_id"))}

    with transaction() as cursor:
        user = _current_user(event, cursor)
    invite_token = invites.extract_invite_token(body.get("invite_token")) or user.get("pending_invite_token")

    try:
        url = billing.create_checkout_session(user, event_entry=entry, invite_token=invite_token)
    except stripe.StripeError as exc:
        logger.exception("Checkout session creation failed")
        return error(f"Failed to create checkout session: {exc}", 502)
    return response({"url": url})


def _handle_portal(event: dict) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()
    with transaction() as cursor:
        user = _current_user(event, cursor)
    customer_id = user.get("stripe_customer_id")
    if not customer_id:
        return error("Stripeカスタマーが見つかりません", 400)
    try:
        url = billing.create_portal_session(customer_id)
    except stripe.StripeError as exc:
        logger.exception("Portal session creation failed")
        return error(f"ポータルセッションの作成に失敗しました: {exc}", 502)
    return response({"url": url})


def _handle_stripe_webhook(event: dict) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()

    signature = get_header(event, "Stripe-Signature")
    if not signature:
        return error("Missing stripe signature", 400)
    try:
        stripe_event = billing.construct_event(get_body(event), signature)
    except (ValueError, stripe.SignatureVerificationError):
        logger.exception("Stripe webhook signature verification failed")
        return error("Invalid signature", 400)

    try:
        with transaction() as cursor:
            billing.handle_event(cursor, stripe_event)
    except Exception:
        logger.exception("Stripe webhook handler failed")
        return error("Webhook handler failed", 500)
    return response({"received": True})


def _handle_affiliate_apply(event: dict) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()

    body = parse_json_body(event)
    if not isinstance(body.get("code"), str) or not body["code"].strip():
        return error("コードを入力してください", 400)
    code = referral.normalize_affiliate_code(body["code"])
    if not code:
        return error("アフィリエイトコードは8文字の英数字です", 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        affiliate = repositories.get_affiliate_code(cursor, code)
        if not affiliate:
            return error("このコードは見つかりません", 404)
        if not affiliate["is_active"]:
            return error("このコードは現在無効です", 400)
        if repositories.affiliate_use_exists(cursor, affiliate["id"], user["id"]):
            return error("このコードは既に適用済みです", 400)
        repositories.create_affiliate_use(cursor, affiliate["id"], user["id"])
        activity.log_activity(user["id"], "affiliate_apply", {"code": code}, cursor=cursor)
    return response({"success": True, "codeName": affiliate["name"]})


def _handle_account_delete(event: dict) -> dict:
    if get_method(event) != "DELETE":
        return method_not_allowed()

    with transaction() as cursor:
        user = _current_user(event, cursor)
    if user.get("stripe_customer_id"):
        try:
            billing.cancel_customer_subscriptions(user["stripe_customer_id"])
        except Exception:
            logger.exception("Failed to cancel Stripe subscriptions for %s", user["id"])

    activity.log_activity(user["id"], "account_delete")
    with transaction() as cursor:
        repositories.delete_user_data(cursor, user["id"])
    return response({"success": True})


# icebreaker

def _session_to_ui(session: dict, players: list[dict], viewer_id: str) -> dict:
    viewer_id = str(viewer_id)
    ui_players = []
    for p in players:
        data = p.get("player_data") or {}
        is_self = str(p["user_id"]) == viewer_id
        ui_players.append(
            {
                "userId": str(p["user_id"]),
                "displayName": p.get("display_name"),
                "avatarUrl": p.get("avatar_url"),
                "isReady": bool(p.get("is_ready")),
                "playerData": data if is_self else {k: v for k, v in data.items() if k in PUBLIC_PLAYER_KEYS},
                "submitted": sorted(data.keys()),
            }
        )
    return {
        "id": str(session["id"]),
        "matchId": str(session["match_id"]),
        "gameType": session["game_type"],
        "status": session["status"],
        "hostUserId": str(session["host_user_id"]),
        "currentRound": session.get("current_round") or 0,
        "gameData": engine.player_view(session["game_type"], session.get("game_data"), viewer_id),
        "players": ui_players,
    }


def _load_session_for_member(cursor, session_id: str, user_id: str, for_update: bool = False) -> dict:
    session = repositories.get_ice_session(cursor, session_id, for_update=for_update)
    if not session:
        raise HttpError(404, "Session not found")
    _require_match_member(cursor, str(session["match_id"]), user_id)
    return session


def _handle_ice_games(event: dict) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    return response({"games": [g.to_dict() for g in GAME_DEFINITIONS]})


def _handle_ice_session(event: dict) -> dict:
    method = get_method(event)
    if method == "GET":
        return _handle_ice_session_get(event)
    if method == "POST":
        return _handle_ice_session_create(event)
    if method == "PATCH":
        return _handle_ice_session_update(event)
    if method == "DELETE":
        return _handle_ice_session_end(event)
    return method_not_allowed()


def _handle_ice_session_get(event: dict) -> dict:
    match_id = clean_str(get_query_params(event).get("match_id"))
    if not match_id:
        return error("match_id is required", 400)
    with transaction() as cursor:
        user = _current_user(event, cursor)
        _require_match_member(cursor, match_id, user["id"])
        session = repositories.get_active_ice_session(cursor, match_id)
        players = repositories.list_ice_players(cursor, session["id"]) if session else []
        scores = repositories.list_ice_scores(cursor, match_id)
    return response(
        {"session": _session_to_ui(session, players, user["id"]) if session else None, "scores": scores}
    )


def _handle_ice_session_create(event: dict) -> dict:
    body = parse_json_body(event)
    match_id = clean_str(body.get("match_id"))
    game_type = body.get("game_type")
    if not match_id:
        return error("match_id is required", 400)
    if not is_known_game(game_type):
        return error("Unknown game type", 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        _require_match_member(cursor, match_id, user["id"])
        session = repositories.get_active_ice_session(cursor, match_id)
        joined_existing = True
        if session is None:
            session, joined_existing = _create_or_join_ice_session(cursor, match_id, game_type, user["id"])
        repositories.add_ice_player(cursor, session["id"], user["id"], is_ready=not joined_existing)
        players = repositories.list_ice_players(cursor, session["id"])
    status = 200 if joined_existing else 201
    return response(
        {"session": _session_to_ui(session, players, user["id"]), "joinedExisting": joined_existing}, status=status
    )


def _create_or_join_ice_session(cursor, match_id: str, game_type: str, user_id: str) -> tuple[dict, bool]:
    """Returns (session, joined_existing)."""
    # uniq_icebreaker_active_session allows one waiting/playing session per match
    try:
        with savepoint(cursor, "ice_session"):
            return repositories.create_ice_session(cursor, match_id, game_type, user_id), False
    except psycopg2.IntegrityError:
        logger.info("Concurrent icebreaker session for match %s; joining it", match_id)
    session = repositories.get_active_ice_session(cursor, match_id)
    if session is None:
        raise HttpError(409, "Icebreaker session conflict, please retry")
    return session, True


def _handle_ice_session_update(event: dict) -> dict:
    body = parse_json_body(event)
    session_id = clean_str(body.get("session_id"))
    op = body.get("op")
    if not session_id:
        return error("session_id is required", 400)
    if op not in ("start", "action"):
        return error("op must be 'start' or 'action'", 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        session = _load_session_for_member(cursor, session_id, user["id"], for_update=True)
        if session["status"] == "finished":
            return error("Session has ended", 409)
        players = repositories.list_ice_players(cursor, session_id)
        if str(user["id"]) not in {str(p["user_id"]) for p in players}:
            return error("Join the session first", 403)

        if op == "start":
            if session["status"] != "waiting":
                return error("Session has already started", 409)
            if not is_valid_player_count(session["game_type"], len(players)):
                return error("Invalid player count for this game", 400)
            session = repositories.update_ice_session(cursor, session_id, status="playing", game_data={}, current_round=1)
        else:
            if session["status"] != "playing":
                return error("Session has not started", 409)
            try:
                result = engine.apply_action(
                    session["game_type"], session.get("game_data"), players,
                    str(body.get("action") or ""), body.get("payload") or {}, str(user["id"]),
                )
            except engine.GameActionError as exc:
                return error(str(exc), 400)
            session = repositories.update_ice_session(
                cursor, session_id, game_data=result.game_data,
                current_round=(session.get("current_round") or 0) + result.round_delta,
            )
            for uid, points in result.awards.items():
                repositories.add_ice_score(cursor, session["match_id"], uid, points)
            if result.clear_player_keys:
                for p in players:
                    data = p.get("player_data") or {}
                    if any(k in data for k in result.clear_player_keys):
                        cleared = {k: v for k, v in data.items() if k not in result.clear_player_keys}
                        repositories.update_ice_player(cursor, session_id, p["user_id"], player_data=cleared)
        players = repositories.list_ice_players(cursor, session_id)
    return response({"session": _session_to_ui(session, players, user["id"])})


def _handle_ice_session_end(event: dict) -> dict:
    session_id = clean_str(get_query_params(event).get("session_id"))
    if not session_id:
        return error("session_id is required", 400)
    with transaction() as cursor:
        user = _current_user(event, cursor)
        session = repositories.get_ice_session(cursor, session_id)
        if not session:
            return error("Session not found", 404)
        if str(session["host_user_id"]) != str(user["id"]):
            return error("Only the host can end the session", 403)
        repositories.update_ice_session(cursor, session_id, status="finished")
    return response({"success": True})


def _handle_ice_join(event: dict) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()
    session_id = clean_str(parse_json_body(event).get("session_id"))
    if not session_id:
        return error("session_id is required", 400)
    with transaction() as cursor:
        user = _current_user(event, cursor)
        session = _load_session_for_member(cursor, session_id, user["id"])
        if session["status"] == "finished":
            return error("Session has ended", 400)
        joined = repositories.add_ice_player(cursor, session_id, user["id"])
        players = repositories.list_ice_players(cursor, session_id)
    return response({"joined": joined, "session": _session_to_ui(session, players, user["id"])})


def _handle_ice_player(event: dict) -> dict:
    if get_method(event) != "PATCH":
        return method_not_allowed()
    body = parse_json_body(event)
    session_id = clean_str(body.get("session_id"))
    updates = body.get("player_data")
    if not session_id:
        return error("session_id is required", 400)
    if updates is not None and not isinstance(updates, dict):
        return error("player_data must be an object", 400)
    is_ready = body.get("is_ready")
    if is_ready is not None and not isinstance(is_ready, bool):
        return error("is_ready must be a boolean", 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        session = _load_session_for_member(cursor, session_id, user["id"])
        if session["status"] == "finished":
            return error("Session has ended", 400)
        current = next(
            (p for p in repositories.list_ice_players(cursor, session_id) if str(p["user_id"]) == str(user["id"])),
            None,
        )
        if not current:
            return error("Player not found in session", 404)
        merged = None
        if updates is not None:
            try:
                merged = engine.sanitize_player_data(current.get("player_data"), updates)
            except engine.GameActionError as exc:
                return error(str(exc), 400)
        player = repositories.update_ice_player(cursor, session_id, user["id"], player_data=merged, is_ready=is_ready)
    return response({"player": player})


def _handle_ice_score(event: dict) -> dict:
    method = get_method(event)
    if method == "GET":
        match_id = clean_str(get_query_params(event).get("match_id"))
        if not match_id:
            return error("match_id is required", 400)
        with transaction() as cursor:
            user = _current_user(event, cursor)
            _require_match_member(cursor, match_id, user["id"])
            scores = repositories.list_ice_scores(cursor, match_id)
        return response({"scores": scores})

    if method != "POST":
        return method_not_allowed()

    body = parse_json_body(event)
    match_id = clean_str(body.get("match_id"))
    awards = body.get("awards")
    if not match_id or not isinstance(awards, list) or not awards:
        return error("match_id and awards required", 400)

    with transaction() as cursor:
        user = _current_user(event, cursor)
        match = _require_match_member(cursor, match_id, user["id"])
        members = {str(m) for m in match.get("table_members") or []}
        for award in awards:
            target = str((award or {}).get("user_id") or "")
            points = parse_int((award or {}).get("points"))
            if target not in members:
                return error("Award target is not part of this match", 400)
            if points is None or not 0 < points <= MAX_SCORE_AWARD:
                return error(f"points must be between 1 and {MAX_SCORE_AWARD}", 400)
            repositories.add_ice_score(cursor, match_id, target, points)
        scores = repositories.list_ice_scores(cursor, match_id)
    return response({"scores": scores})


ROUTES = {
    "/api/auth/line": _handle_auth_line,
    "/api/auth/callback": _handle_auth_callback,
    "/api/auth/logout": _handle_auth_logout,
    "/api/me": _handle_me,
    "/api/onboarding": _handle_onboarding,
    "/api/profile": _handle_profile_update,
    "/api/profile/personality": _handle_personality,
    "/api/profile/avatar": _handle_avatar_upload,
    "/api/member-stage": _handle_member_stage,
    "/api/referral/link": _handle_referral_link,
    "/api/events": _handle_events_list,
    "/api/next-event": _handle_next_event,
    "/api/events/entry": _handle_entry,
    "/api/events/attendance": _handle_attendance,
    "/api/invite/resolve": _handle_invite_resolve,
    "/api/invite/accept": _handle_invite_accept,
    "/api/reviews": _handle_reviews,
    "/api/stripe/create-checkout": _handle_create_checkout,
    "/api/stripe/portal": _handle_portal,
    "/api/webhooks/stripe": _handle_stripe_webhook,
    "/api/affiliate/apply": _handle_affiliate_apply,
    "/api/account": _handle_account_delete,
    "/api/icebreaker/games": _handle_ice_games,
    "/api/icebreaker/session": _handle_ice_session,
    "/api/icebreaker/join": _handle_ice_join,
    "/api/icebreaker/player": _handle_ice_player,
    "/api/icebreaker/score": _handle_ice_score,
}


def lambda_handler(event: dict, context: Any) -> dict:
    method = get_method(event)
    path = get_path(event).rstrip("/") or "/"

    if method == "OPTIONS":
        return response(None, status=204)

    if path == "/api/ping":
        return response({"ok": True})

    try:
        if path.startswith("/api/admin/"):
            return handle_admin(event, path)
        handler = ROUTES.get(path)
        if handler is None:
            return error("not found", 404)
        return handler(event)
    except HttpError as exc:
        return error(exc.message, exc.status)
    except psycopg2.DataError:
        logger.exception("Rejected malformed input for %s %s", method, path)
        return error("Invalid request parameters", 400)
    except Exception as exc:
        logger.exception("Unhandled error for %s %s", method, path)
        return error(str(exc), 500)
