from __future__ import annotations

import base64
import logging
import uuid
from datetime import datetime

from dateutil import parser as date_parser

from dine_tokyo import activity, auth, line_api, matching, member_stage, referral, repositories
from dine_tokyo import messages as texts
from dine_tokyo.config import get_log_level
from dine_tokyo.db import savepoint, transaction
from dine_tokyo.matching import BlockRelations, Table
from dine_tokyo.notifications import notify_members
from dine_tokyo.web import (
    HttpError,
    clean_str,
    error,
    get_headers,
    get_method,
    get_query_params,
    method_not_allowed,
    parse_int,
    parse_json_body,
    path_parts,
    response,
)

logger = logging.getLogger(__name__)
logger.setLevel(get_log_level())

ADMIN_PREFIX = "/api/admin/"
GUEST_GENDERS = ("male", "female")


def _require_admin(event: dict, cursor) -> dict:
    user = auth.resolve_user(cursor, get_headers(event))
    auth.require_admin(user)
    return user


def _parse_event_date(value) -> datetime:
    raw = clean_str(value)
    if not raw:
        raise HttpError(400, "event_date is required")
    try:
        parsed = date_parser.parse(raw)
    except (ValueError, OverflowError):
        raise HttpError(400, f"Invalid event_date: {raw}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=texts.JST)
    return parsed


def _load_event(cursor, event_id: str) -> dict:
    event_row = repositories.get_event(cursor, event_id)
    if not event_row:
        raise HttpError(404, "Event not found")
    return event_row


def _load_roster(cursor, event_id: str) -> tuple[dict[str, matching.Member], BlockRelations, list[dict], list[dict]]:
    participations = repositories.list_event_participations(cursor, event_id)
    guests = repositories.list_guests(cursor, event_id)
    roster = matching.build_roster(participations, guests)
    user_ids = [m.id for m in roster.values() if not m.is_guest]
    blocks = BlockRelations(repositories.list_block_pairs(cursor, user_ids))
    return roster, blocks, participations, guests


def _tables_from_body(body: dict) -> list[Table]:
    raw_tables = body.get("tables")
    if not isinstance(raw_tables, list):
        raise HttpError(400, "tables must be a list")
    return [Table.from_dict(t) for t in raw_tables if isinstance(t, dict)]


def _tables_payload(tables: list[Table], roster: dict[str, matching.Member], blocks: BlockRelations) -> dict:
    return {
        "tables": [
            {**t.to_dict(), "score": matching.score_table(t.members, roster, blocks).to_dict()} for t in tables
        ],
        "validation": matching.validate(tables, roster, blocks).to_dict(),
        "unassigned": matching.unassigned_member_ids(tables, roster),
    }


def _member_to_ui(member: matching.Member) -> dict:
    return {
        "id": member.id,
        "displayName": member.display_name,
        "gender": member.gender,
        "groupId": member.group_id,
        "isGuest": member.is_guest,
        "mood": member.mood,
        "budgetLevel": member.budget_level,
        "personalityType": member.personality_type,
        "isIdentityVerified": member.is_identity_verified,
    }


# events

def _handle_events(event: dict) -> dict:
    method = get_method(event)
    if method == "GET":
        with transaction() as cursor:
            _require_admin(event, cursor)
            events = repositories.list_events_with_counts(cursor)
        return response({"events": events})

    if method != "POST":
        return method_not_allowed()

    body = parse_json_body(event)
    event_date = _parse_event_date(body.get("event_date"))
    area = clean_str(body.get("area"))
    required_stage = clean_str(body.get("required_stage")) or "bronze"
    if area not in texts.AREA_LABELS:
        return error("Invalid area", 400)
    if required_stage not in member_stage.STAGE_ORDER:
        return error("Invalid required_stage", 400)

    with transaction() as cursor:
        admin = _require_admin(event, cursor)
        created = repositories.create_event(cursor, event_date, area, required_stage)
        activity.log_admin_activity(None, "admin_event_create", str(admin["id"]),
                                    {"event_id": str(created["id"])}, cursor=cursor)
    return response({"event": created}, status=201)


def _handle_event_detail(event: dict, event_id: str) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    with transaction() as cursor:
        _require_admin(event, cursor)
        event_row = _load_event(cursor, event_id)
        roster, blocks, _, _ = _load_roster(cursor, event_id)
        tables = [Table.from_dict(m) for m in repositories.list_matches(cursor, event_id)]
    return response(
        {
            "event": event_row,
            "members": [_member_to_ui(m) for m in roster.values()],
            **_tables_payload(tables, roster, blocks),
        }
    )


def _handle_guests(event: dict, event_id: str) -> dict:
    method = get_method(event)
    if method == "POST":
        body = parse_json_body(event)
        display_name = clean_str(body.get("display_name"))
        gender = body.get("gender")
        pair_with = clean_str(body.get("pair_with_guest_id"))
        if not display_name:
            return error("display_name is required", 400)
        if gender not in GUEST_GENDERS:
            return error("Invalid gender", 400)

        with transaction() as cursor:
            _require_admin(event, cursor)
            event_row = _load_event(cursor, event_id)
            if event_row["status"] != "open":
                return error("Guests can only be added to open events", 400)
            group_id = str(uuid.uuid4())
            if pair_with:
                partner = repositories.get_guest(cursor, pair_with)
                if not partner or str(partner["event_id"]) != str(event_id):
                    return error("Paired guest not found", 404)
                group_id = str(partner["group_id"])
            guest = repositories.create_guest(cursor, event_id, display_name, gender, group_id)
        return response({"guest": guest}, status=201)

    if method == "DELETE":
        guest_id = clean_str(get_query_params(event).get("guest_id"))
        if not guest_id:
            return error("guest_id is required", 400)
        with transaction() as cursor:
            _require_admin(event, cursor)
            if not repositories.delete_guest(cursor, event_id, guest_id):
                return error("Guest not found", 404)
        return response({"success": True})

    return method_not_allowed()


def _handle_auto_assign(event: dict, event_id: str) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()
    with transaction() as cursor:
        _require_admin(event, cursor)
        _load_event(cursor, event_id)
        roster, blocks, _, _ = _load_roster(cursor, event_id)
    tables = matching.auto_assign(roster, blocks)
    return response(_tables_payload(tables, roster, blocks))


def _handle_validate(event: dict, event_id: str) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()
    tables = _tables_from_body(parse_json_body(event))
    with transaction() as cursor:
        _require_admin(event, cursor)
        _load_event(cursor, event_id)
        roster, blocks, _, _ = _load_roster(cursor, event_id)
    return response(_tables_payload(tables, roster, blocks))


def _match_recipients(tables: list[Table], roster: dict[str, matching.Member]) -> list[dict]:
    recipients = []
    for table in tables:
        names = [roster[m].display_name for m in table.members if m in roster]
        for member_id in table.members:
            member = roster.get(member_id)
            if not member or member.is_guest:
                continue
            recipients.append(
                {
                    "user_id": member.id,
                    "display_name": member.display_name,
                    "line_user_id": member.line_user_id,
                    "table": table,
                    "member_names": names,
                }
            )
    return recipients


def _handle_save_matches(event: dict, event_id: str) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()
    tables = _tables_from_body(parse_json_body(event))

    with transaction() as cursor:
        admin = _require_admin(event, cursor)
        event_row = _load_event(cursor, event_id)
        if event_row["status"] == "closed":
            return error("Event is closed", 400)
        roster, blocks, _, _ = _load_roster(cursor, event_id)
        result = matching.validate(tables, roster, blocks)
        if not result.valid:
            return response({"error": "Invalid table assignment", **result.to_dict()}, status=400)

        saved = repositories.replace_matches(cursor, event_id, [t.to_dict() for t in tables])
        repositories.set_event_status(cursor, event_id, "matched")
        user_ids = [m for t in tables for m in t.members if not matching.is_guest_id(m)]
        repositories.mark_participations_matched(cursor, event_id, user_ids)
        activity.log_admin_activity(None, "admin_matches_save", str(admin["id"]),
                                    {"event_id": event_id, "tables": len(tables)}, cursor=cursor)

    def build_text(recipient: dict) -> str:
        table = recipient["table"]
        return texts.match_confirmed_text(
            event_row["event_date"], event_row["area"], table.restaurant_name,
            table.restaurant_url, table.reservation_name, recipient["member_names"],
        )

    notified = notify_members(_match_recipients(tables, roster), build_text)
    return response({"success": True, "matches": saved, "notifications": notified})


def _handle_cancel_event(event: dict, event_id: str) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()
    with transaction() as cursor:
        admin = _require_admin(event, cursor)
        event_row = _load_event(cursor, event_id)
        if event_row["status"] != "open":
            return error("Only open events can be canceled", 400)
        repositories.set_event_status(cursor, event_id, "closed")
        canceled = repositories.cancel_event_participations(cursor, event_id)
        activity.log_admin_activity(None, "admin_event_cancel", str(admin["id"]),
                                    {"event_id": event_id, "participants": len(canceled)}, cursor=cursor)

    notified = notify_members(
        canceled, lambda _member: texts.event_canceled_text(event_row["event_date"], event_row["area"])
    )
    return response({"success": True, "canceledCount": len(canceled), "notifications": notified})


def _handle_complete_event(event: dict, event_id: str) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()
    with transaction() as cursor:
        admin = _require_admin(event, cursor)
        event_row = _load_event(cursor, event_id)
        if event_row["status"] != "matched":
            return error("Only matched events can be completed", 400)
        repositories.set_event_status(cursor, event_id, "closed")
        participants = repositories.list_matched_participants(cursor, event_id)
        awarded = 0
        for p in participants:
            if activity.award_stage_points(
                cursor, str(p["user_id"]), member_stage.PARTICIPATION_POINTS, "participation", str(p["id"])
            ) is not None:
                awarded += 1
        activity.log_admin_activity(None, "admin_event_complete", str(admin["id"]),
                                    {"event_id": event_id, "awarded": awarded}, cursor=cursor)
    return response({"success": True, "awardedCount": awarded})


def _handle_reminder(event: dict, event_id: str) -> dict:
    method = get_method(event)
    if method not in ("GET", "POST"):
        return method_not_allowed()

    with transaction() as cursor:
        admin = _require_admin(event, cursor)
        event_row = _load_event(cursor, event_id)
        match_rows = repositories.list_matches(cursor, event_id)
        roster, _, _, _ = _load_roster(cursor, event_id)
        already_sent = any(m.get("reminder_sent_at") for m in match_rows)
        recipients = _match_recipients([Table.from_dict(m) for m in match_rows], roster)

        if method == "GET":
            return response(
                {
                    "alreadySent": already_sent,
                    "recipients": [
                        {
                            "userId": r["user_id"],
                            "displayName": r["display_name"],
                            "hasLine": bool(r["line_user_id"]),
                            "restaurantName": r["table"].restaurant_name,
                        }
                        for r in recipients
                    ],
                }
            )

        if event_row["status"] != "matched":
            return error("Reminders can only be sent for matched events", 400)
        if already_sent:
            return error("Reminder already sent", 409)
        repositories.mark_reminder_sent(cursor, event_id, str(admin["id"]))

    def build_text(recipient: dict) -> str:
        table = recipient["table"]
        return texts.reminder_text(
            event_row["event_date"], event_row["area"], table.restaurant_name,
            table.restaurant_url, table.reservation_name,
        )

    notified = notify_members(recipients, build_text)
    return response({"success": True, "notifications": notified})


# identity verification

def _handle_verification_list(event: dict) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    status = clean_str(get_query_params(event).get("status")) or "pending"
    with transaction() as cursor:
        _require_admin(event, cursor)
        requests_ = repositories.list_verification_requests(cursor, None if status == "all" else status)
    return response({"requests": requests_})


def _handle_verification_image(event: dict, request_id: str) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    with transaction() as cursor:
        _require_admin(event, cursor)
        request_row = repositories.get_verification_request(cursor, request_id)
    if not request_row:
        return error("Verification request not found", 404)
    try:
        content, content_type = line_api.get_message_content(request_row["line_message_id"])
    except line_api.LineApiError as exc:
        logger.exception("Failed to fetch verification image %s", request_id)
        return error(str(exc), 502)
    encoded = base64.b64encode(content).decode("ascii")
    return response({"dataUrl": f"data:{content_type};base64,{encoded}", "contentType": content_type})


def _handle_verification_review(event: dict, request_id: str, decision: str) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()
    note = clean_str(parse_json_body(event).get("note")) or None

    with transaction() as cursor:
        admin = _require_admin(event, cursor)
        request_row = repositories.get_verification_request(cursor, request_id)
        if not request_row:
            return error("Verification request not found", 404)
        if request_row["status"] != "pending":
            return error("Verification request already reviewed", 400)
        status = "approved" if decision == "approve" else "rejected"
        repositories.review_verification_request(cursor, request_id, status, str(admin["id"]), note)
        user_id = str(request_row["user_id"])
        if status == "approved":
            repositories.mark_identity_verified(cursor, user_id)
            try:
                with savepoint(cursor, "verified_badge"):
                    repositories.award_badge(cursor, user_id, "identity_verified", "Identity verification approved")
            except Exception:
                logger.exception("Failed to award identity_verified badge to %s", user_id)
        activity.log_admin_activity(user_id, f"admin_verification_{status}", str(admin["id"]),
                                    {"request_id": request_id}, cursor=cursor)

    line_user_id = request_row.get("line_user_id")
    if line_user_id and line_api.is_configured():
        text = texts.VERIFICATION_APPROVED if status == "approved" else texts.VERIFICATION_REJECTED
        try:
            line_api.push_text(line_user_id, text)
        except Exception:
            logger.exception("Failed to notify %s of verification result", line_user_id)
    return response({"success": True, "status": status})


# users

def _handle_users(event: dict) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    limit = parse_int(get_query_params(event).get("limit"), 200)
    with transaction() as cursor:
        _require_admin(event, cursor)
        users = repositories.list_users(cursor, max(1, min(limit, 1000)))
    return response({"users": users})


def _handle_user_activity(event: dict, user_id: str) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    limit = parse_int(get_query_params(event).get("limit"), 100)
    with transaction() as cursor:
        _require_admin(event, cursor)
        user = repositories.get_user(cursor, user_id)
        if not user:
            return error("User not found", 404)
        logs = repositories.list_activity(cursor, user_id, max(1, min(limit, 500)))
    return response({"userId": user_id, "displayName": user.get("display_name"), "activity": logs})


# participants

PARTICIPATION_STATUSES = ("pending", "matched", "canceled")
NO_SHOW_FILTERS = {"suspected": 1, "confirmed": 2}
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def _review_stats_to_ui(stats: dict | None) -> dict:
    stats = stats or {}
    return {
        "totalNoShows": int(stats.get("no_show_count") or 0),
        "avgRating": stats.get("avg_rating"),
        "blockCount": int(stats.get("block_count") or 0),
        "reviewCount": int(stats.get("review_count") or 0),
    }


def _with_review_stats(participants: list[dict], stats: dict[str, dict]) -> list[dict]:
    return [{**p, "reviewStats": _review_stats_to_ui(stats.get(str(p["user_id"])))} for p in participants]


def _handle_participants(event: dict) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    with transaction() as cursor:
        _require_admin(event, cursor)
        events = repositories.list_events_with_counts(cursor)
        participants = repositories.list_all_participants(cursor)
        stats = repositories.review_stats_by_target(cursor, list({str(p["user_id"]) for p in participants}))

    by_event: dict[str, list[dict]] = {}
    for p in _with_review_stats(participants, stats):
        by_event.setdefault(str(p["event_id"]), []).append(p)
    return response({"events": [{"event": e, "participants": by_event.get(str(e["id"]), [])} for e in events]})


def _handle_event_participants(event: dict, event_id: str) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    query = get_query_params(event)
    status = query.get("status") if query.get("status") in PARTICIPATION_STATUSES else None
    search = clean_str(query.get("search")) or None
    min_no_shows = NO_SHOW_FILTERS.get(query.get("noShow"), 0)
    page = max(1, parse_int(query.get("page"), 1))
    page_size = min(MAX_PAGE_SIZE, max(1, parse_int(query.get("pageSize"), DEFAULT_PAGE_SIZE)))

    with transaction() as cursor:
        _require_admin(event, cursor)
        _load_event(cursor, event_id)
        participants, total = repositories.search_event_participants(
            cursor, event_id, status=status, search=search, min_no_shows=min_no_shows,
            limit=page_size, offset=(page - 1) * page_size,
        )
        stats = repositories.review_stats_by_target(cursor, [str(p["user_id"]) for p in participants])
        match_rows = repositories.list_matches(cursor, event_id)

    return response(
        {
            "participants": _with_review_stats(participants, stats),
            "matches": [
                {"id": m["id"], "restaurant_name": m["restaurant_name"], "restaurant_url": m.get("restaurant_url")}
                for m in match_rows
            ],
            "pagination": {
                "page": page,
                "pageSize": page_size,
                "totalCount": total,
                "totalPages": -(-total // page_size),
            },
        }
    )


def _handle_participant_message(event: dict) -> dict:
    if get_method(event) != "POST":
        return method_not_allowed()
    body = parse_json_body(event)
    user_ids = body.get("user_ids")
    message = clean_str(body.get("message"))
    if not isinstance(user_ids, list) or not user_ids:
        return error("user_ids is required", 400)
    if not message:
        return error("message is required", 400)
    if not line_api.is_configured():
        return error("LINE client not configured", 500)

    requested = [str(u) for u in user_ids if clean_str(u)]
    with transaction() as cursor:
        admin = _require_admin(event, cursor)
        recipients = repositories.get_users_by_ids(cursor, requested)
        activity.log_admin_activity(None, "admin_participant_message", str(admin["id"]),
                                    {"recipients": len(recipients)}, cursor=cursor)

    results = notify_members(recipients, lambda _member: message)
    results["skipped"] += len(user_ids) - len(recipients)
    return response({"success": True, "results": results})


def _handle_user_reviews(event: dict, user_id: str) -> dict:
    if get_method(event) != "GET":
        return method_not_allowed()
    with transaction() as cursor:
        _require_admin(event, cursor)
        user = repositories.get_user(cursor, user_id)
        if not user:
            return error("User not found", 404)
        received = repositories.list_reviews_received(cursor, user_id)
        given = repositories.list_reviews_given(cursor, user_id)
    return response(
        {
            "user": {key: user.get(key) for key in ("id", "display_name", "avatar_url", "gender")},
            "reviewsReceived": received,
            "reviewsGiven": given,
        }
    )


# affiliates

def _handle_affiliates(event: dict) -> dict:
    method = get_method(event)
    if method == "GET":
        with transaction() as cursor:
            _require_admin(event, cursor)
            codes = repositories.list_affiliate_codes(cursor)
        return response({"codes": codes})

    if method != "POST":
        return method_not_allowed()

    body = parse_json_body(event)
    name = clean_str(body.get("name"))
    if not name:
        return error("name is required", 400)
    raw_code = body.get("code")
    if clean_str(raw_code):
        code = referral.normalize_affiliate_code(raw_code)
        if not code:
            return error("アフィリエイトコードは8文字の英数字です", 400)
    else:
        code = referral.generate_affiliate_code()

    with transaction() as cursor:
        admin = _require_admin(event, cursor)
        if repositories.get_affiliate_code(cursor, code):
            return error("このコードは既に使用されています", 400)
        created = repositories.create_affiliate_code(cursor, code, name)
        activity.log_admin_activity(None, "admin_affiliate_create", str(admin["id"]), {"code": code}, cursor=cursor)
    return response({"code": created}, status=201)


def _handle_affiliate_update(event: dict, affiliate_id: str) -> dict:
    if get_method(event) != "PATCH":
        return method_not_allowed()
    is_active = parse_json_body(event).get("is_active")
    if not isinstance(is_active, bool):
        return error("is_active must be a boolean", 400)
    with transaction() as cursor:
        _require_admin(event, cursor)
        updated = repositories.set_affiliate_code_active(cursor, affiliate_id, is_active)
    if not updated:
        return error("Affiliate code not found", 404)
    return response({"code": updated})


EVENT_ACTIONS = {
    "guests": _handle_guests,
    "auto-assign": _handle_auto_assign,
    "validate": _handle_validate,
    "matches": _handle_save_matches,
    "cancel": _handle_cancel_event,
    "complete": _handle_complete_event,
    "reminder": _handle_reminder,
}


def handle_admin(event: dict, path: str) -> dict:
    parts = path_parts(path, ADMIN_PREFIX)
    if not parts:
        return error("not found", 404)
    resource, rest = parts[0], parts[1:]

    if resource == "events":
        if not rest:
            return _handle_events(event)
        if len(rest) == 1:
            return _handle_event_detail(event, rest[0])
        if len(rest) == 2 and rest[1] in EVENT_ACTIONS:
            return EVENT_ACTIONS[rest[1]](event, rest[0])

    if resource == "verification":
        if not rest:
            return _handle_verification_list(event)
        if len(rest) == 2 and rest[1] == "image":
            return _handle_verification_image(event, rest[0])
        if len(rest) == 2 and rest[1] in ("approve", "reject"):
            return _handle_verification_review(event, rest[0], rest[1])

    if resource == "users":
        if not rest:
            return _handle_users(event)
        if len(rest) == 2 and rest[1] == "activity":
            return _handle_user_activity(event, rest[0])

    if resource == "participants":
        if not rest:
            return _handle_participants(event)
        if rest == ["message"]:
            return _handle_participant_message(event)
        if len(rest) == 1:
            return _handle_event_participants(event, rest[0])
        if len(rest) == 3 and rest[0] == "user" and rest[2] == "reviews":
            return _handle_user_reviews(event, rest[1])

    if resource == "affiliates":
        if not rest:
            return _handle_affiliates(event)
        if len(rest) == 1:
            return _handle_affiliate_update(event, rest[0])

    return error("not found", 404)
