from __future__ import annotations

from datetime import datetime
from typing import Any

from dine_tokyo import member_stage
from dine_tokyo.db import as_json

ACTIVE_SESSION_STATUSES = ("waiting", "playing")

_USER_UPDATABLE_COLUMNS = {
    "display_name",
    "avatar_url",
    "gender",
    "birth_date",
    "job",
    "personality_type",
    "pending_invite_token",
    "has_used_invite_coupon",
    "line_user_id",
}


def _one(cursor) -> dict | None:
    row = cursor.fetchone()
    return dict(row) if row else None


def _all(cursor) -> list[dict]:
    return [dict(row) for row in cursor.fetchall()]


# users

def get_user(cursor, user_id: str) -> dict | None:
    cursor.execute("SELECT * FROM users WHERE id = %s", (user_id,))
    return _one(cursor)


def get_user_by_line_id(cursor, line_user_id: str) -> dict | None:
    cursor.execute("SELECT * FROM users WHERE line_user_id = %s", (line_user_id,))
    return _one(cursor)


def get_user_by_stripe_customer(cursor, customer_id: str) -> dict | None:
    cursor.execute("SELECT * FROM users WHERE stripe_customer_id = %s", (customer_id,))
    return _one(cursor)


def create_line_user(cursor, line_user_id: str, display_name: str, avatar_url: str | None,
                     referred_by: str | None) -> dict:
    cursor.execute(
        """
        INSERT INTO users
        (email, display_name, avatar_url, line_user_id, gender, birth_date, job,
         subscription_status, referred_by)
        VALUES (%s, %s, %s, %s, 'male', '2000-01-01', '', 'none', %s)
        RETURNING *
        """,
        (f"{line_user_id}@line.dinetokyo.app", display_name, avatar_url, line_user_id, referred_by),
    )
    return dict(cursor.fetchone())


def update_user(cursor, user_id: str, fields: dict[str, Any]) -> dict | None:
    columns = [c for c in fields if c in _USER_UPDATABLE_COLUMNS]
    if not columns:
        return get_user(cursor, user_id)
    assignments = ", ".join(f"{c} = %s" for c in columns)
    cursor.execute(
        f"UPDATE users SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
        (*[fields[c] for c in columns], user_id),
    )
    return _one(cursor)


def set_subscription(cursor, user_id: str, status: str, period_end: datetime | None,
                     customer_id: str | None = None) -> None:
    if customer_id:
        cursor.execute(
            """
            UPDATE users
            SET subscription_status = %s, subscription_period_end = %s,
                stripe_customer_id = %s, updated_at = now()
            WHERE id = %s
            """,
            (status, period_end, customer_id, user_id),
        )
        return
    cursor.execute(
        """
        UPDATE users
        SET subscription_status = %s, subscription_period_end = %s, updated_at = now()
        WHERE id = %s
        """,
        (status, period_end, user_id),
    )


def set_subscription_status(cursor, user_id: str, status: str) -> None:
    cursor.execute(
        "UPDATE users SET subscription_status = %s, updated_at = now() WHERE id = %s",
        (status, user_id),
    )


def mark_identity_verified(cursor, user_id: str) -> None:
    cursor.execute(
        "UPDATE users SET is_identity_verified = true, updated_at = now() WHERE id = %s",
        (user_id,),
    )


def list_users(cursor, limit: int = 200) -> list[dict]:
    cursor.execute(
        """
        SELECT id, display_name, avatar_url, gender, job, personality_type,
               subscription_status, subscription_period_end, member_stage, stage_points,
               is_admin, is_identity_verified, line_user_id IS NOT NULL AS has_line_id,
               created_at
        FROM users
        ORDER BY created_at DESC
        LIMIT %s
        """,
        (limit,),
    )
    return _all(cursor)


def delete_user_data(cursor, user_id: str) -> None:
    cursor.execute("DELETE FROM reviews WHERE reviewer_id = %s OR target_user_id = %s", (user_id, user_id))
    cursor.execute("DELETE FROM participations WHERE user_id = %s", (user_id,))
    cursor.execute("DELETE FROM users WHERE id = %s", (user_id,))


# auth sessions

def create_auth_session(cursor, token: str, user_id: str, expires_at: datetime) -> None:
    cursor.execute(
        "INSERT INTO auth_sessions (id, user_id, expires_at) VALUES (%s, %s, %s)",
        (token, user_id, expires_at),
    )


def get_session_user(cursor, token: str) -> dict | None:
    cursor.execute(
        """
        SELECT u.*
        FROM auth_sessions s
        JOIN users u ON u.id = s.user_id
        WHERE s.id = %s AND s.expires_at > now()
        """,
        (token,),
    )
    return _one(cursor)


def delete_auth_session(cursor, token: str) -> None:
    cursor.execute("DELETE FROM auth_sessions WHERE id = %s", (token,))


def count_expired_auth_sessions(cursor) -> int:
    cursor.execute("SELECT COUNT(*) AS n FROM auth_sessions WHERE expires_at <= now()")
    return int(cursor.fetchone()["n"])


def purge_expired_auth_sessions(cursor) -> int:
    cursor.execute("DELETE FROM auth_sessions WHERE expires_at <= now()")
    return cursor.rowcount


# badges

def list_user_badges(cursor, user_id: str) -> list[dict]:
    cursor.execute(
        """
        SELECT b.slug, b.name, b.description, b.icon, ub.awarded_at
        FROM user_badges ub
        JOIN badges b ON b.id = ub.badge_id
        WHERE ub.user_id = %s
        ORDER BY ub.awarded_at
        """,
        (user_id,),
    )
    return _all(cursor)


def award_badge(cursor, user_id: str, slug: str, reason: str | None = None) -> None:
    cursor.execute(
        """
        INSERT INTO user_badges (user_id, badge_id, awarded_reason)
        SELECT %s, id, %s FROM badges WHERE slug = %s
        ON CONFLICT (user_id, badge_id) DO NOTHING
        """,
        (user_id, reason, slug),
    )


# events

def get_event(cursor, event_id: str) -> dict | None:
    cursor.execute("SELECT * FROM events WHERE id = %s", (event_id,))
    return _one(cursor)


def list_open_events(cursor, since: datetime) -> list[dict]:
    cursor.execute(
        """
        SELECT * FROM events
        WHERE status = 'open' AND event_date >= %s
        ORDER BY event_date
        """,
        (since,),
    )
    return _all(cursor)


def get_next_open_event(cursor, since: datetime) -> dict | None:
    cursor.execute(
        """
        SELECT * FROM events
        WHERE status = 'open' AND event_date >= %s
        ORDER BY event_date
        LIMIT 1
        """,
        (since,),
    )
    return _one(cursor)


def list_events_with_counts(cursor) -> list[dict]:
    cursor.execute(
        """
        SELECT e.*,
               COUNT(p.id) FILTER (WHERE p.status <> 'canceled') AS participant_count,
               (SELECT COUNT(*) FROM guests g WHERE g.event_id = e.id) AS guest_count
        FROM events e
        LEFT JOIN participations p ON p.event_id = e.id
        GROUP BY e.id
        ORDER BY e.event_date DESC
        """
    )
    return _all(cursor)


def create_event(cursor, event_date: datetime, area: str, required_stage: str = "bronze") -> dict:
    cursor.execute(
        """
        INSERT INTO events (event_date, area, required_stage)
        VALUES (%s, %s, %s)
        RETURNING *
        """,
        (event_date, area, required_stage),
    )
    return dict(cursor.fetchone())


def set_event_status(cursor, event_id: str, status: str) -> None:
    cursor.execute("UPDATE events SET status = %s WHERE id = %s", (status, event_id))


# participations

def get_participation(cursor, user_id: str, event_id: str) -> dict | None:
    cursor.execute(
        "SELECT * FROM participations WHERE user_id = %s AND event_id = %s",
        (user_id, event_id),
    )
    return _one(cursor)


def list_user_participations(cursor, user_id: str) -> list[dict]:
    cursor.execute(
        """
        SELECT p.id, p.event_id, p.group_id, p.entry_type, p.status, p.attendance_status,
               p.invite_token, p.short_code, e.event_date, e.area, e.status AS event_status
        FROM participations p
        JOIN events e ON e.id = p.event_id
        WHERE p.user_id = %s
        ORDER BY e.event_date DESC
        """,
        (user_id,),
    )
    return _all(cursor)


def get_participation_by_id(cursor, participation_id: str, user_id: str | None = None) -> dict | None:
    cursor.execute(
        """
        SELECT p.*, e.event_date, e.area, e.status AS event_status
        FROM participations p
        JOIN events e ON e.id = p.event_id
        WHERE p.id = %s AND (%s::uuid IS NULL OR p.user_id = %s::uuid)
        """,
        (participation_id, user_id, user_id),
    )
    return _one(cursor)


def get_participation_by_invite(cursor, invite_token: str | None = None,
                                short_code: str | None = None) -> dict | None:
    if short_code:
        cursor.execute(
            "SELECT * FROM participations WHERE upper(short_code) = upper(%s)",
            (short_code,),
        )
    elif invite_token:
        cursor.execute("SELECT * FROM participations WHERE invite_token = %s", (invite_token,))
    else:
        return None
    return _one(cursor)


def create_participation(cursor, user_id: str, event_id: str, group_id: str, entry_type: str,
                         invite_token: str | None = None, short_code: str | None = None,
                         mood: str | None = None, mood_text: str | None = None,
                         budget_level: int | None = None) -> dict:
    cursor.execute(
        """
        INSERT INTO participations
        (user_id, event_id, group_id, entry_type, invite_token, short_code,
         mood, mood_text, budget_level, status)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, 'pending')
        RETURNING *
        """,
        (user_id, event_id, group_id, entry_type, invite_token, short_code, mood, mood_text, budget_level),
    )
    return dict(cursor.fetchone())


def reactivate_participation(cursor, participation_id: str, group_id: str, entry_type: str,
                             invite_token: str | None, short_code: str | None,
                             mood: str | None, mood_text: str | None,
                             budget_level: int | None) -> dict:
    cursor.execute(
        """
        UPDATE participations
        SET group_id = %s, entry_type = %s, invite_token = %s, short_code = %s,
            mood = %s, mood_text = %s, budget_level = %s, status = 'pending',
            attendance_status = 'attending', late_minutes = NULL, cancel_reason = NULL,
            attendance_updated_at = NULL
        WHERE id = %s
        RETURNING *
        """,
        (group_id, entry_type, invite_token, short_code, mood, mood_text, budget_level, participation_id),
    )
    return dict(cursor.fetchone())


def join_participation_group(cursor, participation_id: str, group_id: str, mood: str | None,
                             mood_text: str | None, budget_level: int | None) -> None:
    cursor.execute(
        """
        UPDATE participations
        SET group_id = %s, entry_type = 'pair', mood = %s, mood_text = %s, budget_level = %s
        WHERE id = %s
        """,
        (group_id, mood, mood_text, budget_level, participation_id),
    )


def set_participation_status(cursor, participation_id: str, status: str) -> None:
    cursor.execute("UPDATE participations SET status = %s WHERE id = %s", (status, participation_id))


def count_active_group_members(cursor, group_id: str) -> int:
    cursor.execute(
        "SELECT COUNT(*) AS n FROM participations WHERE group_id = %s AND status <> 'canceled'",
        (group_id,),
    )
    return int(cursor.fetchone()["n"])


def list_event_participations(cursor, event_id: str) -> list[dict]:
    cursor.execute(
        """
        SELECT p.*, u.display_name, u.avatar_url, u.gender, u.personality_type,
               u.is_identity_verified, u.line_user_id, u.member_stage
        FROM participations p
        JOIN users u ON u.id = p.user_id
        WHERE p.event_id = %s AND p.status <> 'canceled'
        ORDER BY p.created_at
        """,
        (event_id,),
    )
    return _all(cursor)


_PARTICIPANT_USER_COLUMNS = """
    u.display_name, u.avatar_url, u.gender, u.birth_date, u.job, u.line_user_id,
    u.member_stage, u.is_identity_verified, u.created_at AS user_created_at
"""


def list_all_participants(cursor) -> list[dict]:
    cursor.execute(
        f"""
        SELECT p.id, p.user_id, p.event_id, p.status, p.group_id, p.entry_type, p.mood, p.mood_text,
               p.budget_level, p.attendance_status, p.created_at, {_PARTICIPANT_USER_COLUMNS}
        FROM participations p
        JOIN users u ON u.id = p.user_id
        ORDER BY p.created_at DESC
        """
    )
    return _all(cursor)


def search_event_participants(cursor, event_id: str, *, status: str | None = None, search: str | None = None,
                              min_no_shows: int = 0, limit: int = 50, offset: int = 0) -> tuple[list[dict], int]:
    """One page of an event's participants plus the total row count for the filters."""
    clauses = ["p.event_id = %s"]
    params: list[Any] = [event_id]
    if status:
        clauses.append("p.status = %s")
        params.append(status)
    if search:
        clauses.append("(u.display_name ILIKE %s OR u.job ILIKE %s)")
        pattern = f"%{search}%"
        params.extend([pattern, pattern])
    if min_no_shows > 0:
        clauses.append(
            "(SELECT COUNT(*) FROM reviews r WHERE r.target_user_id = p.user_id AND r.is_no_show) >= %s"
        )
        params.append(min_no_shows)
    where = " AND ".join(clauses)
    cursor.execute(
        f"SELECT COUNT(*) AS total FROM participations p JOIN users u ON u.id = p.user_id WHERE {where}",
        tuple(params),
    )
    total = int(cursor.fetchone()["total"])
    cursor.execute(
        f"""
        SELECT p.id, p.user_id, p.event_id, p.status, p.group_id, p.entry_type, p.mood, p.mood_text,
               p.budget_level, p.attendance_status, p.created_at, {_PARTICIPANT_USER_COLUMNS}
        FROM participations p
        JOIN users u ON u.id = p.user_id
        WHERE {where}
        ORDER BY p.created_at DESC
        LIMIT %s OFFSET %s
        """,
        (*params, limit, offset),
    )
    return _all(cursor), total


def mark_participations_matched(cursor, event_id: str, user_ids: list[str]) -> None:
    if not user_ids:
        return
    cursor.execute(
        """
        UPDATE participations SET status = 'matched'
        WHERE event_id = %s AND user_id::text = ANY(%s) AND status <> 'canceled'
        """,
        (event_id, list(user_ids)),
    )


def cancel_event_participations(cursor, event_id: str) -> list[dict]:
    cursor.execute(
        """
        UPDATE participations p SET status = 'canceled'
        FROM users u
        WHERE p.event_id = %s AND p.status <> 'canceled' AND u.id = p.user_id
        RETURNING p.user_id, u.display_name, u.line_user_id
        """,
        (event_id,),
    )
    return _all(cursor)


def list_matched_participants(cursor, event_id: str) -> list[dict]:
    cursor.execute(
        """
        SELECT p.id, p.user_id, u.display_name, u.line_user_id
        FROM participations p
        JOIN users u ON u.id = p.user_id
        WHERE p.event_id = %s AND p.status = 'matched'
        """,
        (event_id,),
    )
    return _all(cursor)


def update_attendance(cursor, participation_id: str, attendance_status: str,
                      late_minutes: int | None, cancel_reason: str | None) -> dict:
    cursor.execute(
        """
        UPDATE participations
        SET attendance_status = %s, late_minutes = %s, cancel_reason = %s,
            attendance_updated_at = now()
        WHERE id = %s
        RETURNING *
        """,
        (attendance_status, late_minutes, cancel_reason, participation_id),
    )
    return dict(cursor.fetchone())


# guests

def list_guests(cursor, event_id: str) -> list[dict]:
    cursor.execute("SELECT * FROM guests WHERE event_id = %s ORDER BY created_at", (event_id,))
    return _all(cursor)


def get_guest(cursor, guest_id: str) -> dict | None:
    cursor.execute("SELECT * FROM guests WHERE id = %s", (guest_id,))
    return _one(cursor)


def create_guest(cursor, event_id: str, display_name: str, gender: str, group_id: str) -> dict:
    cursor.execute(
        """
        INSERT INTO guests (event_id, display_name, gender, group_id)
        VALUES (%s, %s, %s, %s)
        RETURNING *
        """,
        (event_id, display_name, gender, group_id),
    )
    return dict(cursor.fetchone())


def delete_guest(cursor, event_id: str, guest_id: str) -> bool:
    cursor.execute("DELETE FROM guests WHERE id = %s AND event_id = %s", (guest_id, event_id))
    return cursor.rowcount > 0


# matches

def list_matches(cursor, event_id: str) -> list[dict]:
    cursor.execute("SELECT * FROM matches WHERE event_id = %s ORDER BY created_at", (event_id,))
    return _all(cursor)


def get_match(cursor, match_id: str) -> dict | None:
    cursor.execute(
        """
        SELECT m.*, e.event_date, e.area, e.status AS event_status
        FROM matches m
        JOIN events e ON e.id = m.event_id
        WHERE m.id = %s
        """,
        (match_id,),
    )
    return _one(cursor)


def replace_matches(cursor, event_id: str, tables: list[dict]) -> list[dict]:
    cursor.execute("DELETE FROM matches WHERE event_id = %s", (event_id,))
    saved = []
    for table in tables:
        cursor.execute(
            """
            INSERT INTO matches (event_id, restaurant_name, restaurant_url, reservation_name, table_members)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                event_id,
                table["restaurant_name"],
                table.get("restaurant_url") or None,
                table.get("reservation_name") or None,
                as_json(list(table["members"])),
            ),
        )
        saved.append(dict(cursor.fetchone()))
    return saved


def mark_reminder_sent(cursor, event_id: str, admin_user_id: str) -> None:
    cursor.execute(
        "UPDATE matches SET reminder_sent_at = now(), reminder_sent_by = %s WHERE event_id = %s",
        (admin_user_id, event_id),
    )


def get_users_by_ids(cursor, user_ids: list[str]) -> list[dict]:
    if not user_ids:
        return []
    cursor.execute(
        """
        SELECT id, display_name, avatar_url, gender, personality_type, is_identity_verified,
               line_user_id, member_stage
        FROM users WHERE id::text = ANY(%s)
        """,
        (list(user_ids),),
    )
    return _all(cursor)


# reviews

def list_block_pairs(cursor, user_ids: list[str]) -> list[tuple[str, str]]:
    if not user_ids:
        return []
    cursor.execute(
        """
        SELECT reviewer_id, target_user_id FROM reviews
        WHERE block_flag = true
          AND (reviewer_id::text = ANY(%s) OR target_user_id::text = ANY(%s))
        """,
        (list(user_ids), list(user_ids)),
    )
    return [(str(r["reviewer_id"]), str(r["target_user_id"])) for r in cursor.fetchall()]


def review_exists(cursor, reviewer_id: str, target_user_id: str, match_id: str) -> bool:
    cursor.execute(
        "SELECT 1 FROM reviews WHERE reviewer_id = %s AND target_user_id = %s AND match_id = %s",
        (reviewer_id, target_user_id, match_id),
    )
    return cursor.fetchone() is not None


def create_review(cursor, reviewer_id: str, target_user_id: str, match_id: str, rating: int,
                  comment: str | None, memo: str | None, block_flag: bool, is_no_show: bool) -> dict:
    cursor.execute(
        """
        INSERT INTO reviews
        (reviewer_id, target_user_id, match_id, rating, comment, memo, block_flag, is_no_show)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING *
        """,
        (reviewer_id, target_user_id, match_id, rating, comment, memo, block_flag, is_no_show),
    )
    return dict(cursor.fetchone())


def list_reviews_by_reviewer(cursor, reviewer_id: str, match_id: str) -> list[dict]:
    cursor.execute(
        "SELECT * FROM reviews WHERE reviewer_id = %s AND match_id = %s",
        (reviewer_id, match_id),
    )
    return _all(cursor)


def review_stats_by_target(cursor, user_ids: list[str]) -> dict[str, dict]:
    """Received-review aggregates keyed by target user id."""
    if not user_ids:
        return {}
    cursor.execute(
        """
        SELECT target_user_id,
               COUNT(*) AS review_count,
               COUNT(*) FILTER (WHERE is_no_show) AS no_show_count,
               COUNT(*) FILTER (WHERE block_flag) AS block_count,
               AVG(rating)::float AS avg_rating
        FROM reviews
        WHERE target_user_id::text = ANY(%s)
        GROUP BY target_user_id
        """,
        (list(user_ids),),
    )
    return {str(row["target_user_id"]): dict(row) for row in cursor.fetchall()}


def list_reviews_received(cursor, user_id: str) -> list[dict]:
    cursor.execute(
        """
        SELECT r.id, r.rating, r.comment, r.is_no_show, r.block_flag, r.created_at, r.match_id,
               u.id AS reviewer_id, u.display_name AS reviewer_name, u.avatar_url AS reviewer_avatar_url,
               u.gender AS reviewer_gender, e.id AS event_id, e.event_date, e.area
        FROM reviews r
        JOIN users u ON u.id = r.reviewer_id
        JOIN matches m ON m.id = r.match_id
        JOIN events e ON e.id = m.event_id
        WHERE r.target_user_id = %s
        ORDER BY r.created_at DESC
        """,
        (user_id,),
    )
    return _all(cursor)


def list_reviews_given(cursor, user_id: str) -> list[dict]:
    cursor.execute(
        """
        SELECT r.id, r.rating, r.comment, r.memo, r.is_no_show, r.block_flag, r.created_at, r.match_id,
               u.id AS target_user_id, u.display_name AS target_name, u.avatar_url AS target_avatar_url,
               u.gender AS target_gender, e.id AS event_id, e.event_date, e.area
        FROM reviews r
        JOIN users u ON u.id = r.target_user_id
        JOIN matches m ON m.id = r.match_id
        JOIN events e ON e.id = m.event_id
        WHERE r.reviewer_id = %s
        ORDER BY r.created_at DESC
        """,
        (user_id,),
    )
    return _all(cursor)


# member stage

def add_stage_points(cursor, user_id: str, delta: int, reason: str,
                     reference_id: str | None = None) -> dict | None:
    cursor.execute(
        "SELECT stage_points, member_stage FROM users WHERE id = %s FOR UPDATE",
        (user_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    old_stage = row["member_stage"]
    new_points = max(0, int(row["stage_points"] or 0) + delta)
    new_stage = member_stage.stage_from_points(new_points)

    cursor.execute(
        "UPDATE users SET stage_points = %s, member_stage = %s, updated_at = now() WHERE id = %s",
        (new_points, new_stage, user_id),
    )
    if new_stage != old_stage:
        cursor.execute(
            """
            INSERT INTO member_stage_history (user_id, old_stage, new_stage, points_at_change)
            VALUES (%s, %s, %s, %s)
            """,
            (user_id, old_stage, new_stage, new_points),
        )
    cursor.execute(
        "INSERT INTO stage_point_logs (user_id, points, reason, reference_id) VALUES (%s, %s, %s, %s)",
        (user_id, delta, reason, reference_id),
    )
    return {"points": new_points, "stage": new_stage, "previousStage": old_stage}


# icebreaker

def get_active_ice_session(cursor, match_id: str) -> dict | None:
    cursor.execute(
        """
        SELECT * FROM icebreaker_sessions
        WHERE match_id = %s AND status = ANY(%s)
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (match_id, list(ACTIVE_SESSION_STATUSES)),
    )
    return _one(cursor)


def get_ice_session(cursor, session_id: str, for_update: bool = False) -> dict | None:
    lock = " FOR UPDATE" if for_update else ""
    cursor.execute(f"SELECT * FROM icebreaker_sessions WHERE id = %s{lock}", (session_id,))
    return _one(cursor)


def create_ice_session(cursor, match_id: str, game_type: str, host_user_id: str) -> dict:
    cursor.execute(
        """
        INSERT INTO icebreaker_sessions (match_id, game_type, host_user_id)
        VALUES (%s, %s, %s)
        RETURNING *
        """,
        (match_id, game_type, host_user_id),
    )
    return dict(cursor.fetchone())


def update_ice_session(cursor, session_id: str, *, status: str | None = None,
                       game_data: dict | None = None, current_round: int | None = None) -> dict:
    cursor.execute(
        """
        UPDATE icebreaker_sessions
        SET status = COALESCE(%s, status),
            game_data = COALESCE(%s, game_data),
            current_round = COALESCE(%s, current_round),
            updated_at = now()
        WHERE id = %s
        RETURNING *
        """,
        (status, as_json(game_data) if game_data is not None else None, current_round, session_id),
    )
    return dict(cursor.fetchone())


def list_ice_players(cursor, session_id: str) -> list[dict]:
    cursor.execute(
        """
        SELECT ip.*, u.display_name, u.avatar_url
        FROM icebreaker_players ip
        JOIN users u ON u.id = ip.user_id
        WHERE ip.session_id = %s
        ORDER BY ip.joined_at
        """,
        (session_id,),
    )
    return _all(cursor)


def add_ice_player(cursor, session_id: str, user_id: str, is_ready: bool = False) -> bool:
    cursor.execute(
        """
        INSERT INTO icebreaker_players (session_id, user_id, is_ready)
        VALUES (%s, %s, %s)
        ON CONFLICT (session_id, user_id) DO NOTHING
        """,
        (session_id, user_id, is_ready),
    )
    return cursor.rowcount > 0


def update_ice_player(cursor, session_id: str, user_id: str, *, player_data: dict | None = None,
                      is_ready: bool | None = None) -> dict | None:
    cursor.execute(
        """
        UPDATE icebreaker_players
        SET player_data = COALESCE(%s, player_data),
            is_ready = COALESCE(%s, is_ready)
        WHERE session_id = %s AND user_id = %s
        RETURNING *
        """,
        (as_json(player_data) if player_data is not None else None, is_ready, session_id, user_id),
    )
    return _one(cursor)


def list_ice_scores(cursor, match_id: str) -> list[dict]:
    cursor.execute(
        """
        SELECT s.user_id, s.points, u.display_name
        FROM icebreaker_scores s
        JOIN users u ON u.id = s.user_id
        WHERE s.match_id = %s
        ORDER BY s.points DESC
        """,
        (match_id,),
    )
    return _all(cursor)


def add_ice_score(cursor, match_id: str, user_id: str, points: int) -> None:
    cursor.execute(
        """
        INSERT INTO icebreaker_scores (match_id, user_id, points)
        VALUES (%s, %s, %s)
        ON CONFLICT (match_id, user_id)
        DO UPDATE SET points = icebreaker_scores.points + EXCLUDED.points, updated_at = now()
        """,
        (match_id, user_id, points),
    )


def finish_stale_ice_sessions(cursor, older_than: datetime, dry_run: bool = True) -> int:
    if dry_run:
        cursor.execute(
            "SELECT COUNT(*) AS n FROM icebreaker_sessions WHERE status = ANY(%s) AND updated_at < %s",
            (list(ACTIVE_SESSION_STATUSES), older_than),
        )
        return int(cursor.fetchone()["n"])
    cursor.execute(
        """
        UPDATE icebreaker_sessions SET status = 'finished', updated_at = now()
        WHERE status = ANY(%s) AND updated_at < %s
        """,
        (list(ACTIVE_SESSION_STATUSES), older_than),
    )
    return cursor.rowcount


# identity verification

def get_pending_verification(cursor, user_id: str) -> dict | None:
    cursor.execute(
        "SELECT * FROM identity_verification_requests WHERE user_id = %s AND status = 'pending' LIMIT 1",
        (user_id,),
    )
    return _one(cursor)


def create_verification_request(cursor, user_id: str, line_user_id: str, message_id: str) -> dict:
    cursor.execute(
        """
        INSERT INTO identity_verification_requests (user_id, line_user_id, line_message_id)
        VALUES (%s, %s, %s)
        RETURNING *
        """,
        (user_id, line_user_id, message_id),
    )
    return dict(cursor.fetchone())


def list_verification_requests(cursor, status: str | None = "pending") -> list[dict]:
    cursor.execute(
        """
        SELECT r.*, u.display_name, u.avatar_url
        FROM identity_verification_requests r
        JOIN users u ON u.id = r.user_id
        WHERE (%s::text IS NULL OR r.status = %s)
        ORDER BY r.created_at
        """,
        (status, status),
    )
    return _all(cursor)


def get_verification_request(cursor, request_id: str) -> dict | None:
    cursor.execute("SELECT * FROM identity_verification_requests WHERE id = %s", (request_id,))
    return _one(cursor)


def review_verification_request(cursor, request_id: str, status: str, reviewer_id: str,
                                note: str | None = None) -> None:
    cursor.execute(
        """
        UPDATE identity_verification_requests
        SET status = %s, reviewed_by = %s, reviewed_at = now(), review_note = %s
        WHERE id = %s
        """,
        (status, reviewer_id, note, request_id),
    )


# referrals

def create_referral(cursor, referrer_id: str, referred_id: str) -> None:
    cursor.execute(
        """
        INSERT INTO referrals (referrer_id, referred_id)
        VALUES (%s, %s)
        ON CONFLICT (referred_id) DO NOTHING
        """,
        (referrer_id, referred_id),
    )


def complete_referral(cursor, referred_id: str) -> bool:
    cursor.execute(
        """
        UPDATE referrals SET status = 'completed', completed_at = now()
        WHERE referred_id = %s AND status = 'pending'
        """,
        (referred_id,),
    )
    return cursor.rowcount > 0


# activity

def insert_activity_log(cursor, user_id: str | None, action: str, metadata: dict) -> None:
    cursor.execute(
        "INSERT INTO user_activity_logs (user_id, action, metadata) VALUES (%s, %s, %s)",
        (user_id, action, as_json(metadata)),
    )


def list_activity(cursor, user_id: str, limit: int = 100) -> list[dict]:
    cursor.execute(
        """
        SELECT id, action, metadata, created_at FROM user_activity_logs
        WHERE user_id = %s
        ORDER BY created_at DESC
        LIMIT %s
        """,
        (user_id, limit),
    )
    return _all(cursor)


# affiliates

def get_affiliate_code(cursor, code: str) -> dict | None:
    cursor.execute("SELECT * FROM affiliate_codes WHERE code = %s", (code,))
    return _one(cursor)


def affiliate_use_exists(cursor, affiliate_code_id: str, user_id: str) -> bool:
    cursor.execute(
        "SELECT 1 FROM affiliate_code_uses WHERE affiliate_code_id = %s AND user_id = %s",
        (affiliate_code_id, user_id),
    )
    return cursor.fetchone() is not None


def create_affiliate_use(cursor, affiliate_code_id: str, user_id: str) -> None:
    cursor.execute(
        "INSERT INTO affiliate_code_uses (affiliate_code_id, user_id) VALUES (%s, %s)",
        (affiliate_code_id, user_id),
    )


def list_affiliate_codes(cursor) -> list[dict]:
    cursor.execute(
        """
        SELECT a.*, COUNT(u.id) AS use_count
        FROM affiliate_codes a
        LEFT JOIN affiliate_code_uses u ON u.affiliate_code_id = a.id
        GROUP BY a.id
        ORDER BY a.created_at DESC
        """
    )
    return _all(cursor)


def create_affiliate_code(cursor, code: str, name: str) -> dict:
    cursor.execute(
        "INSERT INTO affiliate_codes (code, name) VALUES (%s, %s) RETURNING *",
        (code, name),
    )
    return dict(cursor.fetchone())


def set_affiliate_code_active(cursor, affiliate_code_id: str, is_active: bool) -> dict | None:
    cursor.execute(
        "UPDATE affiliate_codes SET is_active = %s WHERE id = %s RETURNING *",
        (is_active, affiliate_code_id),
    )
    return _one(cursor)
