from __future__ import annotations

import logging

from dine_tokyo import repositories
from dine_tokyo.config import get_log_level
from dine_tokyo.db import savepoint, transaction

logger = logging.getLogger(__name__)
logger.setLevel(get_log_level())


def log_activity(user_id: str | None, action: str, metadata: dict | None = None, cursor=None) -> None:
    """Record a user activity row. Failures are logged and never raised.

    With a cursor the insert joins the caller's transaction behind a savepoint,
    otherwise it runs in its own short transaction.
    """
    payload = dict(metadata or {})
    try:
        if cursor is not None:
            with savepoint(cursor, "activity_log"):
                repositories.insert_activity_log(cursor, user_id, action, payload)
            return
        with transaction() as own_cursor:
            repositories.insert_activity_log(own_cursor, user_id, action, payload)
    except Exception:
        logger.exception("Failed to log activity %s for user %s", action, user_id)


def log_admin_activity(target_user_id: str | None, action: str, admin_user_id: str,
                       metadata: dict | None = None, cursor=None) -> None:
    payload = {**(metadata or {}), "admin_user_id": admin_user_id}
    log_activity(target_user_id, action, payload, cursor=cursor)


def award_stage_points(cursor, user_id: str, delta: int, reason: str,
                       reference_id: str | None = None) -> dict | None:
    try:
        with savepoint(cursor, "stage_points"):
            return repositories.add_stage_points(cursor, user_id, delta, reason, reference_id)
    except Exception:
        logger.exception("Failed to add %s stage points (%s) for user %s", delta, reason, user_id)
        return None
