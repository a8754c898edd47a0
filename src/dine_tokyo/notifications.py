from __future__ import annotations

import logging
from typing import Callable

from dine_tokyo import line_api
from dine_tokyo.config import get_log_level

logger = logging.getLogger(__name__)
logger.setLevel(get_log_level())


def notify_members(members: list[dict], build_text: Callable[[dict], str]) -> dict[str, int]:
    """Push one LINE text per member.

    Members without a LINE id (guests, unlinked accounts) and every member when
    the Messaging API token is missing are counted as skipped.
    """
    results = {"sent": 0, "failed": 0, "skipped": 0}
    configured = line_api.is_configured()
    if not configured:
        logger.warning("LINE_CHANNEL_ACCESS_TOKEN is not set; skipping %d notifications", len(members))
    for member in members:
        line_user_id = member.get("line_user_id")
        if not configured or not line_user_id:
            results["skipped"] += 1
            continue
        try:
            line_api.push_text(line_user_id, build_text(member))
            results["sent"] += 1
        except Exception:
            logger.exception("Failed to push LINE message to %s", line_user_id)
            results["failed"] += 1
    return results
