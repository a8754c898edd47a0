"""Review rating scale.

Ratings 1-3 mark the reviewed member as someone the reviewer should never be
seated with again. 0 is reserved for no-show reports.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

NO_SHOW_RATING = 0
REVIEW_OPEN_DELAY = timedelta(hours=2)

RATING_DEFINITIONS: list[dict] = [
    {"value": 1, "label": "迷惑行為", "description": "迷惑行為を行なっていた", "isBlock": True},
    {"value": 2, "label": "もう会いたくない", "description": "嫌い。もう会いたくない", "isBlock": True},
    {"value": 3, "label": "普通", "description": "普通。でももう会いたくない", "isBlock": True},
    {"value": 4, "label": "また会いたい", "description": "好き。また会いたい", "isBlock": False},
    {"value": 5, "label": "ぜひまた会いたい", "description": "大好き。ぜひまた会いたい", "isBlock": False},
]


def rating_definition(rating: int) -> dict | None:
    return next((r for r in RATING_DEFINITIONS if r["value"] == rating), None)


def is_block_rating(rating: int) -> bool:
    definition = rating_definition(rating)
    return bool(definition and definition["isBlock"])


def validate_rating(rating, is_no_show: bool) -> str | None:
    """Returns an error message, or None when the rating is acceptable."""
    if isinstance(rating, bool) or not isinstance(rating, int):
        return "Rating must be an integer between 0 and 5"
    if rating < 0 or rating > 5:
        return "Rating must be an integer between 0 and 5"
    if rating == NO_SHOW_RATING and not is_no_show:
        return "Rating 0 is only allowed for no-show reports"
    return None


def reviews_open(event_date: datetime, now: datetime | None = None) -> bool:
    if event_date.tzinfo is None:
        event_date = event_date.replace(tzinfo=timezone.utc)
    return (now or datetime.now(timezone.utc)) >= event_date + REVIEW_OPEN_DELAY
