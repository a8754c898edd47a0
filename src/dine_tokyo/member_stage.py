from __future__ import annotations

STAGE_ORDER = ["bronze", "silver", "gold", "platinum"]
STAGE_THRESHOLDS: dict[str, int] = {
    "bronze": 0,
    "silver": 100,
    "gold": 300,
    "platinum": 600,
}
STAGE_NAMES_JA: dict[str, str] = {
    "bronze": "ブロンズ",
    "silver": "シルバー",
    "gold": "ゴールド",
    "platinum": "プラチナ",
}

PARTICIPATION_POINTS = 20
REVIEW_SENT_POINTS = 20
CANCEL_PENALTY = -30
LATE_CANCEL_PENALTY = -50
NO_SHOW_PENALTY = -100
LATE_CANCEL_WINDOW_HOURS = 24

REVIEW_RECEIVED_POINTS: dict[int, int] = {1: 5, 2: 10, 3: 15, 4: 20, 5: 25}


def review_received_points(rating: int) -> int:
    return REVIEW_RECEIVED_POINTS.get(rating, 15)


def cancel_penalty(hours_until_event: float) -> tuple[int, str]:
    if hours_until_event < LATE_CANCEL_WINDOW_HOURS:
        return LATE_CANCEL_PENALTY, "late_cancel"
    return CANCEL_PENALTY, "cancel"


def stage_from_points(points: int) -> str:
    for stage in reversed(STAGE_ORDER):
        if points >= STAGE_THRESHOLDS[stage]:
            return stage
    return "bronze"


def next_stage(stage: str) -> str | None:
    if stage not in STAGE_ORDER:
        return None
    index = STAGE_ORDER.index(stage)
    if index == len(STAGE_ORDER) - 1:
        return None
    return STAGE_ORDER[index + 1]


def progress_percent(points: int) -> int:
    current = stage_from_points(points)
    upcoming = next_stage(current)
    if not upcoming:
        return 100
    floor = STAGE_THRESHOLDS[current]
    span = STAGE_THRESHOLDS[upcoming] - floor
    return min(100, (points - floor) * 100 // span)


def stage_message(stage: str, percent: int) -> str:
    upcoming = next_stage(stage)
    if not upcoming:
        return "最高ランクに到達しています！"
    name = STAGE_NAMES_JA[upcoming]
    if percent >= 80:
        return f"{name}まであと少し！"
    if percent >= 50:
        return f"{name}が見えてきました"
    return f"次は{name}を目指しましょう"


def stage_info(points: int) -> dict:
    points = max(0, int(points or 0))
    stage = stage_from_points(points)
    percent = progress_percent(points)
    upcoming = next_stage(stage)
    return {
        "stage": stage,
        "stageName": STAGE_NAMES_JA[stage],
        "points": points,
        "progressPercent": percent,
        "nextStage": upcoming,
        "pointsToNext": (STAGE_THRESHOLDS[upcoming] - points) if upcoming else 0,
        "message": stage_message(stage, percent),
    }


def can_access_event(user_stage: str | None, required_stage: str | None) -> bool:
    user_index = STAGE_ORDER.index(user_stage) if user_stage in STAGE_ORDER else 0
    required_index = STAGE_ORDER.index(required_stage) if required_stage in STAGE_ORDER else 0
    return user_index >= required_index
