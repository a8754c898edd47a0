from __future__ import annotations

from datetime import datetime, timedelta, timezone

JST = timezone(timedelta(hours=9))
WEEKDAYS_JA = ["月", "火", "水", "木", "金", "土", "日"]

AREA_LABELS: dict[str, str] = {
    "shibuya": "渋谷",
    "shinjuku": "新宿",
    "ginza": "銀座",
    "roppongi": "六本木",
    "ebisu": "恵比寿",
    "meguro": "目黒",
    "ikebukuro": "池袋",
}

VERIFICATION_USER_NOT_FOUND = (
    "アカウントが見つかりませんでした。先にアプリでアカウント登録を完了してください。"
)
VERIFICATION_ALREADY_VERIFIED = "すでに本人確認が完了しています。ありがとうございます！"
VERIFICATION_ALREADY_PENDING = (
    "本人確認の申請を受付済みです。運営からの確認をお待ちください（通常2〜3日）。"
)
VERIFICATION_RECEIVED = (
    "身分証明書を受け取りました。運営が確認いたしますので、2〜3日お待ちください。"
    "確認完了後、本人確認済みバッジがプロフィールに表示されます。"
)
VERIFICATION_APPROVED = "本人確認が完了しました！プロフィールに本人確認済みバッジが表示されます。"
VERIFICATION_REJECTED = (
    "本人確認を完了できませんでした。お手数ですが、鮮明な身分証明書の画像を再度お送りください。"
)


def area_label(area: str | None) -> str:
    if not area:
        return ""
    return AREA_LABELS.get(area, area)


def to_jst(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(JST)


def format_event_datetime(value: datetime) -> str:
    local = to_jst(value)
    return f"{local.year}年{local.month}月{local.day}日 {local:%H:%M}"


def format_short_date(value: datetime) -> str:
    local = to_jst(value)
    return f"{local.month}/{local.day}({WEEKDAYS_JA[local.weekday()]})"


def match_confirmed_text(event_date: datetime, area: str, restaurant_name: str,
                         restaurant_url: str | None, reservation_name: str | None,
                         member_names: list[str]) -> str:
    lines = [
        "マッチングが確定しました！",
        "",
        f"【日時】{format_event_datetime(event_date)}〜",
        f"【エリア】{area_label(area)}",
        f"【お店】{restaurant_name}",
    ]
    if restaurant_url:
        lines.append(restaurant_url)
    if reservation_name:
        lines.append(f"【予約名】{reservation_name}")
    lines.extend(["", "【メンバー】", *member_names, "", "当日をお楽しみに！"])
    return "\n".join(lines)


def event_canceled_text(event_date: datetime, area: str) -> str:
    return "\n".join(
        [
            "イベント中止のお知らせ",
            "",
            f"【日時】{format_event_datetime(event_date)}〜",
            f"【エリア】{area_label(area)}",
            "",
            "既定の人数が集まらず、マッチングできませんでした。",
            "またのご参加をお待ちしております。",
        ]
    )


def reminder_text(event_date: datetime, area: str, restaurant_name: str,
                  restaurant_url: str | None, reservation_name: str | None) -> str:
    lines = [
        "本日のお食事会のリマインドです",
        "",
        f"【日時】{format_event_datetime(event_date)}〜",
        f"【エリア】{area_label(area)}",
        f"【お店】{restaurant_name}",
    ]
    if restaurant_url:
        lines.append(restaurant_url)
    if reservation_name:
        lines.append(f"【予約名】{reservation_name}")
    lines.extend(["", "遅刻・キャンセルの際はアプリからご連絡ください。"])
    return "\n".join(lines)
