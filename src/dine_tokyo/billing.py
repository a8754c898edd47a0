from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

import stripe

from dine_tokyo import activity, invites, repositories
from dine_tokyo.config import (
    get_app_url,
    get_log_level,
    get_stripe_invite_coupon_id,
    get_stripe_price_id,
    get_stripe_referral_coupon_id,
    get_stripe_secret_key,
    get_stripe_webhook_secret,
)
from dine_tokyo.db import savepoint

logger = logging.getLogger(__name__)
logger.setLevel(get_log_level())

DEFAULT_MOOD = "lively"
DEFAULT_BUDGET_LEVEL = 2


def _configure() -> None:
    stripe.api_key = get_stripe_secret_key()


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _from_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _subscription_period_end(subscription: Any) -> datetime | None:
    # Newer API versions moved the period onto subscription items.
    period_end = _get(subscription, "current_period_end")
    if not period_end:
        items = _get(_get(subscription, "items"), "data") or []
        if items:
            period_end = _get(items[0], "current_period_end")
    return _from_timestamp(period_end)


def _retrieve_period_end(subscription_id: str | None) -> datetime | None:
    if not subscription_id:
        return None
    _configure()
    return _subscription_period_end(stripe.Subscription.retrieve(subscription_id))


def is_invite_coupon_eligible(user: dict, invite_token: str | None = None) -> bool:
    if user.get("has_used_invite_coupon"):
        return False
    return bool(invite_token or user.get("pending_invite_token"))


def create_checkout_session(user: dict, event_entry: dict | None = None,
                            invite_token: str | None = None) -> str:
    """Creates a subscription checkout and returns its hosted URL.

    ``event_entry`` (event_id, entry_type, mood, mood_text, budget_level) and
    ``invite_token`` ride along in metadata so the webhook can finish the
    entry once payment succeeds.
    """
    _configure()
    app_url = get_app_url()
    metadata: dict[str, str] = {"user_id": str(user["id"])}

    if event_entry and event_entry.get("event_id"):
        metadata["event_id"] = str(event_entry["event_id"])
        metadata["entry_type"] = str(event_entry.get("entry_type") or "solo")
    if event_entry or invite_token:
        entry = event_entry or {}
        metadata["mood"] = str(entry.get("mood") or DEFAULT_MOOD)
        metadata["budget_level"] = str(entry.get("budget_level") or DEFAULT_BUDGET_LEVEL)
        if entry.get("mood_text"):
            metadata["mood_text"] = str(entry["mood_text"])[:500]
    if invite_token:
        metadata["invite_token"] = invite_token

    params: dict[str, Any] = {
        "mode": "subscription",
        "payment_method_types": ["card"],
        "line_items": [{"price": get_stripe_price_id(), "quantity": 1}],
        "success_url": f"{app_url}/dashboard?success=true",
        "cancel_url": f"{app_url}/onboarding/subscribe?canceled=true",
        "metadata": metadata,
    }

    invite_coupon = get_stripe_invite_coupon_id()
    referral_coupon = get_stripe_referral_coupon_id()
    if invite_coupon and is_invite_coupon_eligible(user, invite_token):
        params["discounts"] = [{"coupon": invite_coupon}]
        metadata["is_invite_coupon"] = "true"
    elif referral_coupon and user.get("referred_by"):
        params["discounts"] = [{"coupon": referral_coupon}]

    session = stripe.checkout.Session.create(**params)
    logger.info("Created checkout session %s for user %s", session.id, user["id"])
    return session.url


def create_portal_session(customer_id: str) -> str:
    _configure()
    session = stripe.billing_portal.Session.create(
        customer=customer_id,
        return_url=f"{get_app_url()}/settings/subscription",
    )
    return session.url


def construct_event(payload: str | bytes, signature: str):
    return stripe.Webhook.construct_event(payload, signature, get_stripe_webhook_secret())


def cancel_customer_subscriptions(customer_id: str) -> int:
    _configure()
    canceled = 0
    subscriptions = stripe.Subscription.list(customer=customer_id, status="active")
    for subscription in subscriptions.auto_paging_iter():
        stripe.Subscription.cancel(subscription.id)
        canceled += 1
    return canceled


def _parse_budget_level(value: Any) -> int:
    try:
        level = int(value)
    except (TypeError, ValueError):
        return DEFAULT_BUDGET_LEVEL
    return level if 1 <= level <= 3 else DEFAULT_BUDGET_LEVEL


def _create_entry_from_metadata(cursor, user_id: str, metadata: Any) -> None:
    event_id = _get(metadata, "event_id")
    existing = repositories.get_participation(cursor, user_id, event_id)
    if existing and existing["status"] != "canceled":
        return
    fields = {
        "group_id": str(uuid.uuid4()),
        "entry_type": _get(metadata, "entry_type", "solo"),
        "invite_token": invites.generate_invite_token(),
        "short_code": invites.generate_short_code(),
        "mood": _get(metadata, "mood", DEFAULT_MOOD),
        "mood_text": _get(metadata, "mood_text"),
        "budget_level": _parse_budget_level(_get(metadata, "budget_level")),
    }
    if existing:
        repositories.reactivate_participation(cursor, existing["id"], **fields)
    else:
        repositories.create_participation(cursor, user_id, event_id, **fields)
    activity.log_activity(user_id, "event_join", {"event_id": event_id, "via": "checkout"}, cursor=cursor)


def _join_invite_group_from_metadata(cursor, user_id: str, metadata: Any) -> None:
    invite_token = _get(metadata, "invite_token")
    inviter = repositories.get_participation_by_invite(cursor, invite_token=invite_token)
    if not inviter:
        return
    event = repositories.get_event(cursor, inviter["event_id"])
    if not event or event["status"] != "open":
        return
    if repositories.count_active_group_members(cursor, inviter["group_id"]) >= invites.MAX_GROUP_SIZE:
        logger.info("Invite group %s is full; not joining user %s", inviter["group_id"], user_id)
        return

    mood = _get(metadata, "mood", DEFAULT_MOOD)
    mood_text = _get(metadata, "mood_text")
    budget_level = _parse_budget_level(_get(metadata, "budget_level"))
    existing = repositories.get_participation(cursor, user_id, inviter["event_id"])
    if existing and existing["status"] != "canceled":
        repositories.join_participation_group(
            cursor, existing["id"], inviter["group_id"], mood, mood_text, budget_level
        )
        return
    fields = {
        "group_id": inviter["group_id"],
        "entry_type": "pair",
        "invite_token": invites.generate_invite_token(),
        "short_code": invites.generate_short_code(),
        "mood": mood,
        "mood_text": mood_text,
        "budget_level": budget_level,
    }
    if existing:
        repositories.reactivate_participation(cursor, existing["id"], **fields)
    else:
        repositories.create_participation(cursor, user_id, inviter["event_id"], **fields)


def _handle_checkout_completed(cursor, session: Any) -> None:
    metadata = _get(session, "metadata", {})
    user_id = _get(metadata, "user_id")
    subscription_id = _get(session, "subscription")
    if not user_id or not subscription_id:
        logger.info("Checkout session without user or subscription; ignoring")
        return
    customer_id = _get(session, "customer")
    if isinstance(customer_id, dict):
        customer_id = customer_id.get("id")

    repositories.set_subscription(cursor, user_id, "active", _retrieve_period_end(subscription_id), customer_id)
    activity.log_activity(user_id, "subscription_start", {"stripe_customer_id": customer_id}, cursor=cursor)

    try:
        with savepoint(cursor, "founding_badge"):
            repositories.award_badge(cursor, user_id, "founding_member", "Initial subscription")
    except Exception:
        logger.exception("Failed to award founding_member badge to %s", user_id)

    if _get(metadata, "is_invite_coupon") == "true":
        repositories.update_user(cursor, user_id, {"has_used_invite_coupon": True, "pending_invite_token": None})

    user = repositories.get_user(cursor, user_id)
    if user and user.get("referred_by"):
        repositories.complete_referral(cursor, user_id)

    if _get(metadata, "event_id"):
        _create_entry_from_metadata(cursor, user_id, metadata)
    if _get(metadata, "invite_token"):
        _join_invite_group_from_metadata(cursor, user_id, metadata)


def _user_for_customer(cursor, obj: Any) -> dict | None:
    customer_id = _get(obj, "customer")
    if not customer_id:
        return None
    user = repositories.get_user_by_stripe_customer(cursor, customer_id)
    if not user:
        logger.warning("No user for Stripe customer %s", customer_id)
    return user


def subscription_status_for(subscription: Any) -> str:
    status = _get(subscription, "status")
    if status in ("canceled", "unpaid"):
        return "canceled"
    if _get(subscription, "cancel_at_period_end"):
        return "canceled"
    if status == "past_due":
        return "past_due"
    return "active"


def handle_event(cursor, event: Any) -> None:
    event_type = _get(event, "type")
    obj = _get(_get(event, "data"), "object")
    logger.info("Handling Stripe event %s", event_type)

    if event_type == "checkout.session.completed":
        _handle_checkout_completed(cursor, obj)
        return

    if event_type == "invoice.payment_succeeded":
        user = _user_for_customer(cursor, obj)
        subscription_id = _get(obj, "subscription")
        if user and subscription_id:
            repositories.set_subscription(cursor, user["id"], "active", _retrieve_period_end(subscription_id))
        return

    if event_type == "invoice.payment_failed":
        user = _user_for_customer(cursor, obj)
        if user:
            repositories.set_subscription_status(cursor, user["id"], "past_due")
            activity.log_activity(user["id"], "payment_failed", {"stripe_customer_id": obj["customer"]}, cursor=cursor)
        return

    if event_type == "customer.subscription.deleted":
        user = _user_for_customer(cursor, obj)
        if user:
            repositories.set_subscription(cursor, user["id"], "canceled", None)
            activity.log_activity(user["id"], "subscription_cancel", {"stripe_customer_id": obj["customer"]}, cursor=cursor)
        return

    if event_type == "customer.subscription.updated":
        user = _user_for_customer(cursor, obj)
        if user:
            repositories.set_subscription(
                cursor, user["id"], subscription_status_for(obj), _subscription_period_end(obj)
            )
        return

    logger.debug("Ignoring Stripe event %s", event_type)
