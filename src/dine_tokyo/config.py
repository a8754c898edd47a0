import os


def require_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required env var: {name}")
    return value


def optional_env(name: str, default: str | None = None) -> str | None:
    return os.getenv(name, default)


def get_database_url() -> str:
    return require_env("DATABASE_URL")


def get_app_url() -> str:
    return (optional_env("APP_URL", "http://localhost:3000") or "http://localhost:3000").rstrip("/")


def get_line_channel_id() -> str:
    return require_env("LINE_CHANNEL_ID")


def get_line_channel_secret() -> str:
    return require_env("LINE_CHANNEL_SECRET")


def get_line_login_secret() -> str:
    # LINE Login and the Messaging API may live on separate channels.
    return optional_env("LINE_LOGIN_CHANNEL_SECRET") or get_line_channel_secret()


def get_line_access_token() -> str | None:
    return optional_env("LINE_CHANNEL_ACCESS_TOKEN")


def get_stripe_secret_key() -> str:
    return require_env("STRIPE_SECRET_KEY")


def get_stripe_webhook_secret() -> str:
    return require_env("STRIPE_WEBHOOK_SECRET")


def get_stripe_price_id() -> str:
    return require_env("STRIPE_PRICE_ID")


def get_stripe_referral_coupon_id() -> str | None:
    return optional_env("STRIPE_REFERRAL_COUPON_ID")


def get_stripe_invite_coupon_id() -> str | None:
    return optional_env("STRIPE_INVITE_COUPON_ID")


def get_upload_bucket_name() -> str | None:
    return optional_env("UPLOAD_BUCKET_NAME")


def get_upload_public_base_url() -> str | None:
    return optional_env("UPLOAD_PUBLIC_BASE_URL")


def get_session_ttl_days() -> int:
    raw = optional_env("SESSION_TTL_DAYS", "30") or "30"
    try:
        return max(1, int(raw))
    except ValueError:
        return 30


def get_log_level() -> str:
    return optional_env("LOG_LEVEL", "INFO") or "INFO"
