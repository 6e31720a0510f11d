from __future__ import annotations

import datetime as dt
import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEDUP_GRANULARITIES = ("slot", "day")
DELIVERY_SEMANTICS = ("at-least-once", "at-most-once")


def parse_chat_id(raw: str, *, name: str = "chat id") -> str:
    value = raw.strip()
    # Telegram allows numeric IDs; groups/supergroups can be negative.
    try:
        int(value)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected integer chat id.") from e

    if int(value) == 0:
        raise RuntimeError(f"Invalid {name} value: '0' is not a valid chat id")
    return value


@dataclass(frozen=True)
class Settings:
    telegram_bot_token: str
    telegram_admin_chat_id: str | None = None

    redis_url: str = "redis://127.0.0.1:6379/0"
    redis_key_prefix: str = "nexus:"
    centers_file: str = "centers.toml"

    check_interval_seconds: int = 15
    max_concurrency: int = 8
    request_timeout_seconds: float = 10.0

    # 1 means no intra-tick retry: the next tick is the retry.
    fetch_retry_attempts: int = 1
    slots_per_request: int = 5

    dedup_granularity: str = "slot"
    delivery_semantics: str = "at-least-once"
    # 0 disables releasing seen slots that vanish from the provider.
    release_after_misses: int = 0

    notify_date_from: dt.date | None = None
    notify_date_to: dt.date | None = None

    provider_base_url: str = "https://ttp.cbp.dhs.gov/schedulerapi"
    schedule_url: str = (
        "https://ttp.cbp.dhs.gov/schedulerui/schedule-interview/location"
        "?lang=en&vo=true&returnUrl=ttp-external&service=nh"
    )

    permanent_error_backoff_ticks: int = 20
    store_connect_attempts: int = 3
    lock_timeout_seconds: int = 60

    log_level: str = "INFO"


def _require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _int(name: str, default: int, *, minimum: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return value


def _choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = os.getenv(name, default).strip().lower()
    if value not in choices:
        raise RuntimeError(f"{name} must be one of {', '.join(choices)}; got {value!r}")
    return value


def _date(name: str) -> dt.date | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return dt.date.fromisoformat(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an ISO date (YYYY-MM-DD), got {raw!r}") from e


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    admin_raw = os.getenv("TELEGRAM_ADMIN_CHAT_ID", "").strip()
    admin_chat_id = parse_chat_id(admin_raw, name="TELEGRAM_ADMIN_CHAT_ID") if admin_raw else None

    try:
        request_timeout_seconds = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))
    except ValueError as e:
        raise RuntimeError("REQUEST_TIMEOUT_SECONDS must be a number") from e
    if request_timeout_seconds <= 0:
        raise RuntimeError("REQUEST_TIMEOUT_SECONDS must be > 0")

    notify_date_from = _date("NOTIFY_DATE_FROM")
    notify_date_to = _date("NOTIFY_DATE_TO")
    if notify_date_from and notify_date_to and notify_date_from > notify_date_to:
        raise RuntimeError("NOTIFY_DATE_FROM must not be after NOTIFY_DATE_TO")

    defaults = Settings(telegram_bot_token="")

    return Settings(
        telegram_bot_token=_require("TELEGRAM_BOT_TOKEN"),
        telegram_admin_chat_id=admin_chat_id,
        redis_url=os.getenv("REDIS_URL", defaults.redis_url),
        redis_key_prefix=os.getenv("REDIS_KEY_PREFIX", defaults.redis_key_prefix),
        centers_file=os.getenv("CENTERS_FILE", defaults.centers_file),
        check_interval_seconds=_int("CHECK_INTERVAL_SECONDS", defaults.check_interval_seconds, minimum=1),
        max_concurrency=_int("MAX_CONCURRENCY", defaults.max_concurrency, minimum=1),
        request_timeout_seconds=request_timeout_seconds,
        fetch_retry_attempts=_int("FETCH_RETRY_ATTEMPTS", defaults.fetch_retry_attempts, minimum=1),
        slots_per_request=_int("SLOTS_PER_REQUEST", defaults.slots_per_request, minimum=1),
        dedup_granularity=_choice("DEDUP_GRANULARITY", defaults.dedup_granularity, DEDUP_GRANULARITIES),
        delivery_semantics=_choice("DELIVERY_SEMANTICS", defaults.delivery_semantics, DELIVERY_SEMANTICS),
        release_after_misses=_int("RELEASE_AFTER_MISSES", defaults.release_after_misses, minimum=0),
        notify_date_from=notify_date_from,
        notify_date_to=notify_date_to,
        provider_base_url=os.getenv("PROVIDER_BASE_URL", defaults.provider_base_url).rstrip("/"),
        schedule_url=os.getenv("SCHEDULE_URL", defaults.schedule_url),
        permanent_error_backoff_ticks=_int(
            "PERMANENT_ERROR_BACKOFF_TICKS", defaults.permanent_error_backoff_ticks, minimum=0
        ),
        store_connect_attempts=_int("STORE_CONNECT_ATTEMPTS", defaults.store_connect_attempts, minimum=1),
        lock_timeout_seconds=_int("LOCK_TIMEOUT_SECONDS", defaults.lock_timeout_seconds, minimum=1),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).strip().upper(),
    )
