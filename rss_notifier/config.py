"""Configuration management."""

import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

from .models import SmtpProfile

load_dotenv()

NOTIFICATION_MODES = ("entry", "digest")


@dataclass
class FetchConfig:
    """Feed download limits."""
    timeout_seconds: float
    max_bytes: int


@dataclass
class SchedulerConfig:
    """Scheduler configuration."""
    polling_time_sec: int
    max_workers: int
    retry_attempts: int
    retry_backoff_sec: float
    recent_ids_per_feed: int


@dataclass
class NotificationConfig:
    """Notification delivery configuration."""
    mode: str = "entry"  # "entry" sends one email per new entry, "digest" one per feed per tick
    smtp_timeout_sec: float = 10.0


@dataclass
class AppConfig:
    """Complete application configuration."""
    db_path: str
    fetch: FetchConfig
    scheduler: SchedulerConfig
    notification: NotificationConfig
    smtp: Optional[SmtpProfile] = None  # fallback profile when the settings table is empty


def _int_env(key: str, default: int, errors: List[str]) -> int:
    value = os.getenv(key, "")
    if not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        errors.append(key)
        return default


def _float_env(key: str, default: float, errors: List[str]) -> float:
    value = os.getenv(key, "")
    if not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        errors.append(key)
        return default


def _load_smtp_profile(errors: List[str]) -> Optional[SmtpProfile]:
    """
    Build the fallback SMTP profile from SMTP_* environment variables.

    Returns None when SMTP_HOST is not set, so the settings table stays the
    only source of truth.
    """
    host = os.getenv("SMTP_HOST")
    if not host:
        return None

    to_email = os.getenv("TO_EMAIL")
    from_email = os.getenv("FROM_EMAIL") or os.getenv("SMTP_AUTH_USER")
    if not to_email:
        errors.append("TO_EMAIL")
    if not from_email:
        errors.append("FROM_EMAIL")

    return SmtpProfile(
        host=host,
        port=_int_env("SMTP_PORT", 587, errors),
        username=os.getenv("SMTP_AUTH_USER", ""),
        password=os.getenv("SMTP_AUTH_PASSWORD", ""),
        from_email=from_email or "",
        from_name=os.getenv("FROM_NAME", ""),
        to_email=to_email or "",
    )


def load_config() -> AppConfig:
    """
    Load configuration from environment variables.

    Raises:
        ValueError: If configuration values are missing or malformed.
    """
    errors: List[str] = []

    db_path = os.getenv("DB_PATH", "rss_notifier.db")

    fetch = FetchConfig(
        timeout_seconds=_float_env("FETCH_TIMEOUT_SEC", 15.0, errors),
        max_bytes=_int_env("FETCH_MAX_BYTES", 5 * 1024 * 1024, errors),
    )

    scheduler = SchedulerConfig(
        polling_time_sec=_int_env("POLLING_TIME_SEC", 300, errors),
        max_workers=_int_env("MAX_WORKERS", 8, errors),
        retry_attempts=_int_env("RETRY_ATTEMPTS", 3, errors),
        retry_backoff_sec=_float_env("RETRY_BACKOFF_SEC", 2.0, errors),
        recent_ids_per_feed=_int_env("RECENT_IDS_PER_FEED", 500, errors),
    )

    mode = os.getenv("NOTIFICATION_MODE", "entry").strip().lower()
    if mode not in NOTIFICATION_MODES:
        errors.append("NOTIFICATION_MODE")
        mode = "entry"

    notification = NotificationConfig(
        mode=mode,
        smtp_timeout_sec=_float_env("SMTP_TIMEOUT_SEC", 10.0, errors),
    )

    smtp = _load_smtp_profile(errors)

    # Validate ranges
    if scheduler.polling_time_sec <= 0:
        errors.append("POLLING_TIME_SEC")
    if scheduler.max_workers <= 0:
        errors.append("MAX_WORKERS")
    if scheduler.retry_attempts <= 0:
        errors.append("RETRY_ATTEMPTS")
    if fetch.max_bytes <= 0:
        errors.append("FETCH_MAX_BYTES")

    if errors:
        raise ValueError(
            f"Missing or invalid environment variables: {', '.join(sorted(set(errors)))}"
        )

    return AppConfig(
        db_path=db_path,
        fetch=fetch,
        scheduler=scheduler,
        notification=notification,
        smtp=smtp,
    )
