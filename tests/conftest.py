from datetime import datetime, timezone

import pytest

from rss_notifier.config import AppConfig, FetchConfig, NotificationConfig, SchedulerConfig
from rss_notifier.fetcher import FetchResult
from rss_notifier.models import FeedEntry, SmtpProfile
from rss_notifier.notifier import NotifyResult
from rss_notifier.registry import FeedRegistry, SettingsStore, init_db


def ts(day, hour=0):
    return datetime(2024, 1, day, hour, tzinfo=timezone.utc)


def make_entry(entry_id, published_at=None, title=None):
    return FeedEntry(
        entry_id=entry_id,
        title=title or f"Post {entry_id}",
        link=f"https://example.com/{entry_id}",
        published_at=published_at,
        summary=f"Summary of {entry_id}",
    )


class FakeFetch:
    """Serves canned FetchResults per URL and counts calls."""

    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = []

    def __call__(self, url):
        self.calls.append(url)
        result = self.results[url]
        if isinstance(result, list):
            return result.pop(0) if len(result) > 1 else result[0]
        return result

    def serve(self, url, entries):
        self.results[url] = FetchResult(entries=list(entries))


class FakeSend:
    """Records sent entries; failures maps entry_id to a NotifyResult."""

    def __init__(self):
        self.sent = []
        self.attempts = []
        self.failures = {}

    def __call__(self, profile, feed, entry):
        self.attempts.append((feed.id, entry.entry_id))
        failure = self.failures.get(entry.entry_id)
        if failure is not None:
            return failure
        self.sent.append((feed.id, entry.entry_id))
        return NotifyResult(sent=True)


@pytest.fixture
def profile():
    return SmtpProfile(
        host="smtp.example.com",
        port=587,
        username="notifier@example.com",
        password="secret",
        from_email="notifier@example.com",
        to_email="reader@example.com",
        from_name="Notifier",
    )


@pytest.fixture
def app_config(tmp_path):
    return AppConfig(
        db_path=str(tmp_path / "feeds.db"),
        fetch=FetchConfig(timeout_seconds=15.0, max_bytes=1024 * 1024),
        scheduler=SchedulerConfig(
            polling_time_sec=60,
            max_workers=4,
            retry_attempts=3,
            retry_backoff_sec=0.5,
            recent_ids_per_feed=100,
        ),
        notification=NotificationConfig(mode="entry", smtp_timeout_sec=10.0),
    )


@pytest.fixture
def registry(app_config):
    init_db(app_config.db_path)
    return FeedRegistry(app_config.db_path)


@pytest.fixture
def settings(app_config, profile):
    return SettingsStore(app_config.db_path, fallback=profile)
