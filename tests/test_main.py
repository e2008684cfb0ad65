import pytest

from rss_notifier import main as cli
from rss_notifier.models import Marker
from rss_notifier.registry import FeedRegistry, SettingsStore


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "cli.db")
    monkeypatch.setenv("DB_PATH", path)
    for key in ("SMTP_HOST", "NOTIFICATION_MODE", "POLLING_TIME_SEC", "MAX_WORKERS"):
        monkeypatch.delenv(key, raising=False)
    return path


def test_add_list_remove(db_path, capsys):
    assert cli.main(["add", "Blog", "https://example.com/feed"]) == 0
    assert cli.main(["list"]) == 0

    out = capsys.readouterr().out
    assert "Blog\thttps://example.com/feed\t-" in out

    (feed,) = FeedRegistry(db_path).list_feeds()
    assert cli.main(["remove", str(feed.id)]) == 0
    assert cli.main(["remove", str(feed.id)]) == 1


def test_add_rejects_invalid_url(db_path):
    assert cli.main(["add", "Bad", "not-a-url"]) == 1


def test_update_feed(db_path):
    cli.main(["add", "Blog", "https://example.com/feed"])
    (feed,) = FeedRegistry(db_path).list_feeds()

    assert cli.main(["update", str(feed.id), "Renamed", "https://example.com/atom"]) == 0
    assert FeedRegistry(db_path).get_feed(feed.id).name == "Renamed"


def test_reset_clears_markers(db_path):
    cli.main(["add", "Blog", "https://example.com/feed"])
    registry = FeedRegistry(db_path)
    (feed,) = registry.list_feeds()
    registry.update_marker(feed.id, Marker.parse("2024-01-03T00:00:00Z"))

    assert cli.main(["reset"]) == 0
    assert registry.get_feed(feed.id).marker is None


def test_set_smtp(db_path):
    assert cli.main([
        "set-smtp",
        "--host", "smtp.example.com",
        "--port", "465",
        "--user", "me@example.com",
        "--password", "pw",
        "--from-email", "me@example.com",
        "--to-email", "you@example.com",
    ]) == 0

    profile = SettingsStore(db_path).get_active_smtp_profile()
    assert profile.port == 465
    assert profile.to_email == "you@example.com"


def test_poll_unknown_feed(db_path):
    assert cli.main(["poll", "42"]) == 1


def test_invalid_config_exits_with_error(db_path, monkeypatch):
    monkeypatch.setenv("MAX_WORKERS", "many")

    assert cli.main(["list"]) == 1
