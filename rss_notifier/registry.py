"""SQLite storage for feed subscriptions and SMTP settings."""

import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, List, Optional

from .errors import InvalidFeedUrl, PersistenceError
from .fetcher import is_valid_feed_url
from .models import FeedSubscription, Marker, SmtpProfile

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS rss_feeds (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        feed_url TEXT NOT NULL,
        last_pub_date TEXT DEFAULT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS smtp_settings (
        id INTEGER PRIMARY KEY,
        host TEXT NOT NULL,
        port INTEGER NOT NULL,
        from_email TEXT NOT NULL,
        from_name TEXT NOT NULL,
        to_email TEXT NOT NULL,
        auth_user TEXT NOT NULL,
        auth_password TEXT NOT NULL
    )
    """,
)


def init_db(db_path: str) -> None:
    """
    Create the tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.
    """
    with connect(db_path) as conn:
        for statement in SCHEMA:
            conn.execute(statement)


@contextmanager
def connect(db_path: str) -> Iterator[sqlite3.Connection]:
    """
    Open a short-lived connection, commit on success and always close.

    Each worker thread gets its own connection this way.

    Raises:
        PersistenceError: On any sqlite3 error.
    """
    conn = None
    try:
        conn = sqlite3.connect(db_path, timeout=30)
        yield conn
        conn.commit()
    except sqlite3.Error as e:
        if conn is not None:
            conn.rollback()
        raise PersistenceError(f"Database error on {db_path}: {e}") from e
    finally:
        if conn is not None:
            conn.close()


def _parse_marker(value: Optional[str]) -> Optional[Marker]:
    try:
        return Marker.parse(value)
    except ValueError:
        return None


def _is_behind(marker: Optional[Marker], stored: Optional[Marker]) -> bool:
    if marker is None or stored is None:
        return False
    return marker.is_timestamp and stored.is_timestamp and marker.published_at < stored.published_at


def _row_to_feed(row) -> FeedSubscription:
    feed_id, name, url, marker = row
    parsed = _parse_marker(marker)
    if parsed is None and marker is not None:
        logger.warning(f"Feed {feed_id}: ignoring unreadable marker {marker!r}")
    return FeedSubscription(id=feed_id, name=name, url=url, marker=parsed)


class FeedRegistry:
    """Feed subscriptions stored in the rss_feeds table."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def list_feeds(self) -> List[FeedSubscription]:
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id, name, feed_url, last_pub_date FROM rss_feeds ORDER BY id"
            ).fetchall()
        return [_row_to_feed(row) for row in rows]

    def get_feed(self, feed_id: int) -> Optional[FeedSubscription]:
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT id, name, feed_url, last_pub_date FROM rss_feeds WHERE id = ?",
                (feed_id,),
            ).fetchone()
        return _row_to_feed(row) if row else None

    def add_feed(self, name: str, url: str) -> FeedSubscription:
        """
        Register a feed.

        Raises:
            InvalidFeedUrl: If url is not an absolute http(s) URI.
        """
        if not is_valid_feed_url(url):
            raise InvalidFeedUrl(f"Invalid feed URL: {url!r}")
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                "INSERT INTO rss_feeds (name, feed_url) VALUES (?, ?)",
                (name, url),
            )
            feed_id = cursor.lastrowid
        logger.info(f"Added feed {feed_id}: {name} <{url}>")
        return FeedSubscription(id=feed_id, name=name, url=url)

    def update_feed(self, feed_id: int, name: str, url: str) -> bool:
        """Change name and URL of a feed, leaving its marker alone."""
        if not is_valid_feed_url(url):
            raise InvalidFeedUrl(f"Invalid feed URL: {url!r}")
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE rss_feeds SET name = ?, feed_url = ? WHERE id = ?",
                (name, url, feed_id),
            )
            return cursor.rowcount > 0

    def remove_feed(self, feed_id: int) -> bool:
        with connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM rss_feeds WHERE id = ?", (feed_id,))
            return cursor.rowcount > 0

    def update_marker(self, feed_id: int, marker: Optional[Marker]) -> bool:
        """
        Store the marker of a feed. Only the marker column is written.

        A timestamp marker never replaces a newer stored timestamp; the
        stored value is kept in that case. Use reset_markers() to go back.

        Returns:
            False if the feed no longer exists.
        """
        value = marker.serialize() if marker is not None else None
        with connect(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT last_pub_date FROM rss_feeds WHERE id = ?", (feed_id,)
            ).fetchone()
            if row is None:
                return False
            stored = _parse_marker(row[0])
            if _is_behind(marker, stored):
                logger.warning(f"Feed {feed_id}: keeping marker {stored}, not moving back to {marker}")
                return True
            conn.execute(
                "UPDATE rss_feeds SET last_pub_date = ? WHERE id = ?",
                (value, feed_id),
            )
            return True

    def reset_markers(self, feed_id: Optional[int] = None) -> int:
        """
        Clear markers so the next poll sets a new baseline.

        Args:
            feed_id: If provided, only reset this feed; otherwise all feeds.
        """
        with connect(self.db_path) as conn:
            if feed_id is None:
                cursor = conn.execute("UPDATE rss_feeds SET last_pub_date = NULL")
            else:
                cursor = conn.execute(
                    "UPDATE rss_feeds SET last_pub_date = NULL WHERE id = ?", (feed_id,)
                )
            return cursor.rowcount


class SettingsStore:
    """SMTP settings from the smtp_settings table, with an optional fallback."""

    def __init__(self, db_path: str, fallback: Optional[SmtpProfile] = None):
        self.db_path = db_path
        self.fallback = fallback

    def get_active_smtp_profile(self) -> Optional[SmtpProfile]:
        """Return the first stored profile, else the fallback, else None."""
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT host, port, from_email, from_name, to_email, auth_user, auth_password "
                "FROM smtp_settings ORDER BY id LIMIT 1"
            ).fetchone()
        if row is None:
            return self.fallback
        host, port, from_email, from_name, to_email, auth_user, auth_password = row
        return SmtpProfile(
            host=host,
            port=port,
            username=auth_user,
            password=auth_password,
            from_email=from_email,
            from_name=from_name,
            to_email=to_email,
        )

    def save_smtp_profile(self, profile: SmtpProfile) -> None:
        """Replace the stored profile."""
        with connect(self.db_path) as conn:
            conn.execute("DELETE FROM smtp_settings")
            conn.execute(
                "INSERT INTO smtp_settings "
                "(host, port, from_email, from_name, to_email, auth_user, auth_password) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    profile.host,
                    profile.port,
                    profile.from_email,
                    profile.from_name,
                    profile.to_email,
                    profile.username,
                    profile.password,
                ),
            )
        logger.info(f"Saved SMTP profile for {profile.host}:{profile.port}")
