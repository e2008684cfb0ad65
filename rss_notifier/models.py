"""Data models for feeds, entries and poll results."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

ID_MARKER_PREFIX = "id:"


@dataclass(frozen=True)
class Marker:
    """Newest entry already notified for a feed: a timestamp or an entry id."""
    published_at: Optional[datetime] = None
    entry_id: Optional[str] = None

    @classmethod
    def at(cls, published_at: datetime) -> "Marker":
        return cls(published_at=to_utc(published_at))

    @classmethod
    def for_id(cls, entry_id: str) -> "Marker":
        return cls(entry_id=entry_id)

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Marker"]:
        """
        Parse a stored marker.

        Timestamps are ISO 8601 (a trailing "Z" is accepted); identifier
        markers carry an "id:" prefix.

        Raises:
            ValueError: If the value is neither form.
        """
        if value is None or not value.strip():
            return None
        if value.startswith(ID_MARKER_PREFIX):
            return cls.for_id(value[len(ID_MARKER_PREFIX):])
        return cls.at(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))

    @property
    def is_timestamp(self) -> bool:
        return self.published_at is not None

    def serialize(self) -> str:
        if self.published_at is not None:
            return format_utc(self.published_at)
        return f"{ID_MARKER_PREFIX}{self.entry_id}"

    def __str__(self) -> str:
        return self.serialize()


@dataclass
class FeedSubscription:
    """A registered feed."""
    id: int
    name: str
    url: str
    marker: Optional[Marker] = None


@dataclass(frozen=True)
class FeedEntry:
    """Represents one entry of a fetched feed document."""
    entry_id: str                    # guid/id, or title|published fallback
    title: str
    link: str
    published_at: Optional[datetime]  # aware UTC, None if missing or unparseable
    summary: str = ""


@dataclass(frozen=True)
class SmtpProfile:
    """SMTP settings snapshot used for one tick."""
    host: str
    port: int
    username: str
    password: str
    from_email: str
    to_email: str
    from_name: str = ""


@dataclass
class PollOutcome:
    """Result of polling one feed during one tick."""
    feed_id: int
    feed_name: str
    status: str = "ok"  # ok, failed, skipped, baseline, no_profile
    new_entries: int = 0
    sent: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status not in ("failed", "skipped")


@dataclass(frozen=True)
class TickSnapshot:
    """Feeds and SMTP profile read once at the start of a tick."""
    feeds: List[FeedSubscription] = field(default_factory=list)
    profile: Optional[SmtpProfile] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def to_utc(dt: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_utc(dt: datetime) -> str:
    """Format a datetime as ISO 8601 UTC with a trailing Z."""
    dt = to_utc(dt)
    if dt.microsecond:
        return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")
